"""
Codex Session Execution Engine

Drives resumable Codex threads for host sessions and records each turn as an
ordered, durable message log.
"""

__version__ = "0.1.0"

from .config import EngineConfig
from .errors import (
    CodexEngineError,
    EngineNotConfiguredError,
    SessionNotFoundError,
    WorktreeNotFoundError,
    TurnFailedError,
    DuplicateMessageError,
)
from .runtime import (
    ExecutionOrchestrator,
    ExecutionResult,
    ExecutionStatus,
    StreamingCallbacks,
    Session,
    Message,
    MessageRole,
    ToolUse,
    MCPServer,
    TokenUsage,
)

__all__ = [
    "__version__",
    "EngineConfig",
    "CodexEngineError",
    "EngineNotConfiguredError",
    "SessionNotFoundError",
    "WorktreeNotFoundError",
    "TurnFailedError",
    "DuplicateMessageError",
    "ExecutionOrchestrator",
    "ExecutionResult",
    "ExecutionStatus",
    "StreamingCallbacks",
    "Session",
    "Message",
    "MessageRole",
    "ToolUse",
    "MCPServer",
    "TokenUsage",
]

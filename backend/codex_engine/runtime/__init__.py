"""
Codex Engine Runtime

Session execution core: config synthesis, thread lifecycle, event
translation, cancellation, usage accounting and the orchestrator facade.
"""

# Type definitions
from .types import (
    MessageRole,
    StreamEventType,
    ExecutionStatus,
    CodexPermissions,
    Session,
    Message,
    ToolUse,
    MCPServer,
    TokenUsage,
    StreamEvent,
    PartialEvent,
    ToolStartEvent,
    ToolCompleteEvent,
    CompleteEvent,
    StoppedEvent,
    StopResult,
    ExecutionResult,
)

# Runtime components
from .codex_client import ThreadOptions, CodexClient, CodexThread, CodexExecClient
from .config_synthesizer import ConfigSynthesizer
from .thread_manager import ThreadHandle, ThreadLifecycleManager
from .translator import EventTranslator
from .cancellation import CancellationController
from .usage import UsageAccountant
from .callbacks import StreamingCallbacks
from .orchestrator import ExecutionOrchestrator

__all__ = [
    # Types
    "MessageRole",
    "StreamEventType",
    "ExecutionStatus",
    "CodexPermissions",
    "Session",
    "Message",
    "ToolUse",
    "MCPServer",
    "TokenUsage",
    "StreamEvent",
    "PartialEvent",
    "ToolStartEvent",
    "ToolCompleteEvent",
    "CompleteEvent",
    "StoppedEvent",
    "StopResult",
    "ExecutionResult",
    # Components
    "ThreadOptions",
    "CodexClient",
    "CodexThread",
    "CodexExecClient",
    "ConfigSynthesizer",
    "ThreadHandle",
    "ThreadLifecycleManager",
    "EventTranslator",
    "CancellationController",
    "UsageAccountant",
    "StreamingCallbacks",
    "ExecutionOrchestrator",
]

"""
Codex Engine Type Definitions

Domain entities (sessions, messages, tool uses, MCP servers), token usage and
the notifications the engine streams to callers.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Dict, Any, Optional


# ============================================
# Enums
# ============================================


class MessageRole(str, Enum):
    """Message role"""

    USER = "user"
    ASSISTANT = "assistant"


class StreamEventType(str, Enum):
    """Notifications produced by the event translator"""

    PARTIAL = "partial"
    TOOL_START = "tool_start"
    TOOL_COMPLETE = "tool_complete"
    COMPLETE = "complete"
    STOPPED = "stopped"


class ExecutionStatus(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# ============================================
# Domain Entities
# ============================================


@dataclass
class CodexPermissions:
    """The three knobs Codex permissions are split across.

    ``sandbox_mode`` goes through thread options; ``approval_policy`` and
    ``network_access`` only exist in config.toml.
    """

    sandbox_mode: str
    approval_policy: str
    network_access: bool


@dataclass
class Session:
    """Host-owned conversation session"""

    session_id: str
    worktree_id: str
    permission_config: Dict[str, Any] = field(default_factory=dict)
    external_thread_id: Optional[str] = None
    model: Optional[str] = None
    created_by: Optional[str] = None
    last_approval_policy: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def codex_config(self) -> Dict[str, Any]:
        codex = (self.permission_config or {}).get("codex")
        return codex if isinstance(codex, dict) else {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "worktree_id": self.worktree_id,
            "permission_config": self.permission_config,
            "external_thread_id": self.external_thread_id,
            "model": self.model,
            "created_by": self.created_by,
            "last_approval_policy": self.last_approval_policy,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class ToolUse:
    """A tool invocation reported by the runtime.

    ``id`` is assigned by the runtime and is stable between the start and
    completion of the same item.
    """

    id: str
    name: str
    input: Dict[str, Any] = field(default_factory=dict)
    output: Optional[str] = None
    status: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.status in ("failed", "error")

    @property
    def has_result(self) -> bool:
        return self.output is not None or bool(self.status)

    def summary(self) -> Dict[str, Any]:
        """The ``{id, name, input}`` triple stored in ``Message.tool_uses``."""
        return {"id": self.id, "name": self.name, "input": self.input}

    def to_dict(self) -> Dict[str, Any]:
        data = self.summary()
        if self.output is not None:
            data["output"] = self.output
        if self.status is not None:
            data["status"] = self.status
        return data


@dataclass
class MCPServer:
    """Capability server descriptor (read-only, owned by the registry)"""

    server_id: str
    name: str
    transport: str = "stdio"
    command: Optional[str] = None
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    url: Optional[str] = None
    enabled: bool = True
    added_at: Optional[datetime] = None

    @property
    def is_stdio(self) -> bool:
        return self.transport == "stdio"


@dataclass
class TokenUsage:
    """Normalized token usage for one turn"""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "cache_read_tokens": self.cache_read_tokens,
            "cache_creation_tokens": self.cache_creation_tokens,
        }


@dataclass
class Message:
    """Single persisted message in a session's log"""

    message_id: str
    session_id: str
    role: MessageRole
    index: int
    content: Any  # str for user prompts, list of block dicts for assistant output
    task_id: Optional[str] = None
    tool_uses: Optional[List[Dict[str, Any]]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    content_preview: str = ""
    timestamp: datetime = field(default_factory=datetime.utcnow)

    @property
    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "".join(
            block.get("text", "") for block in self.content or [] if block.get("type") == "text"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "session_id": self.session_id,
            "task_id": self.task_id,
            "role": self.role.value,
            "index": self.index,
            "content": self.content,
            "content_preview": self.content_preview,
            "tool_uses": self.tool_uses,
            "metadata": self.metadata,
            "timestamp": self.timestamp.isoformat(),
        }


# ============================================
# Content blocks
# ============================================


def text_block(text: str) -> Dict[str, Any]:
    return {"type": "text", "text": text}


def tool_use_block(tool_use: ToolUse) -> Dict[str, Any]:
    return {"type": "tool_use", "id": tool_use.id, "name": tool_use.name, "input": tool_use.input}


def tool_result_block(tool_use: ToolUse) -> Dict[str, Any]:
    """Result block for a completed tool: output, else ``[status]``."""
    content = tool_use.output or ""
    if not content and tool_use.status:
        content = f"[{tool_use.status}]"
    return {
        "type": "tool_result",
        "tool_use_id": tool_use.id,
        "content": content,
        "is_error": tool_use.is_error,
    }


def tool_blocks(tool_use: ToolUse) -> List[Dict[str, Any]]:
    blocks = [tool_use_block(tool_use)]
    if tool_use.has_result:
        blocks.append(tool_result_block(tool_use))
    return blocks


# ============================================
# Stream notifications
# ============================================


@dataclass
class StreamEvent:
    """Base notification emitted while a turn is consumed"""

    type: StreamEventType
    thread_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "thread_id": self.thread_id}


@dataclass
class PartialEvent(StreamEvent):
    text_chunk: str = ""
    resolved_model: Optional[str] = None

    def __init__(self, text_chunk: str, thread_id: Optional[str] = None, resolved_model: Optional[str] = None):
        super().__init__(type=StreamEventType.PARTIAL, thread_id=thread_id)
        self.text_chunk = text_chunk
        self.resolved_model = resolved_model

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["text_chunk"] = self.text_chunk
        return data


@dataclass
class ToolStartEvent(StreamEvent):
    tool_use: Optional[ToolUse] = None

    def __init__(self, tool_use: ToolUse, thread_id: Optional[str] = None):
        super().__init__(type=StreamEventType.TOOL_START, thread_id=thread_id)
        self.tool_use = tool_use

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["tool_use"] = self.tool_use.to_dict()
        return data


@dataclass
class ToolCompleteEvent(StreamEvent):
    tool_use: Optional[ToolUse] = None

    def __init__(self, tool_use: ToolUse, thread_id: Optional[str] = None):
        super().__init__(type=StreamEventType.TOOL_COMPLETE, thread_id=thread_id)
        self.tool_use = tool_use

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["tool_use"] = self.tool_use.to_dict()
        return data


@dataclass
class CompleteEvent(StreamEvent):
    content: List[Dict[str, Any]] = field(default_factory=list)
    tool_uses: Optional[List[ToolUse]] = None
    resolved_model: Optional[str] = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    raw_event: Optional[Dict[str, Any]] = None

    def __init__(
        self,
        content: List[Dict[str, Any]],
        thread_id: Optional[str],
        resolved_model: Optional[str],
        usage: TokenUsage,
        tool_uses: Optional[List[ToolUse]] = None,
        raw_event: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(type=StreamEventType.COMPLETE, thread_id=thread_id)
        self.content = content
        self.tool_uses = tool_uses
        self.resolved_model = resolved_model
        self.usage = usage
        self.raw_event = raw_event

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "content": self.content,
            "tool_uses": [tu.summary() for tu in self.tool_uses] if self.tool_uses else None,
            "resolved_model": self.resolved_model,
            "usage": self.usage.to_dict(),
        })
        return data


@dataclass
class StoppedEvent(StreamEvent):
    def __init__(self, thread_id: Optional[str] = None):
        super().__init__(type=StreamEventType.STOPPED, thread_id=thread_id)


# ============================================
# Results
# ============================================


@dataclass
class StopResult:
    success: bool
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "reason": self.reason}


@dataclass
class ExecutionResult:
    """Outcome of one ``execute_prompt`` call"""

    user_message_id: str
    assistant_message_ids: List[str] = field(default_factory=list)
    token_usage: Optional[TokenUsage] = None
    model: Optional[str] = None
    thread_id: Optional[str] = None
    status: ExecutionStatus = ExecutionStatus.COMPLETED
    cost_usd: float = 0.0
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_message_id": self.user_message_id,
            "assistant_message_ids": self.assistant_message_ids,
            "token_usage": self.token_usage.to_dict() if self.token_usage else None,
            "model": self.model,
            "thread_id": self.thread_id,
            "status": self.status.value,
            "cost_usd": self.cost_usd,
            "warnings": self.warnings,
        }

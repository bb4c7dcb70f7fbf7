"""
Codex Thread Event Types

Typed views over the JSONL events ``codex exec --json`` writes to stdout.

Event stream of one turn:
    thread.started -> turn.started -> item.* ... -> turn.completed | turn.failed

Each event and item is tagged by a ``type`` discriminator. ``parse_thread_event``
maps the raw dict onto one dataclass per tag; unknown tags become
``UnknownEvent`` / ``UnknownItem`` so newer runtimes never break the engine.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union


# =============================================================================
# Items
# =============================================================================


@dataclass
class ThreadItem:
    id: str
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass
class AgentMessageItem(ThreadItem):
    text: str = ""


@dataclass
class ReasoningItem(ThreadItem):
    text: str = ""


@dataclass
class CommandExecutionItem(ThreadItem):
    command: str = ""
    aggregated_output: str = ""
    exit_code: Optional[int] = None
    status: Optional[str] = None


@dataclass
class FileChangeItem(ThreadItem):
    changes: List[Dict[str, Any]] = field(default_factory=list)
    status: Optional[str] = None


@dataclass
class McpToolCallItem(ThreadItem):
    server: str = ""
    tool: str = ""
    arguments: Dict[str, Any] = field(default_factory=dict)
    status: Optional[str] = None


@dataclass
class WebSearchItem(ThreadItem):
    query: str = ""


@dataclass
class TodoListItem(ThreadItem):
    items: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class ErrorItem(ThreadItem):
    message: str = ""


@dataclass
class UnknownItem(ThreadItem):
    item_type: str = ""


def parse_thread_item(raw: Dict[str, Any]) -> ThreadItem:
    """Build the typed item for ``raw`` (accepts ``type`` or legacy ``item_type``)."""
    item_type = raw.get("type") or raw.get("item_type") or ""
    item_id = str(raw.get("id", ""))

    if item_type == "agent_message":
        return AgentMessageItem(id=item_id, raw=raw, text=raw.get("text") or "")
    if item_type == "reasoning":
        return ReasoningItem(id=item_id, raw=raw, text=raw.get("text") or "")
    if item_type == "command_execution":
        return CommandExecutionItem(
            id=item_id,
            raw=raw,
            command=raw.get("command") or "",
            aggregated_output=raw.get("aggregated_output") or "",
            exit_code=raw.get("exit_code"),
            status=raw.get("status"),
        )
    if item_type == "file_change":
        return FileChangeItem(
            id=item_id, raw=raw, changes=list(raw.get("changes") or []), status=raw.get("status")
        )
    if item_type == "mcp_tool_call":
        arguments = raw.get("arguments")
        return McpToolCallItem(
            id=item_id,
            raw=raw,
            server=raw.get("server") or "",
            tool=raw.get("tool") or "",
            arguments=arguments if isinstance(arguments, dict) else {},
            status=raw.get("status"),
        )
    if item_type == "web_search":
        return WebSearchItem(id=item_id, raw=raw, query=raw.get("query") or "")
    if item_type == "todo_list":
        return TodoListItem(id=item_id, raw=raw, items=list(raw.get("items") or []))
    if item_type == "error":
        return ErrorItem(id=item_id, raw=raw, message=raw.get("message") or "")
    return UnknownItem(id=item_id, raw=raw, item_type=item_type)


# =============================================================================
# Events
# =============================================================================


@dataclass
class ThreadStartedEvent:
    thread_id: str


@dataclass
class TurnStartedEvent:
    pass


@dataclass
class ItemStartedEvent:
    item: ThreadItem


@dataclass
class ItemUpdatedEvent:
    item: ThreadItem


@dataclass
class ItemCompletedEvent:
    item: ThreadItem


@dataclass
class TurnCompletedEvent:
    usage: Dict[str, Any] = field(default_factory=dict)
    model: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass
class TurnFailedEvent:
    error: Any = None


@dataclass
class StreamErrorEvent:
    """Top-level ``error`` event (fatal for the stream)."""

    message: str = ""


@dataclass
class UnknownEvent:
    type: str = ""
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


ThreadEvent = Union[
    ThreadStartedEvent,
    TurnStartedEvent,
    ItemStartedEvent,
    ItemUpdatedEvent,
    ItemCompletedEvent,
    TurnCompletedEvent,
    TurnFailedEvent,
    StreamErrorEvent,
    UnknownEvent,
]


def parse_thread_event(raw: Dict[str, Any]) -> ThreadEvent:
    """
    Convert one decoded JSONL event into its typed form.

    Args:
        raw: Decoded event dict

    Returns:
        Typed event; ``UnknownEvent`` for unrecognized tags
    """
    event_type = raw.get("type", "")

    if event_type == "thread.started":
        return ThreadStartedEvent(thread_id=str(raw.get("thread_id", "")))
    if event_type == "turn.started":
        return TurnStartedEvent()
    if event_type in ("item.started", "item.updated", "item.completed"):
        item_raw = raw.get("item")
        if not isinstance(item_raw, dict):
            return UnknownEvent(type=event_type, raw=raw)
        item = parse_thread_item(item_raw)
        if event_type == "item.started":
            return ItemStartedEvent(item=item)
        if event_type == "item.updated":
            return ItemUpdatedEvent(item=item)
        return ItemCompletedEvent(item=item)
    if event_type == "turn.completed":
        usage = raw.get("usage")
        return TurnCompletedEvent(
            usage=usage if isinstance(usage, dict) else {},
            model=raw.get("model"),
            raw=raw,
        )
    if event_type == "turn.failed":
        return TurnFailedEvent(error=raw.get("error"))
    if event_type == "error":
        return StreamErrorEvent(message=str(raw.get("message", "")))
    return UnknownEvent(type=event_type, raw=raw)


def render_error(error: Any) -> str:
    """Human-readable form of a provider error payload."""
    if error is None:
        return "unknown error"
    if isinstance(error, str):
        return error
    if isinstance(error, dict) and set(error.keys()) == {"message"}:
        return str(error["message"])
    try:
        return json.dumps(error, indent=2, sort_keys=True)
    except (TypeError, ValueError):
        return str(error)

"""
Streaming callbacks.

The caller's notification sink for streaming executions. Every hook is
optional and may be a plain function or a coroutine function. A failing hook
is logged and never aborts the turn.
"""

import inspect
from dataclasses import dataclass
from typing import Any, Callable, Optional

from ...utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class StreamingCallbacks:
    on_stream_start: Optional[Callable[..., Any]] = None  # (session_id, message_id)
    on_text_chunk: Optional[Callable[..., Any]] = None  # (session_id, message_id, chunk)
    on_tool_start: Optional[Callable[..., Any]] = None  # (session_id, ToolUse)
    on_tool_complete: Optional[Callable[..., Any]] = None  # (session_id, ToolUse, Message)
    on_complete: Optional[Callable[..., Any]] = None  # (session_id, CompleteEvent, Optional[Message])
    on_error: Optional[Callable[..., Any]] = None  # (session_id, Exception)
    on_warning: Optional[Callable[..., Any]] = None  # (session_id, str)
    on_stopped: Optional[Callable[..., Any]] = None  # (session_id)

    async def notify(self, hook: str, *args: Any) -> None:
        """Invoke ``hook`` if set, awaiting it when it returns an awaitable."""
        handler = getattr(self, hook, None)
        if handler is None:
            return
        try:
            result = handler(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Streaming callback {hook} failed: {e}", exc_info=True)

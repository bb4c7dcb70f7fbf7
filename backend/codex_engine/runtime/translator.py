"""
Event Translator

Turns the provider event stream of one turn into engine notifications and
canonical content blocks.

Accumulators (reset on ``turn.started`` and after ``turn.completed``):
    current_content   - ordered text / tool_use / tool_result blocks
    current_tool_uses - ToolUse records completed this turn

Item kinds mapped to tools:
    command_execution -> Bash
    file_change       -> edit_files
    mcp_tool_call     -> <server>.<tool>
    web_search        -> web_search
Reasoning, todo lists and agent messages never produce tool notifications.
"""

from typing import Any, Dict, Iterable, List, Optional, Set, Union

from ..errors import TurnFailedError
from .events import (
    AgentMessageItem,
    CommandExecutionItem,
    FileChangeItem,
    ItemCompletedEvent,
    ItemStartedEvent,
    ItemUpdatedEvent,
    McpToolCallItem,
    StreamErrorEvent,
    ThreadEvent,
    ThreadItem,
    ThreadStartedEvent,
    TodoListItem,
    TurnCompletedEvent,
    TurnFailedEvent,
    TurnStartedEvent,
    WebSearchItem,
    parse_thread_event,
    render_error,
)
from .types import (
    CompleteEvent,
    PartialEvent,
    StreamEvent,
    ToolCompleteEvent,
    ToolStartEvent,
    ToolUse,
    text_block,
    tool_blocks,
)
from .usage import UsageAccountant
from ...utils.logger import get_logger

logger = get_logger(__name__)


def item_to_tool_use(item: ThreadItem, completed: bool) -> Optional[ToolUse]:
    """
    Map a thread item onto a ToolUse.

    Args:
        item: Parsed thread item
        completed: Whether the item finished (adds output/status)

    Returns:
        ToolUse for tool kinds, None otherwise
    """
    if isinstance(item, CommandExecutionItem):
        tool_use = ToolUse(id=item.id, name="Bash", input={"command": item.command})
        if completed:
            tool_use.output = item.aggregated_output or ""
            tool_use.status = item.status
        return tool_use

    if isinstance(item, FileChangeItem):
        tool_use = ToolUse(id=item.id, name="edit_files", input={"changes": item.changes})
        if completed:
            tool_use.status = item.status
        return tool_use

    if isinstance(item, McpToolCallItem):
        tool_use = ToolUse(id=item.id, name=f"{item.server}.{item.tool}", input=dict(item.arguments))
        if completed:
            tool_use.status = item.status
        return tool_use

    if isinstance(item, WebSearchItem):
        return ToolUse(id=item.id, name="web_search", input={"query": item.query})

    return None


def filter_flushed_blocks(content: Iterable[Dict[str, Any]], flushed_ids: Set[str]) -> List[Dict[str, Any]]:
    """Drop tool_use / tool_result blocks whose tool id was already persisted."""
    remaining = []
    for block in content:
        block_type = block.get("type")
        if block_type == "tool_use" and block.get("id") in flushed_ids:
            continue
        if block_type == "tool_result" and block.get("tool_use_id") in flushed_ids:
            continue
        remaining.append(block)
    return remaining


class EventTranslator:
    """
    Stateful translator for one session's turns.

    Args:
        thread_id: Known thread id (resumed threads)
        resolved_model: Model reported on partial/complete notifications
    """

    def __init__(self, thread_id: Optional[str] = None, resolved_model: Optional[str] = None):
        self.thread_id = thread_id
        self.resolved_model = resolved_model
        self.current_content: List[Dict[str, Any]] = []
        self.current_tool_uses: List[ToolUse] = []
        self._completed_ids: Set[str] = set()

    filter_flushed_blocks = staticmethod(filter_flushed_blocks)

    def reset(self) -> None:
        self.current_content = []
        self.current_tool_uses = []
        self._completed_ids = set()

    def feed(self, event: Union[ThreadEvent, Dict[str, Any]]) -> List[StreamEvent]:
        """
        Consume one provider event.

        Args:
            event: Typed event or the raw decoded dict

        Returns:
            Notifications produced by this event (possibly empty)

        Raises:
            TurnFailedError: On ``turn.failed`` or a stream-level ``error``
        """
        if isinstance(event, dict):
            event = parse_thread_event(event)

        if isinstance(event, ThreadStartedEvent):
            if event.thread_id:
                self.thread_id = event.thread_id
            return []

        if isinstance(event, TurnStartedEvent):
            self.reset()
            return []

        if isinstance(event, ItemStartedEvent):
            tool_use = item_to_tool_use(event.item, completed=False)
            if tool_use is None:
                return []
            return [ToolStartEvent(tool_use=tool_use, thread_id=self.thread_id)]

        if isinstance(event, ItemUpdatedEvent):
            if isinstance(event.item, TodoListItem):
                done = sum(1 for entry in event.item.items if entry.get("completed"))
                logger.debug("Todo list progress", done=done, total=len(event.item.items))
            return []

        if isinstance(event, ItemCompletedEvent):
            return self._on_item_completed(event.item)

        if isinstance(event, TurnCompletedEvent):
            complete = CompleteEvent(
                content=list(self.current_content),
                thread_id=self.thread_id,
                resolved_model=event.model or self.resolved_model,
                usage=UsageAccountant.normalize(event.usage),
                tool_uses=list(self.current_tool_uses) or None,
                raw_event=event.raw,
            )
            self.reset()
            return [complete]

        if isinstance(event, TurnFailedEvent):
            raise TurnFailedError(render_error(event.error))

        if isinstance(event, StreamErrorEvent):
            raise TurnFailedError(event.message or "stream error")

        return []

    def _on_item_completed(self, item: ThreadItem) -> List[StreamEvent]:
        if isinstance(item, AgentMessageItem):
            if not item.text:
                return []
            self.current_content.append(text_block(item.text))
            return [
                PartialEvent(
                    text_chunk=item.text,
                    thread_id=self.thread_id,
                    resolved_model=self.resolved_model,
                )
            ]

        tool_use = item_to_tool_use(item, completed=True)
        if tool_use is None:
            return []

        if tool_use.id in self._completed_ids:
            logger.debug("Dropping duplicate tool completion", tool_use_id=tool_use.id)
            return []
        self._completed_ids.add(tool_use.id)

        self.current_content.extend(tool_blocks(tool_use))
        self.current_tool_uses.append(tool_use)
        return [ToolCompleteEvent(tool_use=tool_use, thread_id=self.thread_id)]

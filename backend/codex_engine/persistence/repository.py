"""
Async adapters over PersistenceService.

The service is synchronous SQLAlchemy; each call runs in a worker thread so
the event loop stays free while a turn is streaming.
"""

import asyncio
from typing import Any, Dict, List, Optional

from .service import PersistenceService
from ..runtime.types import MCPServer, Message, Session


class SqlRepository:
    """``Repository`` implementation backed by PersistenceService."""

    def __init__(self, service: PersistenceService):
        self.service = service

    async def find_session(self, session_id: str) -> Optional[Session]:
        return await asyncio.to_thread(self.service.get_session_by_id, session_id)

    async def update_session(self, session_id: str, patch: Dict[str, Any]) -> Optional[Session]:
        return await asyncio.to_thread(self.service.update_session, session_id, patch)

    async def find_messages_by_session(self, session_id: str) -> List[Message]:
        return await asyncio.to_thread(self.service.get_messages, session_id)

    async def create_message(self, message: Message) -> Message:
        await asyncio.to_thread(self.service.save_message, message)
        return message

    async def update_task(self, task_id: str, patch: Dict[str, Any]) -> None:
        await asyncio.to_thread(self.service.update_task, task_id, patch)

    async def find_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self.service.get_task, task_id)

    async def list_enabled_mcp_servers(self, session_id: str) -> List[MCPServer]:
        return await asyncio.to_thread(self.service.list_enabled_mcp_servers, session_id)


class SqlWorktreeResolver:
    """``WorktreeResolver`` reading paths from the worktrees table."""

    def __init__(self, service: PersistenceService):
        self.service = service

    async def resolve_worktree_path(self, worktree_id: str) -> Optional[str]:
        return await asyncio.to_thread(self.service.get_worktree_path, worktree_id)

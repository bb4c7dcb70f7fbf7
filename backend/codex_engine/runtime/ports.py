"""
Collaborator Interfaces

The engine owns none of its storage, credentials or worktrees. The host wires
in objects satisfying these protocols; ``persistence.SqlRepository`` is the
bundled SQLAlchemy implementation of ``Repository``.
"""

import os
from typing import Any, Dict, List, Optional, Protocol

from .types import MCPServer, Message, Session


class Repository(Protocol):
    """Async storage for sessions, messages, tasks and the MCP server registry."""

    async def find_session(self, session_id: str) -> Optional[Session]:
        ...

    async def update_session(self, session_id: str, patch: Dict[str, Any]) -> Optional[Session]:
        ...

    async def find_messages_by_session(self, session_id: str) -> List[Message]:
        """Messages of the session, ordered by index."""
        ...

    async def create_message(self, message: Message) -> Message:
        ...

    async def update_task(self, task_id: str, patch: Dict[str, Any]) -> None:
        ...

    async def find_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        ...

    async def list_enabled_mcp_servers(self, session_id: str) -> List[MCPServer]:
        ...


class CredentialResolver(Protocol):
    async def resolve_api_key(self, provider_key: str, user_id: Optional[str]) -> Optional[str]:
        ...

    async def resolve_user_environment(self, user_id: Optional[str]) -> Dict[str, str]:
        ...


class WorktreeResolver(Protocol):
    async def resolve_worktree_path(self, worktree_id: str) -> Optional[str]:
        ...


# =============================================================================
# Defaults
# =============================================================================


class EnvCredentialResolver:
    """
    Resolves credentials from a fixed fallback key and the process environment.

    Used when the host has no per-user credential store.
    """

    def __init__(self, fallback_api_key: Optional[str] = None):
        self.fallback_api_key = fallback_api_key

    async def resolve_api_key(self, provider_key: str, user_id: Optional[str]) -> Optional[str]:
        return self.fallback_api_key or os.getenv(provider_key)

    async def resolve_user_environment(self, user_id: Optional[str]) -> Dict[str, str]:
        return {}

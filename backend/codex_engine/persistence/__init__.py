"""
Persistence Layer

SQLAlchemy models, the synchronous persistence service and the async
repository adapters the orchestrator consumes.
"""

from .models import (
    Base,
    WorktreeModel,
    CodexSessionModel,
    CodexMessageModel,
    CodexTaskModel,
    MCPServerModel,
    SessionMCPServerModel,
)
from .service import PersistenceService
from .repository import SqlRepository, SqlWorktreeResolver

__all__ = [
    "Base",
    "WorktreeModel",
    "CodexSessionModel",
    "CodexMessageModel",
    "CodexTaskModel",
    "MCPServerModel",
    "SessionMCPServerModel",
    "PersistenceService",
    "SqlRepository",
    "SqlWorktreeResolver",
]

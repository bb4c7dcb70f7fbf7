"""
Codex Engine Persistence Service

Synchronous CRUD for sessions, messages, tasks, worktrees and MCP servers.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from sqlalchemy import create_engine, desc
from sqlalchemy.orm import sessionmaker, Session as DbSession
from sqlalchemy.exc import SQLAlchemyError

from .models import (
    Base,
    CodexSessionModel,
    CodexMessageModel,
    CodexTaskModel,
    MCPServerModel,
    SessionMCPServerModel,
    WorktreeModel,
)
from ..runtime.types import MCPServer, Message, Session
from ..config import EngineConfig
from ..errors import DuplicateMessageError
from ...utils.logger import get_logger

logger = get_logger(__name__)

SESSION_PATCH_FIELDS = {"external_thread_id", "model", "last_approval_policy", "permission_config"}
TASK_PATCH_FIELDS = {"status", "model", "token_usage", "cost_usd"}


class PersistenceService:
    """
    SQLAlchemy-backed storage for the execution engine.

    Features:
    - Connection pooling (non-SQLite databases)
    - One short-lived ORM session per operation
    - Conversion between ORM rows and runtime dataclasses
    """

    def __init__(self, config: EngineConfig):
        """
        Initialize persistence service.

        Args:
            config: Engine configuration with database URL
        """
        self.config = config

        # SQLite doesn't support pool_size/max_overflow
        engine_kwargs: Dict[str, Any] = {"echo": config.log_level == "DEBUG"}
        if not config.database_url.startswith("sqlite"):
            engine_kwargs["pool_size"] = config.db_pool_size
            engine_kwargs["max_overflow"] = config.db_max_overflow

        self.engine = create_engine(config.database_url, **engine_kwargs)
        self.SessionLocal = sessionmaker(bind=self.engine, autocommit=False, autoflush=False)

        Base.metadata.create_all(bind=self.engine)
        logger.info("PersistenceService initialized", database_url=config.database_url)

    def get_db(self) -> DbSession:
        """Get a new database session."""
        return self.SessionLocal()

    # ============================================
    # Worktrees
    # ============================================

    def create_worktree(self, worktree_id: str, path: str, name: Optional[str] = None) -> None:
        db = self.get_db()
        try:
            db.add(WorktreeModel(worktree_id=worktree_id, path=path, name=name))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to create worktree", worktree_id=worktree_id, error=str(e))
            raise
        finally:
            db.close()

    def get_worktree_path(self, worktree_id: str) -> Optional[str]:
        db = self.get_db()
        try:
            model = db.get(WorktreeModel, worktree_id)
            return model.path if model else None
        finally:
            db.close()

    # ============================================
    # Sessions
    # ============================================

    def create_session(self, session: Session) -> None:
        """
        Create a new Codex session.

        Args:
            session: Session domain object
        """
        db = self.get_db()
        try:
            model = CodexSessionModel(
                session_id=session.session_id,
                worktree_id=session.worktree_id,
                created_at=session.created_at,
                updated_at=session.updated_at,
                created_by=session.created_by,
                permission_config=session.permission_config or {},
                external_thread_id=session.external_thread_id,
                model=session.model,
                last_approval_policy=session.last_approval_policy,
            )
            db.add(model)
            db.commit()
            logger.debug("Created session", session_id=session.session_id)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to create session", error=str(e))
            raise
        finally:
            db.close()

    def get_session_by_id(self, session_id: str) -> Optional[Session]:
        db = self.get_db()
        try:
            model = db.get(CodexSessionModel, session_id)
            if not model:
                return None
            return self._session_model_to_domain(model)
        finally:
            db.close()

    def update_session(self, session_id: str, patch: Dict[str, Any]) -> Optional[Session]:
        """
        Apply a partial update to a session.

        Args:
            session_id: Session ID
            patch: Field -> value; only engine-owned fields are accepted

        Returns:
            Updated session, or None if it does not exist

        Raises:
            ValueError: On unknown fields
        """
        unknown = set(patch) - SESSION_PATCH_FIELDS
        if unknown:
            raise ValueError(f"Cannot update session fields: {', '.join(sorted(unknown))}")

        db = self.get_db()
        try:
            model = db.get(CodexSessionModel, session_id)
            if not model:
                return None
            for key, value in patch.items():
                setattr(model, key, value)
            model.updated_at = datetime.utcnow()
            db.commit()
            db.refresh(model)
            logger.debug("Updated session", session_id=session_id, fields=",".join(sorted(patch)))
            return self._session_model_to_domain(model)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to update session", session_id=session_id, error=str(e))
            raise
        finally:
            db.close()

    def list_sessions(
        self, created_by: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> List[Session]:
        db = self.get_db()
        try:
            query = db.query(CodexSessionModel)
            if created_by:
                query = query.filter_by(created_by=created_by)
            models = query.order_by(desc(CodexSessionModel.updated_at)).limit(limit).offset(offset).all()
            return [self._session_model_to_domain(m) for m in models]
        finally:
            db.close()

    # ============================================
    # Messages
    # ============================================

    def save_message(self, message: Message) -> None:
        """
        Save a message.

        Raises:
            DuplicateMessageError: A message with the same id exists
        """
        db = self.get_db()
        try:
            if db.get(CodexMessageModel, message.message_id) is not None:
                raise DuplicateMessageError(message.message_id)

            model = CodexMessageModel(
                message_id=message.message_id,
                session_id=message.session_id,
                task_id=message.task_id,
                role=message.role,
                index=message.index,
                content=message.content,
                content_preview=message.content_preview,
                tool_uses=message.tool_uses,
                message_metadata=message.metadata or {},
                timestamp=message.timestamp,
            )
            db.add(model)
            db.commit()
            logger.debug(
                "Saved message",
                message_id=message.message_id,
                session_id=message.session_id,
                index=message.index,
            )
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to save message", message_id=message.message_id, error=str(e))
            raise
        finally:
            db.close()

    def get_messages(self, session_id: str, limit: Optional[int] = None, offset: int = 0) -> List[Message]:
        """
        Get messages for a session ordered by index.

        Args:
            session_id: Session ID
            limit: Optional limit (all messages when None)
            offset: Offset for pagination
        """
        db = self.get_db()
        try:
            query = db.query(CodexMessageModel).filter_by(session_id=session_id)
            query = query.order_by(CodexMessageModel.index)
            if limit is not None:
                query = query.limit(limit)
            models = query.offset(offset).all()
            return [self._message_model_to_domain(m) for m in models]
        finally:
            db.close()

    # ============================================
    # Tasks
    # ============================================

    def create_task(
        self,
        task_id: str,
        session_id: str,
        prompt: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> None:
        db = self.get_db()
        try:
            db.add(CodexTaskModel(task_id=task_id, session_id=session_id, prompt=prompt, created_by=created_by))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to create task", task_id=task_id, error=str(e))
            raise
        finally:
            db.close()

    def get_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        db = self.get_db()
        try:
            model = db.get(CodexTaskModel, task_id)
            if not model:
                return None
            return {
                "task_id": model.task_id,
                "session_id": model.session_id,
                "created_by": model.created_by,
                "prompt": model.prompt,
                "status": model.status,
                "model": model.model,
                "token_usage": model.token_usage,
                "cost_usd": model.cost_usd,
            }
        finally:
            db.close()

    def update_task(self, task_id: str, patch: Dict[str, Any]) -> None:
        unknown = set(patch) - TASK_PATCH_FIELDS
        if unknown:
            raise ValueError(f"Cannot update task fields: {', '.join(sorted(unknown))}")

        db = self.get_db()
        try:
            updated = db.query(CodexTaskModel).filter_by(task_id=task_id).update(
                dict(patch, updated_at=datetime.utcnow())
            )
            db.commit()
            if not updated:
                logger.warning("Task not found for update", task_id=task_id)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to update task", task_id=task_id, error=str(e))
            raise
        finally:
            db.close()

    # ============================================
    # MCP server registry
    # ============================================

    def create_mcp_server(self, server: MCPServer) -> None:
        db = self.get_db()
        try:
            db.add(
                MCPServerModel(
                    server_id=server.server_id,
                    name=server.name,
                    transport=server.transport,
                    command=server.command,
                    args=list(server.args),
                    env=dict(server.env),
                    url=server.url,
                    enabled=server.enabled,
                )
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to create MCP server", name=server.name, error=str(e))
            raise
        finally:
            db.close()

    def attach_mcp_server(
        self,
        session_id: str,
        server_id: str,
        enabled: bool = True,
        added_at: Optional[datetime] = None,
    ) -> None:
        db = self.get_db()
        try:
            db.merge(
                SessionMCPServerModel(
                    session_id=session_id,
                    server_id=server_id,
                    enabled=enabled,
                    added_at=added_at or datetime.utcnow(),
                )
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to attach MCP server", session_id=session_id, server_id=server_id, error=str(e))
            raise
        finally:
            db.close()

    def list_enabled_mcp_servers(self, session_id: str) -> List[MCPServer]:
        """Servers enabled both globally and for the session, ordered by name."""
        db = self.get_db()
        try:
            rows = (
                db.query(SessionMCPServerModel, MCPServerModel)
                .join(MCPServerModel, SessionMCPServerModel.server_id == MCPServerModel.server_id)
                .filter(SessionMCPServerModel.session_id == session_id)
                .filter(SessionMCPServerModel.enabled.is_(True))
                .filter(MCPServerModel.enabled.is_(True))
                .order_by(MCPServerModel.name)
                .all()
            )
            return [
                MCPServer(
                    server_id=server.server_id,
                    name=server.name,
                    transport=server.transport,
                    command=server.command,
                    args=list(server.args or []),
                    env=dict(server.env or {}),
                    url=server.url,
                    enabled=True,
                    added_at=link.added_at,
                )
                for link, server in rows
            ]
        finally:
            db.close()

    # ============================================
    # Helper Methods
    # ============================================

    def _session_model_to_domain(self, model: CodexSessionModel) -> Session:
        return Session(
            session_id=model.session_id,
            worktree_id=model.worktree_id,
            permission_config=model.permission_config or {},
            external_thread_id=model.external_thread_id,
            model=model.model,
            created_by=model.created_by,
            last_approval_policy=model.last_approval_policy,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _message_model_to_domain(self, model: CodexMessageModel) -> Message:
        return Message(
            message_id=model.message_id,
            session_id=model.session_id,
            task_id=model.task_id,
            role=model.role,
            index=model.index,
            content=model.content,
            tool_uses=model.tool_uses,
            metadata=model.message_metadata or {},
            content_preview=model.content_preview or "",
            timestamp=model.timestamp,
        )

    def close(self) -> None:
        """Close the database engine."""
        self.engine.dispose()
        logger.info("PersistenceService closed")

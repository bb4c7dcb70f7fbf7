"""
Codex Engine SQLAlchemy Models

Database models for sessions, messages, tasks, worktrees and the MCP server
registry.
"""

from datetime import datetime
from sqlalchemy import (
    Boolean,
    Column,
    String,
    Text,
    Integer,
    Float,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    JSON,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from ..runtime.types import MessageRole

Base = declarative_base()


class WorktreeModel(Base):
    """Working directory a session runs in"""

    __tablename__ = "worktrees"

    worktree_id = Column(String(36), primary_key=True)
    name = Column(String(255))
    path = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    def __repr__(self):
        return f"<Worktree(id={self.worktree_id}, path={self.path})>"


class CodexSessionModel(Base):
    """Codex session persistence model"""

    __tablename__ = "codex_sessions"

    # Primary key
    session_id = Column(String(36), primary_key=True)

    worktree_id = Column(String(36), ForeignKey("worktrees.worktree_id"), nullable=False)

    # Metadata
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    created_by = Column(String(255), index=True)

    # Codex state
    permission_config = Column(JSON, nullable=False, default=dict)
    external_thread_id = Column(String(255))
    model = Column(String(255))
    last_approval_policy = Column(String(32))

    # Relationships
    messages = relationship(
        "CodexMessageModel",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="CodexMessageModel.index",
    )

    def __repr__(self):
        return f"<CodexSession(id={self.session_id}, thread={self.external_thread_id})>"


class CodexMessageModel(Base):
    """Codex message persistence model"""

    __tablename__ = "codex_messages"

    # Primary key
    message_id = Column(String(36), primary_key=True)

    # Foreign keys
    session_id = Column(String(36), ForeignKey("codex_sessions.session_id"), nullable=False)
    task_id = Column(String(36))

    # Message data
    role = Column(Enum(MessageRole), nullable=False)
    index = Column(Integer, nullable=False)
    content = Column(JSON, nullable=False)  # str (user) or list of blocks (assistant)
    content_preview = Column(String(200), nullable=False, default="")
    tool_uses = Column(JSON)
    message_metadata = Column("metadata", JSON, nullable=False, default=dict)
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow)

    # Relationships
    session = relationship("CodexSessionModel", back_populates="messages")

    # Indexes
    __table_args__ = (
        UniqueConstraint("session_id", "index", name="uq_messages_session_index"),
        Index("idx_messages_task", "task_id"),
    )

    def __repr__(self):
        return f"<CodexMessage(id={self.message_id}, index={self.index}, role={self.role.value})>"


class CodexTaskModel(Base):
    """One prompt's unit of work, with model and usage attached on completion"""

    __tablename__ = "codex_tasks"

    task_id = Column(String(36), primary_key=True)
    session_id = Column(String(36), ForeignKey("codex_sessions.session_id"), nullable=False)
    created_by = Column(String(255))
    prompt = Column(Text)
    status = Column(String(32), nullable=False, default="running")

    model = Column(String(255))
    token_usage = Column(JSON)
    cost_usd = Column(Float)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (Index("idx_tasks_session", "session_id"),)

    def __repr__(self):
        return f"<CodexTask(id={self.task_id}, status={self.status})>"


class MCPServerModel(Base):
    """MCP server configuration"""

    __tablename__ = "mcp_servers"

    # Primary key
    server_id = Column(String(36), primary_key=True)

    # Server metadata
    name = Column(String(255), nullable=False, unique=True)
    transport = Column(String(50), nullable=False)  # "stdio", "http" or "sse"

    # Launch / connection settings
    command = Column(Text)
    args = Column(JSON, nullable=False, default=list)
    env = Column(JSON, nullable=False, default=dict)
    url = Column(Text)

    # State
    enabled = Column(Boolean, nullable=False, default=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<MCPServer(name={self.name}, transport={self.transport})>"


class SessionMCPServerModel(Base):
    """Which MCP servers a session uses, and since when"""

    __tablename__ = "session_mcp_servers"

    session_id = Column(String(36), ForeignKey("codex_sessions.session_id"), primary_key=True)
    server_id = Column(String(36), ForeignKey("mcp_servers.server_id"), primary_key=True)
    enabled = Column(Boolean, nullable=False, default=True)
    added_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    server = relationship("MCPServerModel")

    def __repr__(self):
        return f"<SessionMCPServer(session={self.session_id}, server={self.server_id})>"

"""
Engine exceptions.

Precondition errors are raised before anything is written; ``TurnFailedError``
aborts the current turn. Configuration and control-command problems are never
raised, only logged.
"""


class CodexEngineError(Exception):
    """Base class for all engine errors."""


class EngineNotConfiguredError(CodexEngineError):
    """A required collaborator (repository, client, resolver) is not wired."""


class SessionNotFoundError(CodexEngineError):
    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class WorktreeNotFoundError(CodexEngineError):
    def __init__(self, worktree_id: str, session_id: str):
        super().__init__(f"Worktree {worktree_id} not found for session {session_id}")
        self.worktree_id = worktree_id
        self.session_id = session_id


class TurnFailedError(CodexEngineError):
    """The runtime reported ``turn.failed`` (or a stream-level error)."""

    def __init__(self, detail: str):
        super().__init__(f"Codex execution failed: {detail}")
        self.detail = detail


class DuplicateMessageError(CodexEngineError):
    def __init__(self, message_id: str):
        super().__init__(f"Message {message_id} already exists")
        self.message_id = message_id

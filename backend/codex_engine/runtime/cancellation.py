"""
Cooperative cancellation.

One stop flag per session, checked once per stream event by the orchestrator.
"""

from typing import Dict, Set

from .types import StopResult
from ...utils.logger import get_logger

logger = get_logger(__name__)


class CancellationController:
    def __init__(self):
        self._stop_requested: Dict[str, bool] = {}
        self._active: Set[str] = set()

    def request_stop(self, session_id: str) -> StopResult:
        """
        Ask the running turn of ``session_id`` to stop at the next event.

        Always accepted; a stop against an idle session is a no-op because
        ``begin`` clears stale flags.
        """
        self._stop_requested[session_id] = True
        if session_id not in self._active:
            logger.debug("Stop requested for idle session", session_id=session_id)
            return StopResult(success=True, reason="no active execution")
        logger.info("Stop requested", session_id=session_id)
        return StopResult(success=True)

    def begin(self, session_id: str) -> None:
        self._stop_requested.pop(session_id, None)
        self._active.add(session_id)

    def should_stop(self, session_id: str) -> bool:
        """Check the flag, clearing it when set."""
        return self._stop_requested.pop(session_id, False)

    def end(self, session_id: str) -> None:
        self._active.discard(session_id)
        self._stop_requested.pop(session_id, None)

    def is_active(self, session_id: str) -> bool:
        return session_id in self._active

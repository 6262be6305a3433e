"""Start and stop discussion loops without the caller knowing how they run.

The orchestrator is injected; a CLI, a web handler or a test harness
holds a launcher and calls ``start``/``stop`` by session id.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from roundtable.orchestrator import Orchestrator, SessionFailedError

logger = logging.getLogger(__name__)


@dataclass
class SessionOutcome:
    session_id: str
    status: str                  # "completed", "failed", "cancelled"
    ended_reason: str | None = None
    error: str | None = None


class SessionLauncher(ABC):
    @abstractmethod
    def start(self, session_id: str) -> None:
        """Begin running the session's loop. Returns immediately."""
        ...

    @abstractmethod
    def stop(self, session_id: str) -> None:
        """Request cancellation. The session keeps its last committed state."""
        ...


class AsyncioLauncher(SessionLauncher):
    """Runs each session as an asyncio task on the current event loop."""

    def __init__(self, orchestrator: Orchestrator) -> None:
        self._orchestrator = orchestrator
        self._tasks: dict[str, asyncio.Task[SessionOutcome]] = {}

    def start(self, session_id: str) -> None:
        existing = self._tasks.get(session_id)
        if existing is not None and not existing.done():
            raise RuntimeError(f"Session already running: {session_id}")
        self._orchestrator.get_session(session_id)  # KeyError for unknown sessions
        self._tasks[session_id] = asyncio.get_running_loop().create_task(
            self._run(session_id), name=f"discussion-{session_id}",
        )
        logger.info("Session %s started", session_id)

    def stop(self, session_id: str) -> None:
        task = self._tasks.get(session_id)
        if task is None or task.done():
            return
        task.cancel()
        logger.info("Session %s stop requested", session_id)

    def is_running(self, session_id: str) -> bool:
        task = self._tasks.get(session_id)
        return task is not None and not task.done()

    async def wait(self, session_id: str) -> SessionOutcome:
        """Wait for the session's task and return how it ended."""
        task = self._tasks[session_id]
        try:
            return await task
        except asyncio.CancelledError:
            # Cancelled before the loop got to run at all
            if task.cancelled():
                return SessionOutcome(session_id, "cancelled")
            raise

    async def _run(self, session_id: str) -> SessionOutcome:
        try:
            session = await self._orchestrator.run(session_id)
        except asyncio.CancelledError:
            logger.info("Session %s cancelled", session_id)
            return SessionOutcome(session_id, "cancelled")
        except SessionFailedError as exc:
            logger.error("Session %s failed: %s", session_id, exc)
            return SessionOutcome(session_id, "failed", error=str(exc))
        return SessionOutcome(session_id, "completed", ended_reason=session.ended_reason)

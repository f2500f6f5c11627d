"""
Session dispatch — hands a pending session to whichever driver is configured.

  PIPELINE_DRIVER=celery → CeleryDispatcher publishes docqa.process_session
  PIPELINE_DRIVER=queue  → QueueDispatcher writes a QueuedJob row

Injected into the API and the requeue sweep so both can be tested without a
broker.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from uuid import UUID

from docqa.core.config import Settings
from docqa.services.job_queue import JobQueue

logger = logging.getLogger(__name__)


class DispatchError(Exception):
    """The session could not be handed to a worker; it stays pending."""


class SessionDispatcher(ABC):

    @abstractmethod
    async def dispatch(self, session_id: UUID, priority: int = 0) -> None:
        """Schedule one pipeline run for the session."""


class CeleryDispatcher(SessionDispatcher):
    """
    Publishes to the broker.  The task import is deferred so the API process
    does not need a broker connection at module load time.
    """

    async def dispatch(self, session_id: UUID, priority: int = 0) -> None:
        from docqa.workers.tasks import process_session

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                None,
                lambda: process_session.apply_async(
                    kwargs={"session_id": str(session_id)},
                    priority=priority,
                ),
            )
        except Exception as exc:
            raise DispatchError(f"Could not publish session {session_id}: {exc}") from exc
        logger.info("Dispatch | published session=%s priority=%d", session_id, priority)


class QueueDispatcher(SessionDispatcher):

    def __init__(self, queue: JobQueue) -> None:
        self._queue = queue

    async def dispatch(self, session_id: UUID, priority: int = 0) -> None:
        try:
            await self._queue.enqueue(session_id, priority=priority)
        except Exception as exc:
            raise DispatchError(f"Could not enqueue session {session_id}: {exc}") from exc


def build_dispatcher(settings: Settings, queue: JobQueue) -> SessionDispatcher:
    if settings.pipeline_driver == "queue":
        return QueueDispatcher(queue)
    return CeleryDispatcher()

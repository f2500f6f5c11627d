"""
Job Queue & Reaper
══════════════════

A second, simpler driver for the pipeline with at-least-once semantics.

  enqueue ──→ pending ──claim──→ processing ──ok──→ completed
                 ↑                    │
                 │   backoff 2^n s    │ attempt failed, attempts < max
                 └────────────────────┘
                                      │ attempts == max
                                      └──────────→ failed (error + stack kept)

Claiming is the store's atomic pending → processing flip, so several workers
can drain the queue without ever running the same job twice at once.

The Reaper is independent of both drivers: sessions or jobs that have sat in
``processing`` past the timeout are force-failed with a ``reason: "timeout"``
detail.  PendingRequeuer re-dispatches sessions that were created but never
picked up (broker outage at submit time).
"""

from __future__ import annotations

import asyncio
import logging
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable
from uuid import UUID

from docqa.core.config import Settings
from docqa.core.errors import SessionNotFoundError
from docqa.schemas.sessions import JobStatus, SessionStatus
from docqa.services.session_state import SessionStateMachine, utcnow
from docqa.store.base import JobRecord, PipelineStore, SessionRecord

logger = logging.getLogger(__name__)

# runs the pipeline for one session and returns its final snapshot
PipelineRunner = Callable[[UUID], Awaitable["SessionRecord | None"]]
Dispatcher     = Callable[[UUID], Awaitable[None]]

JOB_TIMEOUT_MESSAGE = "Job timed out and was cleaned up"


class JobAttemptFailed(Exception):
    """The pipeline run behind a job did not complete."""


class RetryNotAllowedError(Exception):
    """Manual retry refused: wrong status or retry limit reached."""


def backoff_seconds(previous_attempts: int) -> int:
    """Delay before the next attempt: 1, 2, 4, … seconds."""
    return 2 ** max(0, previous_attempts)


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

class JobQueue:
    """
    Usage:
        queue = JobQueue(store, pipeline.run, state_machine, settings)
        await queue.enqueue(session_id)
        while await queue.process_next_job():
            pass
    """

    def __init__(
        self,
        store:         PipelineStore,
        runner:        PipelineRunner,
        state_machine: SessionStateMachine,
        settings:      Settings,
        clock:         Callable[[], datetime] = utcnow,
    ) -> None:
        self._store    = store
        self._runner   = runner
        self._state    = state_machine
        self._settings = settings
        self._clock    = clock
        self._stopping = asyncio.Event()

    async def enqueue(self, session_id: UUID, priority: int = 0, reason: str = "submitted") -> JobRecord:
        now = self._clock()
        job = await self._store.enqueue_job(
            session_id   = session_id,
            priority     = priority,
            max_attempts = self._settings.job_max_attempts,
            scheduled_at = now,
            metadata     = {"enqueued_at": now.isoformat(), "reason": reason},
        )
        logger.info(
            "JobQueue | enqueued job=%s session=%s priority=%d reason=%s",
            job.id, session_id, priority, reason,
        )
        return job

    async def process_next_job(self) -> bool:
        """Claim and run one due job.  Returns False when nothing was due."""
        job = await self._store.claim_next_job(self._clock())
        if job is None:
            return False

        logger.info(
            "JobQueue | claimed job=%s session=%s attempt=%d/%d",
            job.id, job.session_id, job.attempts, job.max_attempts,
        )
        try:
            await self._execute(job)
        except Exception as exc:
            await self._record_failure(job, exc, traceback.format_exc())
        else:
            await self._store.update_job(
                job.id,
                {"status": JobStatus.COMPLETED.value, "completed_at": self._clock(), "error_message": None},
                expected_statuses=(JobStatus.PROCESSING.value,),
            )
            logger.info("JobQueue | job=%s completed", job.id)
        return True

    async def run_worker(self) -> None:
        """Poll until stop() is called; sleeps only when the queue is empty."""
        interval = self._settings.job_poll_interval_seconds
        logger.info("JobQueue | worker started poll_interval=%.1fs", interval)
        while not self._stopping.is_set():
            if await self.process_next_job():
                continue
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("JobQueue | worker stopped")

    def stop(self) -> None:
        self._stopping.set()

    async def _execute(self, job: JobRecord) -> None:
        session = await self._store.get_session(job.session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {job.session_id} not found")

        if session.status in (SessionStatus.COMPLETED.value, SessionStatus.CANCELLED.value):
            logger.info("JobQueue | job=%s session already %s; nothing to do", job.id, session.status)
            return
        if session.status == SessionStatus.FAILED.value:
            await self._state.reset_for_retry(
                session.id, count_as_retry=False, step="Queued for processing",
            )

        final = await self._runner(job.session_id)
        if final is None:
            raise SessionNotFoundError(f"Session {job.session_id} disappeared during the run")
        if final.status == SessionStatus.FAILED.value:
            raise JobAttemptFailed(final.error_message or "Pipeline run failed")

    async def _record_failure(self, job: JobRecord, exc: Exception, stack: str) -> None:
        message = f"{type(exc).__name__}: {exc}"
        now = self._clock()

        if job.attempts >= job.max_attempts:
            await self._store.update_job(
                job.id,
                {
                    "status":        JobStatus.FAILED.value,
                    "error_message": message,
                    "error_stack":   stack,
                    "completed_at":  now,
                },
                expected_statuses=(JobStatus.PROCESSING.value,),
            )
            logger.error(
                "JobQueue | job=%s failed permanently after %d attempts: %s",
                job.id, job.attempts, message,
            )
            return

        delay = backoff_seconds(job.attempts - 1)
        await self._store.update_job(
            job.id,
            {
                "status":        JobStatus.PENDING.value,
                "scheduled_at":  now + timedelta(seconds=delay),
                "started_at":    None,
                "error_message": message,
                "error_stack":   stack,
            },
            expected_statuses=(JobStatus.PROCESSING.value,),
        )
        logger.warning(
            "JobQueue | job=%s attempt=%d/%d failed, retrying in %ds: %s",
            job.id, job.attempts, job.max_attempts, delay, message,
        )


# ---------------------------------------------------------------------------
# Manual retry
# ---------------------------------------------------------------------------

async def retry_session(
    session_id:    UUID,
    user_id:       UUID,
    state_machine: SessionStateMachine,
    queue:         JobQueue,
    settings:      Settings,
) -> tuple[SessionRecord, JobRecord]:
    """
    Reset a failed session to pending and enqueue it with retry priority.

    Raises:
        SessionNotFoundError: unknown session or another user's.
        RetryNotAllowedError: not failed, or retry limit reached.
    """
    session = await state_machine.get_status(session_id, user_id)
    if session is None:
        raise SessionNotFoundError(f"Session {session_id} not found")
    if session.status != SessionStatus.FAILED.value:
        raise RetryNotAllowedError(f"Only failed sessions can be retried (status is '{session.status}').")
    if session.retry_count >= settings.max_manual_retries:
        raise RetryNotAllowedError(
            f"Retry limit of {settings.max_manual_retries} reached for this session."
        )

    reset = await state_machine.reset_for_retry(session_id)
    if reset is None:
        raise RetryNotAllowedError("Session changed state before it could be retried.")
    job = await queue.enqueue(session_id, priority=settings.retry_priority, reason="manual_retry")
    logger.info("JobQueue | session=%s retry=%d queued job=%s", session_id, reset.retry_count, job.id)
    return reset, job


# ---------------------------------------------------------------------------
# Reaper
# ---------------------------------------------------------------------------

@dataclass
class ReapResult:
    cleaned:      int = 0
    jobs_cleaned: int = 0
    errors:       list[str] = field(default_factory=list)


class Reaper:

    def __init__(
        self,
        store:         PipelineStore,
        state_machine: SessionStateMachine,
        settings:      Settings,
        clock:         Callable[[], datetime] = utcnow,
    ) -> None:
        self._store   = store
        self._state   = state_machine
        self._timeout = settings.session_timeout_minutes
        self._clock   = clock

    async def reap(self) -> ReapResult:
        """Fail every session and job stuck in processing past the timeout."""
        now    = self._clock()
        cutoff = now - timedelta(minutes=self._timeout)
        result = ReapResult()

        for session in await self._store.list_sessions(SessionStatus.PROCESSING.value, started_before=cutoff):
            try:
                if await self._state.mark_timed_out(session, self._timeout):
                    result.cleaned += 1
                    logger.warning(
                        "Reaper | session=%s timed out at step=%r progress=%d",
                        session.id, session.current_step, session.progress,
                    )
            except Exception as exc:
                logger.exception("Reaper | session=%s could not be cleaned", session.id)
                result.errors.append(f"session {session.id}: {exc}")

        for job in await self._store.list_jobs(JobStatus.PROCESSING.value, started_before=cutoff):
            try:
                session = await self._store.get_session(job.session_id)
                updated = await self._store.update_job(
                    job.id,
                    {
                        "status":        JobStatus.FAILED.value,
                        "error_message": JOB_TIMEOUT_MESSAGE,
                        "completed_at":  now,
                        "metadata":      {
                            **job.metadata,
                            "enqueue_reason":  job.metadata.get("reason"),
                            "reason":          "timeout",
                            "timeout_minutes": self._timeout,
                            "stuck_at_stage":  session.current_step if session is not None else None,
                            "cleaned_at":      now.isoformat(),
                        },
                    },
                    expected_statuses=(JobStatus.PROCESSING.value,),
                )
                if updated is not None:
                    result.jobs_cleaned += 1
            except Exception as exc:
                logger.exception("Reaper | job=%s could not be cleaned", job.id)
                result.errors.append(f"job {job.id}: {exc}")

        if result.cleaned or result.jobs_cleaned or result.errors:
            logger.info(
                "Reaper | cleaned=%d jobs_cleaned=%d errors=%d timeout_minutes=%d",
                result.cleaned, result.jobs_cleaned, len(result.errors), self._timeout,
            )
        return result


# ---------------------------------------------------------------------------
# Stale pending sessions
# ---------------------------------------------------------------------------

class PendingRequeuer:
    """Re-dispatch sessions that have been pending longer than the grace period."""

    def __init__(
        self,
        store:         PipelineStore,
        state_machine: SessionStateMachine,
        settings:      Settings,
        clock:         Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._state = state_machine
        self._grace = settings.pending_requeue_minutes
        self._clock = clock

    async def requeue(self, dispatch: Dispatcher) -> list[UUID]:
        cutoff = self._clock() - timedelta(minutes=self._grace)
        requeued: list[UUID] = []
        for session in await self._store.list_sessions(SessionStatus.PENDING.value, updated_before=cutoff):
            if not await self._state.touch_pending(session.id, "Re-queued for processing"):
                continue
            await dispatch(session.id)
            requeued.append(session.id)
        if requeued:
            logger.info("PendingRequeuer | re-dispatched %d stale pending sessions", len(requeued))
        return requeued

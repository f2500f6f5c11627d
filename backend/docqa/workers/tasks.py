"""
Celery Tasks — Document Pipeline and Maintenance

Task: docqa.process_session
  Runs DocumentPipeline.run() for one session.  Pipeline failures are
  recorded on the session row, so the task itself only fails on
  infrastructure errors (database unreachable), which Celery retries.

Task: docqa.process_next_job
  Claims and runs at most one QueuedJob.  Beat fires it every few seconds;
  concurrent invocations are safe because claiming is atomic.

Task: docqa.reap_stuck
  Reaper sweep — fails sessions and jobs stuck in processing past the timeout.

Task: docqa.requeue_pending
  Re-dispatches sessions stuck in 'pending' for > 5 minutes (broker outage
  during the original submit).

Every task builds its own engine and disposes it before returning: each
run_async call runs on a fresh event loop and asyncpg connections cannot
cross loops.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, TypeVar

from celery import Task

from docqa.core.config import get_settings
from docqa.db.session import build_engine, build_session_factory
from docqa.services.dispatch import build_dispatcher
from docqa.services.factory import Services, build_services
from docqa.store.sql import SqlPipelineStore
from docqa.workers.celery_app import celery_app

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    import concurrent.futures
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


async def _with_services(fn: Callable[[Services], Awaitable[T]]) -> T:
    settings = get_settings()
    engine   = build_engine(settings)
    try:
        services = build_services(settings, store=SqlPipelineStore(build_session_factory(engine)))
        return await fn(services)
    finally:
        await engine.dispose()


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

@celery_app.task(
    name="docqa.process_session",
    bind=True,
    max_retries=3,
    default_retry_delay=30,
    acks_late=True,
    reject_on_worker_lost=True,
)
def process_session(self: Task, *, session_id: str) -> dict[str, Any]:
    try:
        return run_async(_process_session_async(uuid.UUID(session_id)))
    except OSError as exc:
        # connection-level failure before the pipeline could record anything
        logger.warning("Processing | session=%s infrastructure error, retrying: %s", session_id, exc)
        raise self.retry(exc=exc)


async def _process_session_async(session_id: uuid.UUID) -> dict[str, Any]:
    async def run(services: Services) -> dict[str, Any]:
        final = await services.pipeline.run(session_id)
        if final is None:
            return {"status": "not_found", "session_id": str(session_id)}
        return {
            "status":        final.status,
            "session_id":    str(session_id),
            "collection_id": str(final.collection_id) if final.collection_id else None,
        }

    return await _with_services(run)


@celery_app.task(
    name="docqa.process_next_job",
    acks_late=True,
)
def process_next_job() -> dict[str, bool]:
    return run_async(_with_services(_process_next_job_async))


async def _process_next_job_async(services: Services) -> dict[str, bool]:
    return {"processed": await services.queue.process_next_job()}


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------

@celery_app.task(name="docqa.reap_stuck", acks_late=True, soft_time_limit=55, time_limit=60)
def reap_stuck() -> dict[str, Any]:
    return run_async(_with_services(_reap_async))


async def _reap_async(services: Services) -> dict[str, Any]:
    result = await services.reaper.reap()
    return {"cleaned": result.cleaned, "jobs_cleaned": result.jobs_cleaned, "errors": result.errors}


@celery_app.task(name="docqa.requeue_pending", acks_late=True, soft_time_limit=55, time_limit=60)
def requeue_pending() -> dict[str, int]:
    return run_async(_with_services(_requeue_async))


async def _requeue_async(services: Services) -> dict[str, int]:
    dispatcher = build_dispatcher(get_settings(), services.queue)
    requeued = await services.requeuer.requeue(dispatcher.dispatch)
    return {"requeued": len(requeued)}


@celery_app.task(name="docqa.health_check")
def health_check() -> dict[str, str]:
    return {"status": "ok", "worker": "healthy"}

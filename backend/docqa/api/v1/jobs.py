"""
Operational Job Endpoints (cron callers)

  POST /api/v1/jobs/worker   claim and run one queued job
  POST /api/v1/jobs/cleanup  run the Reaper once

Both require ``Authorization: Bearer <CRON_SECRET>``.  They exist for
deployments without Celery beat, where an external scheduler drives the
queue and the sweep.
"""

from __future__ import annotations

from fastapi import APIRouter

from docqa.api.deps import AppServices, CronCaller
from docqa.schemas.sessions import ErrorResponse, JobRunResponse, ReapResponse

router = APIRouter(
    prefix="/jobs",
    tags=["Jobs"],
    dependencies=[CronCaller],
    responses={401: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)


@router.post("/worker", response_model=JobRunResponse, summary="Process the next queued job")
async def run_worker_once(services: AppServices) -> JobRunResponse:
    return JobRunResponse(processed=await services.queue.process_next_job())


@router.post("/cleanup", response_model=ReapResponse, summary="Fail sessions and jobs stuck past the timeout")
async def cleanup_stuck(services: AppServices) -> ReapResponse:
    result = await services.reaper.reap()
    return ReapResponse(cleaned=result.cleaned, jobs_cleaned=result.jobs_cleaned, errors=result.errors)

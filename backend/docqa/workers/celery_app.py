"""
Celery Application Factory

Drives the document pipeline when PIPELINE_DRIVER=celery, and runs the
periodic maintenance sweeps in every deployment.
Broker: RabbitMQ (amqp://) in production; Redis (redis://) for local dev.
Result backend: Redis (optional — progress lives on the session row, not in Celery results).

Queue topology:
  pipeline     — process_session / process_next_job, priority-aware
  maintenance  — reaper, stale-pending re-dispatch, health checks

Beat schedule:
  reap-stuck-sessions      every 60 s
  drain-job-queue          every 5 s
  requeue-pending-sessions every 5 min

Task payloads carry only the session id; the worker loads everything else
from the database.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun, worker_process_init
from kombu import Exchange, Queue

from docqa.core.config import get_settings, validate_settings
from docqa.observability.tracing import TracingConfig

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

DOCQA_EXCHANGE = Exchange("docqa", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        "pipeline",
        exchange=DOCQA_EXCHANGE,
        routing_key="pipeline",
        queue_arguments={"x-max-priority": 10},
        durable=True,
    ),
    Queue(
        "maintenance",
        exchange=DOCQA_EXCHANGE,
        routing_key="maintenance",
        durable=True,
    ),
)

TASK_ROUTES = {
    "docqa.process_session":  {"queue": "pipeline"},
    "docqa.process_next_job": {"queue": "pipeline"},
    "docqa.reap_stuck":       {"queue": "maintenance"},
    "docqa.requeue_pending":  {"queue": "maintenance"},
    "docqa.health_check":     {"queue": "maintenance"},
}

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    settings = get_settings()
    app = Celery("docqa")

    # The session timeout is the hard ceiling for one pipeline run
    run_limit = settings.session_timeout_minutes * 60

    app.conf.update(
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # JSON only
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="pipeline",
        task_default_exchange="docqa",
        task_default_routing_key="pipeline",

        # ack only after the task returns; one task at a time per worker
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,

        task_soft_time_limit=run_limit,
        task_time_limit=run_limit + 60,

        result_expires=3600,

        timezone="UTC",
        enable_utc=True,

        beat_schedule={
            "reap-stuck-sessions": {
                "task":     "docqa.reap_stuck",
                "schedule": 60.0,
                "options":  {"queue": "maintenance"},
            },
            "drain-job-queue": {
                "task":     "docqa.process_next_job",
                "schedule": settings.job_poll_interval_seconds,
                "options":  {"queue": "pipeline", "expires": settings.job_poll_interval_seconds},
            },
            "requeue-pending-sessions": {
                "task":     "docqa.requeue_pending",
                "schedule": settings.pending_requeue_minutes * 60.0,
                "options":  {"queue": "maintenance"},
            },
        },

        worker_max_tasks_per_child=200,
    )

    app.autodiscover_tasks(["docqa.workers"])
    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals
# ---------------------------------------------------------------------------

@worker_process_init.connect
def on_worker_process_init(**_):
    TracingConfig.init()
    result = validate_settings(get_settings())
    for error in result.errors:
        logger.error("Config | %s", error)
    for warning in result.warnings:
        logger.warning("Config | %s", warning)


@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s session=%s",
        task_id, task.name, kwargs.get("session_id", "-"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s session=%s",
        task_id, task.name, state, kwargs.get("session_id", "-"),
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s session=%s error=%s",
        task_id, (kwargs or {}).get("session_id", "-"), exception,
        exc_info=True,
    )

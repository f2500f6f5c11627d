"""
Observability Tracing — Stage Timing + LangSmith

Every pipeline stage is wrapped in ``@traced("pipeline.<stage>")``.  The
elapsed time of a finished stage is kept on the run and ends up in the
session's processing_stats; failures are logged against the session:

    trace | span=pipeline.extraction session=… elapsed_ms=8421.3 ok
    trace | span=pipeline.embedding session=… stage=embedding elapsed_ms=300012.8 error=STAGE_TIMEOUT

LangSmith tracing of the chat-model calls is purely environment driven:
LangChain reads LANGCHAIN_TRACING_V2 / LANGCHAIN_API_KEY / LANGCHAIN_PROJECT
on import.  TracingConfig.init() only reports whether it is active.
"""

from __future__ import annotations

import functools
import logging
import os
import time
from typing import Any, Callable, Coroutine, TypeVar

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Coroutine[Any, Any, Any]])


class TracingConfig:
    """Call once at process startup (API lifespan, Celery worker init)."""

    _initialised: bool = False

    @classmethod
    def init(cls) -> None:
        if cls._initialised:
            return
        cls._initialised = True

        if os.environ.get("LANGCHAIN_TRACING_V2", "").lower() == "true":
            logger.info(
                "LangSmith tracing active (from env) | project=%s",
                os.environ.get("LANGCHAIN_PROJECT", "default"),
            )
        else:
            logger.debug("LangSmith tracing disabled (LANGCHAIN_TRACING_V2 not set)")


STAGE_TIMINGS_KEY = "stage_timings_ms"


def _find_run(args: tuple[Any, ...]) -> Any | None:
    """The pipeline run among the call arguments: anything with a session and stats."""
    for arg in args:
        if hasattr(arg, "session") and isinstance(getattr(arg, "stats", None), dict):
            return arg
    return None


def traced(span: str) -> Callable[[F], F]:
    """
    Time a pipeline stage and attribute the outcome to its session.

    The decorated coroutine must take the run (``_Run``) as a positional
    argument.  On success the elapsed time is stored under
    ``stats["stage_timings_ms"][<stage>]`` so it reaches processing_stats;
    on failure the session, the stage the run had reached and the error
    code are logged.  The exception always propagates.

    Usage::

        @traced("pipeline.embedding")
        async def _embed(self, run, qa): ...
    """
    stage_key = span.rsplit(".", 1)[-1]

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            run = _find_run(args)
            session_id = run.session.id if run is not None else None
            t0 = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as exc:
                logger.warning(
                    "trace | span=%s session=%s stage=%s elapsed_ms=%.1f error=%s",
                    span, session_id, getattr(run, "stage", stage_key),
                    (time.perf_counter() - t0) * 1000, getattr(exc, "code", type(exc).__name__),
                )
                raise
            elapsed_ms = round((time.perf_counter() - t0) * 1000, 1)
            if run is not None:
                run.stats.setdefault(STAGE_TIMINGS_KEY, {})[stage_key] = elapsed_ms
            logger.info("trace | span=%s session=%s elapsed_ms=%.1f ok", span, session_id, elapsed_ms)
            return result

        return wrapper  # type: ignore[return-value]
    return decorator

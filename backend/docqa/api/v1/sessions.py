"""
Processing Sessions API Router

  POST   /api/v1/sessions              submit a stored document → 202
  GET    /api/v1/sessions/{id}         polled status snapshot
  DELETE /api/v1/sessions/{id}         cooperative cancel
  POST   /api/v1/sessions/{id}/retry   manual retry of a failed session → 202

Request lifecycle (submit):
  ┌─────────────────────────────────────────────────────────┐
  │ 1. Caller identity from X-User-ID (upstream auth)        │
  │ 2. MIME type gate: PDF or image, else 415                │
  │ 3. Options validated, language defaulted                 │
  │ 4. Session row inserted (status=pending, progress=0)     │
  │ 5. Dispatched to Celery or the job queue → 202           │
  └─────────────────────────────────────────────────────────┘

A dispatch failure is not an error for the caller: the session stays pending
and the requeue sweep picks it up.
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, HTTPException, status
from pydantic import ValidationError

from docqa.api.deps import AppServices, AppSettings, CurrentUserId, Dispatcher
from docqa.core.errors import SessionNotFoundError
from docqa.schemas.sessions import (
    ALLOWED_CONTENT_TYPES,
    CancelSessionResponse,
    CreateSessionRequest,
    CreateSessionResponse,
    ErrorResponse,
    ProcessingOptions,
    RetrySessionResponse,
    SessionErrors,
    SessionStatus,
    SessionStatusResponse,
    validation_details,
)
from docqa.services.dispatch import DispatchError
from docqa.services.job_queue import RetryNotAllowedError, retry_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["Sessions"])


def _not_found(session_id: UUID) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=SessionErrors.session_not_found(session_id).model_dump(),
    )


@router.post(
    "",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=CreateSessionResponse,
    responses={
        401: {"model": ErrorResponse},
        415: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
    },
    summary="Submit a document for QA generation",
)
async def create_session(
    body:       CreateSessionRequest,
    user_id:    CurrentUserId,
    services:   AppServices,
    dispatcher: Dispatcher,
    settings:   AppSettings,
) -> CreateSessionResponse:
    if body.file.mime_type not in ALLOWED_CONTENT_TYPES:
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=SessionErrors.unsupported_file_type(body.file.name, body.file.mime_type).model_dump(),
        )

    try:
        options = ProcessingOptions.with_language_default(body.options, settings.default_language)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=SessionErrors.invalid_options(validation_details(exc.errors(), "options.")).model_dump(),
        )

    session_id = await services.state_machine.create_session(user_id, body.file, options)

    try:
        await dispatcher.dispatch(session_id)
    except DispatchError as exc:
        logger.error("Sessions | session=%s left pending for the requeue sweep: %s", session_id, exc)

    return CreateSessionResponse(session_id=session_id, status=SessionStatus.PENDING)


@router.get(
    "/{session_id}",
    response_model=SessionStatusResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Poll processing status",
)
async def get_session_status(
    session_id: UUID,
    user_id:    CurrentUserId,
    services:   AppServices,
) -> SessionStatusResponse:
    record = await services.state_machine.get_status(session_id, user_id)
    if record is None:
        raise _not_found(session_id)
    return SessionStatusResponse(
        session_id       = record.id,
        status           = SessionStatus(record.status),
        progress         = record.progress,
        current_step     = record.current_step,
        error_message    = record.error_message,
        collection_id    = record.collection_id,
        processing_stats = record.processing_stats,
        created_at       = record.created_at,
        updated_at       = record.updated_at,
    )


@router.delete(
    "/{session_id}",
    response_model=CancelSessionResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Cancel a pending or running session",
)
async def cancel_session(
    session_id: UUID,
    user_id:    CurrentUserId,
    services:   AppServices,
) -> CancelSessionResponse:
    if await services.state_machine.get_status(session_id, user_id) is None:
        raise _not_found(session_id)
    cancelled = await services.state_machine.cancel(session_id, user_id)
    return CancelSessionResponse(session_id=session_id, cancelled=cancelled)


@router.post(
    "/{session_id}/retry",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=RetrySessionResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    summary="Retry a failed session",
)
async def retry_failed_session(
    session_id: UUID,
    user_id:    CurrentUserId,
    services:   AppServices,
    settings:   AppSettings,
) -> RetrySessionResponse:
    try:
        session, job = await retry_session(
            session_id, user_id, services.state_machine, services.queue, settings,
        )
    except SessionNotFoundError:
        raise _not_found(session_id)
    except RetryNotAllowedError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=SessionErrors.retry_not_allowed(str(exc)).model_dump(),
        )
    return RetrySessionResponse(
        session_id  = session.id,
        status      = SessionStatus(session.status),
        retry_count = session.retry_count,
        job_id      = job.id,
    )

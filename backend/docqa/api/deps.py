"""
Composed FastAPI Dependencies

Route handlers import from here; nothing else reaches into app.state.

The services and the dispatcher are built once in the application lifespan
and stored on app.state.  Tests replace them with app.dependency_overrides.
"""

from __future__ import annotations

import hmac
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status

from docqa.core.config import Settings, get_settings
from docqa.schemas.sessions import SessionErrors
from docqa.services.dispatch import SessionDispatcher
from docqa.services.factory import Services


def get_app_settings() -> Settings:
    return get_settings()


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_dispatcher(request: Request) -> SessionDispatcher:
    return request.app.state.dispatcher


# ---------------------------------------------------------------------------
# Caller identity — set by the upstream authentication layer
# ---------------------------------------------------------------------------

async def get_current_user_id(
    x_user_id: Annotated[str | None, Header(alias="X-User-ID")] = None,
) -> UUID:
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=SessionErrors.missing_user().model_dump(),
        )
    try:
        return UUID(x_user_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=SessionErrors.missing_user().model_dump(),
        )


# ---------------------------------------------------------------------------
# Cron callers of /jobs/*
# ---------------------------------------------------------------------------

async def require_cron_secret(
    settings:      Annotated[Settings, Depends(get_app_settings)],
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    if not settings.cron_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=SessionErrors.job_endpoints_disabled().model_dump(),
        )
    expected = f"Bearer {settings.cron_secret}"
    if not authorization or not hmac.compare_digest(authorization.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=SessionErrors.invalid_cron_secret().model_dump(),
        )


# ---------------------------------------------------------------------------
# Type aliases for cleaner route signatures
# ---------------------------------------------------------------------------

AppSettings   = Annotated[Settings, Depends(get_app_settings)]
AppServices   = Annotated[Services, Depends(get_services)]
Dispatcher    = Annotated[SessionDispatcher, Depends(get_dispatcher)]
CurrentUserId = Annotated[UUID, Depends(get_current_user_id)]
CronCaller    = Depends(require_cron_secret)

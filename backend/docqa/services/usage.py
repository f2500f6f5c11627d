"""
Global usage counter.

The counter itself lives in an external service; the pipeline only bumps it
once per completed session.  Increments are best effort: callers log and
continue on UsageCounterError.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from uuid import UUID

import httpx

logger = logging.getLogger(__name__)


class UsageCounterError(Exception):
    """The external counter rejected or did not receive an increment."""


class UsageCounter(ABC):

    @abstractmethod
    async def increment(self, *, user_id: UUID, session_id: UUID, items: int) -> None:
        """Record one processed document."""


class NullUsageCounter(UsageCounter):
    """Used when no counter URL is configured."""

    async def increment(self, *, user_id: UUID, session_id: UUID, items: int) -> None:
        logger.debug("UsageCounter | disabled; session=%s items=%d", session_id, items)


class HttpUsageCounter(UsageCounter):

    def __init__(self, url: str, timeout: float = 5.0, client: httpx.AsyncClient | None = None) -> None:
        self._url     = url
        self._timeout = timeout
        self._client  = client

    async def increment(self, *, user_id: UUID, session_id: UUID, items: int) -> None:
        payload = {
            "metric":     "documents_processed",
            "increment":  1,
            "user_id":    str(user_id),
            "session_id": str(session_id),
            "items":      items,
        }
        try:
            if self._client is not None:
                response = await self._client.post(self._url, json=payload, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(self._url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise UsageCounterError(f"Usage counter increment failed: {exc}") from exc
        logger.debug("UsageCounter | incremented session=%s", session_id)

"""
Pipeline Store — Abstract Base

Every persistence backend implements this interface; services only speak
this protocol and only ever see the plain dataclass records defined here,
never ORM objects.

Atomicity contract (enforced by ALL implementations):
  - update_session / update_job with ``expected_statuses`` is a single
    conditional row update: it applies only if the row's current status is
    one of the expected values, and reports whether it matched.  This is the
    only concurrency primitive the pipeline relies on (cancellation races,
    reaper vs. late stage writes).
  - claim_next_job flips exactly one pending job to processing; two workers
    can never claim the same job.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable
from uuid import UUID


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class SessionRecord:
    id:                 UUID
    user_id:            UUID
    file_name:          str
    file_size:          int
    mime_type:          str
    storage_url:        str
    status:             str
    progress:           int
    current_step:       str | None
    processing_options: dict[str, Any]
    processing_stats:   dict[str, Any]
    error_message:      str | None
    error_detail:       dict[str, Any] | None
    collection_id:      UUID | None
    retry_count:        int
    started_at:         datetime | None
    completed_at:       datetime | None
    created_at:         datetime
    updated_at:         datetime


@dataclass
class CollectionRecord:
    id:                UUID
    user_id:           UUID
    name:              str
    description:       str | None
    source_session_id: UUID | None
    created_at:        datetime


@dataclass
class NewCollectionItem:
    """Item payload for insert_items(); ids and timestamps are assigned by the store."""
    question:       str
    answer:         str
    question_type:  str
    quality_score:  float
    confidence:     float
    source_excerpt: str | None
    embedding:      list[float] | None
    key_terms:      list[str] = field(default_factory=list)
    review_status:  str       = "pending"


@dataclass
class CollectionItemRecord:
    id:             UUID
    collection_id:  UUID
    question:       str
    answer:         str
    question_type:  str
    quality_score:  float
    confidence:     float
    source_excerpt: str | None
    key_terms:      list[str]
    embedding:      list[float] | None
    review_status:  str
    created_at:     datetime


@dataclass
class JobRecord:
    id:            UUID
    session_id:    UUID
    status:        str
    priority:      int
    attempts:      int
    max_attempts:  int
    scheduled_at:  datetime
    started_at:    datetime | None
    completed_at:  datetime | None
    error_message: str | None
    error_stack:   str | None
    metadata:      dict[str, Any]
    created_at:    datetime


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class PipelineStore(ABC):
    """Session, collection and job persistence used by the pipeline services."""

    # -- sessions -----------------------------------------------------------

    @abstractmethod
    async def create_session(
        self,
        *,
        user_id:            UUID,
        file_name:          str,
        file_size:          int,
        mime_type:          str,
        storage_url:        str,
        processing_options: dict[str, Any],
        current_step:       str | None = None,
    ) -> SessionRecord:
        """Insert a pending session with progress 0."""

    @abstractmethod
    async def get_session(self, session_id: UUID) -> SessionRecord | None:
        """Return the session or None."""

    @abstractmethod
    async def update_session(
        self,
        session_id:        UUID,
        values:            dict[str, Any],
        expected_statuses: Iterable[str] | None = None,
    ) -> SessionRecord | None:
        """
        Apply ``values`` (column → value) and bump updated_at.

        Returns the updated record, or None when the session does not exist or
        its status is not in ``expected_statuses``.
        """

    @abstractmethod
    async def list_sessions(
        self,
        status: str,
        *,
        started_before: datetime | None = None,
        updated_before: datetime | None = None,
        limit:          int = 100,
    ) -> list[SessionRecord]:
        """Sessions in ``status`` whose started_at / updated_at is older than the cut-off."""

    # -- collections --------------------------------------------------------

    @abstractmethod
    async def create_collection(
        self,
        *,
        user_id:           UUID,
        name:              str,
        description:       str | None,
        source_session_id: UUID | None,
    ) -> CollectionRecord:
        """Insert one collection row."""

    @abstractmethod
    async def insert_items(self, collection_id: UUID, items: list[NewCollectionItem]) -> int:
        """Bulk-insert items in one operation; all or nothing.  Returns the count."""

    @abstractmethod
    async def delete_collection(self, collection_id: UUID) -> None:
        """Delete a collection and any items it has."""

    @abstractmethod
    async def get_collection(self, collection_id: UUID) -> CollectionRecord | None:
        """Return the collection or None."""

    @abstractmethod
    async def list_items(self, collection_id: UUID) -> list[CollectionItemRecord]:
        """Items of a collection ordered by created_at."""

    # -- jobs ---------------------------------------------------------------

    @abstractmethod
    async def enqueue_job(
        self,
        *,
        session_id:   UUID,
        priority:     int,
        max_attempts: int,
        scheduled_at: datetime,
        metadata:     dict[str, Any],
    ) -> JobRecord:
        """Insert a pending job with zero attempts."""

    @abstractmethod
    async def claim_next_job(self, now: datetime) -> JobRecord | None:
        """
        Atomically claim the due pending job with the highest priority, oldest
        scheduled_at first: status → processing, attempts + 1, started_at = now.
        """

    @abstractmethod
    async def update_job(
        self,
        job_id:            UUID,
        values:            dict[str, Any],
        expected_statuses: Iterable[str] | None = None,
    ) -> JobRecord | None:
        """Conditional update, same contract as update_session()."""

    @abstractmethod
    async def list_jobs(
        self,
        status: str,
        *,
        started_before: datetime | None = None,
        limit:          int = 100,
    ) -> list[JobRecord]:
        """Jobs in ``status`` whose started_at is older than the cut-off."""

"""
PostgreSQL implementation of PipelineStore (SQLAlchemy 2.x async + asyncpg).

One transaction per method call.  Conditional updates are a single
``UPDATE … WHERE id = :id AND status IN (…) RETURNING *`` so the status check
and the write are one atomic statement; job claiming uses
``SELECT … FOR UPDATE SKIP LOCKED`` so concurrent workers skip rows another
worker is claiming instead of blocking on them.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import delete, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.sql import func

from docqa.db.session import transaction
from docqa.models.pipeline import Collection, CollectionItem, ProcessingSession, QueuedJob
from docqa.store.base import (
    CollectionItemRecord,
    CollectionRecord,
    JobRecord,
    NewCollectionItem,
    PipelineStore,
    SessionRecord,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# ORM → record mapping
# ---------------------------------------------------------------------------

def _session_record(row: ProcessingSession) -> SessionRecord:
    return SessionRecord(
        id                 = row.id,
        user_id            = row.user_id,
        file_name          = row.file_name,
        file_size          = row.file_size,
        mime_type          = row.mime_type,
        storage_url        = row.storage_url,
        status             = row.status,
        progress           = row.progress,
        current_step       = row.current_step,
        processing_options = dict(row.processing_options or {}),
        processing_stats   = dict(row.processing_stats or {}),
        error_message      = row.error_message,
        error_detail       = row.error_detail,
        collection_id      = row.collection_id,
        retry_count        = row.retry_count,
        started_at         = row.started_at,
        completed_at       = row.completed_at,
        created_at         = row.created_at,
        updated_at         = row.updated_at,
    )


def _collection_record(row: Collection) -> CollectionRecord:
    return CollectionRecord(
        id                = row.id,
        user_id           = row.user_id,
        name              = row.name,
        description       = row.description,
        source_session_id = row.source_session_id,
        created_at        = row.created_at,
    )


def _item_record(row: CollectionItem) -> CollectionItemRecord:
    # pgvector hands back a numpy array; records carry plain floats
    embedding = [float(x) for x in row.embedding] if row.embedding is not None else None
    return CollectionItemRecord(
        id             = row.id,
        collection_id  = row.collection_id,
        question       = row.question,
        answer         = row.answer,
        question_type  = row.question_type,
        quality_score  = row.quality_score,
        confidence     = row.confidence,
        source_excerpt = row.source_excerpt,
        key_terms      = list(row.key_terms or []),
        embedding      = embedding,
        review_status  = row.review_status,
        created_at     = row.created_at,
    )


def _job_record(row: QueuedJob) -> JobRecord:
    return JobRecord(
        id            = row.id,
        session_id    = row.session_id,
        status        = row.status,
        priority      = row.priority,
        attempts      = row.attempts,
        max_attempts  = row.max_attempts,
        scheduled_at  = row.scheduled_at,
        started_at    = row.started_at,
        completed_at  = row.completed_at,
        error_message = row.error_message,
        error_stack   = row.error_stack,
        metadata      = dict(row.job_metadata or {}),
        created_at    = row.created_at,
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class SqlPipelineStore(PipelineStore):

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._sf = session_factory

    # -- sessions -----------------------------------------------------------

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
        async with transaction(self._sf) as db:
            row = ProcessingSession(
                user_id            = user_id,
                file_name          = file_name,
                file_size          = file_size,
                mime_type          = mime_type,
                storage_url        = storage_url,
                status             = "pending",
                progress           = 0,
                current_step       = current_step,
                processing_options = processing_options,
                processing_stats   = {},
            )
            db.add(row)
            await db.flush()
            await db.refresh(row)
            return _session_record(row)

    async def get_session(self, session_id: UUID) -> SessionRecord | None:
        async with transaction(self._sf) as db:
            row = await db.get(ProcessingSession, session_id)
            return _session_record(row) if row else None

    async def update_session(
        self,
        session_id:        UUID,
        values:            dict[str, Any],
        expected_statuses: Iterable[str] | None = None,
    ) -> SessionRecord | None:
        stmt = (
            update(ProcessingSession)
            .where(ProcessingSession.id == session_id)
            .values(**values, updated_at=func.now())
            .returning(ProcessingSession)
        )
        if expected_statuses is not None:
            stmt = stmt.where(ProcessingSession.status.in_(list(expected_statuses)))
        async with transaction(self._sf) as db:
            row = (await db.execute(stmt)).scalar_one_or_none()
            return _session_record(row) if row else None

    async def list_sessions(
        self,
        status: str,
        *,
        started_before: datetime | None = None,
        updated_before: datetime | None = None,
        limit:          int = 100,
    ) -> list[SessionRecord]:
        stmt = select(ProcessingSession).where(ProcessingSession.status == status)
        if started_before is not None:
            stmt = stmt.where(ProcessingSession.started_at < started_before)
        if updated_before is not None:
            stmt = stmt.where(ProcessingSession.updated_at < updated_before)
        stmt = stmt.order_by(ProcessingSession.created_at).limit(limit)
        async with transaction(self._sf) as db:
            return [_session_record(r) for r in (await db.execute(stmt)).scalars()]

    # -- collections --------------------------------------------------------

    async def create_collection(
        self,
        *,
        user_id:           UUID,
        name:              str,
        description:       str | None,
        source_session_id: UUID | None,
    ) -> CollectionRecord:
        async with transaction(self._sf) as db:
            row = Collection(
                user_id           = user_id,
                name              = name,
                description       = description,
                source_session_id = source_session_id,
            )
            db.add(row)
            await db.flush()
            await db.refresh(row)
            return _collection_record(row)

    async def insert_items(self, collection_id: UUID, items: list[NewCollectionItem]) -> int:
        if not items:
            return 0
        rows = [
            {
                "collection_id":  collection_id,
                "question":       item.question,
                "answer":         item.answer,
                "question_type":  item.question_type,
                "quality_score":  item.quality_score,
                "confidence":     item.confidence,
                "source_excerpt": item.source_excerpt,
                "key_terms":      item.key_terms,
                "embedding":      item.embedding,
                "review_status":  item.review_status,
            }
            for item in items
        ]
        async with transaction(self._sf) as db:
            await db.execute(insert(CollectionItem), rows)
        return len(rows)

    async def delete_collection(self, collection_id: UUID) -> None:
        async with transaction(self._sf) as db:
            await db.execute(delete(Collection).where(Collection.id == collection_id))

    async def get_collection(self, collection_id: UUID) -> CollectionRecord | None:
        async with transaction(self._sf) as db:
            row = await db.get(Collection, collection_id)
            return _collection_record(row) if row else None

    async def list_items(self, collection_id: UUID) -> list[CollectionItemRecord]:
        stmt = (
            select(CollectionItem)
            .where(CollectionItem.collection_id == collection_id)
            .order_by(CollectionItem.created_at, CollectionItem.id)
        )
        async with transaction(self._sf) as db:
            return [_item_record(r) for r in (await db.execute(stmt)).scalars()]

    # -- jobs ---------------------------------------------------------------

    async def enqueue_job(
        self,
        *,
        session_id:   UUID,
        priority:     int,
        max_attempts: int,
        scheduled_at: datetime,
        metadata:     dict[str, Any],
    ) -> JobRecord:
        async with transaction(self._sf) as db:
            row = QueuedJob(
                session_id   = session_id,
                status       = "pending",
                priority     = priority,
                attempts     = 0,
                max_attempts = max_attempts,
                scheduled_at = scheduled_at,
                job_metadata = metadata,
            )
            db.add(row)
            await db.flush()
            await db.refresh(row)
            return _job_record(row)

    async def claim_next_job(self, now: datetime) -> JobRecord | None:
        stmt = (
            select(QueuedJob)
            .where(QueuedJob.status == "pending", QueuedJob.scheduled_at <= now)
            .order_by(QueuedJob.priority.desc(), QueuedJob.scheduled_at.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        async with transaction(self._sf) as db:
            row = (await db.execute(stmt)).scalar_one_or_none()
            if row is None:
                return None
            row.status     = "processing"
            row.attempts  += 1
            row.started_at = now
            await db.flush()
            return _job_record(row)

    async def update_job(
        self,
        job_id:            UUID,
        values:            dict[str, Any],
        expected_statuses: Iterable[str] | None = None,
    ) -> JobRecord | None:
        values = dict(values)
        if "metadata" in values:
            values["job_metadata"] = values.pop("metadata")
        stmt = (
            update(QueuedJob)
            .where(QueuedJob.id == job_id)
            .values(**values)
            .returning(QueuedJob)
        )
        if expected_statuses is not None:
            stmt = stmt.where(QueuedJob.status.in_(list(expected_statuses)))
        async with transaction(self._sf) as db:
            row = (await db.execute(stmt)).scalar_one_or_none()
            return _job_record(row) if row else None

    async def list_jobs(
        self,
        status: str,
        *,
        started_before: datetime | None = None,
        limit:          int = 100,
    ) -> list[JobRecord]:
        stmt = select(QueuedJob).where(QueuedJob.status == status)
        if started_before is not None:
            stmt = stmt.where(QueuedJob.started_at < started_before)
        stmt = stmt.order_by(QueuedJob.started_at).limit(limit)
        async with transaction(self._sf) as db:
            return [_job_record(r) for r in (await db.execute(stmt)).scalars()]

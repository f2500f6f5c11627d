"""
SQLAlchemy ORM Models — Processing Sessions, Collections & Queued Jobs

Schema: docqa (set via __table_args__)

  processing_sessions  1 ──── 0..1  collections  1 ──── *  collection_items
          │
          └──── *  processing_jobs

Sessions are the polled job record; collections and items are the pipeline's
output; processing_jobs is the optional at-least-once queue lane.

Embeddings use pgvector.  The column is nullable: an item whose embedding
failed is still persisted and can be backfilled later.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

EMBEDDING_DIMENSIONS = 1536


# ---------------------------------------------------------------------------
# Declarative base — shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# ProcessingSession — docqa.processing_sessions
# ---------------------------------------------------------------------------

class ProcessingSession(Base):
    """
    One document submission and its pipeline progress.

    State machine (status column):
        pending    — created, waiting for a worker
        processing — a worker is running the pipeline (started_at is set)
        completed  — collection_id points at the generated collection
        failed     — error_message / error_detail say why
        cancelled  — the caller asked to stop; no stage writes afterwards
    """

    __tablename__ = "processing_sessions"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')",
            name="processing_sessions_status_check",
        ),
        CheckConstraint("progress BETWEEN 0 AND 100", name="processing_sessions_progress_range"),
        Index("idx_sessions_user_id",        "user_id"),
        Index("idx_sessions_status_started", "status", "started_at"),
        {"schema": "docqa"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )

    # Owner — supplied by the upstream authentication layer
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    # Source file reference
    file_name:   Mapped[str] = mapped_column(Text, nullable=False)
    file_size:   Mapped[int] = mapped_column(BigInteger, nullable=False)
    mime_type:   Mapped[str] = mapped_column(Text, nullable=False)
    storage_url: Mapped[str] = mapped_column(Text, nullable=False)

    # State machine
    status: Mapped[str] = mapped_column(
        Text, nullable=False, default="pending", server_default="pending",
    )
    progress: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0",
    )
    current_step: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    processing_options: Mapped[dict[str, Any]] = mapped_column(
        JSONB, nullable=False, default=dict, server_default="{}",
    )
    processing_stats: Mapped[dict[str, Any]] = mapped_column(
        JSONB, nullable=False, default=dict, server_default="{}",
    )

    error_message: Mapped[Optional[str]] = mapped_column(
        Text, nullable=True, comment="Populated only when status='failed'",
    )
    error_detail: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONB, nullable=True, comment="{stage, code, timestamp, stack, ...}",
    )

    collection_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("docqa.collections.id", ondelete="SET NULL", use_alter=True),
        nullable=True,
    )
    retry_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0",
    )

    started_at:   Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return f"<ProcessingSession id={self.id} status={self.status} progress={self.progress}>"


# ---------------------------------------------------------------------------
# Collection — docqa.collections
# ---------------------------------------------------------------------------

class Collection(Base):
    """Container of generated QA items; created once per successful run."""

    __tablename__ = "collections"
    __table_args__ = (
        Index("idx_collections_user_id", "user_id"),
        {"schema": "docqa"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    user_id:     Mapped[uuid.UUID]     = mapped_column(UUID(as_uuid=True), nullable=False)
    name:        Mapped[str]           = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    source_session_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("docqa.processing_sessions.id", ondelete="SET NULL"),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )

    items: Mapped[list["CollectionItem"]] = relationship(
        back_populates="collection", cascade="all, delete-orphan", passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<Collection id={self.id} name={self.name!r}>"


# ---------------------------------------------------------------------------
# CollectionItem — docqa.collection_items
# ---------------------------------------------------------------------------

class CollectionItem(Base):
    """One question/answer pair with its embedding and review state."""

    __tablename__ = "collection_items"
    __table_args__ = (
        CheckConstraint(
            "review_status IN ('pending', 'approved', 'rejected', 'edited')",
            name="collection_items_review_status_check",
        ),
        CheckConstraint("quality_score BETWEEN 0 AND 1", name="collection_items_quality_range"),
        Index("idx_collection_items_collection", "collection_id", "created_at"),
        {"schema": "docqa"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    collection_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("docqa.collections.id", ondelete="CASCADE"),
        nullable=False,
    )

    question:       Mapped[str]           = mapped_column(Text, nullable=False)
    answer:         Mapped[str]           = mapped_column(Text, nullable=False)
    question_type:  Mapped[str]           = mapped_column(Text, nullable=False)
    quality_score:  Mapped[float]         = mapped_column(Float, nullable=False)
    confidence:     Mapped[float]         = mapped_column(Float, nullable=False)
    source_excerpt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    key_terms:      Mapped[list[str]]     = mapped_column(
        ARRAY(Text), nullable=False, default=list, server_default="{}",
    )

    # NULL until backfilled when embedding failed for this item
    embedding: Mapped[Optional[list[float]]] = mapped_column(
        Vector(EMBEDDING_DIMENSIONS), nullable=True,
    )

    review_status: Mapped[str] = mapped_column(
        Text, nullable=False, default="pending", server_default="pending",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )

    collection: Mapped[Collection] = relationship(back_populates="items")

    def __repr__(self) -> str:
        return f"<CollectionItem id={self.id} collection={self.collection_id} review={self.review_status}>"


# ---------------------------------------------------------------------------
# QueuedJob — docqa.processing_jobs
# ---------------------------------------------------------------------------

class QueuedJob(Base):
    """
    At-least-once work item for the queue lane.

    Claimed by flipping status pending → processing in one conditional
    UPDATE, so exactly one worker owns a job at a time.
    """

    __tablename__ = "processing_jobs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="processing_jobs_status_check",
        ),
        Index("idx_jobs_claim", "status", "priority", "scheduled_at"),
        {"schema": "docqa"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    session_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("docqa.processing_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )

    status:       Mapped[str] = mapped_column(Text, nullable=False, default="pending", server_default="pending")
    priority:     Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    attempts:     Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3, server_default="3")

    scheduled_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )
    started_at:   Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_stack:   Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Column named "metadata" in SQL; "metadata" is reserved on declarative classes
    job_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONB, nullable=False, default=dict, server_default="{}",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<QueuedJob id={self.id} status={self.status} attempts={self.attempts}/{self.max_attempts}>"

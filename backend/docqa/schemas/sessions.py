"""
Processing Sessions — Pydantic Request/Response Schemas

Covers:
  - ProcessingOptions (stored verbatim on the session row as JSON)
  - POST /sessions request + 202 response
  - GET /sessions/{id} status snapshot (polled, ~2 s interval)
  - Collection item listing
  - Structured error bodies and their factories

All timestamps are timezone-aware UTC.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Allowed source documents
# ---------------------------------------------------------------------------

ALLOWED_CONTENT_TYPES: frozenset[str] = frozenset(
    {
        "application/pdf",
        "image/png",
        "image/jpeg",
        "image/webp",
        "image/gif",
    }
)

MAX_FILE_SIZE_BYTES: int = 50 * 1024 * 1024  # 50 MB


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class SessionStatus(str, Enum):
    """
    Maps to docqa.processing_sessions.status.
    Transitions: pending → processing → completed | failed | cancelled
    """
    PENDING    = "pending"
    PROCESSING = "processing"
    COMPLETED  = "completed"
    FAILED     = "failed"
    CANCELLED  = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: frozenset[SessionStatus] = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED}
)


class SegmentationStrategy(str, Enum):
    SEMANTIC   = "semantic"
    STRUCTURAL = "structural"
    SIZE_BASED = "size-based"
    AUTO       = "auto"


class QuestionType(str, Enum):
    FACTUAL     = "factual"
    CONCEPTUAL  = "conceptual"
    APPLICATION = "application"
    ANALYTICAL  = "analytical"


class ReviewStatus(str, Enum):
    PENDING  = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EDITED   = "edited"


class JobStatus(str, Enum):
    PENDING    = "pending"
    PROCESSING = "processing"
    COMPLETED  = "completed"
    FAILED     = "failed"


# ---------------------------------------------------------------------------
# Processing options
# ---------------------------------------------------------------------------

DEFAULT_QUESTION_TYPES: tuple[QuestionType, ...] = (
    QuestionType.FACTUAL,
    QuestionType.CONCEPTUAL,
    QuestionType.APPLICATION,
)


class ProcessingOptions(BaseModel):
    """Every field is optional; defaults apply per field."""
    segmentation_strategy:     SegmentationStrategy = SegmentationStrategy.AUTO
    question_types:            list[QuestionType]   = Field(
        default_factory=lambda: list(DEFAULT_QUESTION_TYPES),
        min_length=1,
    )
    max_questions_per_segment: int   = Field(3, ge=1, le=20)
    quality_threshold:         float = Field(0.7, ge=0.0, le=1.0)
    language:                  str   = Field("ja", min_length=2, max_length=16)
    review_required:           bool  = True

    @field_validator("question_types")
    @classmethod
    def _dedupe_types(cls, value: list[QuestionType]) -> list[QuestionType]:
        return list(dict.fromkeys(value))

    @classmethod
    def with_language_default(cls, data: dict[str, Any] | None, language: str) -> "ProcessingOptions":
        """Build options, using the deployment's language when the caller gave none."""
        payload = dict(data or {})
        payload.setdefault("language", language)
        return cls.model_validate(payload)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class FileRef(BaseModel):
    """Reference to a document that is already in object storage."""
    name:        str = Field(..., min_length=1, max_length=255)
    size:        int = Field(..., ge=0, le=MAX_FILE_SIZE_BYTES)
    mime_type:   str
    storage_url: str = Field(..., min_length=1)

    @field_validator("mime_type")
    @classmethod
    def _lower_mime(cls, value: str) -> str:
        return value.strip().lower()


class CreateSessionRequest(BaseModel):
    file:    FileRef
    options: dict[str, Any] | None = Field(
        None, description="ProcessingOptions fields; omitted fields use defaults",
    )


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class CreateSessionResponse(BaseModel):
    """HTTP 202 — the session exists, processing is async."""
    session_id: UUID
    status:     SessionStatus = SessionStatus.PENDING


class SessionStatusResponse(BaseModel):
    """Polled by clients to track processing progress."""
    session_id:       UUID
    status:           SessionStatus
    progress:         int = Field(..., ge=0, le=100)
    current_step:     str | None = None
    error_message:    str | None = None
    collection_id:    UUID | None = None
    processing_stats: dict[str, Any] = Field(default_factory=dict)
    created_at:       datetime
    updated_at:       datetime


class CancelSessionResponse(BaseModel):
    session_id: UUID
    cancelled:  bool


class RetrySessionResponse(BaseModel):
    session_id:  UUID
    status:      SessionStatus
    retry_count: int
    job_id:      UUID | None = None


class CollectionItemResponse(BaseModel):
    id:             UUID
    collection_id:  UUID
    question:       str
    answer:         str
    question_type:  str
    quality_score:  float
    confidence:     float
    source_excerpt: str | None = None
    review_status:  ReviewStatus
    has_embedding:  bool
    key_terms:      list[str] = Field(default_factory=list)
    created_at:     datetime


class CollectionItemsResponse(BaseModel):
    collection_id: UUID
    items:         list[CollectionItemResponse]
    total:         int


class JobRunResponse(BaseModel):
    processed: bool


class ReapResponse(BaseModel):
    cleaned:      int
    jobs_cleaned: int
    errors:       list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """Uniform error envelope for all 4xx/5xx responses."""
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


def validation_details(errors: list[dict[str, Any]], prefix: str = "") -> list[ErrorDetail]:
    """Pydantic error dicts → ErrorDetail rows, locations joined with dots."""
    return [
        ErrorDetail(
            field=prefix + ".".join(str(loc) for loc in err["loc"]),
            message=err["msg"],
            code="VALIDATION_ERROR",
        )
        for err in errors
    ]


class SessionErrors:
    """Factories for every documented error case."""

    @staticmethod
    def request_invalid(details: list[ErrorDetail], request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=details,
            request_id=request_id,
        )

    @staticmethod
    def unsupported_file_type(filename: str, mime_type: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="UNSUPPORTED_FILE_TYPE",
            message=f"File type '{mime_type}' is not supported.",
            details=[
                ErrorDetail(
                    field="file.mime_type",
                    message=f"'{filename}' has type '{mime_type}'. Allowed: PDF, PNG, JPEG, WEBP, GIF.",
                    code="UNSUPPORTED_FILE_TYPE",
                )
            ],
        )

    @staticmethod
    def missing_user() -> ErrorResponse:
        return ErrorResponse(
            error_code="UNAUTHORIZED",
            message="The X-User-ID header set by the authentication layer is missing.",
        )

    @staticmethod
    def session_not_found(session_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="SESSION_NOT_FOUND",
            message=f"Processing session '{session_id}' was not found.",
        )

    @staticmethod
    def collection_not_found(collection_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="COLLECTION_NOT_FOUND",
            message=f"Collection '{collection_id}' was not found.",
        )

    @staticmethod
    def retry_not_allowed(reason: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="RETRY_NOT_ALLOWED",
            message=reason,
        )

    @staticmethod
    def invalid_options(details: list[ErrorDetail]) -> ErrorResponse:
        return ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Processing options are invalid.",
            details=details,
        )

    @staticmethod
    def job_endpoints_disabled() -> ErrorResponse:
        return ErrorResponse(
            error_code="JOB_ENDPOINTS_DISABLED",
            message="CRON_SECRET is not configured; job endpoints are disabled.",
        )

    @staticmethod
    def invalid_cron_secret() -> ErrorResponse:
        return ErrorResponse(
            error_code="UNAUTHORIZED",
            message="Missing or invalid job endpoint secret.",
        )

    @staticmethod
    def internal_error(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
            request_id=request_id,
        )

"""
Pipeline error taxonomy.

Every fatal condition a pipeline run can hit is a PipelineError subclass that
knows which stage raised it and carries a machine-readable code plus a detail
dict.  The orchestrator records all three on the session row so operators can
tell configuration problems (QUOTA_OR_AUTH) from content problems
(EXTRACTION_FAILED, DECODE_FAILED).

  Error               Stage         Fatal?
  ─────────────────   ───────────   ─────────────────────────────────────────
  DownloadError       download      yes
  ExtractionError     extraction    yes
  DecodeError         any           at the call site; per-segment QA isolates it
  EmbeddingError      embedding     no (item persists with a null vector)
  PersistError        persistence   yes (collection row may be orphaned)
  StageTimeoutError   any           yes (stage name recorded)
  QuotaOrAuthError    any           yes (message surfaced verbatim)
"""

from __future__ import annotations

from typing import Any, Literal

ErrorCode = Literal[
    "DOWNLOAD_FAILED",
    "EXTRACTION_FAILED",
    "DECODE_FAILED",
    "EMBEDDING_FAILED",
    "PERSIST_FAILED",
    "STAGE_TIMEOUT",
    "QUOTA_OR_AUTH",
    "LLM_API_ERROR",
    "UNKNOWN_ERROR",
]

ERROR_FRIENDLY_MESSAGES: dict[ErrorCode, str] = {
    "DOWNLOAD_FAILED":   "The document could not be downloaded from storage.",
    "EXTRACTION_FAILED": "No usable content could be extracted from the document.",
    "DECODE_FAILED":     "The language model returned output that could not be parsed.",
    "EMBEDDING_FAILED":  "Embeddings could not be generated.",
    "PERSIST_FAILED":    "The generated collection could not be saved.",
    "STAGE_TIMEOUT":     "A processing stage exceeded its time budget.",
    "QUOTA_OR_AUTH":     "Language model credentials are invalid or the quota is exhausted.",
    "LLM_API_ERROR":     "The language model request failed.",
    "UNKNOWN_ERROR":     "Unexpected error occurred during processing.",
}


class PipelineError(Exception):
    """Base class for every error a pipeline stage may raise."""

    code: ErrorCode = "UNKNOWN_ERROR"

    def __init__(
        self,
        message: str,
        *,
        stage:  str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stage   = stage
        self.detail  = dict(detail or {})


class DownloadError(PipelineError):
    """Object storage unreachable or the document does not exist."""
    code = "DOWNLOAD_FAILED"


class ExtractionError(PipelineError):
    """Model call failed or returned unusable content even after OCR escalation."""
    code = "EXTRACTION_FAILED"


class DecodeError(PipelineError):
    """All repair strategies exhausted and the caller supplied no fallback."""
    code = "DECODE_FAILED"


class EmbeddingError(PipelineError):
    code = "EMBEDDING_FAILED"


class PersistError(PipelineError):
    """Collection or item insert failed; detail may name an orphaned collection."""
    code = "PERSIST_FAILED"


class StageTimeoutError(PipelineError):
    code = "STAGE_TIMEOUT"

    def __init__(self, stage: str, budget_seconds: float) -> None:
        super().__init__(
            f"Stage '{stage}' exceeded its {budget_seconds:g}s budget",
            stage=stage,
            detail={"budget_seconds": budget_seconds},
        )


class QuotaOrAuthError(PipelineError):
    """Credentials rejected or rate limit exhausted; surfaced verbatim."""
    code = "QUOTA_OR_AUTH"


class LanguageModelError(PipelineError):
    """Non-transient language model failure that is not a quota/auth problem."""
    code = "LLM_API_ERROR"


# ---------------------------------------------------------------------------
# Session control flow (not failures)
# ---------------------------------------------------------------------------

class SessionCancelled(Exception):
    """The session was cancelled; the running stage must stop writing."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} was cancelled")
        self.session_id = session_id


class InvalidTransitionError(Exception):
    """A status write that the session state machine does not allow."""


class SessionNotFoundError(LookupError):
    pass


# ---------------------------------------------------------------------------
# Provider error classification (SDK exceptions matched by class name)
# ---------------------------------------------------------------------------

ProviderErrorKind = Literal["retryable", "quota_or_auth", "other"]

_RETRYABLE_EXCEPTION_TYPES = (
    # openai
    "RateLimitError",
    "APITimeoutError",
    "APIConnectionError",
    "InternalServerError",
    "ServiceUnavailableError",
    # httpx / generic
    "ConnectTimeout",
    "ReadTimeout",
    "RemoteProtocolError",
)

_QUOTA_OR_AUTH_EXCEPTION_TYPES = (
    "AuthenticationError",
    "PermissionDeniedError",
)


def classify_provider_error(exc: BaseException) -> ProviderErrorKind:
    """Bucket an SDK exception without importing every SDK's error module."""
    name = type(exc).__name__
    if any(name.endswith(n) for n in _QUOTA_OR_AUTH_EXCEPTION_TYPES):
        return "quota_or_auth"
    # openai signals a hard quota (not a burst limit) as a 429 with this code
    if "insufficient_quota" in str(exc):
        return "quota_or_auth"
    if isinstance(exc, TimeoutError) or any(name.endswith(n) for n in _RETRYABLE_EXCEPTION_TYPES):
        return "retryable"
    return "other"


def is_rate_limit(exc: BaseException) -> bool:
    return type(exc).__name__.endswith("RateLimitError")

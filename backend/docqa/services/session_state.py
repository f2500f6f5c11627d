"""
Session State Machine
═════════════════════

Owns every write to a ProcessingSession row.  Pipeline stages never touch the
store directly; they call update_status() with a milestone and the machine
enforces the invariants callers poll against:

    pending ──→ processing ──→ completed
       │            │
       │            ├────────→ failed
       │            │
       └────────────┴────────→ cancelled   (external, via cancel())

  - progress is clamped to 0–100 and never moves backwards while active
  - collection_id is only ever written together with status=completed
  - terminal sessions accept no further stage writes
  - once cancelled, the next stage write raises SessionCancelled so the
    running pipeline stops at its next stage boundary

Every write is a conditional update on the status the machine just read, so
a cancel() or Reaper write that lands between the read and the write is never
overwritten.
"""

from __future__ import annotations

import logging
import traceback
from datetime import datetime, timezone
from typing import Any, Callable, NamedTuple
from uuid import UUID

from docqa.core.errors import (
    ERROR_FRIENDLY_MESSAGES,
    InvalidTransitionError,
    PipelineError,
    SessionCancelled,
    SessionNotFoundError,
)
from docqa.schemas.sessions import FileRef, ProcessingOptions, SessionStatus
from docqa.store.base import PipelineStore, SessionRecord

logger = logging.getLogger(__name__)

MAX_STACK_CHARS = 4000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Progress milestones
# ---------------------------------------------------------------------------

class Milestone(NamedTuple):
    progress: int
    label:    str


QUEUED     = Milestone(0,   "Queued for processing")
STARTED    = Milestone(10,  "Starting document processing...")
DOWNLOAD   = Milestone(20,  "Downloading document...")
EXTRACTION = Milestone(30,  "Extracting content segments...")
QA_START   = Milestone(50,  "Generating Q&A pairs...")
EMBEDDING  = Milestone(80,  "Generating embeddings...")
PERSIST    = Milestone(80,  "Creating collection and storing items...")
FINALIZE   = Milestone(90,  "Finalizing processing...")
DONE       = Milestone(100, "Processing completed successfully")

QA_BAND_START = 50
QA_BAND_END   = 80

CANCELLED_STEP = "Cancelled by user"


def qa_band_progress(done: int, total: int) -> int:
    """Linear position inside the 50–80 QA-generation band."""
    if total <= 0:
        return QA_BAND_END
    span = QA_BAND_END - QA_BAND_START
    return QA_BAND_START + (span * min(done, total)) // total


_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.PENDING:    frozenset({SessionStatus.PROCESSING, SessionStatus.FAILED}),
    SessionStatus.PROCESSING: frozenset({
        SessionStatus.PROCESSING, SessionStatus.COMPLETED, SessionStatus.FAILED,
    }),
}

_ACTIVE = (SessionStatus.PENDING.value, SessionStatus.PROCESSING.value)


class SessionStateMachine:

    def __init__(
        self,
        store: PipelineStore,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._clock = clock

    # -----------------------------------------------------------------------
    # Caller-facing operations
    # -----------------------------------------------------------------------

    async def create_session(
        self,
        user_id:  UUID,
        file_ref: FileRef,
        options:  ProcessingOptions,
    ) -> UUID:
        record = await self._store.create_session(
            user_id            = user_id,
            file_name          = file_ref.name,
            file_size          = file_ref.size,
            mime_type          = file_ref.mime_type,
            storage_url        = file_ref.storage_url,
            processing_options = options.model_dump(mode="json"),
            current_step       = QUEUED.label,
        )
        logger.info(
            "SessionStateMachine | created session=%s user=%s file=%s mime=%s",
            record.id, user_id, file_ref.name, file_ref.mime_type,
        )
        return record.id

    async def get_status(self, session_id: UUID, user_id: UUID | None = None) -> SessionRecord | None:
        """Snapshot for pollers; None when missing or owned by another user."""
        record = await self._store.get_session(session_id)
        if record is None or (user_id is not None and record.user_id != user_id):
            return None
        return record

    async def cancel(self, session_id: UUID, user_id: UUID | None = None) -> bool:
        """Flip an active session to cancelled.  False if missing or already terminal."""
        record = await self.get_status(session_id, user_id)
        if record is None or SessionStatus(record.status).is_terminal:
            return False
        updated = await self._store.update_session(
            session_id,
            {
                "status":       SessionStatus.CANCELLED.value,
                "current_step": CANCELLED_STEP,
                "completed_at": self._clock(),
            },
            expected_statuses=_ACTIVE,
        )
        if updated is not None:
            logger.info("SessionStateMachine | cancelled session=%s", session_id)
        return updated is not None

    # -----------------------------------------------------------------------
    # Stage writes
    # -----------------------------------------------------------------------

    async def update_status(
        self,
        session_id:    UUID,
        status:        SessionStatus | str,
        progress:      int,
        current_step:  str,
        collection_id: UUID | None = None,
        stats:         dict[str, Any] | None = None,
    ) -> SessionRecord:
        """
        The single write path for pipeline stages.

        Raises:
            SessionCancelled:       the session was cancelled; stop working.
            InvalidTransitionError: the transition is not allowed.
            SessionNotFoundError:   no such session.
        """
        target  = SessionStatus(status)
        current = await self._require(session_id)
        current_status = SessionStatus(current.status)

        if current_status is SessionStatus.CANCELLED:
            raise SessionCancelled(str(session_id))
        if target not in _TRANSITIONS.get(current_status, frozenset()):
            raise InvalidTransitionError(
                f"Session {session_id}: {current_status.value} → {target.value} is not allowed"
            )
        if collection_id is not None and target is not SessionStatus.COMPLETED:
            raise InvalidTransitionError("collection_id may only be set on completion")

        now = self._clock()
        clamped = min(100, max(0, progress))
        values: dict[str, Any] = {
            "status":       target.value,
            "progress":     100 if target is SessionStatus.COMPLETED else max(current.progress, clamped),
            "current_step": current_step,
        }
        if target is SessionStatus.PROCESSING and current.started_at is None:
            values["started_at"] = now
        if stats is not None:
            values["processing_stats"] = stats
        if target is SessionStatus.COMPLETED:
            values["collection_id"] = collection_id
            values["completed_at"]  = now

        updated = await self._store.update_session(
            session_id, values, expected_statuses=(current_status.value,),
        )
        if updated is None:
            latest = await self._require(session_id)
            if latest.status == SessionStatus.CANCELLED.value:
                raise SessionCancelled(str(session_id))
            raise InvalidTransitionError(
                f"Session {session_id} changed to {latest.status} during the update"
            )

        logger.debug(
            "SessionStateMachine | session=%s status=%s progress=%d step=%s",
            session_id, updated.status, updated.progress, current_step,
        )
        return updated

    async def begin(self, session_id: UUID) -> SessionRecord:
        """
        Claim a pending session for one run: pending → processing at 10%.

        Only one caller can win; a session that is already processing (a
        duplicate delivery) raises InvalidTransitionError.
        """
        current = await self._require(session_id)
        if current.status == SessionStatus.CANCELLED.value:
            raise SessionCancelled(str(session_id))
        if current.status != SessionStatus.PENDING.value:
            raise InvalidTransitionError(
                f"Session {session_id} is {current.status}; only pending sessions can start"
            )
        return await self.update_status(session_id, SessionStatus.PROCESSING, *STARTED)

    async def ensure_active(self, session_id: UUID) -> SessionRecord:
        """Stage-boundary check: raises SessionCancelled if the caller cancelled."""
        record = await self._require(session_id)
        if record.status == SessionStatus.CANCELLED.value:
            raise SessionCancelled(str(session_id))
        return record

    async def fail(
        self,
        session_id: UUID,
        error:      BaseException,
        stage:      str,
        stats:      dict[str, Any] | None = None,
    ) -> bool:
        """
        Record a fatal error.  Returns False when the session was already
        terminal (for example cancelled), in which case nothing is written.
        """
        now = self._clock()
        if isinstance(error, PipelineError):
            message = error.message
            code    = error.code
            extra   = error.detail
        else:
            message = f"{ERROR_FRIENDLY_MESSAGES['UNKNOWN_ERROR']} ({type(error).__name__}: {error})"
            code    = "UNKNOWN_ERROR"
            extra   = {}

        detail: dict[str, Any] = {
            **_json_safe(extra),
            "stage":      getattr(error, "stage", None) or stage,
            "code":       code,
            "error_type": type(error).__name__,
            "timestamp":  now.isoformat(),
            "stack":      "".join(traceback.format_exception(error))[-MAX_STACK_CHARS:],
        }
        values: dict[str, Any] = {
            "status":        SessionStatus.FAILED.value,
            "error_message": message,
            "error_detail":  detail,
            "current_step":  f"Failed during {detail['stage']}",
            "completed_at":  now,
        }
        if stats is not None:
            values["processing_stats"] = stats

        updated = await self._store.update_session(session_id, values, expected_statuses=_ACTIVE)
        if updated is None:
            logger.warning(
                "SessionStateMachine | session=%s already terminal; failure not recorded: %s",
                session_id, message,
            )
            return False
        logger.error(
            "SessionStateMachine | session=%s failed stage=%s code=%s: %s",
            session_id, detail["stage"], code, message,
        )
        return True

    async def reset_for_retry(
        self,
        session_id:      UUID,
        count_as_retry:  bool = True,
        step:            str  = "Queued for retry",
    ) -> SessionRecord | None:
        """failed → pending with a clean slate; None if the session is not failed."""
        current = await self._require(session_id)
        values: dict[str, Any] = {
            "status":        SessionStatus.PENDING.value,
            "progress":      0,
            "current_step":  step,
            "error_message": None,
            "error_detail":  None,
            "collection_id": None,
            "started_at":    None,
            "completed_at":  None,
        }
        if count_as_retry:
            values["retry_count"] = current.retry_count + 1
        return await self._store.update_session(
            session_id, values, expected_statuses=(SessionStatus.FAILED.value,),
        )

    async def mark_timed_out(self, session: SessionRecord, timeout_minutes: int) -> bool:
        """Reaper write: processing → failed with a timeout detail."""
        now = self._clock()
        updated = await self._store.update_session(
            session.id,
            {
                "status":        SessionStatus.FAILED.value,
                "error_message": f"Processing timed out after {timeout_minutes} minutes",
                "error_detail":  {
                    "reason":          "timeout",
                    "code":            "STAGE_TIMEOUT",
                    "timeout_minutes": timeout_minutes,
                    "stuck_at_stage":  session.current_step,
                    "stuck_progress":  session.progress,
                    "cleaned_at":      now.isoformat(),
                },
                "completed_at":  now,
            },
            expected_statuses=(SessionStatus.PROCESSING.value,),
        )
        return updated is not None

    async def touch_pending(self, session_id: UUID, step: str) -> bool:
        """Bump updated_at on a still-pending session so a re-dispatch is not repeated."""
        updated = await self._store.update_session(
            session_id, {"current_step": step}, expected_statuses=(SessionStatus.PENDING.value,),
        )
        return updated is not None

    async def _require(self, session_id: UUID) -> SessionRecord:
        record = await self._store.get_session(session_id)
        if record is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return record


def _json_safe(detail: dict[str, Any]) -> dict[str, Any]:
    """Error detail lands in a JSONB column; stringify anything exotic."""
    safe: dict[str, Any] = {}
    for key, value in detail.items():
        if isinstance(value, (str, int, float, bool)) or value is None:
            safe[key] = value
        elif isinstance(value, (list, dict)):
            safe[key] = value
        else:
            safe[key] = str(value)
    return safe

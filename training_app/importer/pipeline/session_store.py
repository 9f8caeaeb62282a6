"""
Persistence for preview sessions.

Sessions live in ``import_preview_sessions`` so every worker process shares
them. Callers only ever receive detached ``PreviewSession`` copies; writes go
through ``mutate``/``close``, which rely on the row's ``version`` column for
optimistic concurrency and retry on write contention: a failed version check
(``StaleDataError``) or a lock the database refused (SQLite reports a writer
that lost a WAL snapshot race as "database is locked").
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, TypeVar

from flask import current_app, has_app_context
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from config.monitoring import ImporterMonitoring
from training_app.importer.contracts import rows_from_payload, rows_to_payload
from training_app.models import db
from training_app.models.importer import ImportPreviewSession, PreviewSessionStatus
from training_app.utils.importer import get_importer_setting

from ..errors import SessionBusy, SessionClosed, SessionNotFound
from .types import (
    AppliedRule,
    ConflictItem,
    InactiveCollaborator,
    PreviewSession,
    PreviewStats,
    Resolution,
)

T = TypeVar("T")

DEFAULT_TTL_MINUTES = 30
DEFAULT_TOMBSTONE_MINUTES = 30
DEFAULT_MUTATE_RETRIES = 5


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


_CONTENTION_MARKERS = (
    "database is locked",
    "database table is locked",
    "could not serialize access",
    "deadlock detected",
)


def is_write_contention(exc: BaseException) -> bool:
    """True when ``exc`` means another writer got there first and a re-read may succeed."""

    if isinstance(exc, StaleDataError):
        return True
    if isinstance(exc, OperationalError):
        message = str(exc.orig if exc.orig is not None else exc).lower()
        return any(marker in message for marker in _CONTENTION_MARKERS)
    return False


def new_preview_id() -> str:
    return secrets.token_urlsafe(32)


@dataclass
class SweepSummary:
    expired: int = 0
    evicted: int = 0

    def to_dict(self) -> dict:
        return {"expired": self.expired, "evicted": self.evicted}


class PreviewSessionStore:
    """Owner of preview session state."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        ttl_minutes: int | None = None,
        tombstone_minutes: int | None = None,
        max_retries: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.session: Session = session or db.session
        self.ttl = timedelta(
            minutes=ttl_minutes
            if ttl_minutes is not None
            else int(get_importer_setting("IMPORT_PREVIEW_TTL_MINUTES", DEFAULT_TTL_MINUTES))
        )
        self.tombstone_ttl = timedelta(
            minutes=tombstone_minutes
            if tombstone_minutes is not None
            else int(get_importer_setting("IMPORT_PREVIEW_TOMBSTONE_MINUTES", DEFAULT_TOMBSTONE_MINUTES))
        )
        self.max_retries = max(
            1,
            max_retries
            if max_retries is not None
            else int(get_importer_setting("IMPORT_PREVIEW_MUTATE_RETRIES", DEFAULT_MUTATE_RETRIES)),
        )
        self.clock = clock or utcnow

    # public API

    def create(self, draft: PreviewSession) -> str:
        """Persist a freshly built session as OPEN and return its new previewId."""

        now = self.clock()
        preview_id = new_preview_id()
        rows = draft.rows or []
        row = ImportPreviewSession(
            preview_id=preview_id,
            file_name=draft.file_name,
            source=draft.source,
            row_count=len(rows),
            status=PreviewSessionStatus.OPEN,
            created_at=now,
            updated_at=now,
            expires_at=now + self.ttl,
            stats_json=draft.stats.to_dict(),
            conflicts_json=[conflict.to_dict() for conflict in draft.conflicts],
            collaborator_conflicts_json=[conflict.to_dict() for conflict in draft.collaborator_conflicts],
            inactive_collaborators_json=[item.to_dict() for item in draft.inactive_collaborators],
            applied_rules_json=[rule.to_dict() for rule in draft.applied_rules],
            resolutions_json=[],
            rows_json=rows_to_payload(rows),
            created_by_user_id=draft.created_by_user_id,
        )
        self.session.add(row)
        self.session.commit()
        self._log("Preview session created", row)
        return preview_id

    def get(self, preview_id: str, *, require_open: bool = False) -> PreviewSession:
        """
        Return a detached copy of the session.

        An OPEN session past its expiry is transitioned to EXPIRED first. With
        ``require_open`` a terminal session raises ``SessionClosed``.
        """

        row = self._load_fresh(preview_id)
        if self._expire_if_due(row):
            self.session.commit()
        if require_open:
            self._ensure_open(row)
        return self._to_session(row)

    def mutate(self, preview_id: str, fn: Callable[[PreviewSession], T]) -> tuple[PreviewSession, T]:
        """
        Atomically read-modify-write an OPEN session.

        ``fn`` receives a private copy and edits its ``resolutions``; it may be
        called more than once when a concurrent writer wins the version check,
        each time with the latest committed state.
        """

        for attempt in range(1, self.max_retries + 1):
            row = self._load_fresh(preview_id)
            if self._expire_if_due(row):
                self.session.commit()
            self._ensure_open(row)

            current = self._to_session(row)
            result = fn(current)
            row.resolutions_json = [resolution.to_dict() for resolution in current.resolutions.values()]
            row.updated_at = self.clock()
            try:
                self.session.commit()
            except (StaleDataError, OperationalError) as exc:
                self.session.rollback()
                if not is_write_contention(exc):
                    raise
                self._log_retry(preview_id, attempt)
                continue
            return self._to_session(row), result

        raise SessionBusy(preview_id, self.max_retries)

    def close(self, preview_id: str, status: PreviewSessionStatus, *, commit: bool = True) -> PreviewSession:
        """
        Move an OPEN session to a terminal status and release its row payload.

        With ``commit=False`` the change is only flushed so it lands in the
        caller's transaction; a concurrent writer then surfaces as
        ``StaleDataError`` from that flush.
        """

        if not status.is_terminal:
            raise ValueError("close() requires a terminal status.")
        row = self._load(preview_id)
        if self._expire_if_due(row) and commit:
            self.session.commit()
        self._ensure_open(row)
        self._release(row, status)
        if commit:
            self.session.commit()
        else:
            self.session.flush()
        self._log("Preview session closed", row)
        return self._to_session(row)

    def sweep(self, now: datetime | None = None) -> SweepSummary:
        """Expire overdue OPEN sessions and evict terminal tombstones past their retention."""

        now = now or self.clock()
        summary = SweepSummary()

        overdue = (
            self.session.query(ImportPreviewSession)
            .filter(ImportPreviewSession.status == PreviewSessionStatus.OPEN)
            .filter(ImportPreviewSession.expires_at <= now)
            .all()
        )
        for row in overdue:
            self._release(row, PreviewSessionStatus.EXPIRED, now=now)
            summary.expired += 1
        if overdue:
            try:
                self.session.commit()
            except (StaleDataError, OperationalError) as exc:
                # a concurrent resolve or confirm won; the next sweep picks up what is left
                self.session.rollback()
                if not is_write_contention(exc):
                    raise
                summary.expired = 0

        tombstones = (
            self.session.query(ImportPreviewSession)
            .filter(ImportPreviewSession.status != PreviewSessionStatus.OPEN)
            .all()
        )
        for row in tombstones:
            closed_at = _as_utc(row.closed_at) or _as_utc(row.expires_at)
            if closed_at + self.tombstone_ttl <= now:
                self.session.delete(row)
                summary.evicted += 1
        if summary.evicted:
            try:
                self.session.commit()
            except OperationalError as exc:
                self.session.rollback()
                if not is_write_contention(exc):
                    raise
                summary.evicted = 0

        ImporterMonitoring.record_preview_sweep(expired=summary.expired, evicted=summary.evicted)
        if has_app_context() and (summary.expired or summary.evicted):
            current_app.logger.info(
                "Preview sweep expired %s and evicted %s session(s)",
                summary.expired,
                summary.evicted,
                extra={"import_preview_expired": summary.expired, "import_preview_evicted": summary.evicted},
            )
        return summary

    def list_open(self) -> list[PreviewSession]:
        rows = (
            self.session.query(ImportPreviewSession)
            .filter(ImportPreviewSession.status == PreviewSessionStatus.OPEN)
            .order_by(ImportPreviewSession.created_at.desc())
            .all()
        )
        return [self._to_session(row, include_rows=False) for row in rows]

    # internals

    def _load(self, preview_id: str) -> ImportPreviewSession:
        row = self.session.get(ImportPreviewSession, preview_id) if preview_id else None
        if row is None:
            raise SessionNotFound(preview_id)
        return row

    def _load_fresh(self, preview_id: str) -> ImportPreviewSession:
        row = (
            self.session.query(ImportPreviewSession)
            .populate_existing()
            .filter(ImportPreviewSession.preview_id == preview_id)
            .one_or_none()
            if preview_id
            else None
        )
        if row is None:
            raise SessionNotFound(preview_id)
        return row

    def _expire_if_due(self, row: ImportPreviewSession) -> bool:
        if row.status is not PreviewSessionStatus.OPEN:
            return False
        if _as_utc(row.expires_at) > self.clock():
            return False
        self._release(row, PreviewSessionStatus.EXPIRED)
        self._log("Preview session expired", row)
        return True

    def _ensure_open(self, row: ImportPreviewSession) -> None:
        if row.status is not PreviewSessionStatus.OPEN:
            raise SessionClosed(row.preview_id, row.status.value)

    def _release(self, row: ImportPreviewSession, status: PreviewSessionStatus, *, now: datetime | None = None) -> None:
        now = now or self.clock()
        row.status = status
        row.closed_at = now
        row.updated_at = now
        row.rows_json = None
        row.resolutions_json = []

    def _to_session(self, row: ImportPreviewSession, *, include_rows: bool = True) -> PreviewSession:
        resolutions: dict = {}
        for payload in row.resolutions_json or ():
            resolution = Resolution.from_dict(payload)
            resolutions[resolution.key] = resolution
        rows = None
        if include_rows and row.rows_json is not None:
            rows = rows_from_payload(row.rows_json)
        return PreviewSession(
            preview_id=row.preview_id,
            status=row.status,
            created_at=_as_utc(row.created_at),
            expires_at=_as_utc(row.expires_at),
            stats=PreviewStats.from_dict(row.stats_json or {}),
            conflicts=tuple(ConflictItem.from_dict(item) for item in row.conflicts_json or ()),
            file_name=row.file_name,
            source=row.source,
            row_count=row.row_count,
            collaborator_conflicts=tuple(
                ConflictItem.from_dict(item) for item in row.collaborator_conflicts_json or ()
            ),
            inactive_collaborators=tuple(
                InactiveCollaborator.from_dict(item) for item in row.inactive_collaborators_json or ()
            ),
            applied_rules=tuple(AppliedRule.from_dict(item) for item in row.applied_rules_json or ()),
            resolutions=resolutions,
            rows=rows,
            created_by_user_id=row.created_by_user_id,
            closed_at=_as_utc(row.closed_at),
            version=row.version,
        )

    def _log(self, message: str, row: ImportPreviewSession) -> None:
        if not has_app_context():
            return
        current_app.logger.info(
            "%s: %s (%s)",
            message,
            row.preview_id[:8],
            row.status.value,
            extra={
                "import_preview_id": row.preview_id,
                "import_preview_status": row.status.value,
                "import_preview_rows": row.row_count,
            },
        )

    def _log_retry(self, preview_id: str, attempt: int) -> None:
        if not has_app_context():
            return
        current_app.logger.warning(
            "Preview session %s changed concurrently; retrying (attempt %s/%s)",
            preview_id[:8],
            attempt,
            self.max_retries,
            extra={"import_preview_id": preview_id, "import_preview_attempt": attempt},
        )

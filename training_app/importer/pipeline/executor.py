"""
Confirm step: apply resolved decisions and write session records.

Everything a confirm does (reactivations, new reference entities, record
upserts, the history entry and the session's CONFIRMED transition) lands in a
single transaction. Row-level problems become ``PartialRowFailure`` entries;
anything that aborts the transaction leaves the preview session OPEN.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Mapping

from flask import current_app, has_app_context
from sqlalchemy.exc import DataError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from config.monitoring import ImporterMonitoring
from training_app.importer.contracts import ImportRow
from training_app.models import db
from training_app.models.importer import EntityType, ImportRowFailureType, PreviewSessionStatus, ResolutionAction
from training_app.utils.importer import get_importer_setting

from ..errors import (
    ConflictsUnresolved,
    ImportCancelled,
    ImportPreviewError,
    ReferentialRace,
    SessionBusy,
    SessionNotFound,
)
from .directory import EntityDirectory, SessionRecordKey
from .history_service import ImportHistoryService
from .keys import ConflictKey
from .preview import DIMENSIONS
from .session_store import PreviewSessionStore, is_write_contention
from .types import EntityReference, ImportResult, PartialRowFailure, PreviewSession, Resolution

DEFAULT_TIMEOUT_SECONDS = 600
DEFAULT_CHECK_EVERY = 50

SKIP_FAILURE_TYPES = frozenset({ImportRowFailureType.IGNORED, ImportRowFailureType.COLLABORATOR_NOT_FOUND})


@dataclass(frozen=True)
class Binding:
    """Where rows carrying one natural key end up: an entity id, or a failure."""

    entity_id: int | None = None
    failure_type: ImportRowFailureType | None = None
    reason: str | None = None


class ImportExecutor:
    """Runs confirm and cancel for preview sessions."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        store: PreviewSessionStore | None = None,
        directory: EntityDirectory | None = None,
        history: ImportHistoryService | None = None,
        timeout_seconds: float | None = None,
        check_every: int | None = None,
        max_retries: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session: Session = session or db.session
        self.store = store or PreviewSessionStore(self.session)
        self.directory = directory or EntityDirectory(self.session)
        self.history = history or ImportHistoryService(self.session)
        self.timeout_seconds = float(
            timeout_seconds
            if timeout_seconds is not None
            else get_importer_setting("IMPORT_CONFIRM_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS)
        )
        if check_every is None:
            check_every = get_importer_setting("IMPORT_CONFIRM_CHECK_EVERY", DEFAULT_CHECK_EVERY)
        self.check_every = max(1, int(check_every))
        self.max_retries = max_retries if max_retries is not None else self.store.max_retries
        self.clock = clock

    # public API

    def confirm(
        self,
        preview_id: str,
        *,
        user_id: int | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ImportResult:
        started = time.perf_counter()
        deadline = self.clock() + self.timeout_seconds
        file_name = None

        try:
            preview = self._load_confirmable(preview_id)
            file_name = preview.file_name
            for attempt in range(1, self.max_retries + 1):
                try:
                    result = self._execute(preview, started, deadline, cancel_event, user_id)
                except ImportCancelled:
                    self.session.rollback()
                    raise
                except SQLAlchemyError as exc:
                    self.session.rollback()
                    if is_write_contention(exc):
                        self._log_retry(preview_id, attempt)
                        preview = self._load_confirmable(preview_id)
                        continue
                    if has_app_context():
                        current_app.logger.exception(
                            "Import confirm for preview %s failed at the transaction level",
                            preview_id[:8],
                            extra={"import_preview_id": preview_id},
                        )
                    raise ImportPreviewError(
                        "The import could not be committed; the preview is still open and can be retried.",
                        details={"previewId": preview_id, "cause": exc.__class__.__name__},
                    ) from exc
                break
            else:
                raise SessionBusy(preview_id, self.max_retries)
        except SessionNotFound:
            ImporterMonitoring.record_confirm(duration_seconds=time.perf_counter() - started, status="not_found")
            raise
        except ImportPreviewError as exc:
            self._record_failure(preview_id, file_name, exc, started, user_id)
            raise

        ImporterMonitoring.record_confirm(
            duration_seconds=time.perf_counter() - started,
            status="success",
            created=result.created,
            updated=result.updated,
            failed=result.failed,
        )
        if has_app_context():
            current_app.logger.info(
                "Import %s confirmed: %s created, %s updated, %s failed, %s reactivated",
                preview_id[:8],
                result.created,
                result.updated,
                result.failed,
                result.reactivated,
                extra={
                    "import_preview_id": preview_id,
                    "import_history_id": result.history_id,
                    "import_records_created": result.created,
                    "import_records_updated": result.updated,
                    "import_records_failed": result.failed,
                    "import_records_reactivated": result.reactivated,
                    "import_processing_time_ms": result.processing_time_ms,
                },
            )
        return result

    def cancel(self, preview_id: str) -> PreviewSession:
        closed = self.store.close(preview_id, PreviewSessionStatus.CANCELLED)
        if has_app_context():
            current_app.logger.info(
                "Import preview %s cancelled",
                preview_id[:8],
                extra={"import_preview_id": preview_id},
            )
        return closed

    # transaction

    def _load_confirmable(self, preview_id: str) -> PreviewSession:
        preview = self.store.get(preview_id, require_open=True)
        remaining = preview.remaining_conflicts()
        if remaining:
            raise ConflictsUnresolved(preview_id, [conflict.key_dict() for conflict in remaining])
        return preview

    def _execute(
        self,
        preview: PreviewSession,
        started: float,
        deadline: float,
        cancel_event: threading.Event | None,
        user_id: int | None,
    ) -> ImportResult:
        rows = list(preview.rows or ())
        result = ImportResult(preview_id=preview.preview_id, total=len(rows))
        entry = self.history.start(preview_id=preview.preview_id, file_name=preview.file_name, user_id=user_id)

        self._checkpoint(deadline, cancel_event)
        bindings = self._apply_decisions(preview, result)
        collaborators = self.directory.find_collaborators(row.external_collaborator_id for row in rows)
        plan = self._plan_rows(rows, bindings, collaborators)
        formations = self._ensure_formations(rows, plan, bindings)

        for position, row in enumerate(rows, start=1):
            if position % self.check_every == 0:
                self._checkpoint(deadline, cancel_event)

            failure = plan.get(row.row_index)
            if failure is not None:
                result.errors.append(failure)
                if failure.failure_type in SKIP_FAILURE_TYPES:
                    result.skipped += 1
                continue

            collaborator = collaborators[row.external_collaborator_id]
            formation = formations[row.formation_code]
            fields = self._record_fields(row, collaborator, formation, bindings, entry.id)
            key = SessionRecordKey(
                external_source_id=row.external_source_id,
                collaborator_id=collaborator.id,
                formation_id=formation.id,
                start_date=row.start_date,
            )
            try:
                with self.session.begin_nested():
                    record = self.directory.find_session_record(key)
                    if record is None:
                        self.directory.create_session_record(fields)
                        created = True
                    else:
                        self.directory.update_session_record(record, fields)
                        created = False
            except (IntegrityError, DataError) as exc:
                result.errors.append(
                    PartialRowFailure(
                        row_index=row.row_index,
                        failure_type=ImportRowFailureType.ROW_ERROR,
                        reason=f"Database rejected the row: {getattr(exc, 'orig', None) or exc}",
                    )
                )
                continue
            if created:
                result.created += 1
            else:
                result.updated += 1

        self._checkpoint(deadline, cancel_event)
        result.processing_time_ms = int((time.perf_counter() - started) * 1000)
        self.history.complete(entry, result)
        result.history_id = entry.id
        self.store.close(preview.preview_id, PreviewSessionStatus.CONFIRMED, commit=False)
        self.session.commit()
        return result

    def _checkpoint(self, deadline: float, cancel_event: threading.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise ImportCancelled("The import was cancelled; no changes were committed.")
        if self.clock() >= deadline:
            raise ImportCancelled(
                f"The import exceeded its {self.timeout_seconds:g}s deadline; no changes were committed."
            )

    # step 1: decisions

    def _apply_decisions(self, preview: PreviewSession, result: ImportResult) -> dict[ConflictKey, Binding]:
        """Turn rule-applied and operator decisions into bindings, reactivating as needed."""

        decisions: dict[ConflictKey, tuple[Resolution, EntityReference | None]] = {}
        for rule in preview.applied_rules:
            decisions[rule.key] = (rule.as_resolution(), rule.existing)
        for conflict in preview.conflicts:
            resolution = preview.resolutions.get(conflict.key)
            if resolution is not None:
                decisions[conflict.key] = (resolution, conflict.existing)

        bindings: dict[ConflictKey, Binding] = {}
        for key, (decision, existing) in decisions.items():
            label = f"{key.entity_type.value.lower()} '{decision.raw_value}'"
            if decision.action is ResolutionAction.IGNORE:
                bindings[key] = Binding(
                    failure_type=ImportRowFailureType.IGNORED,
                    reason=f"Rows referencing {label} were ignored by operator decision.",
                )
            elif decision.action is ResolutionAction.MAP:
                target = self.directory.get_active_entity(key.entity_type, decision.target_entity_id)
                if target is None:
                    bindings[key] = self._race(
                        key.entity_type,
                        decision.target_entity_id,
                        f"Mapping target {decision.target_entity_id} for {label} is no longer active.",
                    )
                else:
                    bindings[key] = Binding(entity_id=target.id)
            else:
                bindings[key] = self._reactivate(key.entity_type, existing, label, result)
        return bindings

    def _reactivate(
        self,
        entity_type: EntityType,
        existing: EntityReference | None,
        label: str,
        result: ImportResult,
    ) -> Binding:
        entity_id = existing.id if existing else None
        if entity_id is None:
            return self._race(entity_type, None, f"No deactivated entity is recorded for {label}.")
        try:
            entity = self.directory.get_entity(entity_type, entity_id)
            was_inactive = entity is not None and not entity.is_active
            entity = self.directory.reactivate(entity_type, entity_id)
        except ReferentialRace as exc:
            return Binding(failure_type=ImportRowFailureType.REFERENTIAL_RACE, reason=exc.message)
        if was_inactive:
            result.reactivated += 1
        return Binding(entity_id=entity.id)

    def _race(self, entity_type: EntityType, entity_id: int | None, message: str) -> Binding:
        if has_app_context():
            current_app.logger.warning(
                message,
                extra={"import_entity_type": entity_type.value, "import_entity_id": entity_id},
            )
        return Binding(failure_type=ImportRowFailureType.REFERENTIAL_RACE, reason=message)

    # step 2: rows

    def _binding_for(self, entity_type: EntityType, raw_value: str, bindings: dict[ConflictKey, Binding]) -> Binding:
        """Resolve a natural key not covered by a decision; new values are created."""

        key = ConflictKey.of(entity_type, raw_value)
        binding = bindings.get(key)
        if binding is not None:
            return binding
        entity = self.directory.find_active_by_natural_key(entity_type, raw_value)
        if entity is None:
            entity = self.directory.find_any_by_natural_key(entity_type, raw_value)
        if entity is None:
            entity = self.directory.create_entity(entity_type, raw_value)
            binding = Binding(entity_id=entity.id)
        elif entity.is_active:
            binding = Binding(entity_id=entity.id)
        else:
            binding = self._race(
                entity_type,
                entity.id,
                f"{entity_type.value.title()} '{raw_value}' was deactivated after the preview was generated.",
            )
        bindings[key] = binding
        return binding

    def _plan_rows(
        self,
        rows: list[ImportRow],
        bindings: dict[ConflictKey, Binding],
        collaborators: Mapping,
    ) -> dict[int, PartialRowFailure]:
        """
        Resolve every reference ahead of the write loop and return the rows that cannot be written.

        New reference entities are created here, outside the per-row savepoints,
        so a failing row never rolls back an entity later rows rely on.
        """

        failures: dict[int, PartialRowFailure] = {}
        for row in rows:
            if row.external_collaborator_id not in collaborators:
                failures[row.row_index] = PartialRowFailure(
                    row_index=row.row_index,
                    failure_type=ImportRowFailureType.COLLABORATOR_NOT_FOUND,
                    reason=f"Collaborator '{row.external_collaborator_id}' does not exist.",
                    raw_value=row.external_collaborator_id,
                )
                continue
            for entity_type, attribute in DIMENSIONS:
                raw_value = getattr(row, attribute)
                if not raw_value:
                    continue
                binding = self._binding_for(entity_type, raw_value, bindings)
                if binding.failure_type is not None:
                    failures[row.row_index] = PartialRowFailure(
                        row_index=row.row_index,
                        failure_type=binding.failure_type,
                        reason=binding.reason or binding.failure_type.value,
                        entity_type=entity_type.value,
                        raw_value=raw_value,
                    )
                    break
        return failures

    def _ensure_formations(
        self,
        rows: list[ImportRow],
        plan: Mapping[int, PartialRowFailure],
        bindings: dict[ConflictKey, Binding],
    ) -> dict:
        writable = [row for row in rows if row.row_index not in plan]
        formations = self.directory.find_formations(row.formation_code for row in writable)
        for row in writable:
            if row.formation_code in formations:
                continue
            category_id = None
            if row.category_name:
                category_id = bindings[ConflictKey.of(EntityType.CATEGORY, row.category_name)].entity_id
            formations[row.formation_code] = self.directory.create_formation(
                row.formation_code,
                title=row.formation_title,
                category_id=category_id,
            )
        return formations

    def _record_fields(self, row: ImportRow, collaborator, formation, bindings, history_id: int) -> dict:
        def bound(entity_type: EntityType, raw_value: str | None) -> int | None:
            if not raw_value:
                return None
            return bindings[ConflictKey.of(entity_type, raw_value)].entity_id

        department_id = bound(EntityType.DEPARTMENT, row.department_name) or collaborator.department_id
        fields = {
            "collaborator_id": collaborator.id,
            "formation_id": formation.id,
            "organization_id": bound(EntityType.ORGANIZATION, row.organization_name),
            "department_id": department_id,
            "category_id": bound(EntityType.CATEGORY, row.category_name) or formation.category_id,
            "start_date": row.start_date,
            "end_date": row.end_date,
            "duration_hours": row.duration_hours,
            "price_ht": row.price_ht,
            "import_history_id": history_id,
        }
        if row.external_source_id:
            fields["external_source_id"] = row.external_source_id
        return fields

    # failure bookkeeping

    def _record_failure(
        self,
        preview_id: str,
        file_name: str | None,
        error: ImportPreviewError,
        started: float,
        user_id: int | None,
    ) -> None:
        ImporterMonitoring.record_confirm(duration_seconds=time.perf_counter() - started, status=error.code)
        try:
            self.session.rollback()
            self.history.record_failure(
                preview_id=preview_id,
                file_name=file_name,
                message=error.message,
                code=error.code,
                processing_time_ms=int((time.perf_counter() - started) * 1000),
                user_id=user_id,
            )
        except SQLAlchemyError:
            self.session.rollback()
            if has_app_context():
                current_app.logger.exception(
                    "Could not write the history entry for failed confirm of preview %s",
                    preview_id[:8],
                    extra={"import_preview_id": preview_id},
                )
        if has_app_context():
            current_app.logger.warning(
                "Import confirm for preview %s failed: %s",
                preview_id[:8],
                error.message,
                extra={"import_preview_id": preview_id, "import_error_code": error.code},
            )

    def _log_retry(self, preview_id: str, attempt: int) -> None:
        if has_app_context():
            current_app.logger.warning(
                "Preview session %s changed during confirm; re-reading (attempt %s/%s)",
                preview_id[:8],
                attempt,
                self.max_retries,
                extra={"import_preview_id": preview_id, "import_preview_attempt": attempt},
            )

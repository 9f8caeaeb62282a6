"""
Service layer for the import history ledger.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timezone
from typing import Any, Sequence

from sqlalchemy.orm import Session, selectinload

from training_app.models import db
from training_app.models.importer import ImportHistory, ImportHistoryStatus, ImportRowFailure

from .types import ImportResult, PartialRowFailure

IMPORT_TYPE_OLU = "OLU"


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def status_for(result: ImportResult) -> ImportHistoryStatus:
    return ImportHistoryStatus.PARTIAL if result.errors else ImportHistoryStatus.SUCCESS


def summarize_failures(failures: Sequence[PartialRowFailure]) -> dict[str, Any]:
    by_type = Counter(failure.failure_type.value for failure in failures)
    return {"byType": dict(sorted(by_type.items())), "rows": len(failures)}


class ImportHistoryService:
    """Facade for writing and querying import history entries."""

    def __init__(self, session: Session | None = None):
        self.session: Session = session or db.session

    def start(self, *, preview_id: str, file_name: str | None, user_id: int | None) -> ImportHistory:
        """Flush a placeholder entry so records written by the attempt can reference it."""

        entry = ImportHistory(
            import_type=IMPORT_TYPE_OLU,
            file_name=file_name,
            preview_id=preview_id,
            status=ImportHistoryStatus.ERROR,
            triggered_by_user_id=user_id,
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def complete(self, entry: ImportHistory, result: ImportResult) -> ImportHistory:
        entry.status = status_for(result)
        entry.records_processed = result.total
        entry.records_created = result.created
        entry.records_updated = result.updated
        entry.records_failed = result.failed
        entry.records_reactivated = result.reactivated
        entry.processing_time_ms = result.processing_time_ms
        entry.completed_at = datetime.now(timezone.utc)
        if result.errors:
            entry.error_summary = f"{result.failed} row(s) were not imported."
            entry.error_details_json = summarize_failures(result.errors)
        for failure in result.errors:
            entry.row_failures.append(
                ImportRowFailure(
                    row_index=failure.row_index,
                    failure_type=failure.failure_type,
                    reason=failure.reason,
                    entity_type=failure.entity_type,
                    raw_value=failure.raw_value,
                )
            )
        self.session.flush()
        return entry

    def record_failure(
        self,
        *,
        preview_id: str,
        file_name: str | None,
        message: str,
        code: str,
        processing_time_ms: int,
        user_id: int | None,
        records_processed: int = 0,
    ) -> ImportHistory:
        """Commit an ERROR entry for an attempt that wrote nothing."""

        entry = ImportHistory(
            import_type=IMPORT_TYPE_OLU,
            file_name=file_name,
            preview_id=preview_id,
            status=ImportHistoryStatus.ERROR,
            records_processed=records_processed,
            error_summary=message,
            error_details_json={"code": code},
            completed_at=datetime.now(timezone.utc),
            processing_time_ms=processing_time_ms,
            triggered_by_user_id=user_id,
        )
        self.session.add(entry)
        self.session.commit()
        return entry

    def list_entries(self, *, limit: int = 20, offset: int = 0) -> tuple[list[ImportHistory], int]:
        query = self.session.query(ImportHistory)
        total = query.count()
        entries = (
            query.order_by(ImportHistory.created_at.desc(), ImportHistory.id.desc())
            .offset(max(offset, 0))
            .limit(max(limit, 0))
            .all()
        )
        return list(entries), total

    def get(self, history_id: int) -> ImportHistory | None:
        return (
            self.session.query(ImportHistory)
            .options(selectinload(ImportHistory.row_failures))
            .filter(ImportHistory.id == history_id)
            .one_or_none()
        )


def serialize_history(entry: ImportHistory, *, include_failures: bool = False) -> dict[str, Any]:
    payload = {
        "id": entry.id,
        "type": entry.import_type,
        "fileName": entry.file_name,
        "previewId": entry.preview_id,
        "status": entry.status.value,
        "recordsProcessed": entry.records_processed,
        "recordsCreated": entry.records_created,
        "recordsUpdated": entry.records_updated,
        "recordsFailed": entry.records_failed,
        "recordsReactivated": entry.records_reactivated,
        "errorSummary": entry.error_summary,
        "errorDetails": entry.error_details_json,
        "createdAt": _iso(entry.created_at),
        "completedAt": _iso(entry.completed_at),
        "processingTimeMs": entry.processing_time_ms,
        "triggeredByUserId": entry.triggered_by_user_id,
    }
    if include_failures:
        payload["rowFailures"] = [
            {
                "row": failure.row_index,
                "type": failure.failure_type.value,
                "reason": failure.reason,
                "entityType": failure.entity_type,
                "rawValue": failure.raw_value,
            }
            for failure in entry.row_failures
        ]
    return payload

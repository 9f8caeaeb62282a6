"""
Importer blueprint: preview, resolve, confirm and cancel endpoints plus the
rule, history and health APIs that support the review screen.
"""

from __future__ import annotations

import io
import time
from http import HTTPStatus
from typing import Any

from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Blueprint, current_app, g, jsonify, request
from flask_login import current_user

from config.monitoring import ImporterMonitoring
from training_app.importer.adapters import CSVHeaderError, CSVRowError, TrainingSessionCSVAdapter
from training_app.importer.contracts import build_import_rows
from training_app.importer.pipeline import (
    EntityDirectory,
    ImportExecutor,
    ImportHistoryService,
    PreviewBuilder,
    PreviewSessionStore,
    ResolutionCoordinator,
    RuleEngine,
    serialize_history,
)
from training_app.importer.pipeline.keys import parse_entity_type
from training_app.importer.pipeline.resolution import parse_action, parse_target_id
from training_app.models import db
from training_app.models.importer import ImportRule, PreviewSessionStatus
from training_app.utils.importer import get_importer_row_sources, get_importer_setting, is_importer_enabled
from training_app.utils.permissions import current_user_id, has_any_permission

from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from .errors import ImportPreviewError, InvalidInput
from .registry import RowSourceDescriptor

importer_blueprint = Blueprint("importer", __name__, url_prefix="/import")

MANAGE_PERMISSIONS = ("manage_imports",)
VIEW_PERMISSIONS = ("manage_imports", "view_imports")


def _json_error(message: str, status: HTTPStatus):
    return jsonify({"error": message}), status


def _ensure_importer_enabled_api():
    if not is_importer_enabled(current_app):
        return _json_error("Importer is disabled.", HTTPStatus.NOT_FOUND)
    return None


def _ensure_authenticated_api():
    if not current_user.is_authenticated:
        return _json_error("Authentication required.", HTTPStatus.UNAUTHORIZED)
    return None


def _guard(permissions):
    for check in (_ensure_importer_enabled_api, _ensure_authenticated_api):
        response = check()
        if response:
            return response
    if not has_any_permission(current_user, *permissions):
        return _json_error(f"Missing {' or '.join(permissions)} permission.", HTTPStatus.FORBIDDEN)
    return None


def _json_body() -> dict[str, Any]:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise InvalidInput("Request body must be a JSON object.")
    return body


def _require_preview_id(body: dict[str, Any]) -> str:
    preview_id = body.get("previewId")
    if not isinstance(preview_id, str) or not preview_id.strip():
        raise InvalidInput("previewId is required.")
    return preview_id.strip()


def _int_arg(name: str, default: int, *, minimum: int = 0, maximum: int | None = None) -> int:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise InvalidInput(f"{name} must be an integer.") from None
    if value < minimum:
        raise InvalidInput(f"{name} must be >= {minimum}.")
    if maximum is not None:
        value = min(value, maximum)
    return value


def _bool_arg(name: str) -> bool | None:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return None
    lowered = raw.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise InvalidInput(f"{name} must be a boolean.")


def _serialize_row_source(source: RowSourceDescriptor) -> dict:
    return {
        "name": source.name,
        "title": source.title,
        "summary": source.summary,
        "contentTypes": list(source.content_types),
    }


def _serialize_rule(rule: ImportRule, engine: RuleEngine) -> dict:
    return {
        "id": rule.id,
        "entityType": rule.entity_type.value,
        "rawValue": rule.raw_value,
        "action": rule.action.value,
        "targetEntityId": rule.target_entity_id,
        "targetEntityName": engine.target_name(rule),
        "isActive": rule.is_active,
        "createdByUserId": rule.created_by_user_id,
        "createdAt": rule.created_at.isoformat() if rule.created_at else None,
        "updatedAt": rule.updated_at.isoformat() if rule.updated_at else None,
    }


@importer_blueprint.errorhandler(ImportPreviewError)
def _handle_import_error(exc: ImportPreviewError):
    db.session.rollback()
    status = exc.http_status
    if status >= HTTPStatus.INTERNAL_SERVER_ERROR:
        current_app.logger.error(
            "Importer request failed: %s",
            exc.message,
            extra={"import_error_code": exc.code, "importer_endpoint": request.endpoint},
        )
    return jsonify(exc.as_dict()), status


@importer_blueprint.before_request
def _start_timer():
    g.importer_request_started = time.perf_counter()


@importer_blueprint.after_request
def _record_request(response):
    started = g.pop("importer_request_started", None)
    if started is not None:
        ImporterMonitoring.record_api_request(
            endpoint=request.endpoint or "unknown",
            status_code=response.status_code,
            duration_seconds=time.perf_counter() - started,
        )
    return response


# health


@importer_blueprint.get("/health")
def importer_healthcheck():
    """Lightweight health endpoint proving the importer blueprint mounted correctly."""
    importer_state = current_app.extensions.get("importer", {})
    sources = importer_state.get("active_row_sources", ())
    payload = {
        "status": "ok",
        "enabled": importer_state.get("enabled", False),
        "workerEnabled": importer_state.get("worker_enabled", False),
        "rowSources": [_serialize_row_source(source) for source in sources],
        "openPreviews": len(PreviewSessionStore().list_open()),
    }
    return jsonify(payload), HTTPStatus.OK


@importer_blueprint.get("/worker_health")
def importer_worker_health():
    """Validate importer worker availability via the heartbeat task."""
    importer_state = current_app.extensions.get("importer", {})
    worker_enabled = importer_state.get("worker_enabled", False)
    try:
        timeout_seconds = float(request.args.get("timeout", 5))
    except ValueError:
        raise InvalidInput("timeout must be a number.") from None

    payload: dict[str, Any] = {
        "importerEnabled": importer_state.get("enabled", False),
        "workerEnabled": worker_enabled,
        "queue": DEFAULT_QUEUE_NAME,
        "timeoutSeconds": timeout_seconds,
    }
    if not worker_enabled:
        payload["status"] = "disabled"
        payload["message"] = "Worker flag disabled; start the worker or set IMPORTER_WORKER_ENABLED=true."
        return jsonify(payload), HTTPStatus.OK

    celery_app = get_celery_app(current_app)
    task = celery_app.tasks.get("importer.healthcheck") if celery_app is not None else None
    if task is None:
        payload["status"] = "error"
        payload["error"] = "heartbeat_task_missing"
        return jsonify(payload), HTTPStatus.INTERNAL_SERVER_ERROR

    result = task.apply_async()
    try:
        payload["heartbeat"] = result.get(timeout=timeout_seconds)
    except CeleryTimeoutError:
        payload["status"] = "timeout"
        return jsonify(payload), HTTPStatus.GATEWAY_TIMEOUT
    payload["status"] = "ok"
    return jsonify(payload), HTTPStatus.OK


# preview lifecycle


def _rows_from_request():
    """Return ``(rows, file_name, source)`` for a JSON or multipart CSV upload."""

    enabled_sources = get_importer_row_sources(current_app)
    max_bytes = int(get_importer_setting("IMPORTER_MAX_UPLOAD_MB", 25)) * 1024 * 1024

    if "file" in request.files:
        if "csv" not in enabled_sources:
            raise InvalidInput("The csv row source is not enabled.")
        upload = request.files["file"]
        content = upload.read(max_bytes + 1)
        if len(content) > max_bytes:
            raise InvalidInput(f"Upload exceeds the {max_bytes // (1024 * 1024)} MB limit.")
        try:
            text = content.decode("utf-8-sig")
        except UnicodeDecodeError:
            raise InvalidInput("CSV upload must be UTF-8 encoded.") from None
        adapter = TrainingSessionCSVAdapter(io.StringIO(text, newline=""))
        try:
            rows = adapter.read_all()
        except CSVRowError as exc:
            raise InvalidInput(str(exc), errors=exc.errors) from exc
        except CSVHeaderError as exc:
            raise InvalidInput(str(exc)) from exc
        if not rows:
            raise InvalidInput("The import contains no rows.")
        return rows, upload.filename or None, "csv"

    if "json" not in enabled_sources:
        raise InvalidInput("The json row source is not enabled.")
    body = _json_body()
    raw_rows = body.get("rows")
    if not isinstance(raw_rows, list):
        raise InvalidInput("rows must be a list of import rows.")
    file_name = body.get("fileName")
    if file_name is not None and not isinstance(file_name, str):
        raise InvalidInput("fileName must be a string.")
    return build_import_rows(raw_rows), file_name, "json"


@importer_blueprint.post("/preview")
def importer_preview_create():
    guard = _guard(MANAGE_PERMISSIONS)
    if guard:
        return guard

    rows, file_name, source = _rows_from_request()
    result = PreviewBuilder().build(rows, file_name=file_name, source=source, user_id=current_user_id())
    return jsonify(result.to_dict()), HTTPStatus.OK


@importer_blueprint.get("/preview/<preview_id>")
def importer_preview_detail(preview_id: str):
    guard = _guard(VIEW_PERMISSIONS)
    if guard:
        return guard

    session = PreviewSessionStore().get(preview_id)
    remaining = session.remaining_conflicts() if session.status is PreviewSessionStatus.OPEN else []
    payload = {
        "previewId": session.preview_id,
        "status": session.status.value,
        "fileName": session.file_name,
        "source": session.source,
        "createdAt": session.created_at.isoformat(),
        "expiresAt": session.expires_at.isoformat(),
        "closedAt": session.closed_at.isoformat() if session.closed_at else None,
        "stats": session.stats.to_dict(),
        "conflicts": [conflict.to_dict() for conflict in session.conflicts],
        "collaboratorConflicts": [conflict.to_dict() for conflict in session.collaborator_conflicts],
        "inactiveCollaborators": [item.to_dict() for item in session.inactive_collaborators],
        "appliedRules": [rule.to_dict() for rule in session.applied_rules],
        "rulesApplied": session.rules_applied,
        "canImportDirectly": session.can_import_directly,
        "resolutions": [resolution.to_dict() for resolution in session.resolutions.values()],
        "remainingConflicts": len(remaining),
        "remainingKeys": [conflict.key_dict() for conflict in remaining],
        "canImport": session.status is PreviewSessionStatus.OPEN and not remaining,
    }
    return jsonify(payload), HTTPStatus.OK


@importer_blueprint.post("/preview/resolve")
def importer_preview_resolve():
    guard = _guard(MANAGE_PERMISSIONS)
    if guard:
        return guard

    body = _json_body()
    preview_id = _require_preview_id(body)
    outcome = ResolutionCoordinator().submit(preview_id, body.get("resolutions"), user_id=current_user_id())
    return jsonify(outcome.to_dict()), HTTPStatus.OK


@importer_blueprint.post("/preview/confirm")
def importer_preview_confirm():
    guard = _guard(MANAGE_PERMISSIONS)
    if guard:
        return guard

    body = _json_body()
    preview_id = _require_preview_id(body)
    result = ImportExecutor().confirm(preview_id, user_id=current_user_id())
    return jsonify(result.to_dict()), HTTPStatus.OK


@importer_blueprint.delete("/preview/<preview_id>")
def importer_preview_cancel(preview_id: str):
    guard = _guard(MANAGE_PERMISSIONS)
    if guard:
        return guard

    session = ImportExecutor().cancel(preview_id)
    return jsonify({"success": True, "previewId": session.preview_id, "status": session.status.value}), HTTPStatus.OK


# rules


@importer_blueprint.get("/rules")
def importer_rules_list():
    guard = _guard(VIEW_PERMISSIONS)
    if guard:
        return guard

    entity_type = request.args.get("entityType")
    active = _bool_arg("active")
    engine = RuleEngine()
    rules = engine.list_rules(entity_type=parse_entity_type(entity_type) if entity_type else None, active=active)
    return jsonify({"rules": [_serialize_rule(rule, engine) for rule in rules], "total": len(rules)}), HTTPStatus.OK


@importer_blueprint.get("/rules/stats")
def importer_rules_stats():
    guard = _guard(VIEW_PERMISSIONS)
    if guard:
        return guard

    return jsonify([stat.to_dict() for stat in RuleEngine().stats()]), HTTPStatus.OK


@importer_blueprint.get("/rules/<int:rule_id>")
def importer_rule_detail(rule_id: int):
    guard = _guard(VIEW_PERMISSIONS)
    if guard:
        return guard

    engine = RuleEngine()
    return jsonify(_serialize_rule(engine.get(rule_id), engine)), HTTPStatus.OK


@importer_blueprint.put("/rules/<int:rule_id>")
def importer_rule_update(rule_id: int):
    guard = _guard(MANAGE_PERMISSIONS)
    if guard:
        return guard

    body = _json_body()
    changes: dict[str, Any] = {}
    if body.get("action") is not None:
        changes["action"] = parse_action(body["action"])
    if "targetEntityId" in body:
        changes["target_entity_id"] = parse_target_id(body["targetEntityId"])
    if "isActive" in body:
        if not isinstance(body["isActive"], bool):
            raise InvalidInput("isActive must be a boolean.")
        changes["active"] = body["isActive"]
    if not changes:
        raise InvalidInput("Nothing to update; provide action, targetEntityId or isActive.")

    engine = RuleEngine()
    rule = engine.update(rule_id, **changes)
    return jsonify(_serialize_rule(rule, engine)), HTTPStatus.OK


@importer_blueprint.delete("/rules/<int:rule_id>")
def importer_rule_deactivate(rule_id: int):
    guard = _guard(MANAGE_PERMISSIONS)
    if guard:
        return guard

    engine = RuleEngine()
    rule = engine.deactivate(rule_id)
    return jsonify({"success": True, "rule": _serialize_rule(rule, engine)}), HTTPStatus.OK


@importer_blueprint.delete("/rules/<int:rule_id>/hard")
def importer_rule_purge(rule_id: int):
    guard = _guard(MANAGE_PERMISSIONS)
    if guard:
        return guard

    RuleEngine().purge(rule_id)
    return jsonify({"success": True, "ruleId": rule_id}), HTTPStatus.OK


@importer_blueprint.get("/rules/entities/<entity_type>")
def importer_rule_targets(entity_type: str):
    guard = _guard(VIEW_PERMISSIONS)
    if guard:
        return guard

    parsed = parse_entity_type(entity_type)
    entities = EntityDirectory().list_active(parsed)
    return (
        jsonify(
            {
                "entityType": parsed.value,
                "entities": [{"id": entity.id, "name": entity.name} for entity in entities],
            }
        ),
        HTTPStatus.OK,
    )


# history


@importer_blueprint.get("/history")
def importer_history_list():
    guard = _guard(VIEW_PERMISSIONS)
    if guard:
        return guard

    max_page = int(get_importer_setting("IMPORT_HISTORY_PAGE_SIZE_MAX", 100))
    limit = _int_arg("limit", 20, minimum=1, maximum=max_page)
    offset = _int_arg("offset", 0, minimum=0)
    entries, total = ImportHistoryService().list_entries(limit=limit, offset=offset)
    return (
        jsonify(
            {
                "items": [serialize_history(entry) for entry in entries],
                "total": total,
                "limit": limit,
                "offset": offset,
            }
        ),
        HTTPStatus.OK,
    )


@importer_blueprint.get("/history/<int:history_id>")
def importer_history_detail(history_id: int):
    guard = _guard(VIEW_PERMISSIONS)
    if guard:
        return guard

    entry = ImportHistoryService().get(history_id)
    if entry is None:
        return _json_error(f"Import history entry {history_id} not found.", HTTPStatus.NOT_FOUND)
    return jsonify(serialize_history(entry, include_failures=True)), HTTPStatus.OK

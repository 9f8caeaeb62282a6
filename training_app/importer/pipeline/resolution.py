"""
Operator resolution rounds for a preview session.

Merging follows an explicit last-write-wins policy (``merge_resolutions``):
decisions are applied in payload order and a later decision for a key replaces
the earlier one, whether it arrived in the same payload or a previous round.
Keys never mentioned again keep their decision.
"""

from __future__ import annotations

import time
from typing import Any, Iterable, Mapping, Sequence

from flask import current_app, has_app_context
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config.monitoring import ImporterMonitoring
from training_app.models import db
from training_app.models.importer import ResolutionAction

from ..errors import ImportPreviewError, InvalidInput
from .directory import EntityDirectory
from .keys import ConflictKey, parse_entity_type
from .rules import RuleEngine
from .session_store import PreviewSessionStore
from .types import PreviewSession, Resolution, ResolutionOutcome


def parse_action(value: Any) -> ResolutionAction:
    if isinstance(value, ResolutionAction):
        return value
    try:
        return ResolutionAction(str(value).strip().upper())
    except ValueError:
        allowed = ", ".join(member.value for member in ResolutionAction)
        raise InvalidInput(f"Unknown action {value!r}; expected one of {allowed}.") from None


def parse_target_id(value: Any) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise InvalidInput(f"targetEntityId must be an integer, got {value!r}.")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidInput(f"targetEntityId must be an integer, got {value!r}.") from None


def parse_resolution(payload: Mapping[str, Any]) -> Resolution:
    raw_value = payload.get("rawValue")
    if not isinstance(raw_value, str) or not raw_value.strip():
        raise InvalidInput("rawValue must be a non-empty string.")
    action = parse_action(payload.get("action"))
    target = parse_target_id(payload.get("targetEntityId"))
    return Resolution(
        entity_type=parse_entity_type(payload.get("entityType")),
        raw_value=raw_value,
        action=action,
        target_entity_id=target if action is ResolutionAction.MAP else None,
        memorize=bool(payload.get("memorize", False)),
    )


def parse_resolutions(payload: Any) -> list[Resolution]:
    """Validate an API resolution list, reporting every malformed entry at once."""

    if not isinstance(payload, (list, tuple)):
        raise InvalidInput("resolutions must be a list.")
    resolutions: list[Resolution] = []
    errors: list[str] = []
    for position, item in enumerate(payload):
        if isinstance(item, Resolution):
            resolutions.append(item)
            continue
        if not isinstance(item, Mapping):
            errors.append(f"resolutions[{position}]: expected an object.")
            continue
        try:
            resolutions.append(parse_resolution(item))
        except InvalidInput as exc:
            errors.append(f"resolutions[{position}]: {exc.message}")
    if errors:
        raise InvalidInput("Invalid resolutions payload.", errors=errors)
    return resolutions


def merge_resolutions(
    current: Mapping[ConflictKey, Resolution],
    incoming: Iterable[Resolution],
) -> dict[ConflictKey, Resolution]:
    """Last write wins, in payload order. ``current`` is left untouched."""

    merged = dict(current)
    for resolution in incoming:
        merged[resolution.key] = resolution
    return merged


class ResolutionCoordinator:
    """Merges operator decisions into preview sessions and memorizes rules."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        store: PreviewSessionStore | None = None,
        rules: RuleEngine | None = None,
        directory: EntityDirectory | None = None,
    ):
        self.session: Session = session or db.session
        self.directory = directory or EntityDirectory(self.session)
        self.store = store or PreviewSessionStore(self.session)
        self.rules = rules or RuleEngine(self.session, directory=self.directory)

    def submit(
        self,
        preview_id: str,
        resolutions: Sequence[Resolution | Mapping[str, Any]],
        *,
        user_id: int | None = None,
    ) -> ResolutionOutcome:
        started = time.perf_counter()
        incoming = parse_resolutions(resolutions)

        def apply(preview: PreviewSession) -> list[Resolution]:
            self._validate_against(preview, incoming)
            preview.resolutions = merge_resolutions(preview.resolutions, incoming)
            return self._memorizable(incoming)

        try:
            updated, memorizable = self.store.mutate(preview_id, apply)
        except ImportPreviewError as exc:
            ImporterMonitoring.record_resolve(
                duration_seconds=time.perf_counter() - started,
                status=exc.code,
                resolution_count=len(incoming),
            )
            raise

        memorized = self._memorize(preview_id, memorizable, user_id=user_id)
        remaining = tuple(updated.remaining_conflicts())

        ImporterMonitoring.record_resolve(
            duration_seconds=time.perf_counter() - started,
            status="success",
            resolution_count=len(incoming),
        )
        if has_app_context():
            current_app.logger.info(
                "Resolutions merged into preview %s: %s submitted, %s remaining, %s memorized",
                preview_id[:8],
                len(incoming),
                len(remaining),
                memorized,
                extra={
                    "import_preview_id": preview_id,
                    "import_resolutions_submitted": len(incoming),
                    "import_conflicts_remaining": len(remaining),
                    "import_rules_memorized": memorized,
                },
            )
        return ResolutionOutcome(preview_id=preview_id, remaining=remaining, rules_memorized=memorized)

    def _validate_against(self, preview: PreviewSession, incoming: Sequence[Resolution]) -> None:
        conflict_keys = {conflict.key for conflict in preview.conflicts}
        errors: list[str] = []
        for resolution in incoming:
            label = f"{resolution.entity_type.value} {resolution.raw_value!r}"
            if resolution.key not in conflict_keys:
                errors.append(f"{label} is not a conflict of preview {preview.preview_id}.")
                continue
            if resolution.action is ResolutionAction.MAP and resolution.target_entity_id is not None:
                target = self.directory.get_active_entity(resolution.entity_type, resolution.target_entity_id)
                if target is None:
                    errors.append(
                        f"{label}: targetEntityId {resolution.target_entity_id} is not an active "
                        f"{resolution.entity_type.value.lower()}."
                    )
        if errors:
            raise InvalidInput("Resolutions rejected; nothing was merged.", errors=errors)

    @staticmethod
    def _memorizable(incoming: Sequence[Resolution]) -> list[Resolution]:
        latest = merge_resolutions({}, incoming)
        return [resolution for resolution in latest.values() if resolution.memorize and resolution.is_complete]

    def _memorize(self, preview_id: str, resolutions: Sequence[Resolution], *, user_id: int | None) -> int:
        memorized = 0
        for resolution in resolutions:
            try:
                self.rules.upsert(
                    resolution.entity_type,
                    resolution.raw_value,
                    resolution.action,
                    resolution.target_entity_id,
                    user_id=user_id,
                )
            except (ImportPreviewError, SQLAlchemyError) as exc:
                self.session.rollback()
                if has_app_context():
                    current_app.logger.warning(
                        "Could not memorize rule for %s %r on preview %s: %s",
                        resolution.entity_type.value,
                        resolution.raw_value,
                        preview_id[:8],
                        exc,
                        extra={
                            "import_preview_id": preview_id,
                            "import_rule_entity_type": resolution.entity_type.value,
                        },
                    )
                continue
            memorized += 1
        return memorized

from __future__ import annotations

import pytest

from training_app.importer.errors import InvalidInput, SessionClosed, SessionNotFound
from training_app.importer.pipeline import (
    ConflictKey,
    PreviewBuilder,
    PreviewSessionStore,
    Resolution,
    ResolutionCoordinator,
    RuleEngine,
    merge_resolutions,
    parse_resolutions,
)
from training_app.models.importer import EntityType, ImportRule, PreviewSessionStatus, ResolutionAction


@pytest.fixture
def conflicted_preview(importer_app, sales_graph, make_entity, make_rows, row_data):
    make_entity(EntityType.ORGANIZATION, "Demos", active=False)
    rows = make_rows(
        row_data(departmentName="Sales", organizationName="Demos"),
        row_data(collaborator="C002", departmentName="Sales"),
    )
    return PreviewBuilder().build(rows).session


def _sales(action, target=None, *, memorize=False):
    payload = {"entityType": "DEPARTMENT", "rawValue": "Sales", "action": action, "memorize": memorize}
    if target is not None:
        payload["targetEntityId"] = target
    return payload


def test_composite_keys_compare_structurally():
    assert ConflictKey.of(EntityType.DEPARTMENT, " Sales ") == ConflictKey.of("department", "sales")
    assert ConflictKey.of(EntityType.DEPARTMENT, "a:b") != ConflictKey.of(EntityType.DEPARTMENT, "a_b")
    assert ConflictKey.of(EntityType.DEPARTMENT, "Sales") != ConflictKey.of(EntityType.CATEGORY, "Sales")
    key = ConflictKey.of(EntityType.ORGANIZATION, "Demos")
    assert ConflictKey.from_dict(key.as_dict()) == key


def test_merge_is_last_write_wins_in_payload_order():
    first = Resolution(EntityType.DEPARTMENT, "Sales", ResolutionAction.IGNORE)
    second = Resolution(EntityType.DEPARTMENT, "sales", ResolutionAction.REACTIVATE)
    other = Resolution(EntityType.CATEGORY, "Excel", ResolutionAction.IGNORE)
    current = {other.key: other}

    merged = merge_resolutions(current, [first, second])

    assert merged[first.key] is second
    assert merged[other.key] is other
    assert current == {other.key: other}


def test_parse_resolutions_reports_every_bad_entry():
    with pytest.raises(InvalidInput) as excinfo:
        parse_resolutions(
            [
                {"entityType": "DEPARTMENT", "rawValue": "Sales", "action": "DELETE"},
                "not-an-object",
                {"entityType": "PLANET", "rawValue": "Mars", "action": "IGNORE"},
                {"entityType": "DEPARTMENT", "rawValue": "Sales", "action": "MAP", "targetEntityId": "abc"},
            ]
        )
    assert len(excinfo.value.errors) == 4

    with pytest.raises(InvalidInput):
        parse_resolutions({"entityType": "DEPARTMENT"})


def test_partial_resolution_reports_remaining_conflicts(conflicted_preview):
    outcome = ResolutionCoordinator().submit(conflicted_preview.preview_id, [_sales("IGNORE")])

    assert outcome.can_import is False
    assert [conflict.raw_value for conflict in outcome.remaining] == ["Demos"]
    payload = outcome.to_dict()
    assert payload["remainingConflicts"] == 1
    assert payload["remainingKeys"] == [{"entityType": "ORGANIZATION", "rawValue": "Demos"}]


def test_later_round_overrides_earlier_decision(conflicted_preview, sales_graph):
    coordinator = ResolutionCoordinator()
    preview_id = conflicted_preview.preview_id
    coordinator.submit(preview_id, [_sales("IGNORE")])
    coordinator.submit(preview_id, [_sales("MAP", sales_graph["sales_team"].id)])

    session = PreviewSessionStore().get(preview_id)
    decision = session.resolutions[ConflictKey.of(EntityType.DEPARTMENT, "Sales")]
    assert decision.action is ResolutionAction.MAP
    assert decision.target_entity_id == sales_graph["sales_team"].id


def test_submitting_same_resolutions_twice_is_idempotent(conflicted_preview):
    coordinator = ResolutionCoordinator()
    payload = [_sales("REACTIVATE"), {"entityType": "ORGANIZATION", "rawValue": "Demos", "action": "IGNORE"}]

    first = coordinator.submit(conflicted_preview.preview_id, payload)
    snapshot = PreviewSessionStore().get(conflicted_preview.preview_id).resolutions
    second = coordinator.submit(conflicted_preview.preview_id, payload)

    assert first.to_dict() == second.to_dict()
    assert second.can_import is True
    assert PreviewSessionStore().get(conflicted_preview.preview_id).resolutions == snapshot


def test_map_without_target_stays_unresolved(conflicted_preview):
    outcome = ResolutionCoordinator().submit(conflicted_preview.preview_id, [_sales("MAP")])

    assert "Sales" in [conflict.raw_value for conflict in outcome.remaining]


def test_unknown_key_rejects_the_whole_batch(conflicted_preview):
    with pytest.raises(InvalidInput) as excinfo:
        ResolutionCoordinator().submit(
            conflicted_preview.preview_id,
            [_sales("IGNORE"), {"entityType": "CATEGORY", "rawValue": "Excel", "action": "IGNORE"}],
        )

    assert "CATEGORY 'Excel'" in excinfo.value.errors[0]
    assert PreviewSessionStore().get(conflicted_preview.preview_id).resolutions == {}


def test_map_to_inactive_target_is_rejected(conflicted_preview, sales_graph):
    with pytest.raises(InvalidInput):
        ResolutionCoordinator().submit(
            conflicted_preview.preview_id,
            [_sales("MAP", sales_graph["deleted_sales"].id)],
        )


def test_memorize_persists_rule_for_future_previews(conflicted_preview, sales_graph, manager_user):
    outcome = ResolutionCoordinator().submit(
        conflicted_preview.preview_id,
        [_sales("MAP", sales_graph["sales_team"].id, memorize=True)],
        user_id=manager_user.id,
    )

    assert outcome.rules_memorized == 1
    rule = RuleEngine().lookup(EntityType.DEPARTMENT, "SALES")
    assert rule is not None
    assert rule.action is ResolutionAction.MAP
    assert rule.target_entity_id == sales_graph["sales_team"].id
    assert rule.created_by_user_id == manager_user.id


def test_non_memorized_decisions_stay_session_local(conflicted_preview):
    ResolutionCoordinator().submit(conflicted_preview.preview_id, [_sales("IGNORE")])

    assert ImportRule.query.count() == 0


def test_incomplete_map_is_not_memorized(conflicted_preview):
    outcome = ResolutionCoordinator().submit(conflicted_preview.preview_id, [_sales("MAP", memorize=True)])

    assert outcome.rules_memorized == 0
    assert ImportRule.query.count() == 0


def test_resolving_closed_or_unknown_session_fails(conflicted_preview):
    coordinator = ResolutionCoordinator()
    with pytest.raises(SessionNotFound):
        coordinator.submit("missing", [_sales("IGNORE")])

    PreviewSessionStore().close(conflicted_preview.preview_id, PreviewSessionStatus.CANCELLED)
    with pytest.raises(SessionClosed):
        coordinator.submit(conflicted_preview.preview_id, [_sales("IGNORE")])

from __future__ import annotations

from datetime import date

import pytest

from training_app.importer.errors import InvalidInput
from training_app.importer.pipeline import ConflictType, PreviewBuilder, RuleEngine
from training_app.models import TrainingSession, db
from training_app.models.importer import EntityType, ImportPreviewSession, PreviewSessionStatus, ResolutionAction


def test_preview_without_conflicts_can_import_directly(importer_app, sales_graph, make_rows, row_data):
    rows = make_rows(
        row_data(departmentName="Finance", organizationName="Cegos", categoryName="Bureautique"),
        row_data(collaborator="C002", departmentName="finance"),
    )

    result = PreviewBuilder().build(rows, file_name="olu.csv")
    payload = result.to_dict()

    assert payload["conflicts"] == []
    assert payload["canImportDirectly"] is True
    assert payload["rulesApplied"] == 0
    assert payload["stats"]["totalRows"] == 2
    assert payload["stats"]["sessionsToCreate"] == 2
    assert payload["stats"]["newOrganizations"] == ["Cegos"]
    assert payload["stats"]["newCategories"] == ["Bureautique"]
    assert payload["stats"]["newDepartments"] == []
    assert payload["stats"]["formationsNew"] == 1
    assert payload["fileName"] == "olu.csv"


def test_soft_deleted_value_grouped_into_single_conflict(importer_app, sales_graph, make_rows, row_data):
    rows = make_rows(
        row_data(departmentName="Sales"),
        row_data(collaborator="C002", departmentName="  sales "),
        row_data(start=date(2026, 2, 9), departmentName="SALES"),
    )

    result = PreviewBuilder().build(rows)
    conflicts = result.session.conflicts

    assert len(conflicts) == 1
    conflict = conflicts[0]
    assert conflict.type is ConflictType.ENTITY_DELETED
    assert conflict.entity_type is EntityType.DEPARTMENT
    assert conflict.raw_value == "Sales"
    assert conflict.occurrence_count == 3
    assert conflict.row_indices == (1, 2, 3)
    assert conflict.existing.id == sales_graph["deleted_sales"].id
    assert result.session.can_import_directly is False


def test_conflict_suggestions_rank_similar_active_entities(importer_app, sales_graph, make_rows, row_data):
    result = PreviewBuilder().build(make_rows(row_data(departmentName="Sales")))

    suggestions = result.session.conflicts[0].suggestions
    assert [suggestion.name for suggestion in suggestions] == ["Sales Team"]
    assert suggestions[0].id == sales_graph["sales_team"].id
    assert suggestions[0].score >= 70


def test_suggestions_can_be_disabled(importer_app, sales_graph, make_rows, row_data):
    builder = PreviewBuilder(suggestion_limit=0)
    result = builder.build(make_rows(row_data(departmentName="Sales")))

    assert result.session.conflicts[0].suggestions == ()


def test_active_entity_wins_over_soft_deleted_duplicate(
    importer_app, make_entity, make_collaborator, make_rows, row_data
):
    make_entity(EntityType.ORGANIZATION, "Cegos", active=False)
    make_entity(EntityType.ORGANIZATION, "Cegos")
    make_collaborator("C001")

    result = PreviewBuilder().build(make_rows(row_data(organizationName="cegos")))

    assert result.session.conflicts == ()
    assert result.session.stats.new_organizations == ()


def test_memorized_rule_is_applied_instead_of_conflict(importer_app, sales_graph, make_rows, row_data):
    RuleEngine().upsert(EntityType.DEPARTMENT, "sales", ResolutionAction.MAP, sales_graph["sales_team"].id)

    result = PreviewBuilder().build(
        make_rows(row_data(departmentName="Sales"), row_data(collaborator="C002", departmentName="Sales"))
    )

    assert result.session.conflicts == ()
    assert result.session.rules_applied == 1
    applied = result.session.applied_rules[0]
    assert applied.action is ResolutionAction.MAP
    assert applied.target_entity_id == sales_graph["sales_team"].id
    assert applied.row_indices == (1, 2)
    assert result.to_dict()["canImportDirectly"] is True


def test_ignore_rule_excludes_rows_from_create_count(importer_app, sales_graph, make_rows, row_data):
    RuleEngine().upsert(EntityType.DEPARTMENT, "Sales", ResolutionAction.IGNORE)

    result = PreviewBuilder().build(
        make_rows(row_data(departmentName="Sales"), row_data(collaborator="C002", departmentName="Finance"))
    )

    assert result.session.rules_applied == 1
    assert result.session.stats.sessions_to_create == 1


def test_map_rule_with_inactive_target_surfaces_conflict(importer_app, sales_graph, make_rows, row_data):
    engine = RuleEngine()
    engine.upsert(EntityType.DEPARTMENT, "Sales", ResolutionAction.MAP, sales_graph["sales_team"].id)
    sales_graph["sales_team"].deactivate()
    db.session.commit()

    result = PreviewBuilder().build(make_rows(row_data(departmentName="Sales")))

    assert result.session.rules_applied == 0
    assert [conflict.raw_value for conflict in result.session.conflicts] == ["Sales"]


def test_unknown_collaborators_are_reported_and_skipped(importer_app, sales_graph, make_rows, row_data):
    payloads = [row_data(collaborator="X123", start=date(2026, 1, day)) for day in range(1, 6)]
    payloads.append(row_data(collaborator="C001"))

    result = PreviewBuilder().build(make_rows(*payloads))
    stats = result.session.stats

    assert stats.sessions_to_create == 1
    assert stats.sessions_skipped_total == 5
    assert stats.collaborators_found == 1
    assert [item.external_id for item in stats.collaborators_not_found] == ["X123"]
    assert stats.collaborators_not_found[0].rows == (1, 2, 3, 4, 5)

    collaborator_conflicts = result.session.collaborator_conflicts
    assert len(collaborator_conflicts) == 1
    assert collaborator_conflicts[0].type is ConflictType.COLLABORATOR_NOT_FOUND
    assert collaborator_conflicts[0].occurrence_count == 5
    # unresolvable conflicts never block the import
    assert result.session.can_import_directly is True


def test_inactive_collaborators_are_informational(importer_app, make_collaborator, make_rows, row_data):
    make_collaborator("C009", first_name="Lina", last_name="Roy", active=False)

    rows = make_rows(row_data(collaborator="C009"), row_data(collaborator="C009", formation="B"))
    result = PreviewBuilder().build(rows)

    inactive = result.session.inactive_collaborators
    assert len(inactive) == 1
    assert inactive[0].external_id == "C009"
    assert inactive[0].full_name == "Lina Roy"
    assert inactive[0].sessions_affected == 2
    assert result.session.stats.sessions_to_create == 2


def test_existing_records_count_as_updates(importer_app, make_collaborator, make_formation, make_rows, row_data):
    collaborator = make_collaborator("C001")
    formation = make_formation("EXCEL-01")
    db.session.add(
        TrainingSession(collaborator_id=collaborator.id, formation_id=formation.id, start_date=date(2026, 2, 2))
    )
    db.session.commit()

    result = PreviewBuilder().build(
        make_rows(row_data(), row_data(start=date(2026, 3, 2)), row_data(start=date(2026, 3, 2)))
    )

    assert result.session.stats.sessions_to_update == 2
    assert result.session.stats.sessions_to_create == 1
    assert result.session.stats.formations_existing == 1


def test_source_id_row_then_natural_duplicate_counts_one_create(importer_app, make_collaborator, make_rows, row_data):
    make_collaborator("C001")

    result = PreviewBuilder().build(make_rows(row_data(externalSourceId="OLU-9"), row_data()))

    assert result.session.stats.sessions_to_create == 1
    assert result.session.stats.sessions_to_update == 1


def test_accented_soft_deleted_name_matches_case_insensitively(
    importer_app, make_entity, make_collaborator, make_rows, row_data
):
    economie = make_entity(EntityType.DEPARTMENT, "Économie", active=False)
    make_collaborator("C001")
    make_collaborator("C002")

    result = PreviewBuilder().build(
        make_rows(row_data(departmentName="économie"), row_data(collaborator="C002", departmentName=" ÉCONOMIE "))
    )

    assert economie.natural_key == "économie"
    [conflict] = result.session.conflicts
    assert conflict.type is ConflictType.ENTITY_DELETED
    assert conflict.existing.id == economie.id
    assert conflict.occurrence_count == 2
    assert result.session.stats.new_departments == ()


def test_preview_is_persisted_as_open_session(importer_app, sales_graph, make_rows, row_data, manager_user):
    result = PreviewBuilder().build(make_rows(row_data()), file_name="olu.json", user_id=manager_user.id)

    stored = db.session.get(ImportPreviewSession, result.session.preview_id)
    assert stored is not None
    assert stored.status is PreviewSessionStatus.OPEN
    assert stored.row_count == 1
    assert stored.created_by_user_id == manager_user.id
    assert len(stored.rows_json) == 1


def test_empty_or_duplicate_row_batches_are_rejected(importer_app, make_rows, row_data):
    with pytest.raises(InvalidInput):
        PreviewBuilder().build([])

    rows = make_rows(row_data())
    with pytest.raises(InvalidInput):
        PreviewBuilder().build(rows + rows)

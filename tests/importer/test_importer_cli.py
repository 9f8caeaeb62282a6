from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from training_app.importer.pipeline import PreviewBuilder, PreviewSessionStore, RuleEngine
from training_app.models.importer import EntityType, ImportRule, ResolutionAction


@pytest.fixture
def cli(importer_app):
    return importer_app.test_cli_runner()


def test_importer_group_lists_row_sources(cli):
    result = cli.invoke(args=["importer"])

    assert result.exit_code == 0
    assert result.output.splitlines() == ["Enabled importer row sources:", "  - json", "  - csv"]


def test_importer_group_refuses_when_disabled(cli, importer_app):
    importer_app.config["IMPORTER_ENABLED"] = False

    result = cli.invoke(args=["importer", "rules"])

    assert result.exit_code == 1
    assert "Importer is disabled" in result.output


def test_rules_command_formats_each_rule(cli, sales_graph):
    engine = RuleEngine()
    mapped = engine.upsert(EntityType.DEPARTMENT, "Sales", ResolutionAction.MAP, sales_graph["sales_team"].id)
    retired = engine.upsert(EntityType.ORGANIZATION, "Demos", ResolutionAction.IGNORE)
    engine.deactivate(retired.id)

    active_only = cli.invoke(args=["importer", "rules"])
    assert active_only.exit_code == 0
    assert active_only.output.strip() == (
        f"#{mapped.id}  DEPARTMENT   'Sales' -> MAP {sales_graph['sales_team'].id} (Sales Team)"
    )

    everything = cli.invoke(args=["importer", "rules", "--all"])
    assert f"#{retired.id}  ORGANIZATION 'Demos' -> IGNORE  [inactive]" in everything.output

    filtered = cli.invoke(args=["importer", "rules", "--entity-type", "category"])
    assert filtered.output.strip() == "No import rules found."


def test_purge_rule(cli):
    rule = RuleEngine().upsert(EntityType.CATEGORY, "Excel", ResolutionAction.IGNORE)

    result = cli.invoke(args=["importer", "purge-rule", str(rule.id), "--yes"])
    assert result.exit_code == 0
    assert result.output.strip() == f"Import rule {rule.id} deleted."
    assert ImportRule.query.count() == 0

    missing = cli.invoke(args=["importer", "purge-rule", "999", "--yes"])
    assert missing.exit_code == 1
    assert "Import rule 999 not found." in missing.output


def test_purge_rule_prompts_without_yes(cli):
    rule = RuleEngine().upsert(EntityType.CATEGORY, "Excel", ResolutionAction.IGNORE)

    result = cli.invoke(args=["importer", "purge-rule", str(rule.id)], input="n\n")

    assert result.exit_code == 1
    assert ImportRule.query.count() == 1


def test_list_previews(cli, sales_graph, make_rows, row_data):
    empty = cli.invoke(args=["importer", "list-previews"])
    assert empty.output.strip() == "No open preview sessions."

    preview = PreviewBuilder().build(make_rows(row_data(departmentName="Sales")), file_name="olu.csv").session

    table = cli.invoke(args=["importer", "list-previews"])
    assert preview.preview_id[:12] in table.output
    assert "rows=1  conflicts=1  remaining=1" in table.output

    payload = json.loads(cli.invoke(args=["importer", "list-previews", "--json"]).output)
    assert payload == [
        {
            "previewId": preview.preview_id,
            "fileName": "olu.csv",
            "rows": 1,
            "conflicts": 1,
            "remainingConflicts": 1,
            "expiresAt": preview.expires_at.isoformat(),
        }
    ]


def test_sweep_previews_expires_overdue_sessions(cli, sales_graph, make_rows, row_data, step_clock):
    step_clock.now = datetime.now(timezone.utc) - timedelta(hours=2)
    store = PreviewSessionStore(clock=step_clock)
    PreviewBuilder(store=store).build(make_rows(row_data()))
    PreviewBuilder().build(make_rows(row_data(collaborator="C002")))

    result = cli.invoke(args=["importer", "sweep-previews"])

    assert result.exit_code == 0
    assert result.output.strip() == "Expired 1 preview session(s); evicted 0 tombstone(s)."
    assert len(PreviewSessionStore().list_open()) == 1

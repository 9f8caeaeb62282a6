from __future__ import annotations

import io

import pytest

from training_app.importer.pipeline import PreviewBuilder
from training_app.models import TrainingSession, db
from training_app.models.importer import ImportHistory

pytestmark = pytest.mark.api

CSV_EXPORT = (
    "matricule,code_formation,intitule,departement,date_debut,duree_heures,commentaire\n"
    "C001,EXCEL-01,Excel initiation,Sales,2026-02-02,7,first wave\n"
    "C002,EXCEL-01,Excel initiation,sales,2026-02-02,7,\n"
    ",,,,,,\n"
    "C002,WORD-02,Word,Finance,2026-02-09,3.5,\n"
)


def _post_rows(client, *rows, file_name="olu.json"):
    return client.post("/import/preview", json={"rows": list(rows), "fileName": file_name})


def test_health_is_public_and_lists_row_sources(anonymous_client):
    response = anonymous_client.get("/import/health")

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["status"] == "ok"
    assert payload["enabled"] is True
    assert [source["name"] for source in payload["rowSources"]] == ["json", "csv"]
    assert payload["openPreviews"] == 0


def test_worker_health_reports_disabled_worker(manager_client):
    response = manager_client.get("/import/worker_health")

    assert response.status_code == 200
    assert response.get_json()["status"] == "disabled"


def test_preview_requires_authentication(anonymous_client, row_data):
    response = _post_rows(anonymous_client, row_data())

    assert response.status_code == 401
    assert response.get_json() == {"error": "Authentication required."}


def test_viewer_cannot_generate_previews(viewer_client, row_data):
    response = _post_rows(viewer_client, row_data())

    assert response.status_code == 403


def test_endpoints_are_hidden_when_importer_disabled(app, client, row_data):
    assert app.config["IMPORTER_ENABLED"] is False

    response = client.post("/import/preview", json={"rows": [row_data()]})

    assert response.status_code == 404
    assert response.get_json() == {"error": "Importer is disabled."}


def test_json_preview_reports_grouped_conflict(manager_client, sales_graph, row_data):
    response = _post_rows(
        manager_client,
        row_data(departmentName="Sales"),
        row_data(collaborator="C002", departmentName="SALES"),
        row_data(collaborator="X123"),
    )

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["fileName"] == "olu.json"
    assert payload["canImportDirectly"] is False
    [conflict] = payload["conflicts"]
    assert conflict["type"] == "ENTITY_DELETED"
    assert conflict["entityType"] == "DEPARTMENT"
    assert conflict["rawValue"] == "Sales"
    assert conflict["occurrenceCount"] == 2
    assert conflict["existingEntityId"] == sales_graph["deleted_sales"].id
    assert conflict["suggestions"][0]["name"] == "Sales Team"
    assert payload["stats"]["collaboratorsNotFound"] == [{"externalId": "X123", "rows": [3]}]
    assert payload["sessionsSkippedTotal"] == 1
    assert payload["collaboratorConflicts"][0]["type"] == "COLLABORATOR_NOT_FOUND"
    assert payload["expiresAt"]


def test_malformed_rows_are_rejected_with_every_error(manager_client, row_data):
    response = _post_rows(
        manager_client,
        {"formationCode": "EXCEL-01", "startDate": "2026-02-02"},
        {**row_data(), "startDate": "02/02/2026"},
        "not-an-object",
    )

    assert response.status_code == 400
    payload = response.get_json()
    assert payload["code"] == "invalid_input"
    assert len(payload["errors"]) == 3
    assert payload["errors"][0].startswith("Row 1:")


def test_preview_body_must_carry_rows(manager_client):
    response = manager_client.post("/import/preview", json={"fileName": "olu.json"})

    assert response.status_code == 400
    assert response.get_json()["error"] == "rows must be a list of import rows."


def test_csv_upload_uses_aliases_and_skips_blank_lines(manager_client, sales_graph):
    response = manager_client.post(
        "/import/preview",
        data={"file": (io.BytesIO(CSV_EXPORT.encode("utf-8")), "olu_fevrier.csv")},
        content_type="multipart/form-data",
    )

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["fileName"] == "olu_fevrier.csv"
    assert payload["stats"]["totalRows"] == 3
    assert payload["conflicts"][0]["rows"] == [1, 2]
    assert payload["stats"]["formationsNew"] == 2


def test_csv_upload_missing_required_column(manager_client):
    content = b"matricule,date_debut\nC001,2026-02-02\n"

    response = manager_client.post(
        "/import/preview",
        data={"file": (io.BytesIO(content), "olu.csv")},
        content_type="multipart/form-data",
    )

    assert response.status_code == 400
    assert "formationCode" in response.get_json()["error"]


def test_csv_upload_rejected_when_source_disabled(importer_app, manager_client):
    importer_app.config["IMPORTER_ROW_SOURCES"] = ("json",)

    response = manager_client.post(
        "/import/preview",
        data={"file": (io.BytesIO(CSV_EXPORT.encode("utf-8")), "olu.csv")},
        content_type="multipart/form-data",
    )

    assert response.status_code == 400
    assert response.get_json()["error"] == "The csv row source is not enabled."


def test_resolve_then_confirm_round_trip(manager_client, manager_user, sales_graph, row_data):
    preview = _post_rows(
        manager_client,
        row_data(departmentName="Sales"),
        row_data(collaborator="C002", departmentName="Sales"),
    ).get_json()
    preview_id = preview["previewId"]

    blocked = manager_client.post("/import/preview/confirm", json={"previewId": preview_id})
    assert blocked.status_code == 409
    assert blocked.get_json()["code"] == "conflicts_unresolved"
    assert blocked.get_json()["remainingKeys"] == [{"entityType": "DEPARTMENT", "rawValue": "Sales"}]

    resolved = manager_client.post(
        "/import/preview/resolve",
        json={
            "previewId": preview_id,
            "resolutions": [
                {
                    "entityType": "DEPARTMENT",
                    "rawValue": "Sales",
                    "action": "MAP",
                    "targetEntityId": sales_graph["sales_team"].id,
                }
            ],
        },
    )
    assert resolved.status_code == 200
    assert resolved.get_json()["canImport"] is True

    detail = manager_client.get(f"/import/preview/{preview_id}").get_json()
    assert detail["status"] == "OPEN"
    assert detail["remainingConflicts"] == 0
    assert detail["resolutions"][0]["action"] == "MAP"

    confirmed = manager_client.post("/import/preview/confirm", json={"previewId": preview_id})
    assert confirmed.status_code == 200
    result = confirmed.get_json()
    assert result["success"] is True
    assert result["stats"]["created"] == 2
    assert result["historyId"] is not None
    assert db.session.get(ImportHistory, result["historyId"]).triggered_by_user_id == manager_user.id
    assert {record.department_id for record in TrainingSession.query.all()} == {sales_graph["sales_team"].id}

    again = manager_client.post("/import/preview/confirm", json={"previewId": preview_id})
    assert again.status_code == 409
    assert again.get_json()["code"] == "session_closed"
    assert again.get_json()["status"] == "CONFIRMED"
    assert TrainingSession.query.count() == 2


def test_resolve_rejects_bad_payloads(manager_client, sales_graph, row_data):
    preview_id = _post_rows(manager_client, row_data(departmentName="Sales")).get_json()["previewId"]

    missing_id = manager_client.post("/import/preview/resolve", json={"resolutions": []})
    assert missing_id.status_code == 400
    assert missing_id.get_json()["error"] == "previewId is required."

    bad_action = manager_client.post(
        "/import/preview/resolve",
        json={
            "previewId": preview_id,
            "resolutions": [{"entityType": "DEPARTMENT", "rawValue": "Sales", "action": "DROP"}],
        },
    )
    assert bad_action.status_code == 400
    assert bad_action.get_json()["code"] == "invalid_input"

    unknown = manager_client.post(
        "/import/preview/resolve",
        json={"previewId": "nope", "resolutions": []},
    )
    assert unknown.status_code == 404
    assert unknown.get_json()["code"] == "session_not_found"


def test_cancel_closes_the_session(manager_client, sales_graph, row_data):
    preview_id = _post_rows(manager_client, row_data()).get_json()["previewId"]

    response = manager_client.delete(f"/import/preview/{preview_id}")
    assert response.status_code == 200
    assert response.get_json() == {"success": True, "previewId": preview_id, "status": "CANCELLED"}

    detail = manager_client.get(f"/import/preview/{preview_id}").get_json()
    assert detail["status"] == "CANCELLED"
    assert detail["canImport"] is False
    assert detail["closedAt"] is not None

    assert manager_client.delete(f"/import/preview/{preview_id}").status_code == 409
    assert manager_client.delete("/import/preview/unknown").status_code == 404


def test_viewer_can_read_preview_detail(importer_app, viewer_user, sales_graph, make_rows, row_data):
    preview_id = PreviewBuilder().build(make_rows(row_data())).session.preview_id
    client = importer_app.test_client(user=viewer_user)

    response = client.get(f"/import/preview/{preview_id}")

    assert response.status_code == 200
    assert response.get_json()["canImport"] is True
    assert client.delete(f"/import/preview/{preview_id}").status_code == 403

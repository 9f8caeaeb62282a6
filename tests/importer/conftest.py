from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest
from flask_login import FlaskLoginClient

from training_app.importer import init_importer
from training_app.importer.contracts import build_import_row
from training_app.models import Category, Collaborator, Department, Formation, TrainingOrganization, db
from training_app.models.importer import EntityType

ENTITY_MODELS = {
    EntityType.DEPARTMENT: Department,
    EntityType.ORGANIZATION: TrainingOrganization,
    EntityType.CATEGORY: Category,
}


class StepClock:
    """Deterministic UTC clock for preview session expiry tests."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def importer_app(app):
    app.config.update(
        {
            "IMPORTER_ENABLED": True,
            "IMPORTER_ROW_SOURCES": ("json", "csv"),
            "IMPORT_PREVIEW_TTL_MINUTES": 30,
            "IMPORT_CONFIRM_CHECK_EVERY": 50,
        }
    )
    init_importer(app)
    app.test_client_class = FlaskLoginClient
    yield app
    app.test_client_class = None


@pytest.fixture
def manager_client(importer_app, manager_user):
    return importer_app.test_client(user=manager_user)


@pytest.fixture
def viewer_client(importer_app, viewer_user):
    return importer_app.test_client(user=viewer_user)


@pytest.fixture
def anonymous_client(importer_app):
    return importer_app.test_client()


@pytest.fixture
def make_entity(app):
    """Create a reference entity, optionally soft-deleted."""

    def _factory(entity_type: EntityType, name: str, *, active: bool = True):
        entity = ENTITY_MODELS[entity_type](name=name)
        if not active:
            entity.deactivate()
        db.session.add(entity)
        db.session.commit()
        return entity

    return _factory


@pytest.fixture
def make_collaborator(app):
    def _factory(external_id: str, *, first_name: str = "Ada", last_name: str = "Martin", active=True, department=None):
        collaborator = Collaborator(
            external_id=external_id,
            first_name=first_name,
            last_name=last_name,
            department_id=department.id if department is not None else None,
        )
        if not active:
            collaborator.deactivate()
        db.session.add(collaborator)
        db.session.commit()
        return collaborator

    return _factory


@pytest.fixture
def make_formation(app):
    def _factory(code: str, *, title: str | None = None, category=None):
        formation = Formation(code=code, title=title or code, category_id=category.id if category else None)
        db.session.add(formation)
        db.session.commit()
        return formation

    return _factory


def row_payload(
    *,
    collaborator: str = "C001",
    formation: str = "EXCEL-01",
    start: date = date(2026, 2, 2),
    **fields,
) -> dict:
    """JSON row in the shape the preview endpoint accepts."""

    payload = {
        "externalCollaboratorId": collaborator,
        "formationCode": formation,
        "startDate": start.isoformat(),
    }
    payload.update(fields)
    return payload


@pytest.fixture
def row_data():
    return row_payload


@pytest.fixture
def make_rows():
    """Build contract-checked ImportRow objects, one per payload, indexed from 1."""

    def _factory(*payloads: dict):
        return [build_import_row(index, payload) for index, payload in enumerate(payloads, start=1)]

    return _factory


@pytest.fixture
def sales_graph(make_entity, make_collaborator):
    """Soft-deleted "Sales" department, an active look-alike and two collaborators."""

    deleted_sales = make_entity(EntityType.DEPARTMENT, "Sales", active=False)
    sales_team = make_entity(EntityType.DEPARTMENT, "Sales Team")
    finance = make_entity(EntityType.DEPARTMENT, "Finance")
    first = make_collaborator("C001", department=finance)
    second = make_collaborator("C002", first_name="Noor", last_name="Haddad")
    return {
        "deleted_sales": deleted_sales,
        "sales_team": sales_team,
        "finance": finance,
        "collaborators": (first, second),
    }


@pytest.fixture
def step_clock():
    return StepClock()

from __future__ import annotations

from training_app.importer.pipeline import EntityDirectory
from training_app.models import Department, db
from training_app.models.importer import EntityType


def test_find_active_by_natural_key_skips_soft_deleted(importer_app, make_entity):
    make_entity(EntityType.DEPARTMENT, "Économie", active=False)
    directory = EntityDirectory()

    assert directory.find_active_by_natural_key(EntityType.DEPARTMENT, " ÉCONOMIE ") is None
    assert directory.find_any_by_natural_key(EntityType.DEPARTMENT, "économie").is_active is False

    active = make_entity(EntityType.DEPARTMENT, "ÉCONOMIE")

    assert directory.find_active_by_natural_key(EntityType.DEPARTMENT, "économie").id == active.id
    assert directory.find_any_by_natural_key(EntityType.DEPARTMENT, "économie").id == active.id


def test_natural_key_follows_renames(importer_app, make_entity):
    department = make_entity(EntityType.DEPARTMENT, "Île-de-France")
    assert department.natural_key == "île-de-france"

    department.name = "  Hauts-de-France "
    db.session.commit()

    stored = db.session.get(Department, department.id)
    assert stored.natural_key == "hauts-de-france"
    directory = EntityDirectory()
    assert directory.find_active_by_natural_key(EntityType.DEPARTMENT, "HAUTS-DE-FRANCE").id == department.id
    assert directory.find_active_by_natural_key(EntityType.DEPARTMENT, "île-de-france") is None


def test_match_natural_keys_groups_accented_names(importer_app, make_entity):
    deleted = make_entity(EntityType.CATEGORY, "Sécurité", active=False)
    active = make_entity(EntityType.CATEGORY, "Qualité")

    matches = EntityDirectory().match_natural_keys(EntityType.CATEGORY, ["sécurité", "qualité", "absente"])

    assert set(matches) == {"sécurité", "qualité"}
    assert matches["sécurité"].active is None
    assert matches["sécurité"].inactive.id == deleted.id
    assert matches["qualité"].active.id == active.id

import pytest
from flask import Flask

import training_app.importer as importer_package
from training_app.importer import IMPORTER_EXTENSION_KEY, init_importer


def build_app(enabled=False, row_sources=()):
    app = Flask(__name__)
    app.config.update(
        SECRET_KEY="test-secret",
        TESTING=True,
        IMPORTER_ENABLED=enabled,
        IMPORTER_ROW_SOURCES=tuple(row_sources),
        CELERY_BROKER_URL="memory://",
        CELERY_RESULT_BACKEND="cache+memory://",
    )

    init_importer(app)
    return app


def test_importer_disabled_registers_stub_cli(monkeypatch):
    called = {"flag": False}

    def record_call(*args, **kwargs):
        called["flag"] = True
        return ()

    monkeypatch.setattr(importer_package, "resolve_row_sources", record_call)

    app = build_app(enabled=False)

    assert called["flag"] is False, "resolve_row_sources should not run when importer disabled"
    assert "importer" not in app.blueprints
    assert app.extensions[IMPORTER_EXTENSION_KEY]["celery_app"] is None

    runner = app.test_cli_runner()
    result = runner.invoke(args=["importer"])
    assert result.exit_code != 0
    assert "Importer commands are unavailable" in result.output


def test_importer_enabled_registers_blueprint_and_cli():
    app = build_app(enabled=True, row_sources=("json", "csv"))

    assert "importer" in app.blueprints
    assert "importer.importer_healthcheck" in app.view_functions
    assert "importer.importer_preview_confirm" in app.view_functions

    runner = app.test_cli_runner()
    result = runner.invoke(args=["importer"])
    assert result.exit_code == 0
    assert "  - csv" in result.output

    importer_state = app.extensions[IMPORTER_EXTENSION_KEY]
    assert importer_state["enabled"] is True
    assert [source.name for source in importer_state["active_row_sources"]] == ["json", "csv"]
    assert importer_state["celery_app"] is not None


def test_importer_unknown_row_source_raises():
    with pytest.raises(ValueError) as excinfo:
        build_app(enabled=True, row_sources=("xlsx",))

    assert "xlsx" in str(excinfo.value)

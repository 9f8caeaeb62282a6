"""
Importer feature package.

Mounts the import preview blueprint and CLI when ``IMPORTER_ENABLED`` is set,
validating the configured row sources at startup, and stays inert otherwise.
"""

from __future__ import annotations

from typing import Any, Iterable, Tuple

from flask import Flask

from training_app.utils.importer import get_importer_row_sources, is_importer_enabled

from .celery_app import ensure_celery_app, get_celery_app
from .cli import get_disabled_importer_group, importer_cli
from .registry import RowSourceDescriptor, get_row_source_registry, resolve_row_sources
from .views import importer_blueprint

IMPORTER_EXTENSION_KEY = "importer"

__all__ = [
    "init_importer",
    "IMPORTER_EXTENSION_KEY",
    "get_celery_app",
]


def _ensure_extension_state(app: Flask) -> dict[str, Any]:
    return app.extensions.setdefault(
        IMPORTER_EXTENSION_KEY,
        {
            "enabled": False,
            "configured_row_sources": (),
            "active_row_sources": (),
            "worker_enabled": False,
            "celery_app": None,
        },
    )


def _set_cli(app: Flask, enabled: bool) -> None:
    """Register the appropriate CLI group based on flag state."""
    # Avoid duplicate registrations when running tests
    command_name = importer_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)

    if enabled:
        app.cli.add_command(importer_cli)
    else:
        app.cli.add_command(get_disabled_importer_group())


def init_importer(app: Flask) -> None:
    """
    Conditionally mount importer blueprint and CLI based on configuration.

    Records importer state inside ``app.extensions['importer']`` for reuse by
    the health endpoint, CLI and worker.
    """
    enabled = is_importer_enabled(app)
    configured_sources: Tuple[str, ...] = get_importer_row_sources(app)

    state = _ensure_extension_state(app)
    worker_enabled = bool(app.config.get("IMPORTER_WORKER_ENABLED", False))
    state.update(
        {
            "enabled": enabled,
            "configured_row_sources": configured_sources,
            "worker_enabled": worker_enabled,
        }
    )

    if not enabled:
        state["active_row_sources"] = ()
        _set_cli(app, enabled=False)
        app.logger.info("Importer disabled via IMPORTER_ENABLED flag; skipping registration.")
        return

    registry = get_row_source_registry()
    active: Iterable[RowSourceDescriptor] = resolve_row_sources(configured_sources, registry)
    state["active_row_sources"] = tuple(active)
    ensure_celery_app(app, state)

    if importer_blueprint.name not in app.blueprints and not getattr(app, "_got_first_request", False):
        app.register_blueprint(importer_blueprint)
    elif importer_blueprint.name not in app.blueprints:
        app.logger.warning(
            "Importer blueprint registration skipped because the app has already handled its first request."
        )
    _set_cli(app, enabled=True)

    source_names = ", ".join(source.name for source in state["active_row_sources"]) or "none"
    app.logger.info("Importer enabled with row sources: %s", source_names)

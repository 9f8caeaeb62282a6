"""
Utility helpers for importer feature flag checks.
"""

from __future__ import annotations

from typing import Iterable, Tuple

from flask import current_app


def _get_config(app=None):
    if app is not None:
        return app.config
    return current_app.config


def is_importer_enabled(app=None) -> bool:
    """Return True when the importer feature flag is enabled."""
    config = _get_config(app)
    return bool(config.get("IMPORTER_ENABLED", False))


def get_importer_row_sources(app=None) -> Tuple[str, ...]:
    """Return the configured row source identifiers."""
    config = _get_config(app)
    sources: Iterable[str] = config.get("IMPORTER_ROW_SOURCES", ())
    return tuple(sources)


def get_importer_setting(name: str, default, app=None):
    """Read an importer tuning value, falling back to ``default`` when unset."""
    value = _get_config(app).get(name)
    return default if value is None else value

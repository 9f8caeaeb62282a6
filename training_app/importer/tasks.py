"""
Importer Celery tasks: worker heartbeat and preview session housekeeping.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from celery import shared_task
from flask import current_app

from training_app.importer.pipeline.session_store import PreviewSessionStore


@shared_task(name="importer.healthcheck", bind=True)
def importer_healthcheck(self) -> dict[str, Any]:
    """Heartbeat used by worker health checks."""
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
        "app_version": getattr(self.app, "user_options", {}).get("version"),
    }


@shared_task(name="importer.preview.sweep_expired", bind=True)
def sweep_expired_previews(self) -> dict[str, Any]:
    """Expire overdue preview sessions and evict old tombstones."""
    summary = PreviewSessionStore().sweep()
    current_app.logger.info(
        "Preview sweep task finished",
        extra={
            "importer_task_id": self.request.id,
            "import_preview_expired": summary.expired,
            "import_preview_evicted": summary.evicted,
        },
    )
    return {**summary.to_dict(), "finished_at": datetime.now(timezone.utc).isoformat()}

"""Tests for importer Prometheus metrics"""

from prometheus_client import REGISTRY

from config.monitoring import ImporterMonitoring


def _sample(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


def test_record_confirm_counts_only_non_zero_outcomes():
    before_created = _sample("importer_confirm_records_total", outcome="created")
    before_failed = _sample("importer_confirm_records_total", outcome="failed")
    before_partial = _sample("importer_confirm_requests_total", status="PARTIAL")

    ImporterMonitoring.record_confirm(duration_seconds=0.2, status="PARTIAL", created=4, updated=0, failed=1)

    assert _sample("importer_confirm_records_total", outcome="created") == before_created + 4
    assert _sample("importer_confirm_records_total", outcome="failed") == before_failed + 1
    assert _sample("importer_confirm_requests_total", status="PARTIAL") == before_partial + 1


def test_record_preview_sweep_skips_empty_sweeps():
    before = _sample("importer_preview_sweep_sessions_total", action="expired")

    ImporterMonitoring.record_preview_sweep(expired=0, evicted=0)
    ImporterMonitoring.record_preview_sweep(expired=2, evicted=0)

    assert _sample("importer_preview_sweep_sessions_total", action="expired") == before + 2


def test_api_requests_are_recorded_per_endpoint(client, app):
    app.config["IMPORTER_ENABLED"] = True
    before = _sample("importer_api_requests_total", endpoint="importer.importer_healthcheck", status="200")

    response = client.get("/import/health")

    assert response.status_code == 200
    after = _sample("importer_api_requests_total", endpoint="importer.importer_healthcheck", status="200")
    assert after == before + 1

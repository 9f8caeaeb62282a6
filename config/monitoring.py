# config/monitoring.py

import os

from prometheus_client import Counter, Histogram


class MonitoringConfig:
    """Logging and metrics configuration"""

    # Monitoring Configuration
    MONITORING_ENABLED = os.environ.get("MONITORING_ENABLED", "false").lower() == "true"
    METRICS_ENDPOINT = os.environ.get("METRICS_ENDPOINT", "/metrics")

    # Logging Configuration
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")  # 'json' or 'text'
    LOG_DIR = os.environ.get("LOG_DIR", "logs")
    LOG_FILE_MAX_BYTES = int(os.environ.get("LOG_FILE_MAX_BYTES", 10485760))  # 10MB
    LOG_FILE_BACKUP_COUNT = int(os.environ.get("LOG_FILE_BACKUP_COUNT", 10))

    # Console and File Logging
    ENABLE_FILE_LOGGING = os.environ.get("ENABLE_FILE_LOGGING", "true").lower() == "true"
    ENABLE_CONSOLE_LOGGING = os.environ.get("ENABLE_CONSOLE_LOGGING", "true").lower() == "true"

    # Application Info
    APP_NAME = os.environ.get("APP_NAME", "Training Import Service")
    APP_VERSION = os.environ.get("APP_VERSION", "1.0.0")


class DevelopmentMonitoringConfig(MonitoringConfig):
    """Development-specific monitoring configuration"""

    LOG_LEVEL = "DEBUG"
    LOG_FORMAT = "text"  # More readable in development
    ENABLE_FILE_LOGGING = True
    ENABLE_CONSOLE_LOGGING = True


class ProductionMonitoringConfig(MonitoringConfig):
    """Production-specific monitoring configuration"""

    LOG_LEVEL = "INFO"
    LOG_FORMAT = "json"  # Structured logging for production
    ENABLE_FILE_LOGGING = True
    ENABLE_CONSOLE_LOGGING = False  # Usually handled by container orchestration


class TestingMonitoringConfig(MonitoringConfig):
    """Testing-specific monitoring configuration"""

    MONITORING_ENABLED = False
    LOG_LEVEL = "WARNING"
    LOG_FORMAT = "text"
    ENABLE_FILE_LOGGING = False
    ENABLE_CONSOLE_LOGGING = False


_LATENCY_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30)
_ROW_BUCKETS = (0, 1, 10, 50, 100, 250, 500, 1000, 2500, 5000, 10000)


class ImporterMonitoring:
    """Prometheus metric helpers for the import preview workflow."""

    PREVIEW_COUNTER = Counter(
        "importer_preview_requests_total",
        "Total import preview generations.",
        labelnames=("status",),
    )
    PREVIEW_LATENCY = Histogram(
        "importer_preview_request_seconds",
        "Latency histogram for preview generation.",
        labelnames=("status",),
        buckets=_LATENCY_BUCKETS,
    )
    PREVIEW_ROWS = Histogram(
        "importer_preview_rows",
        "Rows per generated preview.",
        labelnames=("status",),
        buckets=_ROW_BUCKETS,
    )
    PREVIEW_CONFLICTS = Histogram(
        "importer_preview_conflicts",
        "Residual conflicts per generated preview.",
        labelnames=("status",),
        buckets=(0, 1, 2, 5, 10, 25, 50, 100),
    )
    RULES_APPLIED_COUNTER = Counter(
        "importer_preview_rules_applied_total",
        "Memorized rules auto-applied during preview generation.",
    )

    RESOLVE_COUNTER = Counter(
        "importer_resolve_requests_total",
        "Total resolution submissions.",
        labelnames=("status",),
    )
    RESOLVE_LATENCY = Histogram(
        "importer_resolve_request_seconds",
        "Latency histogram for resolution submissions.",
        labelnames=("status",),
        buckets=_LATENCY_BUCKETS,
    )
    RESOLUTIONS_COUNTER = Counter(
        "importer_resolutions_submitted_total",
        "Individual resolutions received.",
        labelnames=("status",),
    )

    CONFIRM_COUNTER = Counter(
        "importer_confirm_requests_total",
        "Total import confirmations.",
        labelnames=("status",),
    )
    CONFIRM_LATENCY = Histogram(
        "importer_confirm_request_seconds",
        "Latency histogram for import confirmation.",
        labelnames=("status",),
        buckets=_LATENCY_BUCKETS + (60, 300, 600),
    )
    CONFIRM_RECORDS = Counter(
        "importer_confirm_records_total",
        "Session records written or rejected by confirmations.",
        labelnames=("outcome",),
    )

    PREVIEW_SWEEP_COUNTER = Counter(
        "importer_preview_sweep_sessions_total",
        "Preview sessions expired or evicted by the sweep.",
        labelnames=("action",),
    )

    API_REQUEST_COUNTER = Counter(
        "importer_api_requests_total",
        "Importer API requests by endpoint and status code.",
        labelnames=("endpoint", "status"),
    )
    API_REQUEST_LATENCY = Histogram(
        "importer_api_request_seconds",
        "Latency histogram for importer API endpoints.",
        labelnames=("endpoint",),
        buckets=_LATENCY_BUCKETS,
    )

    @classmethod
    def record_preview(
        cls,
        *,
        duration_seconds: float,
        status: str,
        row_count: int = 0,
        conflict_count: int = 0,
        rules_applied: int = 0,
    ):
        cls.PREVIEW_COUNTER.labels(status=status).inc()
        cls.PREVIEW_LATENCY.labels(status=status).observe(max(duration_seconds, 0.0))
        cls.PREVIEW_ROWS.labels(status=status).observe(float(max(row_count, 0)))
        cls.PREVIEW_CONFLICTS.labels(status=status).observe(float(max(conflict_count, 0)))
        if rules_applied > 0:
            cls.RULES_APPLIED_COUNTER.inc(rules_applied)

    @classmethod
    def record_resolve(cls, *, duration_seconds: float, status: str, resolution_count: int = 0):
        cls.RESOLVE_COUNTER.labels(status=status).inc()
        cls.RESOLVE_LATENCY.labels(status=status).observe(max(duration_seconds, 0.0))
        if resolution_count > 0:
            cls.RESOLUTIONS_COUNTER.labels(status=status).inc(resolution_count)

    @classmethod
    def record_confirm(
        cls,
        *,
        duration_seconds: float,
        status: str,
        created: int = 0,
        updated: int = 0,
        failed: int = 0,
    ):
        cls.CONFIRM_COUNTER.labels(status=status).inc()
        cls.CONFIRM_LATENCY.labels(status=status).observe(max(duration_seconds, 0.0))
        for outcome, count in (("created", created), ("updated", updated), ("failed", failed)):
            if count > 0:
                cls.CONFIRM_RECORDS.labels(outcome=outcome).inc(count)

    @classmethod
    def record_preview_sweep(cls, *, expired: int, evicted: int):
        if expired > 0:
            cls.PREVIEW_SWEEP_COUNTER.labels(action="expired").inc(expired)
        if evicted > 0:
            cls.PREVIEW_SWEEP_COUNTER.labels(action="evicted").inc(evicted)

    @classmethod
    def record_api_request(cls, *, endpoint: str, status_code: int, duration_seconds: float):
        cls.API_REQUEST_COUNTER.labels(endpoint=endpoint, status=str(status_code)).inc()
        cls.API_REQUEST_LATENCY.labels(endpoint=endpoint).observe(max(duration_seconds, 0.0))

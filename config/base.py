# config/base.py
import os
from datetime import timedelta


def _coerce_bool(value, default=False):
    """Convert environment-style truthy/falsey values to bool."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    value_str = str(value).strip().lower()
    if value_str in {"1", "true", "yes", "on"}:
        return True
    if value_str in {"0", "false", "no", "off"}:
        return False
    return default


def _parse_source_list(value):
    """
    Parse a comma-separated row source list while keeping order and removing duplicates.

    Returns:
        tuple[str, ...]: Normalized row source identifiers.
    """
    if not value:
        return ()

    seen = set()
    sources = []
    for raw_item in value.split(","):
        item = raw_item.strip().lower()
        if not item or item in seen:
            continue
        seen.add(item)
        sources.append(item)
    return tuple(sources)


def _int_env(name, default, *, minimum=None):
    try:
        value = int(os.environ.get(name, default))
    except ValueError:
        value = default
    if minimum is not None:
        value = max(minimum, value)
    return value


def _float_env(name, default):
    try:
        return float(os.environ.get(name, default))
    except ValueError:
        return default


class Config:
    # SECRET_KEY must be set via environment variable in production
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    if not SECRET_KEY and _is_production:
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not SECRET_KEY and not _is_testing:
        import warnings

        warnings.warn(
            "SECRET_KEY not set. Using default for development only. "
            "Set SECRET_KEY environment variable before deploying.",
            UserWarning,
        )
        SECRET_KEY = "dev-secret-key-change-in-production"

    if not SECRET_KEY:
        SECRET_KEY = "test-secret-key-placeholder"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Importer configuration
    IMPORTER_ENABLED = _coerce_bool(os.environ.get("IMPORTER_ENABLED"), default=False)
    IMPORTER_ROW_SOURCES = _parse_source_list(os.environ.get("IMPORTER_ROW_SOURCES", "json,csv"))

    if IMPORTER_ENABLED and not IMPORTER_ROW_SOURCES:
        raise ValueError(
            "IMPORTER_ENABLED is true but IMPORTER_ROW_SOURCES is empty. Provide at least one row source."
        )

    IMPORTER_WORKER_ENABLED = _coerce_bool(os.environ.get("IMPORTER_WORKER_ENABLED"), default=False)
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")
    IMPORTER_MAX_UPLOAD_MB = _int_env("IMPORTER_MAX_UPLOAD_MB", 25, minimum=1)

    # Preview sessions
    IMPORT_PREVIEW_TTL_MINUTES = _int_env("IMPORT_PREVIEW_TTL_MINUTES", 30, minimum=1)
    IMPORT_PREVIEW_TOMBSTONE_MINUTES = _int_env("IMPORT_PREVIEW_TOMBSTONE_MINUTES", 30, minimum=0)
    IMPORT_PREVIEW_SWEEP_SECONDS = _int_env("IMPORT_PREVIEW_SWEEP_SECONDS", 300, minimum=10)
    IMPORT_PREVIEW_MUTATE_RETRIES = _int_env("IMPORT_PREVIEW_MUTATE_RETRIES", 5, minimum=1)
    IMPORT_PREVIEW_SUGGESTION_LIMIT = _int_env("IMPORT_PREVIEW_SUGGESTION_LIMIT", 3, minimum=0)
    IMPORT_PREVIEW_SUGGESTION_MIN_SCORE = _float_env("IMPORT_PREVIEW_SUGGESTION_MIN_SCORE", 70.0)

    # Confirm
    IMPORT_CONFIRM_TIMEOUT_SECONDS = _int_env("IMPORT_CONFIRM_TIMEOUT_SECONDS", 600, minimum=1)
    IMPORT_CONFIRM_CHECK_EVERY = _int_env("IMPORT_CONFIRM_CHECK_EVERY", 50, minimum=1)

    IMPORT_HISTORY_PAGE_SIZE_MAX = _int_env("IMPORT_HISTORY_PAGE_SIZE_MAX", 100, minimum=1)

    # Session configuration
    PERMANENT_SESSION_LIFETIME = timedelta(days=7)
    SESSION_COOKIE_SECURE = False  # Set to True in production with HTTPS
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"


class DevelopmentConfig(Config):
    DEBUG = True
    # Use instance folder for database to avoid conflicts
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URI needs forward slashes even on Windows
    db_path = os.path.join(instance_path, "training_dev.db").replace("\\", "/")
    db_uri = f"sqlite:///{db_path}"

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", db_uri)
    SQLALCHEMY_ECHO = _coerce_bool(os.environ.get("SQLALCHEMY_ECHO"), default=False)
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": 5,
            }
        }
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = os.environ.get("TEST_DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
    SESSION_COOKIE_SECURE = True

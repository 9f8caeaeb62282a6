# conftest.py

import os
import tempfile

import pytest
from werkzeug.security import generate_password_hash

# Set testing environment BEFORE importing app so app.py picks TestingConfig,
# mounts the importer blueprint and binds its engine to a throwaway database
_db_fd, _db_path = tempfile.mkstemp(prefix="training_test_", suffix=".db")
os.environ["FLASK_ENV"] = "testing"
os.environ["IMPORTER_ENABLED"] = "true"
os.environ["TEST_DATABASE_URL"] = f"sqlite:///{_db_path}"
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")

# Now import app and other modules after environment is set
from app import app as flask_app  # noqa: E402
from training_app.models import User, db  # noqa: E402
from training_app.models.user import ROLE_ADMIN, ROLE_MANAGER, ROLE_VIEWER  # noqa: E402
from training_app.utils.logging_config import setup_logging  # noqa: E402


def pytest_configure(config):
    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line("markers", "integration: end-to-end import scenarios through the service layer")
    config.addinivalue_line("markers", "api: tests exercising the HTTP endpoints")


def pytest_sessionfinish(session, exitstatus):
    try:
        os.close(_db_fd)
    except OSError:
        pass
    try:
        if os.path.exists(_db_path):
            os.unlink(_db_path)
    except OSError:
        pass


@pytest.fixture(scope="function")
def app():
    """Flask application with a freshly created schema for each test"""
    original_config = dict(flask_app.config)
    flask_app.config.update(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret-key-for-testing-only",
            "MONITORING_ENABLED": False,
            "ENABLE_FILE_LOGGING": False,
            "ENABLE_CONSOLE_LOGGING": False,
            "LOG_LEVEL": "WARNING",
            "IMPORTER_ENABLED": False,
            "IMPORTER_ROW_SOURCES": ("json", "csv"),
            "IMPORTER_WORKER_ENABLED": False,
        }
    )
    setup_logging(flask_app)

    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()

    flask_app.config.clear()
    flask_app.config.update(original_config)


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    """Create a test client for the Flask application"""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()


def _persist_user(username, role, *, is_super_admin=False, is_active=True):
    user = User(
        username=username,
        email=f"{username}@example.com",
        password_hash=generate_password_hash(f"{username}pass123"),
        first_name=username.title(),
        last_name="User",
        role=role,
        is_super_admin=is_super_admin,
        is_active=is_active,
    )
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def admin_user(app):
    """Persisted super admin"""
    return _persist_user("admin", ROLE_ADMIN, is_super_admin=True)


@pytest.fixture
def manager_user(app):
    """Persisted user allowed to run imports"""
    return _persist_user("manager", ROLE_MANAGER)


@pytest.fixture
def viewer_user(app):
    """Persisted read-only user"""
    return _persist_user("viewer", ROLE_VIEWER)


@pytest.fixture
def inactive_user(app):
    return _persist_user("inactive", ROLE_MANAGER, is_active=False)

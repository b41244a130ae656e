# conftest.py

import os
import tempfile

import pytest
from flask import g
from flask.testing import FlaskClient

# Set testing environment BEFORE importing app so app.py uses TestingConfig
os.environ["FLASK_ENV"] = "testing"

from app import app as flask_app  # noqa: E402
from registry_app.models import db  # noqa: E402
from registry_app.utils.logging_config import setup_logging  # noqa: E402

PRINCIPAL_HEADER = "X-Principal-Id"
ROLE_HEADER = "X-Principal-Role"


@pytest.fixture(scope="function")
def app(tmp_path):
    """Create and configure a test Flask application"""
    import uuid

    db_fd, temp_db = tempfile.mkstemp(suffix=f"_{uuid.uuid4().hex[:8]}.db")

    try:
        flask_app.config.update(
            {
                "TESTING": True,
                "SQLALCHEMY_DATABASE_URI": f"sqlite:///{temp_db}",
                "SECRET_KEY": "test-secret-key-for-testing-only",
                "MONITORING_ENABLED": False,
                "ENABLE_FILE_LOGGING": False,
                "ENABLE_CONSOLE_LOGGING": False,
                "LOG_LEVEL": "WARNING",
                "REGISTRY_BLOB_DIR": str(tmp_path / "blobs"),
                "REGISTRY_BLOB_BASE_URL": "/blobs",
                "REGISTRY_PRINCIPAL_HEADER": PRINCIPAL_HEADER,
                "REGISTRY_ROLE_HEADER": ROLE_HEADER,
                "REGISTRY_APPLY_CHUNK_SIZE": 500,
                "REGISTRY_MAX_BATCH_ROWS": 10000,
                "REGISTRY_MAX_UPLOAD_MB": 25,
                "REGISTRY_MAX_REPORTED_ERRORS": 50,
                "REGISTRY_PAGE_SIZE_DEFAULT": 50,
                "REGISTRY_PAGE_SIZE_MAX": 500,
            }
        )
        setup_logging(flask_app)

        with flask_app.app_context():
            db.drop_all()
            db.create_all()
            yield flask_app
            db.session.remove()
            db.drop_all()
    finally:
        try:
            os.close(db_fd)
        except OSError:
            pass
        try:
            if os.path.exists(temp_db):
                os.unlink(temp_db)
        except OSError:
            pass


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


class _IsolatedIdentityClient(FlaskClient):
    """Test client that drops Flask-Login's cached user before each request.

    The shared app context kept open by ``app_context`` means every request
    sees the same ``g``; without this, the first principal loaded in a test
    would be reused for all later requests.
    """

    def open(self, *args, **kwargs):
        g.pop("_login_user", None)
        return super().open(*args, **kwargs)


@pytest.fixture
def client(app):
    """Create a test client for the Flask application"""
    app.test_client_class = _IsolatedIdentityClient
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()


def principal_headers(role, principal_id=None):
    """Identity headers as set by the upstream authentication proxy."""
    return {PRINCIPAL_HEADER: principal_id or f"{role}-1", ROLE_HEADER: role}


@pytest.fixture
def make_headers():
    return principal_headers


@pytest.fixture
def admin_headers():
    return principal_headers("admin")


@pytest.fixture
def moderator_headers():
    return principal_headers("moderator")


@pytest.fixture
def member_headers():
    return principal_headers("member")


def pytest_configure(config):
    """Configure pytest with custom markers and ensure testing environment"""
    os.environ["FLASK_ENV"] = "testing"

    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "unit: marks tests as unit tests")


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers"""
    for item in items:
        if "routes" in item.nodeid or "cli" in item.nodeid:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)

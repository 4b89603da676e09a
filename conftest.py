# conftest.py

import os

import pytest
from flask_login import FlaskLoginClient

# Set testing environment BEFORE importing app so app.py picks TestingConfig
# and mounts the importer blueprint at import time.
os.environ["FLASK_ENV"] = "testing"
os.environ.setdefault("IMPORTER_ENABLED", "true")
os.environ.setdefault("IMPORTER_ADAPTERS", "csv,xlsx")

from app import app as flask_app  # noqa: E402
from roster_app.importer.pipeline import batch_locks  # noqa: E402
from roster_app.models import Organization, User, db  # noqa: E402
from roster_app.models.user import ROLE_OPERATOR, ROLE_VIEWER  # noqa: E402


@pytest.fixture(scope="function")
def app():
    """Test application with fresh tables for every test"""
    flask_app.config.update(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret-key-for-testing-only",
            "IMPORTER_ENABLED": True,
            "IMPORTER_ADAPTERS": ("csv", "xlsx"),
            "IMPORTER_WORKER_ENABLED": False,
            "IMPORTER_CLASSIFIER_ENABLED": False,
            "IMPORTER_KNOWN_CATEGORIES": (),
            "IMPORTER_UPDATE_ON_DUPLICATE": True,
            "IMPORTER_COMMIT_CONCURRENCY": 2,
            "IMPORTER_COMMIT_GROUP_SIZE": 50,
            "IMPORTER_MAX_UPLOAD_MB": 25,
            "IMPORTER_MAX_ROWS": 10000,
        }
    )
    state = flask_app.extensions["importer"]
    state["worker_enabled"] = False
    state["customer_store_factory"] = None

    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()
    batch_locks._held.clear()


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def runner(app):
    return app.test_cli_runner()


@pytest.fixture
def test_organization(app):
    org = Organization(name="Brannteknikk AS", slug="brannteknikk")
    db.session.add(org)
    db.session.commit()
    return org


@pytest.fixture
def other_organization(app):
    org = Organization(name="Annen Kunde AS", slug="annen-kunde")
    db.session.add(org)
    db.session.commit()
    return org


def _make_user(username, organization, role=ROLE_OPERATOR, is_super_admin=False):
    user = User(
        username=username,
        email=f"{username}@example.com",
        role=role,
        is_super_admin=is_super_admin,
        organization_id=organization.id if organization is not None else None,
    )
    user.set_password("testpass123")
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def operator_user(test_organization):
    return _make_user("operator", test_organization)


@pytest.fixture
def viewer_user(test_organization):
    return _make_user("viewer", test_organization, role=ROLE_VIEWER)


@pytest.fixture
def super_admin_user(app):
    return _make_user("superadmin", None, is_super_admin=True)


@pytest.fixture
def login_client(app):
    """Return a factory producing test clients logged in as the given user"""
    app.test_client_class = FlaskLoginClient

    def _client(user):
        return app.test_client(user=user)

    yield _client
    app.test_client_class = None


def pytest_configure(config):
    os.environ["FLASK_ENV"] = "testing"
    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")

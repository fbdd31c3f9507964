"""
Shared fixtures: an in-memory database per test and a Flask app bound to one.
"""

import pytest

from optica.api.app import create_app
from optica.database import create_schema, init_engine, init_session_factory
from optica.identity import create_user, issue_token
from optica.patients import create_patient

SECRET = "test-secret-key"
PASSWORD = "secret123"


# ── Helpers ──────────────────────────────────────────────────────────

def patient_attrs(**overrides):
    attrs = {
        "first_name": "Ana",
        "last_name": "García",
        "dni": "12345678",
        "phone": "600111222",
        "email": "ana@example.com",
        "city": "Madrid",
        "state": "Madrid",
    }
    attrs.update(overrides)
    return attrs


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


# ── Service-level fixtures ───────────────────────────────────────────

@pytest.fixture
def session():
    engine = init_engine("sqlite://")
    create_schema(engine)
    registry = init_session_factory(engine)
    s = registry()
    yield s
    registry.remove()
    engine.dispose()


@pytest.fixture
def make_user(session):
    def _make(email="sales@example.com", role="sales", password=PASSWORD):
        return create_user(session, email, password, role)
    return _make


@pytest.fixture
def sales(make_user):
    return make_user("sales@example.com")


@pytest.fixture
def other_sales(make_user):
    return make_user("other@example.com")


@pytest.fixture
def admin(make_user):
    return make_user("admin@example.com", role="admin")


@pytest.fixture
def patient(session, sales):
    return create_patient(session, sales, patient_attrs())


# ── API fixtures ─────────────────────────────────────────────────────

@pytest.fixture
def app():
    app = create_app(db_uri="sqlite://", registration_mode="admin-only", secret_key=SECRET)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def api_user(app):
    """Create a user in the app's database and return (user, auth headers)."""
    db = app.extensions["optica_db"]

    def _make(email, role="sales", password=PASSWORD):
        user = create_user(db, email, password, role)
        headers = bearer(issue_token(user, SECRET))
        db.remove()
        return user, headers
    return _make

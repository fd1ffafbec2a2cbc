"""Shared fixtures: an isolated app per test, users per role, and request helpers."""
import io
import itertools

import pytest
from flask import has_app_context
from flask_login import FlaskLoginClient

from app import create_app
from extensions import db
from models import Role, User
from utils.security import reset_attempts

PASSWORD = "Str0ng!Passphrase"

VALID_COMPLAINT = {
    "title": "Bribe demanded at the land registry office",
    "description": (
        "The clerk at counter three refused to process my application for a title deed "
        "unless I paid an unofficial fee of 500 in cash."
    ),
    "category": "bribery",
    "location": "Central Land Registry",
}

_emails = itertools.count(1)


@pytest.fixture
def app(tmp_path):
    app = create_app("testing")
    app.config.update(EVIDENCE_STORAGE_ROOT=str(tmp_path / "object_storage"))
    app.test_client_class = FlaskLoginClient
    reset_attempts()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()
    reset_attempts()


@pytest.fixture
def ctx(app):
    """A request context for calling services directly."""
    with app.test_request_context():
        yield app


@pytest.fixture
def make_user(app):
    def _make(role: str = "citizen", email: str | None = None) -> User:
        def _create() -> User:
            user = User(
                full_name=f"{role.title()} User",
                email=email or f"{role}{next(_emails)}@example.org",
                role=Role.get_or_create(role),
                is_active=True,
            )
            user.set_password(PASSWORD)
            db.session.add(user)
            db.session.commit()
            # Load what callers read after the session is gone.
            _ = (user.id, user.email, user.role.name)
            return user

        if has_app_context():
            return _create()
        with app.app_context():
            return _create()

    return _make


@pytest.fixture
def citizen(make_user):
    return make_user("citizen")


@pytest.fixture
def official(make_user):
    return make_user("government")


@pytest.fixture
def admin(make_user):
    return make_user("admin")


@pytest.fixture
def client(app):
    return app.test_client()


def evidence_file(content: bytes, name: str = "receipt.pdf", content_type: str = "application/pdf"):
    return (io.BytesIO(content), name, content_type)

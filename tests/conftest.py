"""
Shared fixtures for the authentication API tests.

Each test gets its own app and sqlite file. Mail is suppressed and captured
with ``mail.record_messages()``; rate limiting is off unless a test turns it on.
"""
import pytest

from panel import create_app
from security import get_db, mail
from security.models import User
from security.passwords import hash_password
from security.settings import SecuritySettings, save_security_settings

from helpers import PASSWORD


def build_app(tmp_path, **overrides):
    config = {
        "TESTING": True,
        "SECRET_KEY": "test-secret-key",
        "SECURITY_DATABASE_URI": f"sqlite:///{tmp_path / 'security.sqlite3'}",
        "RATELIMIT_ENABLED": False,
        "PASSWORD_HASH_METHOD": "pbkdf2:sha256:1000",
        "BACKUP_CODE_HASH_METHOD": "pbkdf2:sha256:1000",
        "PENDING_SWEEP_INTERVAL": 0,
        "MAIL_DEFAULT_SENDER": "panel@example.com",
        "MAIL_ASYNC": False,
        "FRONTEND_URL": "https://panel.example.com",
    }
    config.update(overrides)
    return create_app(config)


@pytest.fixture
def app(tmp_path):
    return build_app(tmp_path)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def ctx(app):
    """App context for tests that call services directly."""
    with app.app_context():
        yield app


@pytest.fixture
def db(ctx):
    session = get_db()
    yield session
    session.close()


@pytest.fixture
def outbox(app):
    with mail.record_messages() as messages:
        yield messages


@pytest.fixture
def make_user(app):
    def _make(email="user@example.com", password=PASSWORD, role="sales", name="Test User", **fields):
        with app.app_context():
            session = get_db()
            try:
                user = User(email=email, name=name, role=role, password_hash=hash_password(password), **fields)
                session.add(user)
                session.commit()
                return user
            finally:
                session.close()
    return _make


@pytest.fixture
def set_settings(app):
    def _set(**values):
        with app.app_context():
            session = get_db()
            try:
                return save_security_settings(session, SecuritySettings(**values))
            finally:
                session.close()
    return _set


@pytest.fixture
def fetch_user(app):
    def _fetch(user_id):
        with app.app_context():
            session = get_db()
            try:
                return session.get(User, user_id)
            finally:
                session.close()
    return _fetch



@pytest.fixture
def make_app(tmp_path):
    def _make(**overrides):
        return build_app(tmp_path, **overrides)
    return _make

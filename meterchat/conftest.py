# meterchat/conftest.py
import sys
import os
import pytest
from pathlib import Path

from sqlalchemy import update

# Add repository root to PYTHONPATH
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

STRIPE_TEST_SECRET_KEY = "sk_test_123"
STRIPE_TEST_WEBHOOK_SECRET = "whsec_test123"


@pytest.fixture(scope="function", autouse=True)
def database(tmp_path):
    """
    Fresh database for every test.

    Uses TEST_DATABASE_URL when set (e.g. PostgreSQL in CI), otherwise a
    SQLite file in the test's temporary directory.
    """
    from meterchat.core.database import init_engine, create_all_tables, drop_all_tables, get_engine

    url = os.getenv("TEST_DATABASE_URL") or f"sqlite:///{tmp_path / 'meterchat.db'}"
    init_engine(url)
    drop_all_tables()
    create_all_tables()
    yield url
    get_engine().dispose()


@pytest.fixture(scope="function", autouse=True)
def jwt_secret(monkeypatch):
    """Session tokens need a signing secret."""
    from meterchat.core.config import settings

    monkeypatch.setattr(settings, "JWT_SECRET", "test-jwt-secret-with-enough-length-0123456789")
    return settings.JWT_SECRET


@pytest.fixture
def stripe_env(monkeypatch):
    """Enable billing with test keys and prices."""
    monkeypatch.setenv("STRIPE_SECRET_KEY", STRIPE_TEST_SECRET_KEY)
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", STRIPE_TEST_WEBHOOK_SECRET)
    monkeypatch.setenv("STRIPE_PRICE_PRO", "price_pro")
    monkeypatch.setenv("STRIPE_PRICE_PREMIUM", "price_premium")
    monkeypatch.setenv("STRIPE_PRICE_ENTERPRISE", "price_enterprise")
    return STRIPE_TEST_WEBHOOK_SECRET


@pytest.fixture
def no_billing(monkeypatch):
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
    monkeypatch.delenv("STRIPE_WEBHOOK_SECRET", raising=False)


@pytest.fixture
def make_user():
    """
    Factory creating a registered user, then forcing entitlement columns.

    Usage:
        user = make_user("alice@example.com", plan="PRO", messages_used=10)
    """
    from meterchat.core.database import get_db_session, users
    from meterchat.features.users.service import register_user, require_user

    def _make(email: str = "alice@example.com", password: str = "correct-horse", **columns):
        user = register_user(email, password)
        if columns:
            with get_db_session() as session:
                session.execute(update(users).where(users.c.id == user.id).values(**columns))
        return require_user(email)

    return _make


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from meterchat.main import app

    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture
def auth_headers():
    from meterchat.core.auth import issue_access_token

    def _headers(email: str = "alice@example.com") -> dict:
        return {"Authorization": f"Bearer {issue_access_token(email)}"}

    return _headers

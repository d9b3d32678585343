"""Pytest configuration and fixtures."""

import os
import tempfile
from pathlib import Path

import pytest

_TMP_ROOT = Path(tempfile.mkdtemp(prefix="zyria-tests-"))

# must be set before the package is imported
os.environ["ZYRIA_DB_PATH"] = str(_TMP_ROOT / "zyria.sqlite3")
os.environ["ZYRIA_DOCS_ROOT"] = str(_TMP_ROOT / "docs")
os.environ["ZYRIA_LOG_FILE"] = str(_TMP_ROOT / "zyria.log")
os.environ["AUTH_SECRET_KEY"] = ""
os.environ["API_AUTH_TOKEN"] = ""
os.environ["API_RATE_LIMIT_PER_MINUTE"] = "100000"
os.environ["CELERY_BROKER_URL"] = ""
os.environ["OPENAI_API_KEY"] = "test-openai-key"
os.environ["ZYRIA_GLOBAL_ADMINS"] = "root-admin"

from fastapi.testclient import TestClient  # noqa: E402

from zyria import storage  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_db(tmp_path, monkeypatch):
    """Give every test its own empty database."""
    storage.clear_connection()
    monkeypatch.setattr(storage, "DB_PATH", tmp_path / "zyria.sqlite3")
    storage.init_db()
    yield
    storage.clear_connection()


@pytest.fixture
def tenant():
    return storage.create_tenant(name="Acme Corp", slug="acme")


@pytest.fixture
def admin_profile(tenant):
    return storage.upsert_profile("alice", tenant_id=tenant["id"], email="alice@acme.test", role="admin")


@pytest.fixture
def member_profile(tenant):
    return storage.upsert_profile("bob", tenant_id=tenant["id"], email="bob@acme.test", role="user")


@pytest.fixture
def client():
    from zyria.main import app

    return TestClient(app)
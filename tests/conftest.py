"""
Pytest configuration and fixtures for Taskdesk tests.
"""

import os

import pytest

# Keep a developer's .env out of the test run
os.environ["TASKDESK_ENV"] = "development"

from taskdesk.config import Settings  # noqa: E402
from taskdesk.db.client import BackendClient  # noqa: E402

from fake_appwrite import FakeAppwrite  # noqa: E402


def make_settings(**overrides) -> Settings:
    values = {
        "appwrite_endpoint": "https://appwrite.test/",
        "appwrite_project_id": "proj",
        "appwrite_database_id": "db",
        "appwrite_api_key": None,
        "realtime_enabled": False,
        "sync_poll_ms": 3000,
        "company_access_mode": "open",
        "company_allowed_emails": "",
        "company_admin_emails": "",
        "company_manager_emails": "",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings():
    """Fully configured settings pointing at the fake store."""
    return make_settings()


@pytest.fixture
def fake():
    """Empty in-memory Appwrite."""
    return FakeAppwrite()


@pytest.fixture
def client(settings, fake):
    """BackendClient wired to the fake store."""
    return BackendClient(settings, http_client=fake.client())


@pytest.fixture
def sample_tasks():
    """A small tasks collection across two projects."""
    return [
        {"id": "t1", "title": "Write plan", "status": "todo", "priority": "high",
         "project_id": "P1", "deadline": "2025-03-01T09:00:00.000Z"},
        {"id": "t2", "title": "Fix bug", "status": "in-progress", "priority": "medium",
         "project_id": "P1", "deadline": "2025-02-01T09:00:00.000Z"},
        {"id": "t3", "title": "Ship release", "status": "todo", "priority": "low",
         "project_id": "P2", "deadline": None},
        {"id": "t4", "title": "Review docs", "status": "completed", "priority": "high",
         "project_id": "P2", "deadline": "2025-01-15T09:00:00.000Z"},
    ]

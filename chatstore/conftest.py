"""
Pytest configuration and shared fixtures.

Test environment variables are set here, before any settings are read, so
the API tests run against a throwaway SQLite file.
"""

import os
import tempfile

import pytest

_TEST_DIR = tempfile.mkdtemp(prefix="chatstore-test-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TEST_DIR}/api.db")
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("LOG_LEVEL", "WARNING")

# Clear settings cache before any app imports to ensure test env vars are used
from chatstore.config import get_settings
get_settings.cache_clear()

from chatstore.storage import Store


@pytest.fixture
def store(tmp_path):
    """A fresh, initialized store backed by a per-test SQLite file."""
    s = Store(f"sqlite:///{tmp_path}/messages.db")
    s.init_db()
    yield s
    s.close()

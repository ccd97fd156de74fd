from __future__ import annotations

import os
import tempfile

# Point settings at a throwaway SQLite file before any contentengine module builds the engine.
_DB_DIR = tempfile.mkdtemp(prefix="contentengine-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/test.db"
os.environ["LLM_PROVIDER"] = "fake"
os.environ["ADMIN_API_TOKEN"] = "test-admin-token"

import pytest  # noqa: E402

from contentengine.persistence import locks  # noqa: E402
from contentengine.persistence.db import create_all, drop_all, engine  # noqa: E402
from contentengine.services.telemetry import reset_counters  # noqa: E402


@pytest.fixture(autouse=True)
async def fresh_database() -> None:
    # Every test starts from empty tables and releases pooled connections on its own loop.
    await create_all()
    reset_counters()
    locks._local_held.clear()
    yield
    await drop_all()
    await engine.dispose()

"""Shared fixtures: a file-backed SQLite copy of the Telescope table."""

import json
from datetime import datetime

import pytest
from sqlalchemy import create_engine, text

from telescope_mcp.config import Settings
from telescope_mcp.database import TelescopeDatabase

NOW = datetime(2025, 6, 1, 12, 0, 0)

SCHEMA = """
CREATE TABLE telescope_entries (
    sequence INTEGER PRIMARY KEY AUTOINCREMENT,
    uuid VARCHAR(36) NOT NULL UNIQUE,
    batch_id VARCHAR(36) NOT NULL,
    family_hash VARCHAR(255),
    should_display_on_index INTEGER NOT NULL DEFAULT 1,
    type VARCHAR(20) NOT NULL,
    content TEXT NOT NULL,
    created_at TEXT
)
"""

INSERT = """
INSERT INTO telescope_entries (uuid, batch_id, type, content, created_at)
VALUES (:uuid, :batch_id, :type, :content, :created_at)
"""


class EntryWriter:
    """Appends rows the way Telescope stores them."""

    def __init__(self, engine):
        self.engine = engine
        self._counter = 0

    def add(self, type, content, created_at=NOW, uuid=None, batch_id="batch-1"):
        self._counter += 1
        uuid = uuid or f"{self._counter:08x}-aaaa-bbbb-cccc-000000000000"
        if not isinstance(content, str):
            content = json.dumps(content)
        if isinstance(created_at, datetime):
            created_at = created_at.strftime("%Y-%m-%d %H:%M:%S")
        with self.engine.begin() as conn:
            conn.execute(text(INSERT), {
                "uuid": uuid,
                "batch_id": batch_id,
                "type": type,
                "content": content,
                "created_at": created_at,
            })
        return uuid


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'telescope.db'}"


@pytest.fixture
def engine(db_url):
    engine = create_engine(db_url)
    with engine.begin() as conn:
        conn.execute(text(SCHEMA))
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine, db_url):
    return TelescopeDatabase(Settings(db_url=db_url), engine=engine, clock=lambda: NOW)


@pytest.fixture
def entries(engine):
    return EntryWriter(engine)

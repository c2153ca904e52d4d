from pathlib import Path

import pytest

import database


@pytest.fixture
def tmp_db(tmp_path) -> Path:
    """Returns path to a temporary SQLite database file."""
    return tmp_path / "test.db"


@pytest.fixture
async def store(tmp_db) -> Path:
    """A temporary database with an empty collection."""
    await database.init_db(tmp_db)
    return tmp_db

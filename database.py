import json
import re
from pathlib import Path
from typing import NamedTuple, Optional

import aiosqlite

from models import MovieRecord

DB_PATH = Path("data/collection.db")

MOVIES_KEY = "movies"
API_KEY_KEY = "tmdbApiKey"

# Writers that merge into a fresh copy after a stale write give up after this many tries.
SAVE_ATTEMPTS = 3

_API_KEY_PATTERN = re.compile(r"^[a-z0-9]{32}$", re.IGNORECASE)


class StaleStoreError(Exception):
    """The collection was rewritten after it was read."""

    def __init__(self, expected: int, actual: int):
        super().__init__(f"store revision is {actual}, expected {expected}")
        self.expected = expected
        self.actual = actual


class InvalidApiKeyError(ValueError):
    pass


class StoreSnapshot(NamedTuple):
    records: list[MovieRecord]
    revision: int


async def init_db(db_path: Path = DB_PATH) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    async with aiosqlite.connect(db_path) as db:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS kv (
                key      TEXT PRIMARY KEY,
                value    TEXT NOT NULL,
                revision INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        await db.execute(
            "INSERT OR IGNORE INTO kv (key, value, revision) VALUES (?, ?, 0)",
            (MOVIES_KEY, "[]"),
        )
        await db.commit()


async def load_store(db_path: Path = DB_PATH) -> StoreSnapshot:
    """Read the whole collection and the revision it was read at."""
    async with aiosqlite.connect(db_path) as db:
        async with db.execute(
            "SELECT value, revision FROM kv WHERE key = ?", (MOVIES_KEY,)
        ) as cursor:
            row = await cursor.fetchone()
    if row is None:
        return StoreSnapshot(records=[], revision=0)
    raw_records = json.loads(row[0] or "[]")
    return StoreSnapshot(
        records=[MovieRecord.from_storage(item) for item in raw_records],
        revision=row[1],
    )


async def get_all_records(db_path: Path = DB_PATH) -> list[MovieRecord]:
    snapshot = await load_store(db_path)
    return snapshot.records


async def save_store(
    records: list[MovieRecord],
    expected_revision: Optional[int] = None,
    db_path: Path = DB_PATH,
) -> int:
    """
    Replace the whole collection in one write.
    With expected_revision set, the write only lands if nobody saved since that
    revision was read. Returns the new revision.
    """
    ids = [record.id for record in records]
    if len(ids) != len(set(ids)):
        raise ValueError("record ids must be unique")
    payload = json.dumps([record.to_storage() for record in records], ensure_ascii=False)

    async with aiosqlite.connect(db_path) as db:
        await db.execute("BEGIN IMMEDIATE")
        async with db.execute(
            "SELECT revision FROM kv WHERE key = ?", (MOVIES_KEY,)
        ) as cursor:
            row = await cursor.fetchone()
        current = row[0] if row else 0
        if expected_revision is not None and current != expected_revision:
            raise StaleStoreError(expected_revision, current)
        new_revision = current + 1
        await db.execute(
            """
            INSERT INTO kv (key, value, revision) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value    = excluded.value,
                revision = excluded.revision
            """,
            (MOVIES_KEY, payload, new_revision),
        )
        await db.commit()
    return new_revision


async def get_api_key(db_path: Path = DB_PATH) -> Optional[str]:
    async with aiosqlite.connect(db_path) as db:
        async with db.execute(
            "SELECT value FROM kv WHERE key = ?", (API_KEY_KEY,)
        ) as cursor:
            row = await cursor.fetchone()
    return row[0] if row and row[0] else None


async def set_api_key(value: Optional[str], db_path: Path = DB_PATH) -> Optional[str]:
    """Store the TMDb key. An empty value clears it. Returns what is now stored."""
    api_key = (value or "").strip()
    if api_key and not _API_KEY_PATTERN.match(api_key):
        raise InvalidApiKeyError("TMDb API key should be 32 letters and digits")
    async with aiosqlite.connect(db_path) as db:
        if not api_key:
            await db.execute("DELETE FROM kv WHERE key = ?", (API_KEY_KEY,))
            await db.commit()
            return None
        await db.execute(
            """
            INSERT INTO kv (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (API_KEY_KEY, api_key),
        )
        await db.commit()
    return api_key


async def resolve_api_key(configured: Optional[str], db_path: Path = DB_PATH) -> Optional[str]:
    """A key from the environment wins over the one saved through the app."""
    return configured or await get_api_key(db_path)

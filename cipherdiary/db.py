#! /usr/bin/python3
# -*- coding: utf-8 -*-
"""SQLite schema and async data access for CipherDiary.

Three keyed collections live here: ``diaries`` (indexed for range queries),
``config`` (singleton + named sub-keys) and ``metadata`` (the cached remote
index, ``last-sync`` and per-entry ``sync-baseline:{entryId}`` records).
Every write commits before the coroutine returns.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, List, Optional, Union
import json
import logging
import os
import sqlite3

import aiosqlite

from .errors import StorageError, ValidationError
from .models import DiaryRecord, SyncBaseline

logger = logging.getLogger(__name__)

DB_PATH = os.environ.get("CIPHERDIARY_DB", "cipherdiary.sqlite3")

CONFIG_KEY = "config"
LOCK_STATE_KEY = "lock-state"
METADATA_KEY = "metadata"
LAST_SYNC_KEY = "last-sync"
SYNC_BASELINE_PREFIX = "sync-baseline:"

# Public index name -> column
DIARY_INDEXES = {
    "type": "type",
    "date": "date",
    "year": "year",
    "createdAt": "created_at",
    "modifiedAt": "modified_at",
}


# ---------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS diaries (
    id            TEXT PRIMARY KEY,
    type          TEXT NOT NULL,
    date          TEXT NOT NULL,
    year          INTEGER,
    filename      TEXT NOT NULL,
    content       TEXT NOT NULL DEFAULT '',
    word_count    INTEGER NOT NULL DEFAULT 0,
    created_at    TEXT NOT NULL,
    modified_at   TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_diaries_type ON diaries(type);
CREATE INDEX IF NOT EXISTS idx_diaries_date ON diaries(date);
CREATE INDEX IF NOT EXISTS idx_diaries_year ON diaries(year);
CREATE INDEX IF NOT EXISTS idx_diaries_created_at ON diaries(created_at);
CREATE INDEX IF NOT EXISTS idx_diaries_modified_at ON diaries(modified_at);

CREATE TABLE IF NOT EXISTS config (
    key     TEXT PRIMARY KEY,
    value   TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS metadata (
    key     TEXT PRIMARY KEY,
    value   TEXT NOT NULL
);
"""


@dataclass(frozen=True)
class KeyRange:
    """Inclusive-by-default bounds for :func:`list_diaries_by_index`."""

    lower: Any = None
    upper: Any = None
    lower_open: bool = False
    upper_open: bool = False


# ---------------------------------------------------------------------
# Connection / initialization
# ---------------------------------------------------------------------

@asynccontextmanager
async def _connect() -> AsyncIterator[aiosqlite.Connection]:
    """Open a connection; sqlite and OS failures surface as StorageError."""
    try:
        async with aiosqlite.connect(DB_PATH) as db:
            db.row_factory = aiosqlite.Row
            yield db
    except (sqlite3.Error, OSError) as exc:
        logger.error(f"Local store failure on {DB_PATH}: {exc}")
        raise StorageError(f"Local storage unavailable: {exc}") from exc


async def init_db() -> None:
    """Create tables and indexes if they don't exist."""
    async with _connect() as db:
        await db.executescript(SCHEMA_SQL)
        await db.commit()
    logger.info(f"Local store ready at {DB_PATH}")


# ---------------------------------------------------------------------
# Diaries
# ---------------------------------------------------------------------

def _row_to_record(row: aiosqlite.Row) -> DiaryRecord:
    return DiaryRecord(
        id=row["id"],
        type=row["type"],
        date=row["date"],
        year=row["year"],
        filename=row["filename"],
        content=row["content"],
        word_count=row["word_count"],
        created_at=row["created_at"],
        modified_at=row["modified_at"],
    )


async def get_diary(entry_id: str) -> Optional[DiaryRecord]:
    """Fetch a diary by id; returns None if absent."""
    async with _connect() as db:
        cur = await db.execute("SELECT * FROM diaries WHERE id = ?", (entry_id,))
        row = await cur.fetchone()
        await cur.close()
        return _row_to_record(row) if row else None


async def put_diary(record: DiaryRecord) -> None:
    """Insert or replace a diary record."""
    async with _connect() as db:
        await db.execute(
            """
            INSERT OR REPLACE INTO diaries (
                id, type, date, year, filename,
                content, word_count, created_at, modified_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.type,
                record.date,
                record.year,
                record.filename,
                record.content,
                record.word_count,
                record.created_at,
                record.modified_at,
            ),
        )
        await db.commit()


async def list_diaries_by_index(
    index_name: str,
    query: Union[KeyRange, Any, None] = None,
    direction: str = "next",
    limit: Optional[int] = None,
) -> List[DiaryRecord]:
    """Walk the *index_name* index, optionally filtered by an exact value or KeyRange.

    ``direction`` is ``"next"`` (ascending) or ``"prev"`` (descending).
    """
    column = DIARY_INDEXES.get(index_name)
    if column is None:
        raise ValidationError(f"Unknown diary index {index_name!r}")
    if direction not in ("next", "prev"):
        raise ValidationError(f"Unknown cursor direction {direction!r}")
    if limit is not None and limit <= 0:
        return []

    where: List[str] = [f"{column} IS NOT NULL"]
    params: List[Any] = []
    if isinstance(query, KeyRange):
        if query.lower is not None:
            where.append(f"{column} {'>' if query.lower_open else '>='} ?")
            params.append(query.lower)
        if query.upper is not None:
            where.append(f"{column} {'<' if query.upper_open else '<='} ?")
            params.append(query.upper)
    elif query is not None:
        where.append(f"{column} = ?")
        params.append(query)

    order = "ASC" if direction == "next" else "DESC"
    sql = f"SELECT * FROM diaries WHERE {' AND '.join(where)} ORDER BY {column} {order}, id {order}"
    if limit is not None:
        sql += " LIMIT ?"
        params.append(limit)

    async with _connect() as db:
        cur = await db.execute(sql, params)
        rows = await cur.fetchall()
        await cur.close()
        return [_row_to_record(r) for r in rows]


async def list_diaries() -> List[DiaryRecord]:
    """Every diary record, ordered by date."""
    return await list_diaries_by_index("date")


# ---------------------------------------------------------------------
# Key/value collections
# ---------------------------------------------------------------------

async def _get_value(table: str, key: str) -> Any:
    async with _connect() as db:
        cur = await db.execute(f"SELECT value FROM {table} WHERE key = ?", (key,))
        row = await cur.fetchone()
        await cur.close()
        return json.loads(row["value"]) if row else None


async def _put_value(table: str, key: str, value: Any) -> None:
    async with _connect() as db:
        await db.execute(
            f"INSERT OR REPLACE INTO {table} (key, value) VALUES (?, ?)",
            (key, json.dumps(value)),
        )
        await db.commit()


async def get_config(key: str = CONFIG_KEY) -> Any:
    return await _get_value("config", key)


async def put_config(value: Any, key: str = CONFIG_KEY) -> None:
    await _put_value("config", key, value)


async def get_metadata(key: str = METADATA_KEY) -> Any:
    return await _get_value("metadata", key)


async def put_metadata(value: Any, key: str = METADATA_KEY) -> None:
    await _put_value("metadata", key, value)


# ---------------------------------------------------------------------
# Sync baselines
# ---------------------------------------------------------------------

def _baseline_key(entry_id: str) -> str:
    entry_id = (entry_id or "").strip()
    if not entry_id:
        raise ValidationError("entry id must not be empty")
    return f"{SYNC_BASELINE_PREFIX}{entry_id}"


async def get_sync_baseline(entry_id: str) -> Optional[SyncBaseline]:
    data = await get_metadata(_baseline_key(entry_id))
    return SyncBaseline.from_dict(data) if data else None


async def put_sync_baseline(baseline: SyncBaseline) -> None:
    await put_metadata(baseline.to_dict(), _baseline_key(baseline.entry_id))


async def clear_sync_state() -> None:
    """Forget baselines, the cached index and the last-sync time."""
    async with _connect() as db:
        await db.execute(
            "DELETE FROM metadata WHERE key LIKE ? OR key IN (?, ?)",
            (f"{SYNC_BASELINE_PREFIX}%", METADATA_KEY, LAST_SYNC_KEY),
        )
        await db.commit()

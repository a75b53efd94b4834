# -*- coding: utf-8 -*-
"""Application logic that composes the store, auth and sync layers.

This module provides the public API used by the UI. It does not contain any
Textual UI code. All side effects (DB + config I/O) are explicit and local.
"""
from __future__ import annotations

from datetime import date as date_cls
from pathlib import Path
from typing import Dict, List, Optional
import asyncio
import json
import logging
import os

from . import db
from .auth import AuthSession, remote_access_check
from .db import KeyRange
from .errors import StorageError
from .models import DAILY, DiaryRecord, daily_entry_id, parse_entry_id, summary_entry_id
from .remote import DEFAULT_API_BASE
from .sync import SyncEngine, default_client_factory

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Config management (JSON on disk)
# ---------------------------------------------------------------------

APP_NAME = "cipherdiary"

DEFAULT_CONFIG: Dict[str, object] = {
    "api_base": DEFAULT_API_BASE,
    "sync_timeout_seconds": 15,
    "auto_sync_seconds": 30,
    "lock_days": 7,
    "token_cache_minutes": 60,
    "log_level": "INFO",
}


def _config_dir() -> Path:
    """Return the config directory path for this platform."""
    if os.name == "nt":
        base = os.environ.get("APPDATA", os.path.expanduser("~\\AppData\\Roaming"))
        return Path(base) / APP_NAME
    base = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    return Path(base) / APP_NAME


def _config_path() -> Path:
    return _config_dir() / "config.json"


def log_path() -> Path:
    return _config_dir() / f"{APP_NAME}.log"


def load_config() -> Dict[str, object]:
    """Load the merged configuration (defaults + file)."""
    path = _config_path()
    if not path.exists():
        save_config(DEFAULT_CONFIG)
        return dict(DEFAULT_CONFIG)
    with path.open("r", encoding="utf-8") as f:
        data = json.load(f)
    merged = dict(DEFAULT_CONFIG)
    merged.update(data)
    return merged


def save_config(cfg: Dict[str, object]) -> None:
    """Persist *cfg* to the JSON config file."""
    _config_dir().mkdir(parents=True, exist_ok=True)
    with _config_path().open("w", encoding="utf-8") as f:
        json.dump(cfg, f, indent=2)


# ---------------------------------------------------------------------
# DB bridge
# ---------------------------------------------------------------------

async def init_db() -> None:
    """Initialize the SQLite database (create tables on first run)."""
    await db.init_db()


# ---------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------

def build_session(cfg: Dict[str, object]) -> AuthSession:
    return AuthSession(
        verify_access=remote_access_check(str(cfg["api_base"])),
        lock_days=int(cfg["lock_days"]),
        token_cache_minutes=int(cfg["token_cache_minutes"]),
    )


def build_engine(session: AuthSession, cfg: Dict[str, object]) -> SyncEngine:
    return SyncEngine(
        session,
        default_client_factory(str(cfg["api_base"])),
        timeout=float(cfg["sync_timeout_seconds"]),
        debounce=float(cfg["auto_sync_seconds"]),
    )


def today_entry_id() -> str:
    return daily_entry_id(date_cls.today().isoformat())


def entry_id_for(value: str) -> str:
    """Map user input (``YYYY-MM-DD``, ``YYYY`` or a full id) to an entry id."""
    value = (value or "").strip()
    if value.isdigit():
        return summary_entry_id(int(value))
    if ":" in value:
        parse_entry_id(value)
        return value
    return daily_entry_id(value)


# ---------------------------------------------------------------------
# Local-first editing
# ---------------------------------------------------------------------

class DiaryEditor:
    """Writes go to the store immediately; sync is scheduled afterwards.

    Edits to one entry are serialized by a lock. Each edit takes a new
    generation number so an older pending write never lands after a newer
    one. Reads come from an in-memory cache, so a read right after a write
    sees the written value. A failed write drops the cached copy so the next
    read comes from the store.
    """

    def __init__(self, engine: Optional[SyncEngine] = None) -> None:
        self.engine = engine
        self._locks: Dict[str, asyncio.Lock] = {}
        self._generations: Dict[str, int] = {}
        self._cache: Dict[str, DiaryRecord] = {}
        if engine is not None:
            engine.add_local_listener(self.remember)

    def remember(self, record: DiaryRecord) -> None:
        """Take a record written outside the editor (pull, import) into the cache."""
        self._cache[record.id] = record

    async def open(self, entry_id: str) -> DiaryRecord:
        """Load an entry, or a blank unsaved record if none exists yet."""
        cached = self._cache.get(entry_id)
        if cached is not None:
            return cached
        record = await db.get_diary(entry_id) or DiaryRecord.new(entry_id)
        return self._cache.setdefault(entry_id, record)

    async def get_content(self, entry_id: str) -> str:
        return (await self.open(entry_id)).content

    async def set_content(self, entry_id: str, content: str) -> DiaryRecord:
        """Save *content* locally and schedule an auto-sync."""
        parse_entry_id(entry_id)
        gen = self._generations.get(entry_id, 0) + 1
        self._generations[entry_id] = gen

        base = await self.open(entry_id)
        if self._generations[entry_id] != gen:
            return self._cache[entry_id]
        record = base.with_content(content)
        self._cache[entry_id] = record

        lock = self._locks.setdefault(entry_id, asyncio.Lock())
        async with lock:
            if self._generations[entry_id] != gen:
                logger.debug(f"Write of {entry_id} generation {gen} superseded")
                return self._cache[entry_id]
            try:
                await db.put_diary(record)
            except StorageError:
                if self._cache.get(entry_id) is record:
                    del self._cache[entry_id]
                raise

        if self.engine is not None:
            self.engine.schedule_push(entry_id)
        return record

    async def recent(self, limit: int = 10) -> List[DiaryRecord]:
        """Most recently modified entries."""
        return await db.list_diaries_by_index("modifiedAt", direction="prev", limit=limit)

    async def entries_for_year(self, year: int) -> List[DiaryRecord]:
        """Daily entries of *year*, oldest first."""
        rows = await db.list_diaries_by_index("date", KeyRange(f"{year:04d}-01-01", f"{year:04d}-12-31"))
        return [r for r in rows if r.type == DAILY]

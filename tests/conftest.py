"""Shared fixtures: temporary store, in-memory contents server, session, engine."""

import asyncio
import itertools
from typing import Dict, List, Optional, Tuple

import pytest

from cipherdiary import db
from cipherdiary.auth import AuthSession
from cipherdiary.errors import ConflictError
from cipherdiary.remote import RemoteFile
from cipherdiary.sync import SyncEngine

PASSWORD = "correct horse 42"
TOKEN = "tok-abc123"


class FakeContents:
    """In-memory stand-in for the contents API with sha counters."""

    def __init__(self):
        self.files: Dict[str, Tuple[str, str]] = {}
        self.puts: List[Tuple[str, Optional[str]]] = []
        self.gets: List[str] = []
        self.delay = 0.0
        self.write_errors: Dict[str, Exception] = {}
        self._shas = itertools.count(1)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        return None

    def seed(self, path: str, content: str) -> str:
        """Place *content* at *path* as if another device wrote it."""
        sha = f"sha-{next(self._shas)}"
        self.files[path] = (content, sha)
        return sha

    def put_count(self, path: str) -> int:
        return sum(1 for p, _ in self.puts if p == path)

    async def read_file(self, path: str) -> Optional[RemoteFile]:
        self.gets.append(path)
        if path not in self.files:
            return None
        content, sha = self.files[path]
        return RemoteFile(path=path, content=content, sha=sha)

    async def write_file(self, path: str, content: str, message: str, sha: Optional[str] = None) -> str:
        self.puts.append((path, sha))
        if self.delay:
            await asyncio.sleep(self.delay)
        if path in self.write_errors:
            raise self.write_errors[path]
        current = self.files.get(path)
        if (current is None and sha) or (current is not None and current[1] != sha):
            raise ConflictError(f"sha does not match for {path}", path=path)
        return self.seed(path, content)


@pytest.fixture
async def store(tmp_path, monkeypatch):
    """Fresh SQLite file per test."""
    monkeypatch.setattr(db, "DB_PATH", str(tmp_path / "diary.sqlite3"))
    await db.init_db()
    yield tmp_path


@pytest.fixture
async def session(store):
    """A session that has completed setup and is ready."""
    s = AuthSession(verify_access=None, kdf_iterations=1000)
    await s.check()
    await s.setup("alice/diary", TOKEN, PASSWORD)
    return s


@pytest.fixture
def fake():
    return FakeContents()


@pytest.fixture
async def engine(session, fake):
    eng = SyncEngine(session, lambda state: fake, timeout=1.0, debounce=0.05)
    yield eng
    await eng.close()

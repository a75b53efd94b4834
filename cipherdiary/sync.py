# -*- coding: utf-8 -*-
"""Sync engine: reconcile local plaintext with remote ciphertext.

One network commit per entry is in flight at a time; auto-sync (debounced)
and manual sync share that guard. Every remote call runs as a shielded task
bounded by ``timeout``. Local writes (baselines, records, the cached index)
happen only in the awaiting coroutine, never in the network task, so a
timed-out task cannot touch local state when it eventually finishes.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple
import asyncio
import hashlib
import itertools
import json
import logging

from . import db
from .auth import AuthSession, AuthState, Stage
from .conflict import BLOCKED_MESSAGE, ConflictState, Resolution, conflict_from_remote, open_conflict, resolution_content
from .crypto import decrypt, encrypt
from .errors import (
    AuthError,
    ConflictError,
    NetworkError,
    StorageError,
    SyncTimeoutError,
    ValidationError,
)
from .models import (
    DAILY,
    METADATA_PATH,
    DiaryRecord,
    MetadataIndex,
    SyncBaseline,
    iso,
    parse_entry_id,
    parse_iso,
    utc_now,
)
from .remote import DEFAULT_API_BASE, ContentsClient

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15.0
DEFAULT_DEBOUNCE = 30.0
METADATA_ATTEMPTS = 2
BUSY_MESSAGE = "currently uploading, retry shortly"
TIMEOUT_MESSAGE = "sync timeout"

_REMOTE_ERRORS = (AuthError, NetworkError, SyncTimeoutError, ValidationError)

ClientFactory = Callable[[AuthState], Any]
LocalListener = Callable[[DiaryRecord], None]


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    SUCCESS = "success"
    ERROR = "error"
    CONFLICT = "conflict"


class PushOutcome(str, Enum):
    SYNCED = "synced"
    NOTHING_TO_SYNC = "nothing-to-sync"
    BUSY = "busy"
    CONFLICT = "conflict"
    ERROR = "error"
    PARTIAL = "partial"


class PullOutcome(str, Enum):
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    MISSING = "missing"
    BUSY = "busy"
    CONFLICT = "conflict"
    ERROR = "error"


@dataclass
class PushResult:
    entry_id: str
    outcome: PushOutcome
    message: str = ""
    remote_sha: Optional[str] = None
    conflict: Optional[ConflictState] = None


@dataclass
class PullResult:
    entry_id: str
    outcome: PullOutcome
    message: str = ""
    conflict: Optional[ConflictState] = None


@dataclass
class BulkSummary:
    """Per-entry outcome of a bulk push or pull. Reasons keyed by entry id."""

    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    skipped: Dict[str, str] = field(default_factory=dict)
    conflicted: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed) + len(self.skipped) + len(self.conflicted)


# ---------------------------------------------------------------------
# Fingerprints and commit messages
# ---------------------------------------------------------------------

def normalize_content(content: str) -> str:
    """CRLF to LF, trailing spaces/tabs stripped per line."""
    lines = content.replace("\r\n", "\n").split("\n")
    return "\n".join(line.rstrip(" \t") for line in lines)


def fingerprint(entry_id: str, content: str) -> str:
    """Stable ``v1:{sha256[:16]}:{len}`` digest of an entry's normalized content."""
    normalized = normalize_content(content)
    digest = hashlib.sha256(f"{entry_id}\n{normalized}".encode("utf-8")).hexdigest()[:16]
    return f"v1:{digest}:{len(normalized)}"


def commit_message(record: DiaryRecord, now: datetime) -> str:
    if record.type == DAILY:
        return f"chore: diary {record.date} @ {iso(now)}"
    return f"chore: yearly summary {record.year} @ {iso(now)}"


def default_client_factory(api_base: str = DEFAULT_API_BASE) -> ClientFactory:
    """ContentsClient bound to the session's repository and token."""

    def _make(state: AuthState) -> ContentsClient:
        cfg = state.config
        return ContentsClient(cfg.owner, cfg.repo, state.token or "", branch=cfg.branch, api_base=api_base)

    return _make


# ---------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------

class SyncEngine:
    """Push/pull, debounced auto-sync, conflicts and status for one session."""

    def __init__(
        self,
        session: AuthSession,
        client_factory: Optional[ClientFactory] = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        debounce: float = DEFAULT_DEBOUNCE,
    ) -> None:
        self.session = session
        self.timeout = timeout
        self.debounce = debounce
        self._client_factory = client_factory or default_client_factory()

        self.status = SyncStatus.IDLE
        self.status_message = ""
        self.last_synced_at: Optional[datetime] = None
        self.conflicts: Dict[str, ConflictState] = {}
        self.busy_signals = 0

        self._generations = itertools.count(1)
        self._in_flight: Dict[str, int] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._auto_tasks: Set[asyncio.Task] = set()
        self._status_listeners: List[Callable[[SyncStatus, str], None]] = []
        self._local_listeners: List[LocalListener] = []

    # -----------------------------------------------------------------
    # Observers
    # -----------------------------------------------------------------

    def add_status_listener(self, listener: Callable[[SyncStatus, str], None]) -> None:
        self._status_listeners.append(listener)

    def add_local_listener(self, listener: LocalListener) -> None:
        """Called with every record the engine writes locally (pull, keep-remote)."""
        self._local_listeners.append(listener)

    def _set_status(self, status: SyncStatus, message: str = "") -> None:
        self.status = status
        self.status_message = message
        for listener in self._status_listeners:
            listener(status, message)

    async def load(self) -> None:
        """Restore ``last_synced_at`` from the store."""
        self.last_synced_at = parse_iso(await db.get_metadata(db.LAST_SYNC_KEY))

    async def _mark_synced(self, now: datetime, message: str = "") -> None:
        await db.put_metadata(iso(now), db.LAST_SYNC_KEY)
        self.last_synced_at = now
        self._set_status(SyncStatus.SUCCESS, message)

    # -----------------------------------------------------------------
    # Availability and in-flight guard
    # -----------------------------------------------------------------

    def unavailable_reason(self) -> Optional[str]:
        """Why sync cannot run right now, or None when it can."""
        state = self.session.state
        if state.stage is not Stage.READY:
            return "Unlock the diary to sync"
        if not state.token:
            return "No access token available"
        if state.key is None:
            return "Encryption key is not available"
        cfg = state.config
        if cfg is None or not cfg.owner or not cfg.repo:
            return "Repository is not configured"
        return None

    def is_busy(self, entry_id: str) -> bool:
        return entry_id in self._in_flight

    def _acquire(self, entry_id: str) -> Optional[int]:
        if entry_id in self._in_flight:
            return None
        gen = next(self._generations)
        self._in_flight[entry_id] = gen
        return gen

    def _release(self, entry_id: str, gen: int) -> None:
        if self._in_flight.get(entry_id) == gen:
            del self._in_flight[entry_id]

    def _discard_stale(self, entry_id: str, gen: int, task: asyncio.Future) -> None:
        if task.cancelled():
            logger.info(f"Stale sync task for {entry_id} (generation {gen}) was cancelled")
            return
        exc = task.exception()
        outcome = f"failed with {type(exc).__name__}" if exc else "completed"
        logger.info(f"Discarding stale sync result for {entry_id} (generation {gen}): {outcome}")

    async def _remote(
        self, state: AuthState, entry_id: str, gen: int, fn: Callable[[Any], Awaitable[Any]]
    ) -> Any:
        """Run ``fn(client)`` as a shielded task bounded by ``timeout``."""

        async def _call() -> Any:
            async with self._client_factory(state) as client:
                return await fn(client)

        task = asyncio.ensure_future(_call())
        try:
            return await asyncio.wait_for(asyncio.shield(task), self.timeout)
        except asyncio.TimeoutError:
            task.add_done_callback(partial(self._discard_stale, entry_id, gen))
            logger.warning(f"Remote call for {entry_id} exceeded {self.timeout}s")
            raise SyncTimeoutError(TIMEOUT_MESSAGE) from None

    # -----------------------------------------------------------------
    # Local helpers
    # -----------------------------------------------------------------

    async def _store_local(self, entry_id: str, content: str) -> DiaryRecord:
        existing = await db.get_diary(entry_id)
        record = existing.with_content(content) if existing else DiaryRecord.new(entry_id, content)
        await db.put_diary(record)
        for listener in self._local_listeners:
            listener(record)
        return record

    async def _store_baseline(self, entry_id: str, content: str, sha: Optional[str], now: datetime) -> None:
        await db.put_sync_baseline(SyncBaseline(entry_id, fingerprint(entry_id, content), iso(now), sha))

    async def is_dirty(self, entry_id: str) -> bool:
        """True when local content differs from the last synced state."""
        record = await db.get_diary(entry_id)
        if record is None or not record.content.strip():
            return False
        baseline = await db.get_sync_baseline(entry_id)
        return baseline is None or baseline.fingerprint != fingerprint(entry_id, record.content)

    def _check_entry(self, entry_id: str) -> Optional[str]:
        reason = self.unavailable_reason()
        if reason:
            return reason
        try:
            parse_entry_id(entry_id)
        except ValidationError as exc:
            return str(exc)
        return None

    # -----------------------------------------------------------------
    # Push
    # -----------------------------------------------------------------

    async def push(self, entry_id: str) -> PushResult:
        """Encrypt and upload one entry, then refresh the metadata index."""
        reason = self._check_entry(entry_id)
        if reason:
            return PushResult(entry_id, PushOutcome.ERROR, reason)
        state = self.session.state
        gen = self._acquire(entry_id)
        if gen is None:
            logger.info(f"Push for {entry_id} rejected: {BUSY_MESSAGE}")
            return PushResult(entry_id, PushOutcome.BUSY, BUSY_MESSAGE)
        try:
            record = await db.get_diary(entry_id)
            if record is None or not record.content.strip():
                return PushResult(entry_id, PushOutcome.NOTHING_TO_SYNC, "Nothing to sync")
            baseline = await db.get_sync_baseline(entry_id)
            return await self._push_record(state, gen, record, baseline.remote_sha if baseline else None)
        except StorageError:
            self._set_status(SyncStatus.ERROR, "Local storage failure")
            raise
        finally:
            self._release(entry_id, gen)

    async def _push_record(
        self, state: AuthState, gen: int, record: DiaryRecord, expected_sha: Optional[str]
    ) -> PushResult:
        """Single PUT attempt against *expected_sha*; mismatches go to detection."""
        entry_id = record.id
        key = state.key
        now = utc_now()
        self._set_status(SyncStatus.SYNCING, f"Uploading {entry_id}")
        envelope = encrypt(record.content, key)
        message = commit_message(record, now)

        try:
            new_sha = await self._remote(
                state,
                entry_id,
                gen,
                lambda client: client.write_file(record.filename, envelope, message, expected_sha),
            )
        except ConflictError:
            logger.info(f"Version mismatch pushing {entry_id}")
            return await self._on_mismatch(state, gen, record)
        except _REMOTE_ERRORS as exc:
            logger.warning(f"Push of {entry_id} failed: {exc}")
            self._set_status(SyncStatus.ERROR, str(exc))
            return PushResult(entry_id, PushOutcome.ERROR, str(exc))

        await self._store_baseline(entry_id, record.content, new_sha, now)
        return await self._finish_push(state, gen, record, new_sha, now)

    async def _finish_push(
        self, state: AuthState, gen: int, record: DiaryRecord, sha: str, now: datetime
    ) -> PushResult:
        problem = await self._update_metadata(state, gen, record, now)
        if problem:
            self._set_status(SyncStatus.ERROR, f"Metadata index not updated: {problem}")
            return PushResult(record.id, PushOutcome.PARTIAL, problem, remote_sha=sha)
        self.conflicts.pop(record.id, None)
        await self._mark_synced(now, f"Synced {record.id}")
        logger.info(f"Pushed {record.id} at sha {sha}")
        return PushResult(record.id, PushOutcome.SYNCED, remote_sha=sha)

    async def _on_mismatch(self, state: AuthState, gen: int, record: DiaryRecord) -> PushResult:
        """Detect the conflict, or adopt the remote sha when contents agree."""
        entry_id = record.id
        key = state.key
        try:
            conflict = await self._remote(
                state,
                entry_id,
                gen,
                lambda client: open_conflict(client, entry_id, record.filename, record.content, key),
            )
        except _REMOTE_ERRORS as exc:
            self._set_status(SyncStatus.ERROR, str(exc))
            return PushResult(entry_id, PushOutcome.ERROR, str(exc))

        if (
            not conflict.blocked
            and conflict.remote_sha
            and normalize_content(conflict.remote_content or "") == normalize_content(record.content)
        ):
            logger.info(f"Remote {entry_id} already matches local, adopting sha {conflict.remote_sha}")
            now = utc_now()
            await self._store_baseline(entry_id, record.content, conflict.remote_sha, now)
            return await self._finish_push(state, gen, record, conflict.remote_sha, now)

        return self._enter_conflict(conflict)

    def _enter_conflict(self, conflict: ConflictState) -> PushResult:
        self.conflicts[conflict.entry_id] = conflict
        self._set_status(SyncStatus.CONFLICT, conflict.message)
        return PushResult(conflict.entry_id, PushOutcome.CONFLICT, conflict.message, conflict=conflict)

    async def _update_metadata(
        self, state: AuthState, gen: int, record: DiaryRecord, now: datetime
    ) -> Optional[str]:
        """Upsert *record* into the remote index; returns a problem or None."""
        key = state.key

        async def _write(client) -> Tuple[MetadataIndex, str]:
            for attempt in range(1, METADATA_ATTEMPTS + 1):
                current = await client.read_file(METADATA_PATH)
                data = None
                if current is not None:
                    try:
                        data = json.loads(decrypt(current.content, key))
                    except ValueError:
                        logger.warning("Remote metadata index is not valid JSON, rebuilding it")
                index = MetadataIndex.from_dict(data, now)
                index.upsert(record, now)
                try:
                    sha = await client.write_file(
                        METADATA_PATH,
                        encrypt(json.dumps(index.to_dict()), key),
                        f"chore: metadata @ {iso(now)}",
                        current.sha if current else None,
                    )
                    return index, sha
                except ConflictError:
                    if attempt == METADATA_ATTEMPTS:
                        raise
                    logger.info("Metadata index changed remotely, retrying once")
            raise ConflictError("Metadata index kept changing", path=METADATA_PATH)

        try:
            index, sha = await self._remote(state, record.id, gen, _write)
        except (ConflictError,) + _REMOTE_ERRORS as exc:
            logger.warning(f"Metadata update after {record.id} failed: {exc}")
            return str(exc)
        await db.put_metadata({"index": index.to_dict(), "sha": sha})
        return None

    # -----------------------------------------------------------------
    # Pull
    # -----------------------------------------------------------------

    async def pull(self, entry_id: str) -> PullResult:
        """Download one entry and apply it locally when that is safe."""
        reason = self._check_entry(entry_id)
        if reason:
            return PullResult(entry_id, PullOutcome.ERROR, reason)
        state = self.session.state
        gen = self._acquire(entry_id)
        if gen is None:
            return PullResult(entry_id, PullOutcome.BUSY, BUSY_MESSAGE)
        try:
            return await self._pull(state, gen, entry_id)
        except StorageError:
            self._set_status(SyncStatus.ERROR, "Local storage failure")
            raise
        finally:
            self._release(entry_id, gen)

    async def _pull(self, state: AuthState, gen: int, entry_id: str) -> PullResult:
        path = DiaryRecord.new(entry_id).filename
        key = state.key
        self._set_status(SyncStatus.SYNCING, f"Downloading {entry_id}")

        try:
            remote = await self._remote(state, entry_id, gen, lambda client: client.read_file(path))
        except _REMOTE_ERRORS as exc:
            logger.warning(f"Pull of {entry_id} failed: {exc}")
            self._set_status(SyncStatus.ERROR, str(exc))
            return PullResult(entry_id, PullOutcome.ERROR, str(exc))

        now = utc_now()
        if remote is None:
            self._set_status(SyncStatus.IDLE)
            return PullResult(entry_id, PullOutcome.MISSING, "Not found on remote")

        baseline = await db.get_sync_baseline(entry_id)
        if baseline is not None and baseline.remote_sha == remote.sha:
            if await self.is_dirty(entry_id):
                self._set_status(SyncStatus.IDLE, f"{entry_id} has local edits to push")
                return PullResult(entry_id, PullOutcome.UNCHANGED, "Local edits not pushed yet")
            await self._mark_synced(now)
            return PullResult(entry_id, PullOutcome.UNCHANGED)

        record = await db.get_diary(entry_id)
        local = record.content if record else ""
        conflict = conflict_from_remote(entry_id, path, local, remote.content, remote.sha, key)
        if conflict.blocked:
            result = self._enter_conflict(conflict)
            return PullResult(entry_id, PullOutcome.CONFLICT, result.message, conflict=conflict)

        text = conflict.remote_content or ""
        if fingerprint(entry_id, local) == fingerprint(entry_id, text):
            await self._store_baseline(entry_id, local, remote.sha, now)
            await self._mark_synced(now)
            return PullResult(entry_id, PullOutcome.UNCHANGED)

        clean = not local.strip() or (
            baseline is not None and baseline.fingerprint == fingerprint(entry_id, local)
        )
        if not clean:
            logger.info(f"Pull of {entry_id} found local edits, opening conflict")
            self._enter_conflict(conflict)
            return PullResult(entry_id, PullOutcome.CONFLICT, conflict.message, conflict=conflict)

        await self._store_local(entry_id, text)
        await self._store_baseline(entry_id, text, remote.sha, now)
        await self._mark_synced(now, f"Updated {entry_id}")
        logger.info(f"Pulled {entry_id} at sha {remote.sha}")
        return PullResult(entry_id, PullOutcome.UPDATED)

    # -----------------------------------------------------------------
    # Conflict resolution
    # -----------------------------------------------------------------

    def dismiss_conflict(self, entry_id: str) -> None:
        self.conflicts.pop(entry_id, None)
        if self.status is SyncStatus.CONFLICT and not self.conflicts:
            self._set_status(SyncStatus.IDLE)

    async def resolve_conflict(
        self,
        conflict: ConflictState,
        resolution: Resolution,
        merged_text: Optional[str] = None,
    ) -> PushResult:
        """Apply *resolution* to *conflict*.

        keep-remote writes locally and makes no network call. keep-local and
        merge push once against the conflict's remote sha; another mismatch
        opens a fresh conflict. A blocked conflict is re-detected with the
        current key first and raises AuthError if it stays blocked.
        """
        resolution = Resolution(resolution)
        entry_id = conflict.entry_id
        reason = self._check_entry(entry_id)
        if reason:
            return PushResult(entry_id, PushOutcome.ERROR, reason)
        state = self.session.state
        gen = self._acquire(entry_id)
        if gen is None:
            return PushResult(entry_id, PushOutcome.BUSY, BUSY_MESSAGE)
        try:
            if conflict.blocked:
                try:
                    conflict = await self._redetect(state, gen, conflict)
                except (NetworkError, SyncTimeoutError) as exc:
                    self._set_status(SyncStatus.ERROR, str(exc))
                    return PushResult(entry_id, PushOutcome.ERROR, str(exc))
            text = resolution_content(conflict, resolution, merged_text)
            now = utc_now()

            if resolution is Resolution.KEEP_REMOTE:
                await self._store_local(entry_id, text)
                await self._store_baseline(entry_id, text, conflict.remote_sha, now)
                self.conflicts.pop(entry_id, None)
                await self._mark_synced(now, f"Kept remote copy of {entry_id}")
                return PushResult(entry_id, PushOutcome.SYNCED, remote_sha=conflict.remote_sha)

            if resolution is Resolution.MERGE:
                record = await self._store_local(entry_id, text)
            else:
                record = await db.get_diary(entry_id) or await self._store_local(entry_id, text)
            return await self._push_record(state, gen, record, conflict.remote_sha)
        except StorageError:
            self._set_status(SyncStatus.ERROR, "Local storage failure")
            raise
        finally:
            self._release(entry_id, gen)

    async def _redetect(self, state: AuthState, gen: int, conflict: ConflictState) -> ConflictState:
        key = state.key
        fresh = await self._remote(
            state,
            conflict.entry_id,
            gen,
            lambda client: open_conflict(client, conflict.entry_id, conflict.path, conflict.local_content, key),
        )
        self.conflicts[conflict.entry_id] = fresh
        if fresh.blocked:
            raise AuthError(BLOCKED_MESSAGE)
        return fresh

    # -----------------------------------------------------------------
    # Auto and manual sync
    # -----------------------------------------------------------------

    def schedule_push(self, entry_id: str) -> None:
        """(Re)start the debounce timer for *entry_id*."""
        handle = self._timers.pop(entry_id, None)
        if handle is not None:
            handle.cancel()
        loop = asyncio.get_running_loop()
        self._timers[entry_id] = loop.call_later(self.debounce, self._fire_auto, entry_id)

    def _fire_auto(self, entry_id: str) -> None:
        self._timers.pop(entry_id, None)
        if self.is_busy(entry_id):
            self.busy_signals += 1
            logger.info(f"Auto-sync for {entry_id} skipped: {BUSY_MESSAGE}")
            return
        task = asyncio.ensure_future(self.push(entry_id))
        self._auto_tasks.add(task)
        task.add_done_callback(self._auto_done)

    def _auto_done(self, task: asyncio.Task) -> None:
        self._auto_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Auto-sync failed: {exc}")

    def has_pending(self, entry_id: str) -> bool:
        return entry_id in self._timers

    async def sync_now(self, entry_id: str) -> PushResult:
        """Manual sync: cancel the pending timer and push immediately."""
        handle = self._timers.pop(entry_id, None)
        if handle is not None:
            handle.cancel()
        return await self.push(entry_id)

    async def close(self) -> None:
        """Cancel timers and wait for running auto-sync pushes."""
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        if self._auto_tasks:
            await asyncio.wait(list(self._auto_tasks))

    # -----------------------------------------------------------------
    # Bulk operations
    # -----------------------------------------------------------------

    async def bulk_push(self, entry_ids: Optional[Iterable[str]] = None) -> BulkSummary:
        """Push every dirty entry; one failure never stops the batch."""
        if entry_ids is None:
            entry_ids = [r.id for r in await db.list_diaries()]
        summary = BulkSummary()
        for entry_id in entry_ids:
            try:
                if not await self.is_dirty(entry_id):
                    summary.skipped[entry_id] = "Unchanged since last sync"
                    continue
                result = await self.push(entry_id)
            except StorageError as exc:
                logger.error(f"Bulk push of {entry_id} hit a storage failure: {exc}")
                summary.failed[entry_id] = str(exc)
                continue
            if result.outcome in (PushOutcome.SYNCED, PushOutcome.PARTIAL):
                summary.succeeded.append(entry_id)
            elif result.outcome is PushOutcome.CONFLICT:
                summary.conflicted.append(entry_id)
            elif result.outcome is PushOutcome.ERROR:
                summary.failed[entry_id] = result.message
            else:
                summary.skipped[entry_id] = result.message
        logger.info(
            f"Bulk push: {len(summary.succeeded)} ok, {len(summary.failed)} failed, "
            f"{len(summary.skipped)} skipped, {len(summary.conflicted)} conflicted"
        )
        return summary

    async def fetch_index(self) -> Optional[MetadataIndex]:
        """Download and decrypt the remote metadata index, caching it locally."""
        reason = self.unavailable_reason()
        if reason:
            raise AuthError(reason)
        gen = self._acquire(METADATA_PATH)
        if gen is None:
            raise NetworkError(BUSY_MESSAGE)
        state = self.session.state
        key = state.key
        try:
            remote = await self._remote(state, METADATA_PATH, gen, lambda client: client.read_file(METADATA_PATH))
        finally:
            self._release(METADATA_PATH, gen)
        if remote is None:
            return None
        try:
            data = json.loads(decrypt(remote.content, key))
        except ValueError as exc:
            raise NetworkError("Remote metadata index is not valid JSON") from exc
        index = MetadataIndex.from_dict(data)
        await db.put_metadata({"index": index.to_dict(), "sha": remote.sha})
        return index

    async def bulk_pull(self) -> BulkSummary:
        """Pull every entry named in the remote metadata index."""
        summary = BulkSummary()
        reason = self.unavailable_reason()
        if reason:
            summary.failed[METADATA_PATH] = reason
            return summary
        try:
            index = await self.fetch_index()
        except _REMOTE_ERRORS as exc:
            logger.warning(f"Bulk pull could not read the metadata index: {exc}")
            self._set_status(SyncStatus.ERROR, str(exc))
            summary.failed[METADATA_PATH] = str(exc)
            return summary
        if index is None:
            return summary

        for entry in index.entries:
            entry_id = entry.entry_id
            try:
                result = await self.pull(entry_id)
            except StorageError as exc:
                logger.error(f"Bulk pull of {entry_id} hit a storage failure: {exc}")
                summary.failed[entry_id] = str(exc)
                continue
            if result.outcome is PullOutcome.UPDATED:
                summary.succeeded.append(entry_id)
            elif result.outcome is PullOutcome.CONFLICT:
                summary.conflicted.append(entry_id)
            elif result.outcome is PullOutcome.ERROR:
                summary.failed[entry_id] = result.message
            else:
                summary.skipped[entry_id] = result.message or result.outcome.value
        logger.info(
            f"Bulk pull: {len(summary.succeeded)} updated, {len(summary.failed)} failed, "
            f"{len(summary.skipped)} skipped, {len(summary.conflicted)} conflicted"
        )
        return summary

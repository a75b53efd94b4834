# -*- coding: utf-8 -*-
"""Plaintext export and import of the local diary."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
import json
import logging
import re
import zipfile

from . import db
from .errors import StorageError, ValidationError
from .models import (
    DAILY,
    YEARLY_SUMMARY,
    DiaryRecord,
    daily_entry_id,
    iso,
    parse_iso,
    summary_entry_id,
    utc_now,
    validate_date,
    validate_year,
)
from .sync import BulkSummary, SyncEngine

logger = logging.getLogger(__name__)

MANIFEST_VERSION = "1.1"


@dataclass
class ExportResult:
    outcome: str  # "success" or "no_data"
    path: Optional[Path] = None
    manifest: Optional[Dict[str, Any]] = None
    failed: List[Tuple[str, str]] = field(default_factory=list)


def archive_name(now: datetime) -> str:
    return f"cipherdiary-export-{now.strftime('%Y%m%d-%H%M%S')}.zip"


def _default_dir() -> Path:
    """``exports/`` next to the database file."""
    db_path = Path(db.DB_PATH).expanduser()
    if not db_path.is_absolute():
        db_path = (Path.cwd() / db_path).resolve()
    return db_path.parent / "exports"


def archive_path(record: DiaryRecord) -> str:
    """Path of *record* inside the archive."""
    if record.type == DAILY:
        return f"diaries/{validate_date(record.date)}.md"
    if record.type == YEARLY_SUMMARY and record.year is not None:
        return f"summaries/{validate_year(record.year)}-summary.md"
    raise ValidationError(f"Unsupported entry type {record.type!r}")


async def export_archive(dest_dir: Optional[Path] = None, now: Optional[datetime] = None) -> ExportResult:
    """Write every local entry to a zip with a ``manifest.json``."""
    now = now or utc_now()
    records = await db.list_diaries()

    files: List[Tuple[DiaryRecord, str]] = []
    failed: List[Tuple[str, str]] = []
    for record in records:
        try:
            files.append((record, archive_path(record)))
        except ValidationError as exc:
            failed.append((record.id, str(exc)))

    if not files:
        return ExportResult(outcome="no_data", failed=failed)

    name = archive_name(now)
    manifest = {
        "version": MANIFEST_VERSION,
        "exportedAt": iso(now),
        "archiveName": name,
        "entryCount": len(files),
        "dailyCount": sum(1 for r, _ in files if r.type == DAILY),
        "yearlySummaryCount": sum(1 for r, _ in files if r.type == YEARLY_SUMMARY),
        "files": [
            {"entryId": r.id, "path": p, "modifiedAt": r.modified_at or r.created_at, "wordCount": r.word_count}
            for r, p in files
        ],
    }

    target_dir = dest_dir or _default_dir()
    target_dir.mkdir(parents=True, exist_ok=True)
    path = target_dir / name
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for record, inner in files:
            zf.writestr(inner, record.content)
        zf.writestr("manifest.json", json.dumps(manifest, indent=2) + "\n")

    logger.info(f"Exported {len(files)} entries to {path}")
    return ExportResult(outcome="success", path=path, manifest=manifest, failed=failed)


# ---------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------

_DAILY_NAME_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})\.(md|txt)$", re.IGNORECASE)
_SUMMARY_NAME_RE = re.compile(r"^(\d{4})-summary\.(md|txt)$", re.IGNORECASE)


@dataclass
class ImportSource:
    name: str
    content: Optional[str]
    modified_at: Optional[datetime] = None


@dataclass
class ImportCandidate:
    source: str
    record: DiaryRecord


@dataclass
class ImportPreview:
    ready: List[ImportCandidate] = field(default_factory=list)
    conflicts: List[ImportCandidate] = field(default_factory=list)
    invalid: List[Tuple[str, str]] = field(default_factory=list)
    failed: List[Tuple[str, str]] = field(default_factory=list)


@dataclass
class ImportResult:
    succeeded: List[str] = field(default_factory=list)
    overwritten: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    invalid: List[Tuple[str, str]] = field(default_factory=list)
    failed: List[Tuple[str, str]] = field(default_factory=list)
    upload: Optional[BulkSummary] = None


def entry_id_from_name(name: str) -> Optional[str]:
    """Entry id for ``YYYY-MM-DD.md`` or ``YYYY-summary.md`` (``.txt`` too)."""
    base = name.replace("\\", "/").rsplit("/", 1)[-1].strip()
    try:
        m = _DAILY_NAME_RE.match(base)
        if m:
            return daily_entry_id(m.group(1))
        m = _SUMMARY_NAME_RE.match(base)
        if m:
            return summary_entry_id(int(m.group(1)))
    except ValidationError:
        return None
    return None


def _read_zip(path: Path) -> List[ImportSource]:
    sources: List[ImportSource] = []
    with zipfile.ZipFile(path) as zf:
        modified: Dict[str, str] = {}
        if "manifest.json" in zf.namelist():
            try:
                manifest = json.loads(zf.read("manifest.json"))
            except ValueError as exc:
                raise ValidationError(f"{path.name} has an unreadable manifest.json") from exc
            files = manifest.get("files") if isinstance(manifest, dict) else None
            modified = {f.get("path"): f.get("modifiedAt") for f in files or [] if isinstance(f, dict)}
        for info in zf.infolist():
            if info.is_dir() or info.filename == "manifest.json":
                continue
            raw = zf.read(info)
            try:
                content = raw.decode("utf-8")
            except UnicodeDecodeError:
                content = None
            sources.append(ImportSource(info.filename, content, parse_iso(modified.get(info.filename))))
    return sources


def read_sources(path: Path) -> List[ImportSource]:
    """Collect importable files from a zip archive, a directory, or one file.

    A file that is not UTF-8 text comes back with ``content`` None.
    """
    path = Path(path).expanduser()
    if not path.exists():
        raise ValidationError(f"{path} does not exist")
    try:
        if path.is_file() and zipfile.is_zipfile(path):
            return _read_zip(path)
        return _read_files(path)
    except (OSError, zipfile.BadZipFile) as exc:
        raise StorageError(f"Could not read {path}: {exc}") from exc


def _read_files(path: Path) -> List[ImportSource]:
    files = sorted(p for p in path.rglob("*") if p.is_file()) if path.is_dir() else [path]
    sources = []
    for file in files:
        try:
            content = file.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            content = None
        mtime = datetime.fromtimestamp(file.stat().st_mtime, tz=timezone.utc)
        sources.append(ImportSource(str(file.relative_to(path) if path.is_dir() else file.name), content, mtime))
    return sources


async def preview_import(sources: Iterable[ImportSource], now: Optional[datetime] = None) -> ImportPreview:
    """Sort sources into ready, clashing with a local entry, invalid and failed."""
    now = now or utc_now()
    preview = ImportPreview()
    for source in sources:
        entry_id = entry_id_from_name(source.name)
        if entry_id is None:
            preview.invalid.append((source.name, "File name must be YYYY-MM-DD or YYYY-summary"))
            continue
        if source.content is None:
            preview.failed.append((source.name, "File is not UTF-8 text"))
            continue
        if not source.content.strip():
            preview.failed.append((source.name, "File is empty"))
            continue
        record = DiaryRecord.new(entry_id, source.content, now=source.modified_at or now)
        candidate = ImportCandidate(source.name, record)
        if await db.get_diary(entry_id) is not None:
            preview.conflicts.append(candidate)
        else:
            preview.ready.append(candidate)
    return preview


async def import_archive(
    path: Path,
    overwrite: bool = False,
    engine: Optional[SyncEngine] = None,
    on_write: Optional[Callable[[DiaryRecord], None]] = None,
    now: Optional[datetime] = None,
) -> ImportResult:
    """Import plaintext entries, then push them when *engine* can sync.

    Entries that already exist locally are skipped unless *overwrite*; an
    overwritten entry keeps its original ``created_at``. *on_write* is
    called with every record written.
    """
    preview = await preview_import(read_sources(path), now)
    result = ImportResult(invalid=list(preview.invalid), failed=list(preview.failed))

    chosen = list(preview.ready)
    if overwrite:
        chosen.extend(preview.conflicts)
    else:
        result.skipped.extend(c.record.id for c in preview.conflicts)
    clashing = {c.record.id for c in preview.conflicts}

    for candidate in chosen:
        record = candidate.record
        try:
            existing = await db.get_diary(record.id)
            if existing is not None:
                record = replace(record, created_at=existing.created_at)
            await db.put_diary(record)
        except StorageError as exc:
            logger.error(f"Import of {candidate.source} failed: {exc}")
            result.failed.append((candidate.source, str(exc)))
            continue
        if on_write is not None:
            on_write(record)
        if record.id not in result.succeeded:
            result.succeeded.append(record.id)
        if record.id in clashing and record.id not in result.overwritten:
            result.overwritten.append(record.id)

    logger.info(
        f"Imported {len(result.succeeded)} entries ({len(result.overwritten)} overwritten, "
        f"{len(result.skipped)} skipped, {len(result.invalid)} invalid, {len(result.failed)} failed)"
    )
    if engine is not None and result.succeeded:
        reason = engine.unavailable_reason()
        if reason:
            logger.info(f"Imported entries not uploaded: {reason}")
        else:
            result.upload = await engine.bulk_push(result.succeeded)
    return result

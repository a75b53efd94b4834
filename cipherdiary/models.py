# -*- coding: utf-8 -*-
"""Records shared by the local store, auth and sync layers.

Everything here is plain data. JSON shapes use the camelCase keys of the
remote metadata index and the persisted config so both sides agree.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date as date_cls, datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
import re

from .crypto import KdfParams
from .errors import ValidationError

DAILY = "daily"
YEARLY_SUMMARY = "yearly_summary"
ENTRY_TYPES = (DAILY, YEARLY_SUMMARY)

METADATA_PATH = "metadata.json.enc"
METADATA_VERSION = "1"

YEAR_MIN = 1970
YEAR_MAX = 9999

DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
DAILY_ID_RE = re.compile(r"^daily:(\d{4}-\d{2}-\d{2})$")
SUMMARY_ID_RE = re.compile(r"^summary:(\d{4})$")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat()


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp; naive values are taken as UTC. None on junk."""
    if not value:
        return None
    try:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def count_words(content: str) -> int:
    return len(content.split())


# ---------------------------------------------------------------------
# Entry identity
# ---------------------------------------------------------------------

def validate_date(value: str) -> str:
    """Return *value* if it is a real ``YYYY-MM-DD`` date."""
    value = (value or "").strip()
    if not DATE_RE.match(value):
        raise ValidationError(f"Invalid date {value!r}, expected YYYY-MM-DD")
    try:
        date_cls.fromisoformat(value)
    except ValueError as exc:
        raise ValidationError(f"Invalid date {value!r}") from exc
    return value


def validate_year(value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not YEAR_MIN <= value <= YEAR_MAX:
        raise ValidationError(f"Invalid year {value!r}")
    return value


def daily_entry_id(date: str) -> str:
    return f"daily:{validate_date(date)}"


def summary_entry_id(year: int) -> str:
    return f"summary:{validate_year(year)}"


def remote_filename(entry_type: str, date: str, year: Optional[int] = None) -> str:
    """Remote path for an entry: ``{date}.md.enc`` or ``{year}-summary.md.enc``."""
    if entry_type == DAILY:
        return f"{date}.md.enc"
    if entry_type == YEARLY_SUMMARY and year is not None:
        return f"{year}-summary.md.enc"
    raise ValidationError(f"Cannot build filename for {entry_type!r}")


def parse_entry_id(entry_id: str) -> Tuple[str, str, Optional[int]]:
    """Split an entry id into (type, date, year)."""
    entry_id = (entry_id or "").strip()
    m = DAILY_ID_RE.match(entry_id)
    if m:
        return DAILY, validate_date(m.group(1)), None
    m = SUMMARY_ID_RE.match(entry_id)
    if m:
        year = validate_year(int(m.group(1)))
        return YEARLY_SUMMARY, f"{year}-12-31", year
    raise ValidationError(f"Unknown entry id {entry_id!r}")


# ---------------------------------------------------------------------
# Diary records
# ---------------------------------------------------------------------

@dataclass
class DiaryRecord:
    """One diary entry as stored locally (plaintext)."""

    id: str
    type: str
    date: str
    filename: str
    content: str
    word_count: int
    created_at: str
    modified_at: str
    year: Optional[int] = None

    @classmethod
    def new(cls, entry_id: str, content: str = "", now: Optional[datetime] = None) -> "DiaryRecord":
        entry_type, date, year = parse_entry_id(entry_id)
        stamp = iso(now or utc_now())
        return cls(
            id=entry_id,
            type=entry_type,
            date=date,
            year=year,
            filename=remote_filename(entry_type, date, year),
            content=content,
            word_count=count_words(content),
            created_at=stamp,
            modified_at=stamp,
        )

    def with_content(self, content: str, now: Optional[datetime] = None) -> "DiaryRecord":
        """Return a copy carrying *content*; ``created_at`` is preserved."""
        return replace(
            self,
            content=content,
            word_count=count_words(content),
            modified_at=iso(now or utc_now()),
        )


# ---------------------------------------------------------------------
# Sync baseline
# ---------------------------------------------------------------------

@dataclass
class SyncBaseline:
    """Last state both sides agreed on for one entry."""

    entry_id: str
    fingerprint: str
    synced_at: str
    remote_sha: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entryId": self.entry_id,
            "fingerprint": self.fingerprint,
            "syncedAt": self.synced_at,
            "remoteSha": self.remote_sha,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncBaseline":
        return cls(
            entry_id=str(data["entryId"]),
            fingerprint=str(data["fingerprint"]),
            synced_at=str(data["syncedAt"]),
            remote_sha=data.get("remoteSha"),
        )


# ---------------------------------------------------------------------
# Configuration and lock state
# ---------------------------------------------------------------------

@dataclass
class AppConfig:
    """Persisted repository + key material. Never holds a plaintext token."""

    owner: str
    repo: str
    branch: str
    kdf_params: KdfParams
    password_hash: str
    password_expiry: str
    encrypted_token: Optional[str] = None
    token_cipher_version: int = 1
    wrapped_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner": self.owner,
            "repo": self.repo,
            "branch": self.branch,
            "kdfParams": self.kdf_params.to_dict(),
            "encryptedToken": self.encrypted_token,
            "tokenCipherVersion": self.token_cipher_version,
            "passwordHash": self.password_hash,
            "passwordExpiry": self.password_expiry,
            "wrappedKey": self.wrapped_key,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppConfig":
        return cls(
            owner=str(data["owner"]),
            repo=str(data["repo"]),
            branch=str(data.get("branch") or "master"),
            kdf_params=KdfParams.from_dict(data["kdfParams"]),
            encrypted_token=data.get("encryptedToken"),
            token_cipher_version=int(data.get("tokenCipherVersion") or 1),
            password_hash=str(data["passwordHash"]),
            password_expiry=str(data["passwordExpiry"]),
            wrapped_key=data.get("wrappedKey"),
        )


@dataclass
class LockState:
    locked: bool = True
    expires_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"locked": self.locked, "expiresAt": self.expires_at}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "LockState":
        if not data:
            return cls()
        return cls(locked=bool(data.get("locked", True)), expires_at=data.get("expiresAt"))


# ---------------------------------------------------------------------
# Remote metadata index
# ---------------------------------------------------------------------

@dataclass
class MetadataEntry:
    type: str
    date: str
    filename: str
    word_count: int
    created_at: str
    modified_at: str
    year: Optional[int] = None

    @property
    def entry_id(self) -> str:
        if self.type == DAILY:
            return f"daily:{self.date}"
        return f"summary:{self.year}"

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "type": self.type,
            "date": self.date,
            "filename": self.filename,
            "wordCount": self.word_count,
            "createdAt": self.created_at,
            "modifiedAt": self.modified_at,
        }
        if self.type == YEARLY_SUMMARY:
            out["year"] = self.year
        return out

    @classmethod
    def from_dict(cls, data: Any) -> Optional["MetadataEntry"]:
        """Build an entry or return None when *data* is malformed."""
        if not isinstance(data, dict) or data.get("type") not in ENTRY_TYPES:
            return None
        strings = ("date", "filename", "createdAt", "modifiedAt")
        if not all(isinstance(data.get(k), str) for k in strings):
            return None
        wc = data.get("wordCount")
        if isinstance(wc, bool) or not isinstance(wc, int):
            return None
        year = data.get("year")
        if data["type"] == YEARLY_SUMMARY and (isinstance(year, bool) or not isinstance(year, int)):
            return None
        return cls(
            type=data["type"],
            date=data["date"],
            filename=data["filename"],
            word_count=wc,
            created_at=data["createdAt"],
            modified_at=data["modifiedAt"],
            year=year if data["type"] == YEARLY_SUMMARY else None,
        )


@dataclass
class MetadataIndex:
    """Mirror of every entry that has ever been pushed."""

    version: str = METADATA_VERSION
    last_sync: str = ""
    entries: List[MetadataEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "lastSync": self.last_sync,
            "entries": [e.to_dict() for e in self.entries],
        }

    @classmethod
    def from_dict(cls, data: Any, now: Optional[datetime] = None) -> "MetadataIndex":
        stamp = iso(now or utc_now())
        if not isinstance(data, dict):
            return cls(last_sync=stamp)
        raw = data.get("entries")
        entries = [e for e in (MetadataEntry.from_dict(x) for x in raw or []) if e] if isinstance(raw, list) else []
        version = data.get("version")
        last_sync = data.get("lastSync")
        return cls(
            version=version if isinstance(version, str) and version.strip() else METADATA_VERSION,
            last_sync=last_sync if isinstance(last_sync, str) and last_sync.strip() else stamp,
            entries=entries,
        )

    def upsert(self, record: DiaryRecord, now: Optional[datetime] = None) -> None:
        """Insert or refresh *record*'s entry, keeping its original createdAt."""
        stamp = iso(now or utc_now())
        existing = next((e for e in self.entries if e.entry_id == record.id), None)
        entry = MetadataEntry(
            type=record.type,
            date=record.date,
            year=record.year,
            filename=record.filename,
            word_count=record.word_count,
            created_at=existing.created_at if existing else (record.created_at or stamp),
            modified_at=record.modified_at or stamp,
        )
        if existing:
            self.entries[self.entries.index(existing)] = entry
        else:
            self.entries.append(entry)
        self.last_sync = stamp

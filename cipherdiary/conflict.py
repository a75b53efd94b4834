# -*- coding: utf-8 -*-
"""Conflict detection state and resolution choice.

A conflict is opened when a push hits a version mismatch or a pull finds a
dirty local copy. The engine drives resolutions; this module only holds the
state and decides what content a resolution commits.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional
import logging

from .crypto import decrypt
from .errors import AuthError, DecryptError, ValidationError
from .models import iso, utc_now

logger = logging.getLogger(__name__)

BLOCKED_MESSAGE = "Remote copy cannot be decrypted with the current key"


class Resolution(str, Enum):
    KEEP_LOCAL = "keep-local"
    KEEP_REMOTE = "keep-remote"
    MERGE = "merge"


@dataclass
class ConflictState:
    """Both sides of a diverged entry.

    ``remote_content`` is None while the conflict is blocked; the ciphertext
    is never surfaced.
    """

    entry_id: str
    path: str
    local_content: str
    remote_content: Optional[str]
    remote_sha: Optional[str]
    merge_buffer: str
    blocked: bool
    detected_at: str

    @property
    def message(self) -> str:
        if self.blocked:
            return BLOCKED_MESSAGE
        return f"{self.entry_id} changed on another device"


def conflict_from_remote(
    entry_id: str,
    path: str,
    local_content: str,
    envelope: Optional[str],
    remote_sha: Optional[str],
    key: bytes,
) -> ConflictState:
    """Decrypt *envelope* into a conflict; a decrypt failure blocks it.

    A missing remote file (``envelope`` None) yields an empty remote side.
    """
    blocked = False
    remote: Optional[str] = ""
    if envelope is not None:
        try:
            remote = decrypt(envelope, key)
        except DecryptError:
            logger.warning(f"Conflict on {entry_id} is blocked: remote copy is unreadable")
            blocked = True
            remote = None
    return ConflictState(
        entry_id=entry_id,
        path=path,
        local_content=local_content,
        remote_content=remote,
        remote_sha=remote_sha,
        merge_buffer=remote or "",
        blocked=blocked,
        detected_at=iso(utc_now()),
    )


async def open_conflict(client, entry_id: str, path: str, local_content: str, key: bytes) -> ConflictState:
    """Fetch the remote side of *path* and build the conflict state."""
    remote = await client.read_file(path)
    if remote is None:
        return conflict_from_remote(entry_id, path, local_content, None, None, key)
    return conflict_from_remote(entry_id, path, local_content, remote.content, remote.sha, key)


def resolution_content(conflict: ConflictState, resolution: Resolution, merged_text: Optional[str] = None) -> str:
    """Text a resolution commits locally and (except keep-remote) remotely."""
    if conflict.blocked:
        raise AuthError(BLOCKED_MESSAGE)
    resolution = Resolution(resolution)
    if resolution is Resolution.KEEP_LOCAL:
        return conflict.local_content
    if resolution is Resolution.KEEP_REMOTE:
        return conflict.remote_content or ""
    text = conflict.merge_buffer if merged_text is None else merged_text
    if not text.strip():
        raise ValidationError("Merged text is empty")
    return text

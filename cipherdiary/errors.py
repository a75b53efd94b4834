# -*- coding: utf-8 -*-
"""Error taxonomy shared by the crypto, store, auth and sync layers.

Propagation policy:
- ``ValidationError`` and ``AuthError`` are reported to the user and never
  retried automatically.
- ``NetworkError`` and ``SyncTimeoutError`` leave a retryable ``error``
  status; the user triggers the retry.
- ``ConflictError`` is routed to the conflict resolution protocol.
- ``StorageError`` is fatal to the operation and always propagates from
  single-entry calls; bulk calls record it against the failing entry.
"""
from __future__ import annotations

from typing import Optional


class DiaryError(Exception):
    """Base class for every error raised by CipherDiary."""


class ValidationError(DiaryError, ValueError):
    """Malformed input: repository identifier, password policy, dates."""


class AuthError(DiaryError):
    """Wrong master password, unusable token, or missing session key."""


class DecryptError(AuthError):
    """Ciphertext could not be authenticated with the supplied key."""


class NetworkError(DiaryError):
    """Transport failure or unexpected response from the remote."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class SyncTimeoutError(DiaryError, TimeoutError):
    """A network attempt exceeded its bound."""


class ConflictError(DiaryError):
    """The remote rejected a write because the expected version is stale."""

    def __init__(self, message: str, path: str = "") -> None:
        super().__init__(message)
        self.path = path


class StorageError(DiaryError):
    """Local persistence is unavailable or a write was rejected."""

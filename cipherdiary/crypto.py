# -*- coding: utf-8 -*-
"""Crypto helpers for CipherDiary.

This module encapsulates *stateless* cryptographic helpers: password-based
key derivation, the AES-GCM envelope used for diary content, the metadata
index and the access token, and the argon2 master-password hash. It does
**not** perform any network or storage I/O.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple
import base64
import binascii
import secrets
import time

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import DecryptError, ValidationError

# ---------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------

PH = PasswordHasher(
    time_cost=2,
    memory_cost=102_400,
    parallelism=8,
    hash_len=32,
    salt_len=16,
)

KDF_ALGORITHM = "PBKDF2"
KDF_HASH = "SHA-256"

KEY_LEN = 32
NONCE_LEN = 12
SALT_LEN = 16

DEFAULT_ITERATIONS = 300_000
MIN_ITERATIONS = 150_000
MAX_ITERATIONS = 1_000_000

TARGET_MIN_MS = 200.0
TARGET_MAX_MS = 500.0
MAX_CALIBRATION_ATTEMPTS = 8


# ---------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class KdfParams:
    """Algorithm, hash, iteration count and base64 salt for key derivation."""

    algorithm: str
    hash: str
    iterations: int
    salt: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "algorithm": self.algorithm,
            "hash": self.hash,
            "iterations": self.iterations,
            "salt": self.salt,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KdfParams":
        return cls(
            algorithm=str(data["algorithm"]),
            hash=str(data["hash"]),
            iterations=int(data["iterations"]),
            salt=str(data["salt"]),
        )


def _check_params(params: KdfParams) -> bytes:
    """Validate *params* and return the decoded salt."""
    if params.algorithm != KDF_ALGORITHM or params.hash != KDF_HASH:
        raise ValidationError("Unsupported KDF parameters")
    if isinstance(params.iterations, bool) or params.iterations <= 0:
        raise ValidationError("KDF iterations must be a positive integer")
    if not params.salt:
        raise ValidationError("KDF salt must not be empty")
    try:
        return base64.b64decode(params.salt, validate=True)
    except binascii.Error as exc:
        raise ValidationError("KDF salt is not valid base64") from exc


# ---------------------------------------------------------------------
# KDF
# ---------------------------------------------------------------------

def generate_kdf_params(iterations: int = DEFAULT_ITERATIONS) -> KdfParams:
    """Fresh PBKDF2 parameters with a new random salt."""
    salt = base64.b64encode(secrets.token_bytes(SALT_LEN)).decode("ascii")
    return KdfParams(KDF_ALGORITHM, KDF_HASH, iterations, salt)


def pbkdf2_derive(password: str, salt: bytes, iterations: int, length: int = KEY_LEN) -> bytes:
    """Derive *length* bytes from a password using PBKDF2-HMAC-SHA256."""
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=length, salt=salt, iterations=iterations)
    return kdf.derive(password.encode("utf-8"))


def derive_key(password: str, params: KdfParams) -> bytes:
    """Derive the symmetric key protecting content, metadata and the token."""
    if not password:
        raise ValidationError("Master password must not be empty")
    salt = _check_params(params)
    return pbkdf2_derive(password, salt, params.iterations)


def calibrate_kdf_params(
    password: str,
    *,
    target_min_ms: float = TARGET_MIN_MS,
    target_max_ms: float = TARGET_MAX_MS,
    min_iterations: int = MIN_ITERATIONS,
    max_iterations: int = MAX_ITERATIONS,
    initial_iterations: int = DEFAULT_ITERATIONS,
    max_attempts: int = MAX_CALIBRATION_ATTEMPTS,
    measure: Optional[Callable[[int], float]] = None,
) -> KdfParams:
    """Pick an iteration count so that one derivation lands in the target window.

    *measure* returns the duration in milliseconds for a given iteration
    count; by default it times a real derivation on this machine. The search
    is bounded by *max_attempts*.
    """
    if not password:
        raise ValidationError("Master password must not be empty")
    if target_min_ms <= 0 or target_max_ms < target_min_ms:
        raise ValidationError("Invalid target duration window")
    if min_iterations <= 0 or max_iterations < min_iterations:
        raise ValidationError("Invalid iteration range")
    if max_attempts <= 0:
        raise ValidationError("max_attempts must be positive")

    params = generate_kdf_params()
    salt = base64.b64decode(params.salt)

    def _timed(iterations: int) -> float:
        start = time.perf_counter()
        pbkdf2_derive(password, salt, iterations)
        return (time.perf_counter() - start) * 1000.0

    measure = measure or _timed

    def _clamp(value: float) -> int:
        return int(min(max_iterations, max(min_iterations, round(value))))

    iterations = _clamp(initial_iterations)
    target_mid = (target_min_ms + target_max_ms) / 2
    elapsed = measure(iterations)
    for _ in range(1, max_attempts):
        if target_min_ms <= elapsed <= target_max_ms:
            break
        nxt = _clamp(iterations * target_mid / max(elapsed, 1.0))
        if nxt == iterations:
            step = max(1, round(iterations * 0.1))
            nxt = _clamp(iterations + step if elapsed < target_min_ms else iterations - step)
        if nxt == iterations:
            break
        iterations = nxt
        elapsed = measure(iterations)

    return KdfParams(KDF_ALGORITHM, KDF_HASH, iterations, params.salt)


# ---------------------------------------------------------------------
# AEAD helpers
# ---------------------------------------------------------------------

def aesgcm_encrypt(key: bytes, plaintext: bytes, aad: Optional[bytes] = None) -> Tuple[bytes, bytes]:
    """Encrypt *plaintext* with AES-GCM; return (nonce, ciphertext)."""
    nonce = secrets.token_bytes(NONCE_LEN)
    ct = AESGCM(key).encrypt(nonce, plaintext, aad)
    return nonce, ct


def aesgcm_decrypt(key: bytes, nonce: bytes, ciphertext: bytes, aad: Optional[bytes] = None) -> bytes:
    """Decrypt AES-GCM *ciphertext* with *nonce*; return plaintext."""
    return AESGCM(key).decrypt(nonce, ciphertext, aad)


def encrypt(plaintext: str, key: bytes) -> str:
    """Encrypt text into a base64 ``nonce || ciphertext`` envelope."""
    nonce, ct = aesgcm_encrypt(key, plaintext.encode("utf-8"))
    return base64.b64encode(nonce + ct).decode("ascii")


def decrypt(envelope: str, key: bytes) -> str:
    """Open an envelope produced by :func:`encrypt`.

    Raises DecryptError for a wrong key, tampering, or a malformed envelope.
    """
    try:
        payload = base64.b64decode("".join(envelope.split()), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecryptError("Ciphertext is not valid base64") from exc
    if len(payload) <= NONCE_LEN:
        raise DecryptError("Ciphertext envelope is too short")
    try:
        plaintext = aesgcm_decrypt(key, payload[:NONCE_LEN], payload[NONCE_LEN:])
    except (InvalidTag, ValueError) as exc:
        raise DecryptError("Unable to decrypt: wrong key or corrupted data") from exc
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecryptError("Decrypted payload is not UTF-8 text") from exc


# ---------------------------------------------------------------------
# Content key wrapping
# ---------------------------------------------------------------------

def generate_content_key() -> bytes:
    return secrets.token_bytes(KEY_LEN)


def wrap_key(content_key: bytes, kek: bytes) -> str:
    """Encrypt the content key under the password-derived *kek*."""
    nonce, ct = aesgcm_encrypt(kek, content_key, b"content-key")
    return base64.b64encode(nonce + ct).decode("ascii")


def unwrap_key(wrapped: str, kek: bytes) -> bytes:
    try:
        payload = base64.b64decode(wrapped, validate=True)
        content_key = aesgcm_decrypt(kek, payload[:NONCE_LEN], payload[NONCE_LEN:], b"content-key")
    except (binascii.Error, InvalidTag, ValueError) as exc:
        raise DecryptError("Unable to unwrap the content key") from exc
    if len(content_key) != KEY_LEN:
        raise DecryptError("Unwrapped content key has the wrong length")
    return content_key


# ---------------------------------------------------------------------
# Master password hash
# ---------------------------------------------------------------------

def hash_password(password: str) -> str:
    return PH.hash(password)


def verify_password(password_hash: str, password: str) -> bool:
    """Return True if *password* matches the stored argon2 hash."""
    try:
        return PH.verify(password_hash, password)
    except (VerificationError, InvalidHashError):
        return False

# -*- coding: utf-8 -*-
"""Session/auth state machine.

The stage graph is ``checking -> {needs-setup | needs-unlock |
needs-token-refresh | ready}``. :func:`transition` is pure; :class:`AuthSession`
runs the KDF, crypto and store effects and feeds the resulting events through
it. The decrypted token and the derived key live only in memory.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Optional, Union
import logging
import re

from . import db
from .crypto import (
    KdfParams,
    calibrate_kdf_params,
    decrypt,
    derive_key,
    encrypt,
    generate_content_key,
    generate_kdf_params,
    hash_password,
    unwrap_key,
    verify_password,
    wrap_key,
)
from .errors import AuthError, DecryptError, NetworkError, ValidationError
from .models import AppConfig, LockState, iso, parse_iso, utc_now
from .remote import DEFAULT_API_BASE, ContentsClient, parse_repo_identifier

logger = logging.getLogger(__name__)

DEFAULT_LOCK_DAYS = 7
DEFAULT_TOKEN_CACHE_MINUTES = 60
MIN_PASSWORD_LEN = 8
TOKEN_INVALID_REASON = "Access token was rejected by the remote, enter a new one"

AccessCheck = Callable[[str, str, str, str], Awaitable[None]]


class Stage(str, Enum):
    CHECKING = "checking"
    NEEDS_SETUP = "needs-setup"
    NEEDS_UNLOCK = "needs-unlock"
    NEEDS_TOKEN_REFRESH = "needs-token-refresh"
    READY = "ready"


@dataclass(frozen=True)
class AuthState:
    """Immutable snapshot of the session."""

    stage: Stage = Stage.CHECKING
    config: Optional[AppConfig] = None
    token: Optional[str] = field(default=None, repr=False)
    key: Optional[bytes] = field(default=None, repr=False)
    token_expires_at: Optional[datetime] = None
    refresh_reason: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_ready(self) -> bool:
        return self.stage is Stage.READY and bool(self.token) and self.key is not None


# ---------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class CheckStarted:
    pass


@dataclass(frozen=True)
class ConfigMissing:
    pass


@dataclass(frozen=True)
class UnlockRequired:
    config: AppConfig
    reason: Optional[str] = None


@dataclass(frozen=True)
class Unlocked:
    config: AppConfig
    token: str = field(repr=False)
    key: bytes = field(repr=False)
    token_expires_at: datetime


@dataclass(frozen=True)
class TokenUnreadable:
    config: AppConfig
    key: bytes = field(repr=False)
    reason: str


@dataclass(frozen=True)
class Failed:
    message: str


@dataclass(frozen=True)
class Expired:
    pass


@dataclass(frozen=True)
class Locked:
    pass


Event = Union[CheckStarted, ConfigMissing, UnlockRequired, Unlocked, TokenUnreadable, Failed, Expired, Locked]

_UNLOCKABLE = (Stage.CHECKING, Stage.NEEDS_SETUP, Stage.NEEDS_UNLOCK, Stage.NEEDS_TOKEN_REFRESH, Stage.READY)


def transition(state: AuthState, event: Event) -> AuthState:
    """Apply *event* to *state*; raises AuthError for an illegal move."""
    stage = state.stage

    if isinstance(event, CheckStarted):
        return AuthState(stage=Stage.CHECKING, config=state.config)
    if isinstance(event, Failed):
        return replace(state, error=event.message)

    if isinstance(event, ConfigMissing) and stage is Stage.CHECKING:
        return AuthState(stage=Stage.NEEDS_SETUP)
    if isinstance(event, UnlockRequired) and stage is Stage.CHECKING:
        return AuthState(stage=Stage.NEEDS_UNLOCK, config=event.config, error=event.reason)
    if isinstance(event, Unlocked) and stage in _UNLOCKABLE:
        return AuthState(
            stage=Stage.READY,
            config=event.config,
            token=event.token,
            key=event.key,
            token_expires_at=event.token_expires_at,
        )
    if isinstance(event, TokenUnreadable) and stage in (Stage.NEEDS_UNLOCK, Stage.NEEDS_TOKEN_REFRESH):
        return AuthState(
            stage=Stage.NEEDS_TOKEN_REFRESH,
            config=event.config,
            key=event.key,
            refresh_reason=event.reason,
        )
    if isinstance(event, Expired) and stage is Stage.READY:
        return AuthState(stage=Stage.NEEDS_UNLOCK, config=state.config, error="Session expired, unlock again")
    if isinstance(event, Locked) and stage in (Stage.READY, Stage.NEEDS_TOKEN_REFRESH):
        return AuthState(stage=Stage.NEEDS_UNLOCK, config=state.config)

    raise AuthError(f"Cannot apply {type(event).__name__} while {stage.value}")


# ---------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------

def validate_password(password: str) -> str:
    """Enforce the master password policy: 8+ chars, a letter and a digit."""
    if not password or len(password) < MIN_PASSWORD_LEN:
        raise ValidationError(f"Master password must be at least {MIN_PASSWORD_LEN} characters")
    if not re.search(r"[A-Za-z]", password) or not re.search(r"\d", password):
        raise ValidationError("Master password must contain a letter and a digit")
    return password


def _validate_token(token: str) -> str:
    token = (token or "").strip()
    if not token:
        raise ValidationError("Access token is required")
    if any(ch.isspace() for ch in token):
        raise ValidationError("Access token must not contain whitespace")
    return token


def remote_access_check(api_base: str = DEFAULT_API_BASE) -> AccessCheck:
    """Build the default access check backed by :class:`ContentsClient`."""

    async def _check(owner: str, repo: str, token: str, branch: str) -> None:
        async with ContentsClient(owner, repo, token, branch=branch, api_base=api_base) as client:
            await client.check_access()

    return _check


@dataclass
class _TokenCache:
    token: str = field(repr=False)
    key: bytes = field(repr=False)
    expires_at: datetime


# ---------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------

class AuthSession:
    """Async driver around :func:`transition`. Pass it explicitly to consumers."""

    def __init__(
        self,
        verify_access: Optional[AccessCheck] = None,
        lock_days: int = DEFAULT_LOCK_DAYS,
        token_cache_minutes: int = DEFAULT_TOKEN_CACHE_MINUTES,
        kdf_iterations: Optional[int] = None,
    ) -> None:
        """Initialize the session.

        Args:
            verify_access: Coroutine ``(owner, repo, token, branch)`` raising on
                a bad token; None skips the remote check.
            lock_days: Days an unlock stays valid.
            token_cache_minutes: How long the in-memory token allows a silent
                unlock across :meth:`check` calls.
            kdf_iterations: Fixed PBKDF2 iterations; None calibrates on this
                machine.
        """
        self.verify_access = verify_access
        self.lock_days = lock_days
        self.token_cache_minutes = token_cache_minutes
        self.kdf_iterations = kdf_iterations
        self._state = AuthState()
        self._cache: Optional[_TokenCache] = None

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def stage(self) -> Stage:
        return self._state.stage

    def _apply(self, event: Event) -> AuthState:
        before = self._state.stage
        self._state = transition(self._state, event)
        if self._state.stage is not before:
            logger.info(f"Auth stage {before.value} -> {self._state.stage.value}")
        return self._state

    def _require(self, *stages: Stage) -> AppConfig:
        if self._state.stage not in stages:
            raise AuthError(f"Not allowed while {self._state.stage.value}")
        if self._state.config is None and self._state.stage is not Stage.NEEDS_SETUP:
            raise AuthError("No configuration loaded")
        return self._state.config  # type: ignore[return-value]

    def _fail(self, message: str) -> AuthError:
        self._apply(Failed(message))
        return AuthError(message)

    def _new_params(self, password: str) -> KdfParams:
        if self.kdf_iterations is not None:
            return generate_kdf_params(self.kdf_iterations)
        return calibrate_kdf_params(password)

    def _content_key(self, config: AppConfig, password: str) -> bytes:
        """Derive the password key and unwrap the content key with it."""
        kek = derive_key(password, config.kdf_params)
        if not config.wrapped_key:
            return kek
        try:
            return unwrap_key(config.wrapped_key, kek)
        except DecryptError:
            raise self._fail("Stored content key is unreadable") from None

    async def _open(self, config: AppConfig, token: str, key: bytes, now: datetime) -> AuthState:
        """Persist a fresh expiry and enter ``ready``."""
        expiry = now + timedelta(days=self.lock_days)
        config = replace(config, password_expiry=iso(expiry))
        await db.put_config(config.to_dict())
        await db.put_config(LockState(locked=False, expires_at=iso(expiry)).to_dict(), db.LOCK_STATE_KEY)
        cache_until = now + timedelta(minutes=self.token_cache_minutes)
        self._cache = _TokenCache(token=token, key=key, expires_at=cache_until)
        return self._apply(Unlocked(config=config, token=token, key=key, token_expires_at=cache_until))

    async def _persist_locked(self) -> None:
        self._cache = None
        await db.put_config(LockState(locked=True).to_dict(), db.LOCK_STATE_KEY)

    # -----------------------------------------------------------------

    async def check(self, now: Optional[datetime] = None) -> AuthState:
        """Work out the starting stage from the store and the token cache."""
        now = now or utc_now()
        self._apply(CheckStarted())
        data = await db.get_config()
        if not data:
            self._cache = None
            return self._apply(ConfigMissing())

        config = AppConfig.from_dict(data)
        lock = LockState.from_dict(await db.get_config(db.LOCK_STATE_KEY))
        lock_until = parse_iso(lock.expires_at)
        password_until = parse_iso(config.password_expiry)
        cache = self._cache
        if (
            not lock.locked
            and lock_until is not None and lock_until > now
            and password_until is not None and password_until > now
            and cache is not None and cache.expires_at > now
        ):
            return self._apply(Unlocked(config=config, token=cache.token, key=cache.key,
                                        token_expires_at=cache.expires_at))
        self._cache = None
        return self._apply(UnlockRequired(config=config))

    async def setup(
        self,
        repo_input: str,
        token: str,
        password: str,
        branch: str = "master",
        now: Optional[datetime] = None,
    ) -> AuthState:
        """First-run configuration: ``needs-setup -> ready``."""
        self._require(Stage.NEEDS_SETUP)
        now = now or utc_now()
        owner, repo = parse_repo_identifier(repo_input)
        token = _validate_token(token)
        validate_password(password)
        branch = (branch or "master").strip()

        if self.verify_access is not None:
            await self.verify_access(owner, repo, token, branch)

        params = self._new_params(password)
        kek = derive_key(password, params)
        key = generate_content_key()
        config = AppConfig(
            owner=owner,
            repo=repo,
            branch=branch,
            kdf_params=params,
            password_hash=hash_password(password),
            password_expiry=iso(now),
            encrypted_token=encrypt(token, key),
            wrapped_key=wrap_key(key, kek),
        )
        logger.info(f"Configured repository {owner}/{repo}@{branch}")
        return await self._open(config, token, key, now)

    async def unlock(self, password: str, now: Optional[datetime] = None) -> AuthState:
        """``needs-unlock -> ready | needs-token-refresh``.

        A token the remote rejects goes to ``needs-token-refresh``. When the
        remote cannot be reached the session still opens, with ``error`` set.
        """
        config = self._require(Stage.NEEDS_UNLOCK)
        now = now or utc_now()
        if not password:
            raise ValidationError("Master password is required")
        if not verify_password(config.password_hash, password):
            raise self._fail("Incorrect master password")

        key = self._content_key(config, password)
        if not config.encrypted_token:
            return self._apply(TokenUnreadable(config=config, key=key, reason="No stored access token"))
        try:
            token = decrypt(config.encrypted_token, key)
        except DecryptError:
            logger.warning("Stored access token could not be decrypted")
            return self._apply(TokenUnreadable(config=config, key=key,
                                               reason="Stored access token is unreadable, enter it again"))

        offline = None
        if self.verify_access is not None:
            try:
                await self.verify_access(config.owner, config.repo, token, config.branch)
            except AuthError as exc:
                logger.warning(f"Stored access token was rejected: {exc}")
                return self._apply(TokenUnreadable(config=config, key=key, reason=TOKEN_INVALID_REASON))
            except NetworkError as exc:
                logger.warning(f"Token not verified, remote unreachable: {exc}")
                offline = f"Access token not verified: {exc}"

        state = await self._open(config, token, key, now)
        if offline:
            state = self._apply(Failed(offline))
        return state

    async def refresh_token(
        self,
        token: str,
        password: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AuthState:
        """Re-encrypt a new access token: ``needs-token-refresh -> ready``."""
        config = self._require(Stage.NEEDS_TOKEN_REFRESH)
        now = now or utc_now()
        token = _validate_token(token)

        key = self._state.key
        if key is None:
            if not password:
                raise ValidationError("Master password is required")
            if not verify_password(config.password_hash, password):
                raise self._fail("Incorrect master password")
            key = self._content_key(config, password)

        if self.verify_access is not None:
            await self.verify_access(config.owner, config.repo, token, config.branch)

        config = replace(
            config,
            encrypted_token=encrypt(token, key),
            token_cipher_version=config.token_cipher_version + 1,
        )
        return await self._open(config, token, key, now)

    async def update_settings(
        self,
        repo_input: str,
        branch: str = "master",
        token: Optional[str] = None,
        password: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AuthState:
        """Point a ready session at another repository or branch.

        A new *token* replaces the stored one and needs the master *password*.
        Access is checked with whichever token ends up in use before anything
        is saved.
        """
        config = self._require(Stage.READY)
        now = now or utc_now()
        owner, repo = parse_repo_identifier(repo_input)
        branch = (branch or "master").strip()
        key = self._state.key
        current = self._state.token or ""

        new_token = token.strip() if token else ""
        if new_token:
            new_token = _validate_token(new_token)
            if not password:
                raise ValidationError("Master password is required to replace the token")
            if not verify_password(config.password_hash, password):
                raise self._fail("Incorrect master password")

        active = new_token or current
        if self.verify_access is not None:
            await self.verify_access(owner, repo, active, branch)

        if (owner, repo, branch) != (config.owner, config.repo, config.branch):
            await db.clear_sync_state()
        config = replace(config, owner=owner, repo=repo, branch=branch)
        if new_token:
            config = replace(
                config,
                encrypted_token=encrypt(new_token, key),
                token_cipher_version=config.token_cipher_version + 1,
            )
        logger.info(f"Settings updated to {owner}/{repo}@{branch}")
        return await self._open(config, active, key, now)

    async def check_expiry(self, now: Optional[datetime] = None) -> AuthState:
        """Drop to ``needs-unlock`` once the password expiry has passed."""
        if self._state.stage is not Stage.READY or self._state.config is None:
            return self._state
        now = now or utc_now()
        expiry = parse_iso(self._state.config.password_expiry)
        if expiry is not None and expiry > now:
            return self._state
        await self._persist_locked()
        return self._apply(Expired())

    async def lock(self) -> AuthState:
        """Lock immediately, keeping the stored config."""
        if self._state.stage not in (Stage.READY, Stage.NEEDS_TOKEN_REFRESH):
            return self._state
        await self._persist_locked()
        return self._apply(Locked())

    async def change_password(
        self,
        current_password: str,
        new_password: str,
        now: Optional[datetime] = None,
    ) -> AuthState:
        """Rotate the master password and KDF salt.

        Only the wrapping of the content key changes, so the token ciphertext,
        the remote diaries and the metadata index stay readable.
        """
        config = self._require(Stage.READY)
        now = now or utc_now()
        if not current_password:
            raise ValidationError("Current password required")
        validate_password(new_password)
        if not verify_password(config.password_hash, current_password):
            raise self._fail("Incorrect master password")

        key = self._state.key
        params = self._new_params(new_password)
        config = replace(
            config,
            kdf_params=params,
            password_hash=hash_password(new_password),
            wrapped_key=wrap_key(key, derive_key(new_password, params)),
        )
        logger.info("Master password changed")
        return await self._open(config, self._state.token or "", key, now)

# -*- coding: utf-8 -*-
"""Async client for a git-hosting provider's file-contents API.

Only ciphertext ever crosses this boundary. Version tokens ("sha") give
optimistic concurrency: a PUT carrying a stale sha is rejected and surfaces
as ConflictError.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote, urlparse
import base64
import binascii
import logging
import re

import httpx

from .errors import AuthError, ConflictError, NetworkError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://gitee.com/api/v5"
DEFAULT_BRANCH = "master"
DEFAULT_TIMEOUT = 30.0

SHA_MISMATCH_RE = re.compile(r"(mismatch|not\s+match|does\s+not\s+match|wasn't\s+supplied)", re.IGNORECASE)
FILE_EXISTS_RE = re.compile(r"(already\s+exists|file\s+exists|path.*exists)", re.IGNORECASE)
REPO_PART_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


@dataclass
class RemoteFile:
    """Decoded contents response: the stored envelope text and its sha."""

    path: str
    content: str
    sha: str


# ---------------------------------------------------------------------
# Repository identifier
# ---------------------------------------------------------------------

def parse_repo_identifier(repo_input: str) -> Tuple[str, str]:
    """Return (owner, repo) from ``owner/repo`` or ``https://host/owner/repo``."""
    text = (repo_input or "").strip()
    if not text:
        raise ValidationError("Repository is required")

    if re.match(r"^https?://", text, re.IGNORECASE):
        parsed = urlparse(text)
        if not parsed.hostname:
            raise ValidationError("Repository URL is malformed")
        parts = [p for p in parsed.path.split("/") if p]
    else:
        parts = [p for p in text.split("/") if p]

    if len(parts) != 2:
        raise ValidationError("Repository must look like owner/repo")
    owner, repo = parts[0].strip(), re.sub(r"\.git$", "", parts[1].strip(), flags=re.IGNORECASE)
    if not REPO_PART_RE.match(owner) or not REPO_PART_RE.match(repo):
        raise ValidationError("Repository owner or name contains invalid characters")
    return owner, repo


# ---------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------

def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text.strip()
    if isinstance(body, dict):
        for key in ("message", "error"):
            if isinstance(body.get(key), str) and body[key].strip():
                return body[key].strip()
    return ""


def looks_like_version_conflict(status: int, message: str) -> bool:
    """True when a write failure means the expected sha no longer matches."""
    if status == 409:
        return True
    if status not in (400, 422):
        return False
    if "sha" in message.lower() and SHA_MISMATCH_RE.search(message):
        return True
    return bool(FILE_EXISTS_RE.search(message))


def _raise_for_status(response: httpx.Response, path: str) -> None:
    if response.is_success:
        return
    status = response.status_code
    message = _error_message(response)
    if status in (401, 403):
        raise AuthError(f"Remote rejected the access token ({status})")
    if looks_like_version_conflict(status, message):
        raise ConflictError(f"Version mismatch on {path}: {message or status}", path=path)
    detail = f": {message}" if message else ""
    raise NetworkError(f"HTTP {status} on {path}{detail}", status=status)


# ---------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------

class ContentsClient:
    """Read/write files in one repository branch."""

    def __init__(
        self,
        owner: str,
        repo: str,
        token: str,
        branch: str = DEFAULT_BRANCH,
        api_base: str = DEFAULT_API_BASE,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize the client.

        Args:
            owner: Repository owner.
            repo: Repository name.
            token: Access token; sent only in the Authorization header.
            branch: Branch that holds the diary files.
            api_base: API root, e.g. ``https://gitee.com/api/v5``.
            timeout: Transport timeout in seconds.
            transport: Optional httpx transport (tests use MockTransport).
        """
        self.owner = owner
        self.repo = repo
        self.branch = branch or DEFAULT_BRANCH
        self._client = httpx.AsyncClient(
            base_url=api_base.rstrip("/"),
            headers={"Authorization": f"token {token}", "Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ContentsClient":
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    def _contents_url(self, path: str) -> str:
        return f"/repos/{quote(self.owner, safe='')}/{quote(self.repo, safe='')}/contents/{quote(path)}"

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise NetworkError(f"Request timed out: {method} {url}") from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"Unable to reach remote: {exc}") from exc

    async def check_access(self) -> None:
        """Verify that the token can see the repository."""
        url = f"/repos/{quote(self.owner, safe='')}/{quote(self.repo, safe='')}"
        response = await self._send("GET", url)
        if response.status_code == 404:
            raise AuthError("Repository not found or not visible to this token")
        _raise_for_status(response, url)

    async def read_file(self, path: str) -> Optional[RemoteFile]:
        """GET a file; returns None when it does not exist."""
        response = await self._send("GET", self._contents_url(path), params={"ref": self.branch})
        if response.status_code == 404:
            return None
        _raise_for_status(response, path)

        body = response.json()
        # Some providers answer a missing file with 200 and an empty list.
        if not isinstance(body, dict) or not body.get("sha"):
            return None
        try:
            raw = base64.b64decode("".join(str(body.get("content") or "").split()), validate=True)
            content = raw.decode("utf-8").strip()
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise NetworkError(f"Remote returned undecodable content for {path}") from exc
        logger.debug(f"Read {path} at sha {body['sha']}")
        return RemoteFile(path=path, content=content, sha=str(body["sha"]))

    async def write_file(self, path: str, content: str, message: str, sha: Optional[str] = None) -> str:
        """PUT *content* to *path*; returns the new sha.

        Omit *sha* only when creating the file for the first time.
        """
        payload: Dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": self.branch,
        }
        if sha:
            payload["sha"] = sha
        response = await self._send("PUT", self._contents_url(path), json=payload)
        _raise_for_status(response, path)

        body = response.json()
        new_sha = (body.get("content") or {}).get("sha") if isinstance(body, dict) else None
        if not new_sha:
            raise NetworkError(f"Remote did not report a version for {path}")
        logger.info(f"Wrote {path}: {sha or 'new'} -> {new_sha}")
        return str(new_sha)

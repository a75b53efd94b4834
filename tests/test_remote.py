"""Tests for the contents API client (httpx MockTransport)."""

import base64
import json

import httpx
import pytest

from cipherdiary.errors import AuthError, ConflictError, NetworkError, ValidationError
from cipherdiary.remote import ContentsClient, parse_repo_identifier


def make_client(handler):
    return ContentsClient("alice", "diary", "tok-1", branch="main", transport=httpx.MockTransport(handler))


def b64(text):
    return base64.b64encode(text.encode()).decode()


class TestRepoIdentifier:
    """Tests for owner/repo parsing."""

    @pytest.mark.parametrize(
        "value",
        ["alice/diary", " alice/diary ", "https://gitee.com/alice/diary", "https://github.com/alice/diary.git"],
    )
    def test_accepted(self, value):
        assert parse_repo_identifier(value) == ("alice", "diary")

    @pytest.mark.parametrize("value", ["", "alice", "a/b/c", "https://gitee.com/alice", "al ice/diary"])
    def test_rejected(self, value):
        with pytest.raises(ValidationError):
            parse_repo_identifier(value)


class TestReadFile:
    """Tests for GET contents."""

    @pytest.mark.asyncio
    async def test_decodes_content_and_sends_auth(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers["Authorization"]
            seen["path"] = request.url.path
            seen["ref"] = request.url.params["ref"]
            return httpx.Response(200, json={"content": b64("ENVELOPE=="), "sha": "abc"})

        async with make_client(handler) as client:
            remote = await client.read_file("2024-01-01.md.enc")

        assert remote.content == "ENVELOPE=="
        assert remote.sha == "abc"
        assert seen["auth"] == "token tok-1"
        assert seen["path"].endswith("/repos/alice/diary/contents/2024-01-01.md.enc")
        assert seen["ref"] == "main"

    @pytest.mark.asyncio
    async def test_404_is_none(self):
        async with make_client(lambda r: httpx.Response(404, json={"message": "Not Found"})) as client:
            assert await client.read_file("missing.md.enc") is None

    @pytest.mark.asyncio
    async def test_empty_list_is_none(self):
        async with make_client(lambda r: httpx.Response(200, json=[])) as client:
            assert await client.read_file("missing.md.enc") is None

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("offline", request=request)

        async with make_client(handler) as client:
            with pytest.raises(NetworkError):
                await client.read_file("x.md.enc")


class TestWriteFile:
    """Tests for PUT contents and status mapping."""

    @pytest.mark.asyncio
    async def test_body_and_new_sha(self):
        bodies = []

        def handler(request):
            assert request.method == "PUT"
            bodies.append(json.loads(request.content))
            return httpx.Response(201, json={"content": {"sha": "new-sha"}})

        async with make_client(handler) as client:
            sha = await client.write_file("a.md.enc", "CIPHER", "chore: diary", sha="old-sha")

        assert sha == "new-sha"
        assert bodies[0]["sha"] == "old-sha"
        assert bodies[0]["branch"] == "main"
        assert base64.b64decode(bodies[0]["content"]).decode() == "CIPHER"

    @pytest.mark.asyncio
    async def test_create_omits_sha(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(201, json={"content": {"sha": "s1"}})

        async with make_client(handler) as client:
            await client.write_file("a.md.enc", "CIPHER", "msg")
        assert "sha" not in bodies[0]

    @pytest.mark.parametrize(
        "status,body",
        [
            (409, {"message": "conflict"}),
            (422, {"message": "sha does not match"}),
            (400, {"message": "A file with this name already exists"}),
        ],
    )
    @pytest.mark.asyncio
    async def test_version_conflicts(self, status, body):
        async with make_client(lambda r: httpx.Response(status, json=body)) as client:
            with pytest.raises(ConflictError):
                await client.write_file("a.md.enc", "CIPHER", "msg", sha="stale")

    @pytest.mark.parametrize("status", [401, 403])
    @pytest.mark.asyncio
    async def test_auth_failures(self, status):
        async with make_client(lambda r: httpx.Response(status, json={"message": "bad token"})) as client:
            with pytest.raises(AuthError):
                await client.write_file("a.md.enc", "CIPHER", "msg")

    @pytest.mark.asyncio
    async def test_other_status_is_network_error(self):
        async with make_client(lambda r: httpx.Response(500, text="boom")) as client:
            with pytest.raises(NetworkError) as info:
                await client.write_file("a.md.enc", "CIPHER", "msg")
        assert info.value.status == 500

    @pytest.mark.asyncio
    async def test_unrelated_422_is_network_error(self):
        async with make_client(lambda r: httpx.Response(422, json={"message": "branch is protected"})) as client:
            with pytest.raises(NetworkError):
                await client.write_file("a.md.enc", "CIPHER", "msg")


class TestCheckAccess:
    """Tests for the repository access check."""

    @pytest.mark.asyncio
    async def test_missing_repo_is_auth_error(self):
        async with make_client(lambda r: httpx.Response(404)) as client:
            with pytest.raises(AuthError):
                await client.check_access()

    @pytest.mark.asyncio
    async def test_ok(self):
        async with make_client(lambda r: httpx.Response(200, json={"full_name": "alice/diary"})) as client:
            await client.check_access()

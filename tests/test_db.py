"""Tests for the SQLite-backed local store."""

import pytest

from cipherdiary import db
from cipherdiary.db import KeyRange
from cipherdiary.errors import StorageError, ValidationError
from cipherdiary.models import DiaryRecord, SyncBaseline


async def _seed():
    for date in ("2024-01-01", "2024-01-02", "2024-02-10", "2025-03-03"):
        await db.put_diary(DiaryRecord.new(f"daily:{date}", f"entry for {date}"))
    await db.put_diary(DiaryRecord.new("summary:2024", "a year"))


class TestDiaries:
    """Tests for the diaries collection."""

    @pytest.mark.asyncio
    async def test_put_and_get(self, store):
        record = DiaryRecord.new("daily:2024-05-01", "hello world")
        await db.put_diary(record)
        loaded = await db.get_diary("daily:2024-05-01")
        assert loaded == record
        assert loaded.word_count == 2
        assert loaded.filename == "2024-05-01.md.enc"

    @pytest.mark.asyncio
    async def test_get_missing_is_none(self, store):
        assert await db.get_diary("daily:2024-05-01") is None

    @pytest.mark.asyncio
    async def test_put_replaces(self, store):
        record = DiaryRecord.new("daily:2024-05-01", "one")
        await db.put_diary(record)
        await db.put_diary(record.with_content("one two"))
        loaded = await db.get_diary("daily:2024-05-01")
        assert loaded.content == "one two"
        assert loaded.created_at == record.created_at

    @pytest.mark.asyncio
    async def test_exact_match_on_type(self, store):
        await _seed()
        summaries = await db.list_diaries_by_index("type", "yearly_summary")
        assert [r.id for r in summaries] == ["summary:2024"]

    @pytest.mark.asyncio
    async def test_key_range_and_direction(self, store):
        await _seed()
        rows = await db.list_diaries_by_index("date", KeyRange("2024-01-01", "2024-01-31"), direction="prev")
        assert [r.date for r in rows] == ["2024-01-02", "2024-01-01"]

    @pytest.mark.asyncio
    async def test_open_bounds(self, store):
        await _seed()
        rows = await db.list_diaries_by_index("date", KeyRange("2024-01-01", "2024-02-10", True, True))
        assert [r.date for r in rows] == ["2024-01-02"]

    @pytest.mark.asyncio
    async def test_year_index_skips_dailies(self, store):
        await _seed()
        rows = await db.list_diaries_by_index("year")
        assert [r.id for r in rows] == ["summary:2024"]

    @pytest.mark.asyncio
    async def test_limit(self, store):
        await _seed()
        assert len(await db.list_diaries_by_index("date", limit=2)) == 2
        assert await db.list_diaries_by_index("date", limit=0) == []

    @pytest.mark.asyncio
    async def test_unknown_index(self, store):
        with pytest.raises(ValidationError):
            await db.list_diaries_by_index("title")

    @pytest.mark.asyncio
    async def test_unknown_direction(self, store):
        with pytest.raises(ValidationError):
            await db.list_diaries_by_index("date", direction="sideways")


class TestKeyValue:
    """Tests for config, metadata and baselines."""

    @pytest.mark.asyncio
    async def test_config_roundtrip(self, store):
        assert await db.get_config() is None
        await db.put_config({"owner": "alice"})
        await db.put_config({"locked": False}, db.LOCK_STATE_KEY)
        assert await db.get_config() == {"owner": "alice"}
        assert await db.get_config(db.LOCK_STATE_KEY) == {"locked": False}

    @pytest.mark.asyncio
    async def test_metadata_roundtrip(self, store):
        await db.put_metadata("2024-01-01T00:00:00+00:00", db.LAST_SYNC_KEY)
        assert await db.get_metadata(db.LAST_SYNC_KEY) == "2024-01-01T00:00:00+00:00"

    @pytest.mark.asyncio
    async def test_baseline_roundtrip(self, store):
        baseline = SyncBaseline("daily:2024-01-01", "v1:abc:3", "2024-01-01T00:00:00+00:00", "sha-1")
        await db.put_sync_baseline(baseline)
        assert await db.get_sync_baseline("daily:2024-01-01") == baseline
        assert await db.get_metadata("sync-baseline:daily:2024-01-01") == baseline.to_dict()

    @pytest.mark.asyncio
    async def test_clear_sync_state(self, store):
        await db.put_sync_baseline(SyncBaseline("daily:2024-01-01", "v1:abc:3", "2024-01-01T00:00:00+00:00"))
        await db.put_metadata({"index": {}, "sha": "sha-9"})
        await db.put_metadata("2024-01-01T00:00:00+00:00", db.LAST_SYNC_KEY)
        await db.put_config({"owner": "alice"})

        await db.clear_sync_state()
        assert await db.get_sync_baseline("daily:2024-01-01") is None
        assert await db.get_metadata() is None
        assert await db.get_metadata(db.LAST_SYNC_KEY) is None
        assert await db.get_config() == {"owner": "alice"}

    @pytest.mark.asyncio
    async def test_empty_baseline_id(self, store):
        with pytest.raises(ValidationError):
            await db.get_sync_baseline("  ")


class TestFailures:
    """Store failures surface as StorageError."""

    @pytest.mark.asyncio
    async def test_unopenable_path(self, tmp_path, monkeypatch):
        monkeypatch.setattr(db, "DB_PATH", str(tmp_path))
        with pytest.raises(StorageError):
            await db.init_db()

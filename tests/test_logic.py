"""Tests for app config and the local-first editor."""

import asyncio
from unittest.mock import MagicMock

import pytest

from cipherdiary import db, logic
from cipherdiary.errors import StorageError, ValidationError
from cipherdiary.logic import DiaryEditor, entry_id_for


class TestConfigFile:
    """Tests for the JSON settings file."""

    def test_defaults_written_on_first_load(self, tmp_path, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
        cfg = logic.load_config()
        assert cfg["sync_timeout_seconds"] == 15
        assert cfg["auto_sync_seconds"] == 30
        assert (tmp_path / "cipherdiary" / "config.json").exists()

    def test_file_values_override_defaults(self, tmp_path, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
        logic.save_config({"lock_days": 3})
        cfg = logic.load_config()
        assert cfg["lock_days"] == 3
        assert cfg["api_base"] == logic.DEFAULT_CONFIG["api_base"]


class TestEntryIdFor:
    def test_date(self):
        assert entry_id_for("2024-01-05") == "daily:2024-01-05"

    def test_year(self):
        assert entry_id_for(" 2023 ") == "summary:2023"

    def test_full_id(self):
        assert entry_id_for("summary:2023") == "summary:2023"

    def test_garbage(self):
        with pytest.raises(ValidationError):
            entry_id_for("yesterday")


class TestDiaryEditor:
    """Tests for local-first editing."""

    @pytest.mark.asyncio
    async def test_read_after_write(self, store):
        editor = DiaryEditor()
        await editor.set_content("daily:2024-01-01", "first words")
        assert await editor.get_content("daily:2024-01-01") == "first words"
        assert (await db.get_diary("daily:2024-01-01")).content == "first words"

    @pytest.mark.asyncio
    async def test_newest_concurrent_edit_wins(self, store):
        editor = DiaryEditor()
        await asyncio.gather(
            editor.set_content("daily:2024-01-01", "a"),
            editor.set_content("daily:2024-01-01", "a b"),
            editor.set_content("daily:2024-01-01", "a b c"),
        )
        assert await editor.get_content("daily:2024-01-01") == "a b c"
        assert (await db.get_diary("daily:2024-01-01")).content == "a b c"

    @pytest.mark.asyncio
    async def test_created_at_preserved(self, store):
        editor = DiaryEditor()
        first = await editor.set_content("daily:2024-01-01", "one")
        second = await editor.set_content("daily:2024-01-01", "one two")
        assert second.created_at == first.created_at
        assert second.word_count == 2

    @pytest.mark.asyncio
    async def test_schedules_auto_sync(self, store):
        engine = MagicMock()
        editor = DiaryEditor(engine)
        await editor.set_content("daily:2024-01-01", "x")
        engine.schedule_push.assert_called_once_with("daily:2024-01-01")
        engine.add_local_listener.assert_called_once()

    @pytest.mark.asyncio
    async def test_engine_writes_refresh_cache(self, store):
        engine = MagicMock()
        editor = DiaryEditor(engine)
        await editor.set_content("daily:2024-01-01", "old")
        listener = engine.add_local_listener.call_args[0][0]
        listener((await db.get_diary("daily:2024-01-01")).with_content("pulled"))
        assert await editor.get_content("daily:2024-01-01") == "pulled"

    @pytest.mark.asyncio
    async def test_failed_write_is_not_reported_as_saved(self, store, monkeypatch):
        """A write the store rejects must not linger in the read cache."""
        editor = DiaryEditor()
        await editor.set_content("daily:2024-01-01", "saved")

        async def broken_put(record):
            raise StorageError("disk full")

        monkeypatch.setattr(db, "put_diary", broken_put)
        with pytest.raises(StorageError):
            await editor.set_content("daily:2024-01-01", "NOT SAVED")

        assert await editor.get_content("daily:2024-01-01") == "saved"
        assert (await db.get_diary("daily:2024-01-01")).content == "saved"

    @pytest.mark.asyncio
    async def test_invalid_id(self, store):
        with pytest.raises(ValidationError):
            await DiaryEditor().set_content("daily:2024-02-30", "x")

    @pytest.mark.asyncio
    async def test_open_unsaved_entry(self, store):
        record = await DiaryEditor().open("summary:2024")
        assert record.content == ""
        assert await db.get_diary("summary:2024") is None

    @pytest.mark.asyncio
    async def test_recent_and_year(self, store):
        editor = DiaryEditor()
        await editor.set_content("daily:2023-12-31", "old")
        await editor.set_content("daily:2024-01-01", "new")
        await editor.set_content("summary:2024", "summary")
        recent = await editor.recent(limit=2)
        assert [r.id for r in recent] == ["summary:2024", "daily:2024-01-01"]
        assert [r.id for r in await editor.entries_for_year(2024)] == ["daily:2024-01-01"]

"""Tests for the plaintext export and import archive."""

import json
import zipfile
from datetime import datetime, timezone

import pytest

from cipherdiary import db
from cipherdiary.archive import entry_id_from_name, export_archive, import_archive
from cipherdiary.errors import ValidationError
from cipherdiary.models import DiaryRecord

NOW = datetime(2024, 7, 1, 12, 30, 5, tzinfo=timezone.utc)


class TestExport:
    @pytest.mark.asyncio
    async def test_no_data(self, store):
        result = await export_archive(store / "out", now=NOW)
        assert result.outcome == "no_data"
        assert result.path is None

    @pytest.mark.asyncio
    async def test_archive_layout(self, store):
        await db.put_diary(DiaryRecord.new("daily:2024-01-01", "new year"))
        await db.put_diary(DiaryRecord.new("daily:2024-01-02", "second day here"))
        await db.put_diary(DiaryRecord.new("summary:2023", "a summary"))

        result = await export_archive(store / "out", now=NOW)
        assert result.outcome == "success"
        assert result.path.name == "cipherdiary-export-20240701-123005.zip"

        with zipfile.ZipFile(result.path) as zf:
            names = set(zf.namelist())
            assert names == {
                "manifest.json",
                "diaries/2024-01-01.md",
                "diaries/2024-01-02.md",
                "summaries/2023-summary.md",
            }
            assert zf.read("diaries/2024-01-02.md").decode() == "second day here"
            manifest = json.loads(zf.read("manifest.json"))

        assert manifest["entryCount"] == 3
        assert manifest["dailyCount"] == 2
        assert manifest["yearlySummaryCount"] == 1
        assert {f["path"] for f in manifest["files"]} == names - {"manifest.json"}

    @pytest.mark.asyncio
    async def test_default_directory_next_to_db(self, store):
        await db.put_diary(DiaryRecord.new("daily:2024-01-01", "x"))
        result = await export_archive(now=NOW)
        assert result.path.parent == store / "exports"


class TestImport:
    """Tests for importing plaintext files and export archives."""

    @pytest.mark.parametrize("name, expected", [
        ("2024-01-05.md", "daily:2024-01-05"),
        ("diaries/2024-01-05.TXT", "daily:2024-01-05"),
        ("2023-summary.md", "summary:2023"),
        ("2024-02-30.md", None),
        ("notes.md", None),
    ])
    def test_entry_id_from_name(self, name, expected):
        assert entry_id_from_name(name) == expected

    @pytest.mark.asyncio
    async def test_directory_import_sorts_files(self, store):
        src = store / "src"
        src.mkdir()
        (src / "2024-01-01.md").write_text("first day", encoding="utf-8")
        (src / "2023-summary.txt").write_text("the year", encoding="utf-8")
        (src / "2024-01-02.md").write_text("   ", encoding="utf-8")
        (src / "shopping.md").write_text("milk", encoding="utf-8")
        (src / "2024-01-03.md").write_bytes(b"\xff\xfe\x00")

        result = await import_archive(src)
        assert sorted(result.succeeded) == ["daily:2024-01-01", "summary:2023"]
        assert [name for name, _ in result.invalid] == ["shopping.md"]
        assert sorted(name for name, _ in result.failed) == ["2024-01-02.md", "2024-01-03.md"]
        assert (await db.get_diary("summary:2023")).content == "the year"

    @pytest.mark.asyncio
    async def test_existing_entries_skipped_unless_overwrite(self, store):
        original = DiaryRecord.new("daily:2024-01-01", "local copy")
        await db.put_diary(original)
        src = store / "2024-01-01.md"
        src.write_text("imported copy", encoding="utf-8")

        result = await import_archive(src)
        assert result.skipped == ["daily:2024-01-01"]
        assert (await db.get_diary("daily:2024-01-01")).content == "local copy"

        seen = []
        result = await import_archive(src, overwrite=True, on_write=seen.append)
        assert result.overwritten == ["daily:2024-01-01"]
        stored = await db.get_diary("daily:2024-01-01")
        assert stored.content == "imported copy"
        assert stored.created_at == original.created_at
        assert [r.id for r in seen] == ["daily:2024-01-01"]

    @pytest.mark.asyncio
    async def test_export_then_import_into_empty_store(self, store, monkeypatch):
        await db.put_diary(DiaryRecord.new("daily:2024-01-01", "new year"))
        await db.put_diary(DiaryRecord.new("summary:2023", "a summary"))
        exported = await export_archive(store / "out", now=NOW)

        monkeypatch.setattr(db, "DB_PATH", str(store / "second.sqlite3"))
        await db.init_db()
        result = await import_archive(exported.path)
        assert sorted(result.succeeded) == ["daily:2024-01-01", "summary:2023"]
        assert result.invalid == []
        assert (await db.get_diary("daily:2024-01-01")).content == "new year"

    @pytest.mark.asyncio
    async def test_imported_entries_are_uploaded(self, engine, fake, store):
        (store / "2024-05-01.md").write_text("may day", encoding="utf-8")
        result = await import_archive(store / "2024-05-01.md", engine=engine)
        assert result.upload is not None
        assert result.upload.succeeded == ["daily:2024-05-01"]
        assert fake.put_count("2024-05-01.md.enc") == 1
        assert not await engine.is_dirty("daily:2024-05-01")

    @pytest.mark.asyncio
    async def test_locked_session_imports_without_upload(self, engine, fake, session, store):
        await session.lock()
        (store / "2024-05-01.md").write_text("may day", encoding="utf-8")
        result = await import_archive(store / "2024-05-01.md", engine=engine)
        assert result.succeeded == ["daily:2024-05-01"]
        assert result.upload is None
        assert fake.puts == []

    @pytest.mark.asyncio
    async def test_missing_path(self, store):
        with pytest.raises(ValidationError):
            await import_archive(store / "nope.zip")

"""Tests for entry identity and the metadata index."""

from datetime import datetime, timezone

import pytest

from cipherdiary.errors import ValidationError
from cipherdiary.models import (
    DiaryRecord,
    MetadataIndex,
    daily_entry_id,
    parse_entry_id,
    summary_entry_id,
)


class TestEntryIds:
    """Tests for entry id parsing and validation."""

    def test_daily(self):
        assert daily_entry_id("2024-02-29") == "daily:2024-02-29"
        assert parse_entry_id("daily:2024-02-29") == ("daily", "2024-02-29", None)

    def test_summary(self):
        assert summary_entry_id(2024) == "summary:2024"
        assert parse_entry_id("summary:2024") == ("yearly_summary", "2024-12-31", 2024)

    @pytest.mark.parametrize("value", ["2023-02-29", "2024-13-01", "24-01-01", ""])
    def test_bad_dates(self, value):
        with pytest.raises(ValidationError):
            daily_entry_id(value)

    @pytest.mark.parametrize("value", [1969, 10000, True])
    def test_bad_years(self, value):
        with pytest.raises(ValidationError):
            summary_entry_id(value)

    def test_unknown_id(self):
        with pytest.raises(ValidationError):
            parse_entry_id("weekly:2024-01")

    def test_summary_filename(self):
        assert DiaryRecord.new("summary:2023").filename == "2023-summary.md.enc"


class TestMetadataIndex:
    """Tests for parsing and upserting the remote index."""

    NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)

    def test_drops_malformed_entries(self):
        data = {
            "version": "1",
            "lastSync": "2024-01-01T00:00:00+00:00",
            "entries": [
                {"type": "daily", "date": "2024-01-01", "filename": "2024-01-01.md.enc",
                 "wordCount": 3, "createdAt": "a", "modifiedAt": "b"},
                {"type": "daily", "date": "2024-01-02"},
                {"type": "weekly", "date": "x", "filename": "x", "wordCount": 1,
                 "createdAt": "a", "modifiedAt": "b"},
                "junk",
            ],
        }
        index = MetadataIndex.from_dict(data, self.NOW)
        assert [e.entry_id for e in index.entries] == ["daily:2024-01-01"]
        assert index.last_sync == "2024-01-01T00:00:00+00:00"

    def test_non_dict_gives_empty_index(self):
        index = MetadataIndex.from_dict(["nope"], self.NOW)
        assert index.entries == []
        assert index.version == "1"

    def test_upsert_keeps_created_at(self):
        index = MetadataIndex.from_dict(None, self.NOW)
        first = DiaryRecord.new("daily:2024-01-01", "one", now=datetime(2024, 1, 1, tzinfo=timezone.utc))
        index.upsert(first, self.NOW)
        second = DiaryRecord.new("daily:2024-01-01", "one two", now=datetime(2024, 2, 1, tzinfo=timezone.utc))
        index.upsert(second, self.NOW)
        assert len(index.entries) == 1
        assert index.entries[0].created_at == first.created_at
        assert index.entries[0].word_count == 2

    def test_summary_entry_carries_year(self):
        index = MetadataIndex()
        index.upsert(DiaryRecord.new("summary:2024", "done"), self.NOW)
        assert index.to_dict()["entries"][0]["year"] == 2024

"""
Tests for input normalization and deduplication.
"""

import pytest

from core.deduplicator import RecordDeduplicator, has_field, lookup_field
from core.errors import ValidationError


class TestNormalize:

    def test_strips_non_digits_and_whitespace(self):
        dedup = RecordDeduplicator()
        record = dedup.normalize({"name": "  Budi  ", "ktp": "3174-0123 4567.8901", "phone": "+62 812-3456"})

        assert record.name == "Budi"
        assert record.identifier == "3174012345678901"
        assert record.phone == "628123456"

    def test_caps_identifier_and_phone_length(self):
        dedup = RecordDeduplicator(identifier_max_digits=16, phone_max_digits=12)
        record = dedup.normalize({"name": "A", "ktp": "1" * 20, "phone": "9" * 15})

        assert len(record.identifier) == 16
        assert len(record.phone) == 12

    def test_aliases_and_header_case(self):
        raw = {"NIK": "123456", "Nama": "Siti", "HP": "0812"}
        assert lookup_field(raw, "identifier") == "123456"
        assert lookup_field(raw, "name") == "Siti"
        assert has_field(raw, "phone")

    @pytest.mark.parametrize("raw,missing", [
        ({"name": "", "ktp": "123", "phone": "0812"}, "name"),
        ({"name": "A", "ktp": "abc", "phone": "0812"}, "identifier"),
        ({"name": "A", "ktp": "123"}, "phone"),
    ])
    def test_missing_field_raises(self, raw, missing):
        with pytest.raises(ValidationError) as exc:
            RecordDeduplicator().normalize(raw)
        assert exc.value.field_name == missing
        assert exc.value.retryable is False


class TestDeduplicate:

    def test_first_occurrence_wins(self, raw_rows):
        result = RecordDeduplicator().deduplicate(raw_rows)

        ids = [r.identifier for r in result.accepted]
        assert ids == ["3174012345678901", "3174019876543210"]
        assert result.accepted[0].name == "Budi Santoso"
        assert len(result.duplicates) == 1
        assert result.duplicates[0].index == 2

    def test_invalid_rows_rejected_not_raised(self, raw_rows):
        result = RecordDeduplicator().deduplicate(raw_rows)

        assert len(result.rejected) == 1
        rejected = result.rejected[0]
        assert rejected.index == 3
        assert rejected.identifier == "3174011111111111"
        assert "name" in rejected.reason
        assert result.total_input == len(raw_rows)

    def test_duplicate_identifier_submitted_once(self):
        rows = [
            {"name": "A", "ktp": "123456", "phone": "0811"},
            {"name": "B", "ktp": "123456", "phone": "0822"},
        ]
        result = RecordDeduplicator().deduplicate(rows)

        assert [r.identifier for r in result.accepted] == ["123456"]
        assert result.accepted[0].name == "A"

    def test_empty_input(self):
        result = RecordDeduplicator().deduplicate([])
        assert result.accepted == []
        assert result.total_input == 0

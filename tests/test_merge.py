"""Tests for field-level merge arbitration."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from userlens.identity.merge import (
    CONCATENATE_SEPARATOR,
    MergeArbitrator,
    classify_field,
    mark_merged,
    order_by_recency,
)
from userlens.identity.models import MergeStrategy, RawRow


def _rows(*values: dict) -> list[RawRow]:
    return [RawRow(values=v, id=f"r{i}") for i, v in enumerate(values, start=1)]


# =========================================================================
# Rule table
# =========================================================================


class TestClassifyField:
    """Tests for the field-name rule table."""

    @pytest.mark.parametrize(
        ("field_name", "expected"),
        [
            ("Enrollment Date", MergeStrategy.LATEST),
            ("Last Seen", MergeStrategy.LATEST),
            ("Device Name", MergeStrategy.ARRAY),
            ("IMEI", MergeStrategy.ARRAY),
            ("Serial Number", MergeStrategy.ARRAY),
            ("Status", MergeStrategy.LATEST),
            ("IsActive", MergeStrategy.LATEST),
            ("Notes", MergeStrategy.CONCATENATE),
            ("Description", MergeStrategy.CONCATENATE),
            ("Department", MergeStrategy.CONFLICT),
        ],
    )
    def test_strategy(self, field_name, expected):
        assert classify_field(field_name) is expected

    def test_rules_checked_in_order(self):
        # "last" wins over "device"
        assert classify_field("Device Last Checkin") is MergeStrategy.LATEST


class TestOrderByRecency:
    """Tests for the recency ordering used by every 'latest' decision."""

    def test_newest_first_undated_last_stable(self):
        rows = [
            RawRow(values={"_date": "2024-01-01"}, id="old"),
            RawRow(values={}, id="undated-1"),
            RawRow(values={"_date": "2024-06-01"}, id="new"),
            RawRow(values={}, id="undated-2"),
            RawRow(values={}, id="explicit", imported_at=datetime(2024, 3, 1, tzinfo=timezone.utc)),
        ]
        assert [r.id for r in order_by_recency(rows)] == [
            "new",
            "explicit",
            "old",
            "undated-1",
            "undated-2",
        ]


# =========================================================================
# MergeArbitrator
# =========================================================================


class TestMergeArbitrator:
    """Tests for MergeArbitrator.merge."""

    def test_status_latest_wins_without_conflict(self):
        rows = _rows(
            {"Status": "Active", "_file": "a.csv", "_date": "2024-01-01"},
            {"Status": "Disabled", "_file": "b.csv", "_date": "2024-06-01"},
        )
        result = MergeArbitrator().merge(rows)
        assert result.merged_row["Status"] == "Disabled"
        assert "Status" not in result.conflict_fields()
        assert result.strategies["Status"] is MergeStrategy.LATEST

    def test_identical_values_no_conflict(self):
        rows = _rows(
            {"Email": "jane@example.com", "Department": "Sales"},
            {"Email": "jane@example.com ", "Department": "Sales"},
            {"Email": "jane@example.com", "Department": "Sales"},
        )
        result = MergeArbitrator().merge(rows)
        assert result.merged_row == {"Email": "jane@example.com", "Department": "Sales"}
        assert result.conflicts == []
        assert result.strategies == {}

    def test_device_values_all_kept(self):
        rows = [
            RawRow(values={"Device Name": "LAPTOP-01"}, file_name="a.csv", id="r1"),
            RawRow(values={"Device Name": "PHONE-07"}, file_name="b.csv", id="r2"),
            RawRow(values={"Device Name": "TABLET-3"}, file_name="c.csv", id="r3"),
        ]
        result = MergeArbitrator().merge(rows)
        devices = result.merged_row["Device Name"]
        assert len(devices) == 3
        assert {d["value"] for d in devices} == {"LAPTOP-01", "PHONE-07", "TABLET-3"}
        assert {d["source"] for d in devices} == {"a.csv", "b.csv", "c.csv"}
        assert result.conflicts == []

    def test_previous_array_expanded(self):
        rows = [
            RawRow(
                values={"Device": [{"value": "LAPTOP-01", "source": "a.csv"}]},
                file_name="merged.csv",
                id="r1",
            ),
            RawRow(values={"Device": "PHONE-07"}, file_name="b.csv", id="r2"),
        ]
        devices = MergeArbitrator().merge(rows).merged_row["Device"]
        assert sorted((d["value"], d["source"]) for d in devices) == [
            ("LAPTOP-01", "a.csv"),
            ("PHONE-07", "b.csv"),
        ]

    def test_notes_concatenated_newest_first(self):
        rows = _rows(
            {"Notes": "joined sales", "_date": "2024-01-01"},
            {"Notes": "moved to marketing", "_date": "2024-06-01"},
        )
        merged = MergeArbitrator().merge(rows).merged_row["Notes"]
        assert merged == CONCATENATE_SEPARATOR.join(["moved to marketing", "joined sales"])

    def test_unreconcilable_field_recorded_as_conflict(self):
        rows = _rows(
            {"Department": "Sales", "_file": "a.csv", "_date": "2024-01-01"},
            {"Department": "Marketing", "_file": "b.csv", "_date": "2024-06-01"},
        )
        result = MergeArbitrator().merge(rows)
        assert result.merged_row["Department"] == "Marketing"
        assert result.conflict_fields() == ["Department"]

        conflict = result.conflicts[0].to_dict()
        assert conflict["chosen"] == "Marketing"
        assert conflict["values"] == [
            {"value": "Marketing", "source": "b.csv"},
            {"value": "Sales", "source": "a.csv"},
        ]

    def test_internal_and_blank_fields_omitted(self):
        rows = _rows(
            {"Email": "jane@example.com", "Phone": "", "_file": "a.csv"},
            {"Email": "jane@example.com", "Phone": "  ", "_file": "b.csv"},
        )
        assert MergeArbitrator().merge(rows).merged_row == {"Email": "jane@example.com"}

    def test_survivor_is_newest(self):
        rows = _rows(
            {"Email": "jane@example.com", "_date": "2024-06-01"},
            {"Email": "jane@example.com", "_date": "2024-01-01"},
            {"Email": "jane@example.com", "_date": "2024-09-01"},
        )
        result = MergeArbitrator().merge(rows)
        assert result.survivor.id == "r3"
        assert result.record_count == 3
        assert result.merged_count == 2

    def test_attributes_recomputed(self):
        rows = _rows({"First Name": "Jane", "Last Name": "Doe"}, {"First Name": "Jane", "Email": "jd@x.io"})
        attrs = MergeArbitrator().merge(rows).merged_attrs
        assert attrs.first_name == "jane"
        assert attrs.email == "jd@x.io"
        assert attrs.primary_key == "jdoe"

    def test_known_primary_key_preserved(self):
        rows = [
            RawRow(values={"Email": "jane@example.com"}, primary_key="jane@example.com", id="r1"),
            RawRow(values={"First Name": "Jane", "Last Name": "Doe"}, id="r2"),
        ]
        assert MergeArbitrator().merge(rows).merged_attrs.primary_key == "jane@example.com"

    def test_empty_input_rejected(self):
        with pytest.raises(ValueError, match="At least one record"):
            MergeArbitrator().merge([])


# =========================================================================
# mark_merged
# =========================================================================


class TestMarkMerged:
    """Tests for merge annotation of non-survivors."""

    def test_annotates_copies(self):
        rows = _rows({"Email": "a@x.io"}, {"Email": "a@x.io"}, {"Email": "a@x.io"})
        merged_at = datetime(2024, 7, 1, tzinfo=timezone.utc)

        annotated = mark_merged(rows, rows[1], merged_at)

        assert [r.id for r in annotated] == ["r1", "r3"]
        assert all(r.merged and r.merged_into == "r2" and r.merged_at == merged_at for r in annotated)
        # Originals untouched
        assert not any(r.merged for r in rows)

    def test_single_record_yields_nothing(self):
        rows = _rows({"Email": "a@x.io"})
        assert mark_merged(rows, rows[0]) == []

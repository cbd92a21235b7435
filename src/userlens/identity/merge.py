"""Field-level merge arbitration for records of the same person in one source.

Input records are asserted by the caller to be the same entity.  Every
field is resolved by a name-based rule table; values that no rule can
reconcile are kept (most recent wins) and reported as conflicts rather than
aborting the merge.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

import structlog

from userlens.identity.extraction import FieldExtractor
from userlens.identity.keys import KeyDeriver
from userlens.identity.models import (
    MergeConflict,
    MergeResult,
    MergeStrategy,
    RawRow,
    SchemaDescriptor,
    SourcedValue,
)

logger = structlog.get_logger(__name__)

# Checked in order; the first rule with a fragment contained in the
# (lowercased) field name decides.  Unmatched fields are conflicts.
MERGE_RULES: tuple[tuple[tuple[str, ...], MergeStrategy], ...] = (
    (("date", "time", "last"), MergeStrategy.LATEST),
    (("device", "model", "imei", "serial"), MergeStrategy.ARRAY),
    (("status", "active"), MergeStrategy.LATEST),
    (("description", "note"), MergeStrategy.CONCATENATE),
)

CONCATENATE_SEPARATOR = " | "


def classify_field(field_name: str) -> MergeStrategy:
    lowered = field_name.lower()
    for fragments, strategy in MERGE_RULES:
        if any(fragment in lowered for fragment in fragments):
            return strategy
    return MergeStrategy.CONFLICT


def order_by_recency(records: Sequence[RawRow]) -> list[RawRow]:
    """Newest import first; undated records last; ties keep input order."""

    def sort_key(item: tuple[int, RawRow]) -> tuple[bool, float, int]:
        index, record = item
        ts = record.import_timestamp
        return (ts is None, -ts.timestamp() if ts else 0.0, index)

    return [record for _, record in sorted(enumerate(records), key=sort_key)]


def _field_values(records: Sequence[RawRow], field_name: str) -> list[SourcedValue]:
    values: list[SourcedValue] = []
    for record in records:
        raw = record.values.get(field_name)
        if isinstance(raw, list):
            # Already an array from an earlier merge: expand its entries.
            for entry in raw:
                value = entry.get("value") if isinstance(entry, dict) else entry
                if isinstance(value, str) and value.strip():
                    source = entry.get("source") if isinstance(entry, dict) else None
                    values.append(SourcedValue(value.strip(), source, record.id))
        elif isinstance(raw, str) and raw.strip():
            values.append(SourcedValue(raw.strip(), record.source_file, record.id))
    return values


def _unique(values: Sequence[SourcedValue]) -> list[str]:
    seen: dict[str, None] = {}
    for v in values:
        seen.setdefault(v.value, None)
    return list(seen)


class MergeArbitrator:
    """Combine raw rows believed to be one person into a single row."""

    def __init__(
        self,
        extractor: FieldExtractor | None = None,
        key_deriver: KeyDeriver | None = None,
        schema: SchemaDescriptor | None = None,
    ) -> None:
        self.extractor = extractor or FieldExtractor()
        self.key_deriver = key_deriver or KeyDeriver()
        self.schema = schema

    def merge(self, records: Sequence[RawRow]) -> MergeResult:
        if not records:
            msg = "At least one record is required to merge"
            raise ValueError(msg)

        ordered = order_by_recency(records)

        field_names: dict[str, None] = {}
        for record in ordered:
            for name in record.data_columns():
                field_names.setdefault(name, None)

        merged_row: dict[str, Any] = {}
        conflicts: list[MergeConflict] = []
        strategies: dict[str, MergeStrategy] = {}

        for field_name in field_names:
            values = _field_values(ordered, field_name)
            if not values:
                continue

            distinct = _unique(values)
            if len(distinct) == 1:
                merged_row[field_name] = distinct[0]
                continue

            strategy = classify_field(field_name)
            strategies[field_name] = strategy

            if strategy is MergeStrategy.LATEST:
                merged_row[field_name] = values[0].value
            elif strategy is MergeStrategy.ARRAY:
                merged_row[field_name] = [
                    {"value": v.value, "source": v.source} for v in values
                ]
            elif strategy is MergeStrategy.CONCATENATE:
                merged_row[field_name] = CONCATENATE_SEPARATOR.join(distinct)
            else:
                merged_row[field_name] = values[0].value
                conflicts.append(
                    MergeConflict(field=field_name, values=values, chosen=values[0].value)
                )

        merged_attrs = self.extractor.extract(merged_row, self.schema)
        known_key = next((r.primary_key for r in ordered if r.primary_key), None)
        merged_attrs.primary_key = known_key or self.key_deriver.derive(merged_attrs)

        if conflicts:
            logger.info(
                "merge_conflicts_recorded",
                primary_key=merged_attrs.primary_key,
                fields=[c.field for c in conflicts],
            )

        return MergeResult(
            merged_row=merged_row,
            merged_attrs=merged_attrs,
            conflicts=conflicts,
            survivor=ordered[0],
            record_count=len(records),
            strategies=strategies,
        )


def mark_merged(
    records: Sequence[RawRow],
    survivor: RawRow,
    merged_at: datetime | None = None,
) -> list[RawRow]:
    """Return annotated copies of every record except *survivor*.

    Records are never deleted; persisting the copies is the caller's job.
    """
    merged_at = merged_at or datetime.now(timezone.utc)
    annotated = []
    for record in records:
        if record is survivor or (record.id is not None and record.id == survivor.id):
            continue
        annotated.append(
            replace(record, merged=True, merged_into=survivor.id, merged_at=merged_at)
        )
    return annotated

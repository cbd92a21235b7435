"""Value types shared by the identity consolidation engine.

Everything here is a plain dataclass.  Stored records
(:class:`CanonicalIdentity`, :class:`SourcePresence`, :class:`RawRow`) carry
the ids assigned by the storage collaborator; the rest are ephemeral results.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import pandas as pd

# Canonical user attributes, in extraction order.
CANONICAL_FIELDS: tuple[str, ...] = (
    "first_name",
    "last_name",
    "email",
    "username",
    "display_name",
)

# Raw columns starting with this marker are bookkeeping, not source data.
INTERNAL_PREFIX = "_"


def is_internal_column(name: str) -> bool:
    return name.startswith(INTERNAL_PREFIX)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a date/time value into an aware UTC datetime, or ``None``.

    ISO-8601 strings are parsed directly; anything else goes through
    pandas' lenient parser.  Naive values are assumed to be UTC.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            converted = pd.to_datetime(text, errors="coerce")
            if pd.isna(converted):
                return None
            parsed = converted.to_pydatetime()
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Attributes and schema
# ---------------------------------------------------------------------------

@dataclass
class AttributeSet:
    """Normalized user attributes extracted from one raw row."""

    primary_key: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    username: str | None = None
    display_name: str | None = None

    def get(self, name: str) -> str | None:
        return getattr(self, name)

    def has_identifying_field(self) -> bool:
        """True when at least one of first name, last name or email is known."""
        return bool(self.first_name or self.last_name or self.email)

    def identifiers(self) -> list[str]:
        values = [self.primary_key, self.email, self.username]
        return [v for v in values if v]

    def as_dict(self) -> dict[str, str | None]:
        return asdict(self)


@dataclass(frozen=True)
class ColumnDef:
    name: str
    data_type: str = "string"
    required: bool = False
    canonical_field: str | None = None

    def __post_init__(self) -> None:
        if self.canonical_field is not None and self.canonical_field not in CANONICAL_FIELDS:
            msg = f"Unknown canonical field {self.canonical_field!r} on column {self.name!r}"
            raise ValueError(msg)


@dataclass(frozen=True)
class SchemaDescriptor:
    """Ordered column definitions for one source."""

    source_id: str
    columns: tuple[ColumnDef, ...] = ()

    def mapped_columns(self) -> list[ColumnDef]:
        return [c for c in self.columns if c.canonical_field]


# ---------------------------------------------------------------------------
# Stored records
# ---------------------------------------------------------------------------

@dataclass
class CanonicalIdentity:
    id: str
    primary_key: str
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    username: str | None = None
    display_name: str | None = None
    active: bool = True

    def missing_fields_from(self, attrs: AttributeSet) -> dict[str, str]:
        """Return the fields *attrs* can fill that are currently empty here."""
        patch: dict[str, str] = {}
        for name in CANONICAL_FIELDS:
            value = attrs.get(name)
            if value and not getattr(self, name):
                patch[name] = value
        return patch

    def to_attributes(self) -> AttributeSet:
        return AttributeSet(
            primary_key=self.primary_key,
            first_name=self.first_name,
            last_name=self.last_name,
            email=self.email,
            username=self.username,
            display_name=self.display_name,
        )


@dataclass
class SourcePresence:
    """Evidence that an identity was seen in a source during an import."""

    id: str
    identity_id: str
    source_id: str
    import_id: str
    raw_record_ref: str | None
    platform_user_id: str | None = None
    active: bool = True
    last_seen_date: datetime | None = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class RawRow:
    """One parsed line from a source export.

    ``values`` holds the columns exactly as received.  Provenance
    (``file_name``, ``imported_at``) falls back to the internal ``_file``
    and ``_date`` columns when not set explicitly.
    """

    values: dict[str, Any]
    source_id: str = ""
    import_id: str = ""
    id: str | None = None
    file_name: str | None = None
    imported_at: datetime | None = None
    primary_key: str | None = None
    attributes: AttributeSet | None = None
    merged: bool = False
    merged_into: str | None = None
    merged_at: datetime | None = None

    @property
    def source_file(self) -> str | None:
        if self.file_name:
            return self.file_name
        value = self.values.get("_file")
        return str(value) if value else None

    @property
    def import_timestamp(self) -> datetime | None:
        if self.imported_at is not None:
            return parse_timestamp(self.imported_at)
        return parse_timestamp(self.values.get("_date"))

    def data_columns(self) -> dict[str, Any]:
        return {k: v for k, v in self.values.items() if not is_internal_column(k)}

    def string_values(self) -> list[tuple[str, str]]:
        """(column, trimmed value) for every non-empty string data column."""
        pairs = []
        for column, value in self.data_columns().items():
            if isinstance(value, str) and value.strip():
                pairs.append((column, value.strip()))
        return pairs

    def with_values(self, values: dict[str, Any], **changes: Any) -> RawRow:
        return replace(self, values=dict(values), **changes)


@dataclass
class SourceDataset:
    """All raw rows stored for one source, as seen by read-only analyses."""

    source_id: str
    rows: list[RawRow] = field(default_factory=list)
    name: str | None = None

    @property
    def label(self) -> str:
        return self.name or self.source_id


# ---------------------------------------------------------------------------
# Merge results
# ---------------------------------------------------------------------------

class MergeStrategy(str, Enum):
    LATEST = "latest"
    ARRAY = "array"
    CONCATENATE = "concatenate"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class SourcedValue:
    value: str
    source: str | None
    record_id: str | None = None


@dataclass
class MergeConflict:
    """A field whose competing values could not be reconciled by rule."""

    field: str
    values: list[SourcedValue]
    chosen: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "values": [{"value": v.value, "source": v.source} for v in self.values],
            "chosen": self.chosen,
        }


@dataclass
class MergeResult:
    merged_row: dict[str, Any]
    merged_attrs: AttributeSet
    conflicts: list[MergeConflict]
    survivor: RawRow
    record_count: int = 1
    strategies: dict[str, MergeStrategy] = field(default_factory=dict)

    @property
    def merged_count(self) -> int:
        """Number of input records absorbed into the survivor."""
        return self.record_count - 1

    def conflict_fields(self) -> list[str]:
        return [c.field for c in self.conflicts]


@dataclass
class DuplicateGroup:
    primary_key: str
    source_id: str
    rows: list[RawRow]

    @property
    def count(self) -> int:
        return len(self.rows)


@dataclass
class MergeBatchResult:
    total: int = 0
    merged: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Consolidation results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RowError:
    row_number: int  # 1-based position in the batch
    reason: str
    message: str


@dataclass(frozen=True)
class RankedIdentity:
    identity: CanonicalIdentity
    similarity: float


@dataclass
class ConsolidationResult:
    import_id: str
    source_id: str
    total: int = 0
    processed: int = 0
    created: int = 0
    updated: int = 0
    errors: list[RowError] = field(default_factory=list)
    possible_duplicates: dict[str, list[RankedIdentity]] = field(default_factory=dict)

    def stats(self) -> dict[str, int]:
        return {
            "total": self.total,
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "errors": len(self.errors),
        }


@dataclass
class MissingIdentity:
    identity: CanonicalIdentity
    present_sources: list[str]
    missing_sources: list[str]


# ---------------------------------------------------------------------------
# Matching results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PotentialMatch:
    source: str
    matched_value: str
    similarity: float
    matched_field: str
    original_value: str
    record_id: str | None = None


@dataclass
class BridgeDataset:
    """A source whose rows carry both an email-like and a user/name-like column."""

    source_id: str
    label: str
    available_fields: list[str]
    email_fields: list[str]
    identity_fields: list[str]

    @property
    def can_bridge(self) -> list[str]:
        return ["email-based platforms", "username-based platforms"]


@dataclass(frozen=True)
class Match:
    source_a: str
    source_b: str
    id_a: str
    id_b: str
    bridge_dataset: str
    bridge_field_a: str
    bridge_field_b: str
    confidence: int


@dataclass
class CrossSourceReport:
    identity_key: str
    bridges: list[BridgeDataset]
    matches: list[Match]
    recommended_canonical_field: str
    field_usage: dict[str, int]

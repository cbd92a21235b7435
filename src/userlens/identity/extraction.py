"""Canonical attribute extraction from raw source rows.

Two modes:

* **Schema-driven** -- only columns whose schema definition names a
  canonical field are read.  Unmapped columns are ignored, never guessed.
* **Pattern-based** -- used when a source has no schema.  Each column name
  is classified once against :data:`FIELD_PATTERN_RULES`.

Also provides the presence signals (active flag, last-seen date) read from
the same rows when a source presence is recorded.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from unidecode import unidecode

from userlens.config import NormalizationConfig
from userlens.identity.models import (
    AttributeSet,
    SchemaDescriptor,
    is_internal_column,
    parse_timestamp,
)

# ---------------------------------------------------------------------------
# Column-name rules (order matters: the first matching rule classifies the column)
# ---------------------------------------------------------------------------

FIELD_PATTERN_RULES: tuple[tuple[str, str | None], ...] = (
    # Activity and asset columns: never identity fields
    ("lastlogin", None),
    ("lastseen", None),
    ("lastactivity", None),
    ("lastupdated", None),
    ("lastreported", None),
    ("lastsync", None),
    ("lastmodified", None),
    ("date", None),
    ("time", None),
    ("device", None),
    ("hostname", None),
    # Whole words
    ("firstname", "first_name"),
    ("givenname", "first_name"),
    ("lastname", "last_name"),
    ("familyname", "last_name"),
    ("surname", "last_name"),
    ("emailaddress", "email"),
    ("email", "email"),
    ("username", "username"),
    ("userid", "username"),
    ("displayname", "display_name"),
    ("fullname", "display_name"),
    # Identifier fragments
    ("mail", "email"),
    ("login", "username"),
    ("user", "username"),
    # Abbreviations
    ("fname", "first_name"),
    ("lname", "last_name"),
    # Loose name fragments
    ("first", "first_name"),
    ("last", "last_name"),
)

# Generic names that only classify a column when they are the whole name, so
# "Company Name" or "Manager Name" never supply a person's display name.
WHOLE_COLUMN_RULES: dict[str, str] = {
    "name": "display_name",
    "full": "display_name",
}

_NON_ALNUM = re.compile(r"[^a-z0-9]")


def normalize_column_name(name: str) -> str:
    """Lowercase and strip everything but letters and digits (``"First Name"`` → ``"firstname"``)."""
    return _NON_ALNUM.sub("", name.lower())


def classify_column(name: str) -> str | None:
    """Return the canonical field a column name suggests, or ``None``.

    The first rule whose pattern occurs in the normalized name decides,
    including the exclusion rules that map to ``None``.  Otherwise the
    whole name is looked up in :data:`WHOLE_COLUMN_RULES`.
    """
    normalized = normalize_column_name(name)
    if not normalized:
        return None
    for pattern, field_name in FIELD_PATTERN_RULES:
        if pattern in normalized:
            return field_name
    return WHOLE_COLUMN_RULES.get(normalized)


def normalize_value(value: Any, config: NormalizationConfig | None = None) -> str | None:
    """Normalise a raw cell value for storage and comparison.

    Steps (each controlled by *config*):
      1. Transliterate Unicode to ASCII (off by default).
      2. Trim surrounding whitespace.
      3. Lowercase.
      4. Strip non-alphanumeric characters (off by default).

    Returns ``None`` when nothing is left.
    """
    if value is None:
        return None
    config = config or NormalizationConfig()

    text = value if isinstance(value, str) else str(value)
    if config.transliterate:
        text = unidecode(text)
    if config.trim_whitespace:
        text = text.strip()
    if config.lowercase:
        text = text.lower()
    if config.remove_special_chars:
        text = re.sub(r"[^A-Za-z0-9]", "", text)

    return text or None


def find_column_value(row: Mapping[str, Any], column: str) -> str | None:
    """Case-insensitive exact column lookup returning a non-empty string value."""
    value = row.get(column)
    if isinstance(value, str) and value.strip():
        return value
    wanted = column.lower()
    for key, candidate in row.items():
        if key.lower() == wanted and isinstance(candidate, str) and candidate.strip():
            return candidate
    return None


# ---------------------------------------------------------------------------
# FieldExtractor
# ---------------------------------------------------------------------------

class FieldExtractor:
    """Map a raw row to an :class:`AttributeSet`.  Pure: no side effects."""

    def __init__(self, config: NormalizationConfig | None = None) -> None:
        self.config = config or NormalizationConfig()

    def normalize(self, value: Any) -> str | None:
        return normalize_value(value, self.config)

    def extract(
        self,
        row: Mapping[str, Any],
        schema: SchemaDescriptor | None = None,
    ) -> AttributeSet:
        if schema is not None:
            return self._extract_with_schema(row, schema)
        return self._extract_by_pattern(row)

    def _extract_with_schema(
        self,
        row: Mapping[str, Any],
        schema: SchemaDescriptor,
    ) -> AttributeSet:
        attrs = AttributeSet()
        for column in schema.columns:
            if not column.canonical_field:
                continue
            value = row.get(column.name)
            if not isinstance(value, str):
                continue
            normalized = self.normalize(value)
            if normalized:
                setattr(attrs, column.canonical_field, normalized)

        if not attrs.display_name and attrs.first_name and attrs.last_name:
            attrs.display_name = f"{attrs.first_name} {attrs.last_name}"
        elif attrs.display_name and not attrs.first_name and not attrs.last_name:
            parts = attrs.display_name.split()
            if parts:
                attrs.first_name = parts[0]
                attrs.last_name = " ".join(parts[1:]) or None

        return attrs

    def _extract_by_pattern(self, row: Mapping[str, Any]) -> AttributeSet:
        found: dict[str, str] = {}
        for column, value in row.items():
            if is_internal_column(column) or not isinstance(value, str):
                continue
            field_name = classify_column(column)
            # A column feeds at most one field; a field takes its first column.
            if field_name is None or field_name in found:
                continue
            normalized = self.normalize(value)
            if normalized:
                found[field_name] = normalized
        return AttributeSet(**found)


# ---------------------------------------------------------------------------
# Presence signals
# ---------------------------------------------------------------------------

STATUS_COLUMNS: tuple[str, ...] = ("status", "active", "enabled", "disabled", "account_status")
_INVERTED_STATUS_COLUMNS = frozenset({"disabled"})
_INACTIVE_WORDS = ("inactive", "disabled", "suspended")
_ACTIVE_WORDS = ("active", "enabled")

LAST_SEEN_COLUMNS: tuple[str, ...] = (
    "last_seen",
    "last_login",
    "last_activity",
    "last_updated",
    "last_reported",
    "last_sync",
    "modified_date",
)


def detect_active_status(row: Mapping[str, Any]) -> bool:
    """Read the account status from the first status-like column present.

    Defaults to active when the row carries no recognisable status.
    """
    for column in STATUS_COLUMNS:
        value = find_column_value(row, column)
        if value is None:
            continue
        text = value.strip().lower()

        if text in ("true", "1", "yes", "false", "0", "no"):
            flag = text in ("true", "1", "yes")
            return not flag if column in _INVERTED_STATUS_COLUMNS else flag
        if any(word in text for word in _INACTIVE_WORDS):
            return False
        if any(word in text for word in _ACTIVE_WORDS):
            return True

    return True


def detect_last_seen(row: Mapping[str, Any]) -> datetime | None:
    """Return the first parseable last-seen style timestamp in the row."""
    for column in LAST_SEEN_COLUMNS:
        value = find_column_value(row, column)
        if value is None:
            continue
        parsed = parse_timestamp(value)
        if parsed is not None:
            return parsed
    return None

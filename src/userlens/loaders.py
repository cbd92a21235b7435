"""File parsing for the CLI scripts: source exports and schema descriptors."""

from __future__ import annotations

import json
from pathlib import Path

import pandas as pd

from userlens.identity.models import ColumnDef, SchemaDescriptor


def read_rows(csv_path: Path) -> list[dict[str, str]]:
    """Read a source export as a list of row dicts.

    Every cell is read as text and blanks stay empty strings, so the
    extractor sees exactly what the export contained.  Column names are
    stripped of surrounding whitespace; rows with no content are dropped.
    """
    df = pd.read_csv(csv_path, dtype=str, keep_default_na=False)
    df.columns = [str(c).strip() for c in df.columns]

    # Drop duplicate columns (keep first)
    df = df.loc[:, ~df.columns.duplicated()]

    blank = df.apply(lambda row: all(not v.strip() for v in row), axis=1)
    return df.loc[~blank].to_dict(orient="records") if len(df) else []


def read_schema(json_path: Path, source_id: str | None = None) -> SchemaDescriptor:
    """Load a schema descriptor.

    Expected layout::

        {"source_id": "okta",
         "columns": [{"name": "Mail", "canonical_field": "email"}, ...]}

    *source_id* overrides the id stored in the file.
    """
    data = json.loads(Path(json_path).read_text())
    columns = tuple(
        ColumnDef(
            name=c["name"],
            data_type=c.get("data_type", "string"),
            required=bool(c.get("required", False)),
            canonical_field=c.get("canonical_field"),
        )
        for c in data.get("columns", [])
    )
    return SchemaDescriptor(source_id=source_id or data.get("source_id", ""), columns=columns)

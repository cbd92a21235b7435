#!/usr/bin/env python3
"""CLI script to consolidate a source export into canonical identities."""

from __future__ import annotations

import uuid
from pathlib import Path

import structlog
import typer

from userlens.config import get_settings
from userlens.db import get_connection
from userlens.identity.consolidation import ConsolidationOrchestrator
from userlens.identity.store import PostgresIdentityStore, create_schema
from userlens.loaders import read_rows, read_schema

logger = structlog.get_logger(__name__)
app = typer.Typer()


@app.command()
def main(
    csv_path: Path = typer.Argument(..., help="Source export (CSV)"),
    source: str = typer.Option(..., "--source", help="Source id, e.g. okta or intune"),
    schema_path: Path | None = typer.Option(
        None, "--schema", help="JSON schema descriptor; pattern matching is used without one"
    ),
    import_id: str | None = typer.Option(None, help="Import id (generated if omitted)"),
    init_schema: bool = typer.Option(False, "--init-schema", help="Create tables first"),
    max_error_rate: float = typer.Option(
        1.0, help="Roll back the import if the share of rejected rows exceeds this"
    ),
) -> None:
    """Ingest one export file and report created/updated identities."""
    settings = get_settings()
    conn = get_connection(settings)

    try:
        if init_schema:
            create_schema(conn)

        rows = read_rows(csv_path)
        schema = read_schema(schema_path, source_id=source) if schema_path else None
        import_id = import_id or str(uuid.uuid4())
        logger.info("source_rows_loaded", source=source, count=len(rows), file=csv_path.name)

        orchestrator = ConsolidationOrchestrator(PostgresIdentityStore(conn), settings)
        result = orchestrator.process_import(
            import_id, source, rows, schema=schema, file_name=csv_path.name
        )

        error_rate = len(result.errors) / result.total if result.total else 0.0
        if error_rate > max_error_rate:
            conn.rollback()
            logger.error("import_rolled_back", import_id=import_id, error_rate=round(error_rate, 3))
            raise typer.Exit(code=1)

        conn.commit()
        logger.info(
            "consolidation_complete",
            import_id=import_id,
            possible_duplicates=len(result.possible_duplicates),
            **result.stats(),
        )
        for error in result.errors:
            logger.warning("row_error", row=error.row_number, reason=error.reason, message=error.message)

    finally:
        conn.close()


if __name__ == "__main__":
    app()

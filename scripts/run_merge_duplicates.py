#!/usr/bin/env python3
"""CLI script to merge duplicate raw records, or fold one identity into another."""

from __future__ import annotations

import structlog
import typer

from userlens.config import get_settings
from userlens.db import get_connection
from userlens.identity.consolidation import ConsolidationOrchestrator
from userlens.identity.store import PostgresIdentityStore

logger = structlog.get_logger(__name__)
app = typer.Typer()


@app.command()
def main(
    dry_run: bool = typer.Option(False, "--dry-run", help="List duplicate groups only"),
    keep: str | None = typer.Option(None, help="Identity key to keep (confirmed merge)"),
    duplicate: str | None = typer.Option(None, help="Identity key to fold into --keep"),
) -> None:
    """Merge every duplicate group, or merge two confirmed identities."""
    if (keep is None) != (duplicate is None):
        raise typer.BadParameter("--keep and --duplicate must be given together")

    settings = get_settings()
    conn = get_connection(settings)

    try:
        orchestrator = ConsolidationOrchestrator(PostgresIdentityStore(conn), settings)

        if keep and duplicate:
            identity = orchestrator.merge_identities(keep, duplicate)
            conn.commit()
            logger.info("confirmed_merge_complete", kept=identity.primary_key)
            return

        groups = orchestrator.find_duplicate_groups()
        logger.info("duplicate_groups_found", count=len(groups))
        if dry_run:
            for group in groups:
                logger.info(
                    "duplicate_group",
                    primary_key=group.primary_key,
                    source=group.source_id,
                    count=group.count,
                )
            return

        batch = orchestrator.merge_all_duplicates()
        conn.commit()
        logger.info(
            "duplicate_merge_complete",
            total=batch.total,
            merged=batch.merged,
            errors=len(batch.errors),
        )

    finally:
        conn.close()


if __name__ == "__main__":
    app()

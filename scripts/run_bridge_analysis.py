#!/usr/bin/env python3
"""CLI script to find bridge datasets and cross-source matches for an identity."""

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
    identity_key: str | None = typer.Option(
        None, "--identity", help="Primary key to trace across sources"
    ),
    missing: bool = typer.Option(
        False, "--missing", help="Also list identities absent from some sources"
    ),
) -> None:
    """Report bridges, and optionally matches and missing identities. Read-only."""
    settings = get_settings()
    conn = get_connection(settings)

    try:
        orchestrator = ConsolidationOrchestrator(PostgresIdentityStore(conn), settings)

        for bridge in orchestrator.find_bridge_datasets():
            logger.info("bridge_dataset", source=bridge.label, fields=bridge.available_fields)

        if identity_key:
            report = orchestrator.find_cross_source_matches(identity_key)
            for match in report.matches:
                logger.info(
                    "cross_source_match",
                    source_a=match.source_a,
                    source_b=match.source_b,
                    id_b=match.id_b,
                    via=match.bridge_dataset,
                    confidence=match.confidence,
                )
            logger.info(
                "canonical_field_recommendation",
                field=report.recommended_canonical_field,
                usage=report.field_usage,
            )

            for candidate in orchestrator.find_potential_matches(identity_key):
                logger.info(
                    "potential_match",
                    source=candidate.source,
                    value=candidate.matched_value,
                    similarity=round(candidate.similarity, 1),
                )

        if missing:
            for entry in orchestrator.find_missing_identities():
                logger.info(
                    "identity_missing_from_sources",
                    primary_key=entry.identity.primary_key,
                    present=entry.present_sources,
                    missing=entry.missing_sources,
                )

    finally:
        conn.close()


if __name__ == "__main__":
    app()

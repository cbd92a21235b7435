"""Cross-source identifier bridging.

Some sources carry two identifier types on the same row (an email column
and a username column, say).  Those "bridge" datasets let an identity known
by one identifier in source A be found under a different identifier in
source B, even when A and B share no column.

All operations here are read-only and advisory.
"""

from __future__ import annotations

from collections.abc import Sequence

import structlog

from userlens.config import MatchingConfig
from userlens.identity.models import (
    BridgeDataset,
    CrossSourceReport,
    Match,
    RawRow,
    SourceDataset,
)

logger = structlog.get_logger(__name__)

# Column names recognised as identifiers regardless of the fragment rules.
KNOWN_IDENTIFIER_COLUMNS = frozenset({
    "email",
    "emailaddress",
    "mail",
    "username",
    "userprincipalname",
    "samaccountname",
})


def is_email_column(name: str) -> bool:
    lowered = name.lower()
    return "email" in lowered or lowered == "mail"


def is_identity_column(name: str) -> bool:
    lowered = name.lower()
    return "user" in lowered or "name" in lowered


def is_identifier_column(name: str) -> bool:
    return (
        name.lower() in KNOWN_IDENTIFIER_COLUMNS
        or is_email_column(name)
        or is_identity_column(name)
    )


def is_pivot_column(name: str) -> bool:
    """Email or account columns whose values can link rows across sources.

    Personal-name columns are excluded: a shared surname is not an identifier.
    """
    return (
        name.lower() in KNOWN_IDENTIFIER_COLUMNS
        or is_email_column(name)
        or "user" in name.lower()
    )


def _identifier_values(row: RawRow) -> list[tuple[str, str]]:
    return [(column, value) for column, value in row.string_values() if is_pivot_column(column)]


class BridgeMatcher:
    def __init__(self, config: MatchingConfig | None = None) -> None:
        self.config = config or MatchingConfig()

    # -----------------------------------------------------------------------
    # Bridge discovery
    # -----------------------------------------------------------------------

    def classify_dataset(self, dataset: SourceDataset) -> BridgeDataset | None:
        """Return a :class:`BridgeDataset` if *dataset* exposes two identifier types.

        Only the first ``bridge_sample_size`` rows are inspected.  A bridge
        needs an email-like column, a user/name-like column, and at least
        two distinct identifier columns overall.
        """
        fields: dict[str, None] = {}
        for row in dataset.rows[: self.config.bridge_sample_size]:
            for column in row.data_columns():
                if is_identifier_column(column):
                    fields.setdefault(column, None)

        available = list(fields)
        email_fields = [f for f in available if is_email_column(f)]
        identity_fields = [f for f in available if is_identity_column(f)]

        if email_fields and identity_fields and len(available) >= 2:
            return BridgeDataset(
                source_id=dataset.source_id,
                label=dataset.label,
                available_fields=available,
                email_fields=email_fields,
                identity_fields=identity_fields,
            )
        return None

    def find_bridge_datasets(self, datasets: Sequence[SourceDataset]) -> list[BridgeDataset]:
        bridges = []
        for dataset in datasets:
            bridge = self.classify_dataset(dataset)
            if bridge is not None:
                bridges.append(bridge)
        logger.info("bridge_datasets_found", count=len(bridges), datasets=len(datasets))
        return bridges

    # -----------------------------------------------------------------------
    # Matching
    # -----------------------------------------------------------------------

    @staticmethod
    def target_identifiers(identity_key: str, target_rows: Sequence[RawRow]) -> set[str]:
        """Lowercased identifier values known for the target identity."""
        identifiers = {identity_key.strip().lower()}
        for row in target_rows:
            if row.primary_key:
                identifiers.add(row.primary_key.strip().lower())
            if row.attributes is not None:
                identifiers.update(v.lower() for v in row.attributes.identifiers())
            for _, value in _identifier_values(row):
                identifiers.add(value.lower())
        return identifiers

    def find_cross_source_matches(
        self,
        identity_key: str,
        target_rows: Sequence[RawRow],
        bridges: Sequence[BridgeDataset],
        datasets: Sequence[SourceDataset],
    ) -> list[Match]:
        """Follow bridge rows from the target's identifiers to other sources.

        A bridge row containing one of the target's identifiers contributes
        its remaining identifier values; every row in another source holding
        one of those values (in any column) becomes a :class:`Match`.
        Matches are unique per ``(source_a, source_b, id_b)``.
        """
        targets = self.target_identifiers(identity_key, target_rows)
        by_id = {d.source_id: d for d in datasets}

        source_a = "unknown"
        if target_rows:
            origin = by_id.get(target_rows[0].source_id)
            source_a = origin.label if origin else target_rows[0].source_id

        # value -> [(dataset, row, column)] over every source, built once.
        index: dict[str, list[tuple[SourceDataset, RawRow, str]]] = {}
        for dataset in datasets:
            for row in dataset.rows:
                for column, value in row.string_values():
                    index.setdefault(value.lower(), []).append((dataset, row, column))

        matches: dict[tuple[str, str, str], Match] = {}
        for bridge in bridges:
            bridge_dataset = by_id.get(bridge.source_id)
            if bridge_dataset is None:
                continue

            for bridge_row in bridge_dataset.rows:
                id_values = _identifier_values(bridge_row)
                hit = next(((c, v) for c, v in id_values if v.lower() in targets), None)
                if hit is None:
                    continue
                hit_column, hit_value = hit

                for other_column, other_value in id_values:
                    if other_value.lower() == hit_value.lower():
                        continue
                    for dataset, row, _ in index.get(other_value.lower(), []):
                        if dataset.source_id == bridge.source_id:
                            continue
                        if row.primary_key == identity_key:
                            continue
                        match = Match(
                            source_a=source_a,
                            source_b=dataset.label,
                            id_a=identity_key,
                            id_b=row.primary_key or other_value,
                            bridge_dataset=bridge.label,
                            bridge_field_a=hit_column,
                            bridge_field_b=other_column,
                            confidence=self.config.bridge_confidence,
                        )
                        matches.setdefault((match.source_a, match.source_b, match.id_b), match)

        return list(matches.values())

    # -----------------------------------------------------------------------
    # Recommendation
    # -----------------------------------------------------------------------

    @staticmethod
    def recommend_canonical_field(bridges: Sequence[BridgeDataset]) -> tuple[str, dict[str, int]]:
        """Tally identifier columns across bridges; ties favour email."""
        usage = {"email": 0, "username": 0}
        for bridge in bridges:
            for column in bridge.available_fields:
                if is_email_column(column):
                    usage["email"] += 1
                elif is_identity_column(column):
                    usage["username"] += 1
        recommended = "email" if usage["email"] >= usage["username"] else "username"
        return recommended, usage

    def analyse(
        self,
        identity_key: str,
        target_rows: Sequence[RawRow],
        datasets: Sequence[SourceDataset],
    ) -> CrossSourceReport:
        bridges = self.find_bridge_datasets(datasets)
        matches = self.find_cross_source_matches(identity_key, target_rows, bridges, datasets)
        recommended, usage = self.recommend_canonical_field(bridges)
        logger.info(
            "cross_source_matches_found",
            identity_key=identity_key,
            bridges=len(bridges),
            matches=len(matches),
            recommended=recommended,
        )
        return CrossSourceReport(
            identity_key=identity_key,
            bridges=bridges,
            matches=matches,
            recommended_canonical_field=recommended,
            field_usage=usage,
        )

"""Advisory similarity scoring.

Nothing in this module links or merges records.  Scores are surfaced to a
reviewer (possible duplicates, potential matches) and acted on only after
confirmation.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any

from rapidfuzz.distance import Levenshtein

from userlens.config import MatchingConfig
from userlens.identity.models import (
    CanonicalIdentity,
    PotentialMatch,
    RankedIdentity,
    RawRow,
)

# (attribute, weight): an exact match on the attribute contributes its weight.
ATTRIBUTE_WEIGHTS: tuple[tuple[str, float], ...] = (
    ("primary_key", 1.0),
    ("email", 1.0),
    ("username", 0.8),
    ("first_name", 0.5),
    ("last_name", 0.5),
)


def attribute_similarity(a: Any, b: Any) -> float:
    """Weighted share of matching attributes, in [0, 1].

    Works on anything exposing the canonical attribute names (attribute
    sets or stored identities).  Attributes missing on either side are left
    out of the denominator; with nothing comparable the score is 0.
    """
    matched = 0.0
    compared = 0.0
    for name, weight in ATTRIBUTE_WEIGHTS:
        value_a = getattr(a, name, None)
        value_b = getattr(b, name, None)
        if not value_a or not value_b:
            continue
        compared += weight
        if value_a == value_b:
            matched += weight
    return matched / compared if compared else 0.0


def string_similarity(s1: str, s2: str) -> float:
    """Normalised Levenshtein similarity as a percentage (0-100).

    ``100 * (1 - distance / longest_length)``; two empty strings score 100.
    """
    longest = max(len(s1), len(s2))
    if longest == 0:
        return 100.0
    return 100.0 * (1 - Levenshtein.distance(s1, s2) / longest)


def find_potential_matches(
    identifiers: Iterable[tuple[str, str]],
    candidates: Iterable[RawRow],
    config: MatchingConfig | None = None,
) -> list[PotentialMatch]:
    """Find values in *candidates* that are close to, but not equal to, an identifier.

    Parameters
    ----------
    identifiers:
        ``(field, value)`` pairs known for the identity under investigation.
    candidates:
        Raw rows from other identities; every string column is compared.
    config:
        Supplies the exclusive similarity band and the result cap.

    Returns
    -------
    list[PotentialMatch]
        Best match per ``(source, matched_value)``, highest similarity first.
    """
    config = config or MatchingConfig()
    known = [(f, v.strip().lower()) for f, v in identifiers if v and v.strip()]

    best: dict[tuple[str, str], PotentialMatch] = {}
    for row in candidates:
        for column, value in row.string_values():
            lowered = value.lower()
            for field_name, identifier in known:
                score = string_similarity(identifier, lowered)
                if not (config.potential_match_floor < score < config.potential_match_ceiling):
                    continue
                dedupe_key = (row.source_id, lowered)
                current = best.get(dedupe_key)
                if current is None or score > current.similarity:
                    best[dedupe_key] = PotentialMatch(
                        source=row.source_id,
                        matched_value=value,
                        similarity=score,
                        matched_field=column,
                        original_value=identifier,
                        record_id=row.id,
                    )

    ranked = sorted(best.values(), key=lambda m: m.similarity, reverse=True)
    return ranked[: config.potential_match_limit]


class SimilarityScorer:
    """Similarity operations bound to one :class:`MatchingConfig`."""

    def __init__(self, config: MatchingConfig | None = None) -> None:
        self.config = config or MatchingConfig()

    attribute_similarity = staticmethod(attribute_similarity)
    string_similarity = staticmethod(string_similarity)

    def rank_duplicates(
        self,
        attrs: Any,
        identities: Sequence[CanonicalIdentity],
    ) -> list[RankedIdentity]:
        """Identities scoring at or above the duplicate threshold, best first."""
        ranked = []
        for identity in identities:
            score = attribute_similarity(attrs, identity)
            if score >= self.config.duplicate_threshold:
                ranked.append(RankedIdentity(identity=identity, similarity=score))
        return sorted(ranked, key=lambda r: r.similarity, reverse=True)

    def find_potential_matches(
        self,
        identifiers: Iterable[tuple[str, str]],
        candidates: Iterable[RawRow],
    ) -> list[PotentialMatch]:
        return find_potential_matches(identifiers, candidates, self.config)

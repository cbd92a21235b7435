"""Linkage quality measurement against hand-labelled record pairs.

A ground-truth pair names two raw records and whether they belong to the
same person.  The system "predicts" a link when both records' presence
rows point at the same canonical identity.
"""

from __future__ import annotations

from userlens.identity.store import IdentityStore

# (minimum F1, label) checked top-down.
ASSESSMENT_BANDS: tuple[tuple[float, str], ...] = (
    (0.95, "EXCELLENT: key strategy links sources reliably"),
    (0.85, "GOOD: review possible duplicates periodically"),
    (0.70, "FAIR: consider a bridge-based canonical field"),
    (0.0, "POOR: many people are split or wrongly joined"),
)


def _ratio(numerator: int, denominator: int) -> float:
    return numerator / denominator if denominator > 0 else 0.0


def _identity_for(store: IdentityStore, record_ref: str) -> str | None:
    presence = store.find_presence_by_record(record_ref)
    return presence.identity_id if presence else None


def compute_linkage_metrics(
    store: IdentityStore,
    ground_truth: list[dict],
) -> dict[str, float]:
    """Compute precision, recall and F1 of the identity assignment.

    Parameters
    ----------
    store:
        Store holding the processed imports.
    ground_truth:
        Dicts with ``record_a`` and ``record_b`` (raw record ids) and
        ``same_person`` (bool).

    A pair with an unlinked record counts as a false negative when it is
    labelled the same person and is otherwise ignored.  True negatives are
    not tracked.
    """
    true_positives = 0
    false_positives = 0
    false_negatives = 0

    for pair in ground_truth:
        identity_a = _identity_for(store, pair["record_a"])
        identity_b = _identity_for(store, pair["record_b"])
        expected = bool(pair["same_person"])

        if identity_a is None or identity_b is None:
            false_negatives += int(expected)
            continue

        linked = identity_a == identity_b
        if linked and expected:
            true_positives += 1
        elif linked:
            false_positives += 1
        elif expected:
            false_negatives += 1

    precision = _ratio(true_positives, true_positives + false_positives)
    recall = _ratio(true_positives, true_positives + false_negatives)
    f1 = 2 * precision * recall / (precision + recall) if (precision + recall) > 0 else 0.0

    return {
        "precision": precision,
        "recall": recall,
        "f1": f1,
        "true_positives": true_positives,
        "false_positives": false_positives,
        "false_negatives": false_negatives,
        "total_pairs": len(ground_truth),
    }


def assess(f1: float) -> str:
    for minimum, label in ASSESSMENT_BANDS:
        if f1 >= minimum:
            return label
    return ASSESSMENT_BANDS[-1][1]


def generate_validation_report(metrics: dict[str, float]) -> str:
    """Render metrics from :func:`compute_linkage_metrics` as plain text."""
    counts = [
        ("Pairs evaluated", metrics.get("total_pairs", 0)),
        ("True positives", metrics.get("true_positives", 0)),
        ("False positives", metrics.get("false_positives", 0)),
        ("False negatives", metrics.get("false_negatives", 0)),
    ]
    scores = [
        ("Precision", metrics.get("precision", 0.0)),
        ("Recall", metrics.get("recall", 0.0)),
        ("F1", metrics.get("f1", 0.0)),
    ]

    lines = ["Identity Linkage Validation Report", "=" * 40, ""]
    lines += [f"{label + ':':<18}{value:.0f}" for label, value in counts]
    lines.append("")
    lines += [f"{label + ':':<18}{value:.4f}" for label, value in scores]
    lines.append("")
    lines.append(f"Assessment: {assess(metrics.get('f1', 0.0))}")
    return "\n".join(lines)

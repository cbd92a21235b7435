"""Tests for bridge dataset discovery and cross-source matching."""

from __future__ import annotations

from userlens.config import MatchingConfig
from userlens.identity.bridge import (
    BridgeMatcher,
    is_email_column,
    is_identity_column,
    is_pivot_column,
)
from userlens.identity.models import AttributeSet, RawRow, SourceDataset


def _dataset(source_id: str, *rows: dict, keys: list[str | None] | None = None) -> SourceDataset:
    keys = keys or [None] * len(rows)
    return SourceDataset(
        source_id=source_id,
        rows=[
            RawRow(values=values, source_id=source_id, id=f"{source_id}-{i}", primary_key=key)
            for i, (values, key) in enumerate(zip(rows, keys))
        ],
    )


def _environment() -> dict[str, SourceDataset]:
    """Three sources: HR knows emails, Slack knows handles, Okta knows both."""
    return {
        "hr": _dataset(
            "hr",
            {"Email": "jane.doe@example.com", "Department": "Sales"},
            keys=["jane.doe@example.com"],
        ),
        "okta": _dataset(
            "okta",
            {"Email": "jane.doe@example.com", "Username": "jdoe"},
            {"Email": "bob@example.com", "Username": "bsmith"},
            keys=["jane.doe@example.com", "bob@example.com"],
        ),
        "slack": _dataset(
            "slack",
            {"Handle": "jdoe", "Title": "AE"},
            {"Handle": "bsmith", "Title": "SE"},
            keys=["jdoe", "bsmith"],
        ),
    }


# =========================================================================
# Column tests
# =========================================================================


class TestColumnTests:
    """Tests for identifier column classification."""

    def test_email_columns(self):
        assert is_email_column("Email Address")
        assert is_email_column("mail")
        assert not is_email_column("Mailbox Size")

    def test_identity_columns(self):
        assert is_identity_column("UserPrincipalName")
        assert is_identity_column("Display Name")
        assert not is_identity_column("Department")

    def test_pivot_columns_exclude_personal_names(self):
        assert is_pivot_column("Email")
        assert is_pivot_column("sAMAccountName")
        assert is_pivot_column("User ID")
        assert not is_pivot_column("Last Name")
        assert not is_pivot_column("Display Name")


# =========================================================================
# Bridge discovery
# =========================================================================


class TestFindBridgeDatasets:
    """Tests for bridge classification."""

    def test_email_only_dataset_is_not_a_bridge(self):
        dataset = _dataset("hr", {"Email": "a@example.com", "Department": "Sales"})
        assert BridgeMatcher().find_bridge_datasets([dataset]) == []

    def test_email_and_username_is_a_bridge(self):
        bridges = BridgeMatcher().find_bridge_datasets(list(_environment().values()))
        assert [b.source_id for b in bridges] == ["okta"]
        bridge = bridges[0]
        assert bridge.email_fields == ["Email"]
        assert bridge.identity_fields == ["Username"]
        assert bridge.available_fields == ["Email", "Username"]

    def test_only_sampled_rows_inspected(self):
        rows = [{"Email": f"u{i}@example.com"} for i in range(3)]
        rows.append({"Email": "late@example.com", "Username": "late"})
        dataset = _dataset("crm", *rows)

        assert BridgeMatcher(MatchingConfig(bridge_sample_size=3)).classify_dataset(dataset) is None
        assert BridgeMatcher(MatchingConfig(bridge_sample_size=4)).classify_dataset(dataset) is not None

    def test_internal_columns_ignored(self):
        dataset = _dataset("crm", {"Email": "a@example.com", "_username": "a"})
        assert BridgeMatcher().classify_dataset(dataset) is None


# =========================================================================
# Cross-source matching
# =========================================================================


class TestFindCrossSourceMatches:
    """Tests for following bridge rows into other sources."""

    def test_email_identity_found_in_username_source(self):
        env = _environment()
        datasets = list(env.values())
        matcher = BridgeMatcher()
        bridges = matcher.find_bridge_datasets(datasets)

        matches = matcher.find_cross_source_matches(
            "jane.doe@example.com", env["hr"].rows, bridges, datasets
        )

        assert len(matches) == 1
        match = matches[0]
        assert match.source_a == "hr"
        assert match.source_b == "slack"
        assert match.id_a == "jane.doe@example.com"
        assert match.id_b == "jdoe"
        assert match.bridge_dataset == "okta"
        assert match.bridge_field_a == "Email"
        assert match.bridge_field_b == "Username"
        assert match.confidence == 95

    def test_case_insensitive_hit(self):
        env = _environment()
        env["slack"].rows[0].values["Handle"] = "JDOE"
        datasets = list(env.values())
        matcher = BridgeMatcher()

        matches = matcher.find_cross_source_matches(
            "jane.doe@example.com", env["hr"].rows, matcher.find_bridge_datasets(datasets), datasets
        )
        assert [m.id_b for m in matches] == ["jdoe"]

    def test_matches_deduplicated(self):
        env = _environment()
        env["slack"].rows.append(
            RawRow(values={"Handle": "jdoe", "Title": "AE"}, source_id="slack", primary_key="jdoe")
        )
        datasets = list(env.values())
        matcher = BridgeMatcher()

        matches = matcher.find_cross_source_matches(
            "jane.doe@example.com", env["hr"].rows, matcher.find_bridge_datasets(datasets), datasets
        )
        assert len(matches) == 1

    def test_attribute_identifiers_used(self):
        env = _environment()
        target = [
            RawRow(
                values={"Department": "Sales"},
                source_id="hr",
                primary_key="jdoe-hr",
                attributes=AttributeSet(email="jane.doe@example.com"),
            )
        ]
        datasets = list(env.values())
        matcher = BridgeMatcher()

        matches = matcher.find_cross_source_matches(
            "jdoe-hr", target, matcher.find_bridge_datasets(datasets), datasets
        )
        assert [(m.source_a, m.source_b, m.id_b) for m in matches] == [("hr", "slack", "jdoe")]

    def test_shared_surname_is_not_a_match(self):
        target = _dataset("okta", {"Email": "jane.doe@example.com"}, keys=["jane.doe@example.com"])
        bridge = _dataset(
            "ad",
            {"Email": "jane.doe@example.com", "Username": "jdoe1", "Last Name": "Doe"},
            keys=["jane.doe@example.com"],
        )
        unrelated = _dataset("hr", {"First Name": "John", "Last Name": "Doe"}, keys=["jdoe2"])
        datasets = [target, bridge, unrelated]
        matcher = BridgeMatcher()

        matches = matcher.find_cross_source_matches(
            "jane.doe@example.com", target.rows, matcher.find_bridge_datasets(datasets), datasets
        )

        assert not any(m.id_b == "jdoe2" for m in matches)

    def test_target_names_do_not_hit_bridge_rows(self):
        target = [
            RawRow(
                values={"First Name": "Jane", "Last Name": "Doe"},
                source_id="hr",
                primary_key="jdoe",
            )
        ]
        bridge = _dataset(
            "ad", {"Email": "john.doe@example.com", "Username": "doe"}, keys=["john.doe@example.com"]
        )
        other = _dataset("slack", {"Handle": "john.doe@example.com"}, keys=["jsmith"])
        datasets = [_dataset("hr"), bridge, other]
        matcher = BridgeMatcher()

        assert matcher.find_cross_source_matches(
            "jdoe", target, matcher.find_bridge_datasets(datasets), datasets
        ) == []

    def test_no_bridge_no_matches(self):
        env = _environment()
        datasets = [env["hr"], env["slack"]]
        matcher = BridgeMatcher()
        assert matcher.find_cross_source_matches("jane.doe@example.com", env["hr"].rows, [], datasets) == []


# =========================================================================
# Recommendation
# =========================================================================


class TestRecommendation:
    """Tests for the canonical-field recommendation."""

    def test_tie_favours_email(self):
        bridges = BridgeMatcher().find_bridge_datasets(list(_environment().values()))
        field, usage = BridgeMatcher.recommend_canonical_field(bridges)
        assert usage == {"email": 1, "username": 1}
        assert field == "email"

    def test_username_wins_tally(self):
        dataset = _dataset(
            "ad", {"Mail": "a@example.com", "SamAccountName": "a", "Display Name": "A"}
        )
        bridges = BridgeMatcher().find_bridge_datasets([dataset])
        field, usage = BridgeMatcher.recommend_canonical_field(bridges)
        assert usage == {"email": 1, "username": 2}
        assert field == "username"

    def test_no_bridges(self):
        assert BridgeMatcher.recommend_canonical_field([]) == ("email", {"email": 0, "username": 0})

    def test_analyse_report(self):
        env = _environment()
        report = BridgeMatcher().analyse("jane.doe@example.com", env["hr"].rows, list(env.values()))
        assert report.identity_key == "jane.doe@example.com"
        assert [b.source_id for b in report.bridges] == ["okta"]
        assert [m.source_b for m in report.matches] == ["slack"]
        assert report.recommended_canonical_field == "email"

"""Identity consolidation: extraction, key derivation, matching and merging of user records."""

from __future__ import annotations

from userlens.identity.bridge import BridgeMatcher
from userlens.identity.consolidation import ConsolidationOrchestrator
from userlens.identity.errors import (
    ExtractionError,
    IdentityError,
    IdentityNotFound,
    KeyNotDerivable,
    NothingToMerge,
    StorageConflict,
)
from userlens.identity.extraction import FieldExtractor, normalize_value
from userlens.identity.keys import KeyDeriver, KeyStrategy
from userlens.identity.merge import MergeArbitrator, classify_field, mark_merged
from userlens.identity.similarity import (
    SimilarityScorer,
    attribute_similarity,
    find_potential_matches,
    string_similarity,
)
from userlens.identity.store import (
    IdentityStore,
    InMemoryIdentityStore,
    PostgresIdentityStore,
    create_schema,
)
from userlens.identity.validation import (
    compute_linkage_metrics,
    generate_validation_report,
)

__all__ = [
    "BridgeMatcher",
    "ConsolidationOrchestrator",
    "ExtractionError",
    "FieldExtractor",
    "IdentityError",
    "IdentityNotFound",
    "IdentityStore",
    "InMemoryIdentityStore",
    "KeyDeriver",
    "KeyNotDerivable",
    "KeyStrategy",
    "MergeArbitrator",
    "NothingToMerge",
    "PostgresIdentityStore",
    "SimilarityScorer",
    "StorageConflict",
    "attribute_similarity",
    "classify_field",
    "compute_linkage_metrics",
    "create_schema",
    "find_potential_matches",
    "generate_validation_report",
    "mark_merged",
    "normalize_value",
    "string_similarity",
]

"""Error taxonomy for identity consolidation.

Row-level errors (:class:`ExtractionError`, :class:`KeyNotDerivable`) are
caught by the orchestrator and reported per row; the batch continues.
"""

from __future__ import annotations


class IdentityError(Exception):
    """Base class; ``reason`` is a stable machine-readable code."""

    reason = "identity_error"


class ExtractionError(IdentityError):
    """A row yielded no usable identifying attributes."""

    reason = "no_identifying_fields"


class KeyNotDerivable(IdentityError):
    """No primary key can be derived under the configured strategy."""

    reason = "key_not_derivable"


class StorageConflict(IdentityError):
    """An identity with this primary key was created concurrently."""

    reason = "storage_conflict"

    def __init__(self, primary_key: str) -> None:
        super().__init__(f"Identity with primary key {primary_key!r} already exists")
        self.primary_key = primary_key


class IdentityNotFound(IdentityError):
    reason = "identity_not_found"

    def __init__(self, primary_key: str) -> None:
        super().__init__(f"No identity with primary key {primary_key!r}")
        self.primary_key = primary_key


class NothingToMerge(IdentityError):
    reason = "nothing_to_merge"

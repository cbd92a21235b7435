"""Deterministic primary-key derivation for canonical identities.

The key is the only automatic-merge trigger: two rows are linked to the same
identity without review only when they derive the same key.
"""

from __future__ import annotations

from enum import Enum

from userlens.config import KeyStrategyConfig
from userlens.identity.errors import KeyNotDerivable
from userlens.identity.extraction import normalize_value
from userlens.identity.models import AttributeSet


class KeyStrategy(str, Enum):
    FIRST_INITIAL_LAST_NAME = "first_initial_last_name"
    EMAIL = "email"
    CUSTOM = "custom"


class KeyDeriver:
    """Compute the canonical key for an attribute set.

    ``derive`` returns ``None`` when no key can be produced; ``require``
    raises :class:`KeyNotDerivable` instead.
    """

    def __init__(self, config: KeyStrategyConfig | None = None) -> None:
        self.config = config or KeyStrategyConfig()
        try:
            self.strategy = KeyStrategy(self.config.strategy)
        except ValueError:
            msg = f"Unknown key strategy: {self.config.strategy!r}"
            raise ValueError(msg) from None
        if self.strategy is KeyStrategy.CUSTOM and self.config.custom is None:
            msg = "The custom key strategy requires a key function"
            raise ValueError(msg)

    def _normalize(self, value: str | None) -> str | None:
        return normalize_value(value, self.config.normalization)

    def derive(self, attrs: AttributeSet) -> str | None:
        if self.strategy is KeyStrategy.EMAIL:
            return self._normalize(attrs.email)
        if self.strategy is KeyStrategy.CUSTOM:
            return self._normalize(self.config.custom(attrs))
        return self._first_initial_last_name(attrs)

    def require(self, attrs: AttributeSet) -> str:
        key = self.derive(attrs)
        if key is None:
            msg = f"No primary key derivable with the {self.strategy.value!r} strategy"
            raise KeyNotDerivable(msg)
        return key

    def _first_initial_last_name(self, attrs: AttributeSet) -> str | None:
        first_name = self._normalize(attrs.first_name)
        last_name = self._normalize(attrs.last_name)
        if first_name and last_name:
            return f"{first_name[0]}{last_name}"

        # Fallbacks, in order: email, username, display name.
        for value in (attrs.email, attrs.username, attrs.display_name):
            key = self._normalize(value)
            if key:
                return key
        return None

"""Application settings loaded from environment variables.

Components never read settings directly: each one is constructed with the
frozen config value it needs, built here from :class:`Settings`.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from pydantic_settings import BaseSettings

if TYPE_CHECKING:
    from userlens.identity.models import AttributeSet


@dataclass(frozen=True)
class NormalizationConfig:
    trim_whitespace: bool = True
    lowercase: bool = True
    remove_special_chars: bool = False
    transliterate: bool = False


@dataclass(frozen=True)
class KeyStrategyConfig:
    strategy: str = "first_initial_last_name"
    normalization: NormalizationConfig = NormalizationConfig()
    custom: Callable[[AttributeSet], str | None] | None = None


@dataclass(frozen=True)
class MatchingConfig:
    duplicate_threshold: float = 0.8
    potential_match_floor: float = 80.0
    potential_match_ceiling: float = 100.0
    potential_match_limit: int = 10
    bridge_confidence: int = 95
    bridge_sample_size: int = 10


class Settings(BaseSettings):
    """All configuration is loaded from environment variables prefixed with UL_."""

    # Database
    database_url: str = ""

    # Key derivation
    key_strategy: str = "first_initial_last_name"

    # Normalization
    trim_whitespace: bool = True
    lowercase: bool = True
    remove_special_chars: bool = False
    transliterate: bool = False

    # Matching thresholds
    duplicate_threshold: float = 0.8
    potential_match_floor: float = 80.0
    potential_match_ceiling: float = 100.0
    potential_match_limit: int = 10
    bridge_confidence: int = 95
    bridge_sample_size: int = 10

    model_config = {"env_file": ".env", "env_prefix": "UL_"}

    def normalization_config(self) -> NormalizationConfig:
        return NormalizationConfig(
            trim_whitespace=self.trim_whitespace,
            lowercase=self.lowercase,
            remove_special_chars=self.remove_special_chars,
            transliterate=self.transliterate,
        )

    def key_strategy_config(
        self,
        custom: Callable[[AttributeSet], str | None] | None = None,
    ) -> KeyStrategyConfig:
        return KeyStrategyConfig(
            strategy=self.key_strategy,
            normalization=self.normalization_config(),
            custom=custom,
        )

    def matching_config(self) -> MatchingConfig:
        return MatchingConfig(
            duplicate_threshold=self.duplicate_threshold,
            potential_match_floor=self.potential_match_floor,
            potential_match_ceiling=self.potential_match_ceiling,
            potential_match_limit=self.potential_match_limit,
            bridge_confidence=self.bridge_confidence,
            bridge_sample_size=self.bridge_sample_size,
        )


def get_settings() -> Settings:
    """Return a fresh Settings instance."""
    return Settings()

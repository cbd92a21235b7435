"""Shared fixtures for identity consolidation tests."""

from __future__ import annotations

import pytest

from userlens.config import Settings
from userlens.identity.consolidation import ConsolidationOrchestrator
from userlens.identity.store import InMemoryIdentityStore


@pytest.fixture()
def settings() -> Settings:
    """Default settings, isolated from any local ``.env`` file."""
    return Settings(_env_file=None)


@pytest.fixture()
def store() -> InMemoryIdentityStore:
    return InMemoryIdentityStore()


@pytest.fixture()
def orchestrator(store, settings) -> ConsolidationOrchestrator:
    return ConsolidationOrchestrator(store, settings)


@pytest.fixture()
def directory_rows() -> list[dict[str, str]]:
    """A directory export keyed by first and last name.

    Jane is active, John is disabled and Ana has a blank email.
    """
    return [
        {"First Name": "Jane", "Last Name": "Doe", "Email": "jane.doe@example.com", "Status": "Active"},
        {"First Name": "John", "Last Name": "Smith", "Email": "john.smith@example.com", "Status": "Disabled"},
        {"First Name": "Ana", "Last Name": "Lopez", "Email": "", "Status": "Active"},
    ]

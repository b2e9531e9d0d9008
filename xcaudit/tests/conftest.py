"""Shared fixtures for the xcaudit test suite."""

from __future__ import annotations

import os

import pytest

from xcaudit.core.config import get_settings
from xcaudit.core.types import Severity, SourceUnit, VulnerabilityFinding
from xcaudit.tests.samples import (
    PLAIN_COUNTER_SOL,
    REENTRANT_VAULT_SOL,
    TOKEN_INTERFACE_SOL,
    UNBOUND_SIGNATURE_SOL,
    UNCHECKED_WORMHOLE_SOL,
    UNRECONCILED_LEDGER_SOL,
    make_finding,
    unit,
)


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch):
    """Isolate every test from the caller's XCAUDIT_* environment."""
    for key in list(os.environ):
        if key.startswith("XCAUDIT_"):
            monkeypatch.delenv(key, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def reentrant_batch() -> list[SourceUnit]:
    return [
        unit("Vault.sol", REENTRANT_VAULT_SOL),
        unit("IToken.sol", TOKEN_INTERFACE_SOL),
    ]


@pytest.fixture
def mixed_batch(reentrant_batch) -> list[SourceUnit]:
    return [
        *reentrant_batch,
        unit("Ledger.sol", UNRECONCILED_LEDGER_SOL),
        unit("BridgeReceiver.sol", UNCHECKED_WORMHOLE_SOL),
        unit("Relayer.sol", UNBOUND_SIGNATURE_SOL),
        unit("Counter.sol", PLAIN_COUNTER_SOL),
    ]


@pytest.fixture
def sample_findings() -> list[VulnerabilityFinding]:
    return [
        make_finding("Reentrancy in withdraw", Severity.HIGH, vulnerability_class="reentrancy"),
        make_finding(
            "Gas optimization: cache array length",
            Severity.INFORMATIONAL,
            function="loop",
            vulnerability_class="gas",
        ),
        make_finding(
            "Naming convention not followed",
            Severity.LOW,
            function="",
            vulnerability_class="style",
        ),
        make_finding(
            "Gas optimization hides unchecked bridge call",
            Severity.CRITICAL,
            contract="Bridge",
            function="receive",
            vulnerability_class="bridge",
            economic_impact="Total bridge funds at risk",
        ),
    ]

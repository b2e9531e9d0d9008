"""Tests for the delegatecall, unchecked-call and access-control detectors."""

from __future__ import annotations

import pytest

from xcaudit.analyzer.detectors.dependency import (
    DelegatecallStorageCollisionDetector,
    MissingAccessControlDetector,
    UncheckedLowLevelCallDetector,
)
from xcaudit.core.types import Confidence, Severity
from xcaudit.tests.samples import UNBOUND_SIGNATURE_SOL, states_of

PROXY_SOL = """\
contract Proxy {
    address public implementation;
    address public admin;

    function upgradeTo(address newImplementation) external {
        require(msg.sender == admin, "not admin");
        implementation = newImplementation;
    }

    fallback() external payable {
        (bool ok, ) = implementation.delegatecall(msg.data);
        require(ok, "delegatecall failed");
    }
}
"""

SLOT_PROXY_SOL = """\
contract SlotProxy {
    bytes32 internal constant IMPLEMENTATION_SLOT = 0x360894a13ba1a3210667c828492db98dca3e2076cc3735a920a3ca505d382bbc;

    fallback() external payable {
        address impl = _implementation();
        (bool ok, ) = impl.delegatecall(msg.data);
        require(ok, "delegatecall failed");
    }

    function _implementation() internal view returns (address) {
        return StorageSlot.getAddressSlot(IMPLEMENTATION_SLOT).value;
    }
}
"""

BATCHER_SOL = """\
contract Batcher {
    uint256 public count;

    function multicall(bytes[] calldata data) external {
        for (uint256 i = 0; i < data.length; i++) {
            (bool ok, ) = address(this).delegatecall(data[i]);
            require(ok, "batch failed");
        }
    }
}
"""

PAYOUT_SOL = """\
contract Payout {
    mapping(address => uint256) public owed;

    function pay(address payable to) external {
        uint256 amount = owed[to];
        owed[to] = 0;
        to.send(amount);
    }

    function payChecked(address payable to) external {
        uint256 amount = owed[to];
        owed[to] = 0;
        (bool ok, ) = to.call{value: amount}("");
        require(ok, "failed");
    }

    function payInline(address payable to) external {
        uint256 amount = owed[to];
        owed[to] = 0;
        if (!to.send(amount)) {
            owed[to] = amount;
        }
    }

    function payReturned(address payable to) external returns (bool) {
        uint256 amount = owed[to];
        owed[to] = 0;
        return to.send(amount);
    }

    function payDropped(address payable to) external {
        uint256 amount = owed[to];
        owed[to] = 0;
        (bool ok, ) = to.call{value: amount}("");
    }
}
"""

EXECUTOR_SOL = """\
contract Executor is Ownable {
    function execute(address target, bytes calldata data) external {
        (bool ok, ) = target.call(data);
        require(ok, "call failed");
    }

    function executeOwned(address target, bytes calldata data) external onlyOwner {
        (bool ok, ) = target.call(data);
        require(ok, "call failed");
    }

    function upgrade(address impl, bytes calldata data) external {
        (bool ok, ) = impl.delegatecall(data);
        require(ok, "upgrade failed");
    }
}
"""

KEEPER_SOL = """\
contract Keeper {
    address public keeper;
    address public owner;

    modifier onlyKeeper() {
        require(msg.sender == keeper, "not keeper");
        _;
    }

    function run(address target, bytes calldata data) external {
        (bool ok, ) = target.call(data);
        require(ok, "run failed");
    }

    function runOwned(address target, bytes calldata data) external {
        _checkOwner();
        (bool ok, ) = target.call(data);
        require(ok, "run failed");
    }

    function _checkOwner() internal view {
        require(msg.sender == owner, "not owner");
    }
}
"""


def _state(name: str, text: str):
    return states_of((f"{name}.sol", text))[0]


# ── Delegatecall storage ─────────────────────────────────────────────────────


class TestDelegatecallStorageCollision:
    def test_proxy_with_sequential_storage(self):
        findings = DelegatecallStorageCollisionDetector().analyze(_state("Proxy", PROXY_SOL))
        assert len(findings) == 1
        finding = findings[0]
        assert finding.severity is Severity.HIGH
        assert finding.primary_location.function == "fallback"
        assert finding.evidence[1] == "storage slots: implementation, admin"

    def test_unstructured_storage_is_clean(self):
        assert DelegatecallStorageCollisionDetector().analyze(_state("SlotProxy", SLOT_PROXY_SOL)) == []

    def test_self_delegatecall_is_ignored(self):
        assert DelegatecallStorageCollisionDetector().analyze(_state("Batcher", BATCHER_SOL)) == []


# ── Unchecked low-level calls ────────────────────────────────────────────────


class TestUncheckedLowLevelCall:
    @pytest.fixture
    def findings(self):
        return UncheckedLowLevelCallDetector().analyze(_state("Payout", PAYOUT_SOL))

    def test_flags_dropped_results(self, findings):
        assert [f.primary_location.function for f in findings] == ["pay", "payDropped"]
        assert findings[0].title == "Unchecked return value of low-level send"
        assert findings[0].confidence is Confidence.CONFIRMED
        assert findings[1].title == "Unchecked return value of low-level call"

    def test_checked_forms_are_clean(self, findings):
        flagged = {f.primary_location.function for f in findings}
        assert not flagged & {"payChecked", "payInline", "payReturned"}

    def test_finding_points_at_call(self, findings):
        assert findings[0].primary_location.line == 7
        assert findings[0].evidence == ("to.send() at line 7",)

    def test_high_level_calls_are_ignored(self):
        assert UncheckedLowLevelCallDetector().analyze(_state("Relayer", UNBOUND_SIGNATURE_SOL)) == []


# ── Access control ───────────────────────────────────────────────────────────


class TestMissingAccessControl:
    def test_unguarded_arbitrary_call_and_delegatecall(self):
        findings = MissingAccessControlDetector().analyze(_state("Executor", EXECUTOR_SOL))
        assert [f.primary_location.function for f in findings] == ["execute", "upgrade"]
        assert findings[1].impact == "Callers can run arbitrary code in this contract's context"

    def test_recommendation_names_inherited_guard(self):
        finding = MissingAccessControlDetector().analyze(_state("Executor", EXECUTOR_SOL))[0]
        assert finding.recommendation == "Apply the onlyOwner modifier inherited from Ownable to this function."

    def test_local_guards_and_helpers(self):
        findings = MissingAccessControlDetector().analyze(_state("Keeper", KEEPER_SOL))
        assert [f.primary_location.function for f in findings] == ["run"]
        assert "onlyKeeper" in findings[0].recommendation

    def test_signer_check_counts_as_guard(self):
        assert MissingAccessControlDetector().analyze(_state("Relayer", UNBOUND_SIGNATURE_SOL)) == []

    def test_value_transfers_to_parameters_are_not_arbitrary_calls(self):
        assert MissingAccessControlDetector().analyze(_state("Payout", PAYOUT_SOL)) == []

    def test_proxy_fallback_and_self_calls_are_skipped(self):
        assert MissingAccessControlDetector().analyze(_state("Proxy", PROXY_SOL)) == []
        assert MissingAccessControlDetector().analyze(_state("Batcher", BATCHER_SOL)) == []

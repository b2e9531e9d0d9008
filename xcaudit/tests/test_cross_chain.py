"""Tests for the cross-chain analyzer and its bridge / signature detectors."""

from __future__ import annotations

from xcaudit.analyzer.base_detector import BaseDetector
from xcaudit.analyzer.cross_chain import (
    CrossChainAnalyzer,
    detect_signature_replay,
    detect_wormhole_vulnerabilities,
)
from xcaudit.analyzer.detectors.bridge import (
    BridgeMessageReplayDetector,
    LayerZeroEndpointDetector,
    SourceChainValidationDetector,
    WormholeEmitterValidationDetector,
    WormholeGuardianCheckDetector,
)
from xcaudit.analyzer.detectors.signature import SignatureMalleabilityDetector, SignatureReplayDetector
from xcaudit.core.errors import DiagnosticCode
from xcaudit.core.types import Confidence, Severity
from xcaudit.tests.samples import (
    BOUND_SIGNATURE_SOL,
    CHECKED_WORMHOLE_SOL,
    NONCE_ONLY_SIGNATURE_SOL,
    PLAIN_COUNTER_SOL,
    TOKEN_INTERFACE_SOL,
    UNBOUND_SIGNATURE_SOL,
    UNCHECKED_WORMHOLE_SOL,
    WORMHOLE_INTERFACE,
    states_of,
)

VALIDATED_EMITTER_SOL = WORMHOLE_INTERFACE + """
contract BridgeReceiver {
    IWormhole public wormhole;
    bytes32 public trustedEmitter;
    mapping(bytes32 => bool) public consumed;

    function receiveMessage(bytes memory encodedVM, bytes32 hash) external {
        (IWormhole.VM memory vm, bool valid, string memory reason) = wormhole.parseAndVerifyVM(encodedVM);
        require(valid, reason);
        require(vm.emitterChainId == 2 && vm.emitterAddress == trustedEmitter, "untrusted");
        require(!consumed[hash], "replayed");
        consumed[hash] = true;
    }
}
"""

CHAIN_ONLY_EMITTER_SOL = WORMHOLE_INTERFACE + """
contract BridgeReceiver {
    IWormhole public wormhole;

    function receiveMessage(bytes memory encodedVM) external {
        (IWormhole.VM memory vm, bool valid, string memory reason) = wormhole.parseAndVerifyVM(encodedVM);
        require(valid, reason);
        require(vm.emitterChainId == 2, "wrong chain");
    }
}
"""


HELPER_RECOVERY_SOL = """
contract Permit {
    mapping(address => uint256) public nonces;
    mapping(address => mapping(address => uint256)) public allowance;

    function permit(address owner, address spender, uint256 value, uint256 deadline, bytes calldata sig) external {
        require(block.timestamp <= deadline, "expired");
        bytes32 digest = keccak256(abi.encode(owner, spender, value, nonces[owner]++, deadline, block.chainid));
        _verify(owner, digest, sig);
        allowance[owner][spender] = value;
    }

    function _verify(address owner, bytes32 digest, bytes calldata sig) internal pure {
        require(ECDSA.recover(digest, sig) == owner, "bad signature");
    }
}
"""

LZ_RECEIVER_SOL = """
contract OFTReceiver {
    address public lzEndpoint;
    mapping(uint16 => bytes) public trustedRemoteLookup;
    mapping(address => uint256) public balances;

    function lzReceive(uint16 _srcChainId, bytes calldata _srcAddress, uint64 _nonce, bytes calldata _payload) external {
        (address to, uint256 amount) = abi.decode(_payload, (address, uint256));
        balances[to] += amount;
    }
}
"""

LZ_CHECKS = """
        require(msg.sender == lzEndpoint, "not endpoint");
        require(keccak256(_srcAddress) == keccak256(trustedRemoteLookup[_srcChainId]), "untrusted");
"""

ROUTER_RECIPIENT_SOL = """
contract Recipient {
    mapping(uint32 => bytes32) public routers;

    function handle(uint32 _origin, bytes32 _sender, bytes calldata _message) external {
        _checkRouter(_origin, _sender);
    }

    function _checkRouter(uint32 origin, bytes32 sender) internal view {
        require(routers[origin] == sender, "unknown router");
    }
}
"""

RAW_ECRECOVER_SOL = """
contract Voucher {
    address public issuer;
    mapping(bytes32 => bool) public usedSignatures;

    function redeem(bytes32 digest, uint8 v, bytes32 r, bytes32 s) external {
        bytes32 id = keccak256(abi.encodePacked(r, s, v));
        require(!usedSignatures[id], "used");
        require(ecrecover(digest, v, r, s) == issuer, "bad signer");
        usedSignatures[id] = true;
    }
}
"""


class ExplodingDetector(BaseDetector):
    DETECTOR_ID = "TEST-BOOM"
    NAME = "Exploding"
    CATEGORY = "test"

    def analyze(self, state):
        raise RuntimeError("boom")


# ── Wormhole ─────────────────────────────────────────────────────────────────


class TestDetectWormholeVulnerabilities:
    def test_unchecked_verification_is_critical(self):
        findings = detect_wormhole_vulnerabilities(UNCHECKED_WORMHOLE_SOL)
        assert len(findings) == 1
        finding = findings[0]
        assert finding.severity is Severity.CRITICAL
        assert finding.detector_id == "XC-BRIDGE-001"
        assert finding.primary_location.contract == "BridgeReceiver"
        assert finding.primary_location.function == "receiveMessage"
        assert finding.economic_impact
        assert finding.has_exploit_context

    def test_checked_verification_is_clean(self):
        assert detect_wormhole_vulnerabilities(CHECKED_WORMHOLE_SOL) == []

    def test_unparseable_code_yields_nothing(self):
        assert detect_wormhole_vulnerabilities("") == []
        assert detect_wormhole_vulnerabilities("contract Broken {") == []

    def test_code_without_bridge_calls(self):
        assert detect_wormhole_vulnerabilities(PLAIN_COUNTER_SOL) == []


class TestBridgeDetectors:
    def test_emitter_requires_chain_and_address(self):
        detector = WormholeEmitterValidationDetector()
        partial = states_of(("BridgeReceiver.sol", CHAIN_ONLY_EMITTER_SOL))
        full = states_of(("BridgeReceiver.sol", VALIDATED_EMITTER_SOL))
        assert [len(detector.analyze(s)) for s in partial] == [0, 1]
        assert [len(detector.analyze(s)) for s in full] == [0, 0]

    def test_replay_needs_consumed_tracking(self):
        detector = BridgeMessageReplayDetector()
        unchecked = states_of(("BridgeReceiver.sol", UNCHECKED_WORMHOLE_SOL))
        tracked = states_of(("BridgeReceiver.sol", VALIDATED_EMITTER_SOL))
        found = [f for s in unchecked for f in detector.analyze(s)]
        assert len(found) == 1
        assert found[0].severity is Severity.HIGH
        assert [f for s in tracked for f in detector.analyze(s)] == []

    def test_finding_points_at_trigger_line(self):
        state = states_of(("BridgeReceiver.sol", UNCHECKED_WORMHOLE_SOL))[1]
        finding = WormholeGuardianCheckDetector().analyze(state)[0]
        assert finding.primary_location.file_path == "BridgeReceiver.sol"
        assert finding.evidence == (f"parseAndVerifyVM() at line {finding.primary_location.line}",)


class TestLayerZeroEndpoint:
    def test_unguarded_lz_receive(self):
        state = states_of(("OFTReceiver.sol", LZ_RECEIVER_SOL))[0]
        findings = LayerZeroEndpointDetector().analyze(state)
        assert len(findings) == 1
        finding = findings[0]
        assert finding.severity is Severity.HIGH
        assert finding.primary_location.function == "lzReceive"
        assert finding.description == (
            "OFTReceiver.lzReceive can be called without a check that the caller "
            "is the layerzero endpoint."
        )
        assert finding.poc_code

    def test_sender_check_protects(self):
        code = LZ_RECEIVER_SOL.replace(
            "(address to, uint256 amount)", LZ_CHECKS + "        (address to, uint256 amount)"
        )
        state = states_of(("OFTReceiver.sol", code))[0]
        assert LayerZeroEndpointDetector().analyze(state) == []

    def test_endpoint_modifier_protects(self):
        code = LZ_RECEIVER_SOL.replace("external {", "external onlyEndpoint {")
        state = states_of(("OFTReceiver.sol", code))[0]
        assert LayerZeroEndpointDetector().analyze(state) == []

    def test_internal_handler_is_not_exposed(self):
        code = LZ_RECEIVER_SOL.replace("function lzReceive", "function _lzReceive").replace(
            "external {", "internal {"
        )
        state = states_of(("OFTReceiver.sol", code))[0]
        assert LayerZeroEndpointDetector().analyze(state) == []


class TestSourceChainValidation:
    def test_unchecked_source_chain(self):
        state = states_of(("OFTReceiver.sol", LZ_RECEIVER_SOL))[0]
        findings = SourceChainValidationDetector().analyze(state)
        assert len(findings) == 1
        finding = findings[0]
        assert finding.detector_id == "XC-BRIDGE-005"
        assert finding.evidence == ("uint16 _srcChainId is never checked",)

    def test_trusted_remote_check(self):
        code = LZ_RECEIVER_SOL.replace(
            "(address to, uint256 amount)", LZ_CHECKS + "        (address to, uint256 amount)"
        )
        state = states_of(("OFTReceiver.sol", code))[0]
        assert SourceChainValidationDetector().analyze(state) == []

    def test_validator_helper_counts(self):
        state = states_of(("Recipient.sol", ROUTER_RECIPIENT_SOL))[0]
        assert SourceChainValidationDetector().analyze(state) == []

    def test_origin_domain_unchecked(self):
        code = ROUTER_RECIPIENT_SOL.replace(
            "_checkRouter(_origin, _sender);", "emit Received(_origin, _sender);"
        )
        state = states_of(("Recipient.sol", code))[0]
        findings = SourceChainValidationDetector().analyze(state)
        assert [f.primary_location.function for f in findings] == ["handle"]
        assert findings[0].evidence == ("uint32 _origin is never checked",)

    def test_handlers_without_source_parameters(self):
        states = states_of(("BridgeReceiver.sol", UNCHECKED_WORMHOLE_SOL))
        assert [f for s in states for f in SourceChainValidationDetector().analyze(s)] == []


# ── Signature replay ─────────────────────────────────────────────────────────


class TestDetectSignatureReplay:
    def test_unbound_digest_is_high_and_confirmed(self):
        findings = detect_signature_replay(UNBOUND_SIGNATURE_SOL)
        assert len(findings) == 1
        finding = findings[0]
        assert finding.severity is Severity.HIGH
        assert finding.confidence is Confidence.CONFIRMED
        assert finding.primary_location.function == "execute"
        assert set(finding.evidence) == {
            "digest lacks nonce",
            "digest lacks chain id",
            "digest lacks deadline",
        }
        assert finding.poc_code

    def test_partial_binding_is_medium_and_heuristic(self):
        findings = detect_signature_replay(NONCE_ONLY_SIGNATURE_SOL)
        assert len(findings) == 1
        finding = findings[0]
        assert finding.severity is Severity.MEDIUM
        assert finding.confidence is Confidence.HEURISTIC
        assert finding.evidence == ("digest lacks chain id", "digest lacks deadline")
        assert finding.economic_impact is None

    def test_fully_bound_digest_is_clean(self):
        assert detect_signature_replay(BOUND_SIGNATURE_SOL) == []

    def test_type_hash_constant_counts_toward_digest(self):
        code = """
        contract Permit {
            bytes32 constant PERMIT_TYPEHASH = keccak256("Permit(address owner,uint256 nonce,uint256 deadline)");
            address owner;
            function permit(uint256 nonce, uint256 deadline, bytes calldata sig) external {
                bytes32 digest = _hashTypedDataV4(keccak256(abi.encode(PERMIT_TYPEHASH, owner)));
                require(ECDSA.recover(digest, sig) == owner);
            }
        }
        """
        assert detect_signature_replay(code) == []

    def test_spent_digest_mapping_replaces_nonce(self):
        code = """
        contract Claims {
            mapping(bytes32 => bool) usedDigests;
            function claim(uint256 deadline, bytes calldata sig) external {
                bytes32 digest = keccak256(abi.encode(msg.sender, deadline, block.chainid));
                require(!usedDigests[digest]);
                usedDigests[digest] = true;
                ECDSA.recover(digest, sig);
            }
        }
        """
        assert detect_signature_replay(code) == []

    def test_digest_built_by_caller_of_recovery_helper(self):
        assert detect_signature_replay(HELPER_RECOVERY_SOL) == []

    def test_unbound_caller_of_recovery_helper_is_reported_at_caller(self):
        code = HELPER_RECOVERY_SOL.replace(
            "abi.encode(owner, spender, value, nonces[owner]++, deadline, block.chainid)",
            "abi.encode(owner, spender, value)",
        )
        findings = detect_signature_replay(code)
        assert len(findings) == 1
        finding = findings[0]
        assert finding.primary_location.function == "permit"
        assert finding.severity is Severity.HIGH
        assert "through _verify" in finding.description

    def test_unparseable_code_yields_nothing(self):
        assert detect_signature_replay("not solidity at all") == []

    def test_detector_ignores_contracts_without_recovery(self):
        state = states_of(("Counter.sol", PLAIN_COUNTER_SOL))[0]
        assert SignatureReplayDetector().analyze(state) == []


class TestSignatureMalleability:
    def test_unbounded_ecrecover(self):
        state = states_of(("Voucher.sol", RAW_ECRECOVER_SOL))[0]
        findings = SignatureMalleabilityDetector().analyze(state)
        assert len(findings) == 1
        finding = findings[0]
        assert finding.severity is Severity.MEDIUM
        assert finding.primary_location.function == "redeem"
        assert finding.evidence == (f"ecrecover() at line {finding.primary_location.line}",)

    def test_s_upper_bound_protects(self):
        code = RAW_ECRECOVER_SOL.replace(
            "        bytes32 id",
            "        require(uint256(s) <= 0x7FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFF5D576E7357A4501DDFE92F46681B20A0, \"bad s\");\n"
            "        bytes32 id",
        )
        state = states_of(("Voucher.sol", code))[0]
        assert SignatureMalleabilityDetector().analyze(state) == []

    def test_library_recovery_is_not_flagged(self):
        state = states_of(("Relayer.sol", UNBOUND_SIGNATURE_SOL))[0]
        assert SignatureMalleabilityDetector().analyze(state) == []


# ── Analyzer ─────────────────────────────────────────────────────────────────


class TestCrossChainAnalyzer:
    def test_runs_every_registered_detector(self):
        states = states_of(
            ("BridgeReceiver.sol", UNCHECKED_WORMHOLE_SOL),
            ("Relayer.sol", UNBOUND_SIGNATURE_SOL),
        )
        result = CrossChainAnalyzer().analyze(states)
        ids = {f.detector_id for f in result.findings}
        assert ids == {"XC-BRIDGE-001", "XC-BRIDGE-002", "XC-BRIDGE-003", "XC-SIG-001"}
        assert result.diagnostics == []

    def test_failing_detector_is_contained(self):
        states = states_of(("Relayer.sol", UNBOUND_SIGNATURE_SOL))
        result = CrossChainAnalyzer([ExplodingDetector, SignatureReplayDetector]).analyze(states)
        assert [f.detector_id for f in result.findings] == ["XC-SIG-001"]
        assert len(result.diagnostics) == 1
        diag = result.diagnostics[0]
        assert diag.code is DiagnosticCode.DETECTOR_FAILED
        assert diag.source == "Relayer"
        assert "boom" in diag.message

    def test_interfaces_are_skipped(self):
        states = states_of(("IToken.sol", TOKEN_INTERFACE_SOL))
        result = CrossChainAnalyzer([ExplodingDetector]).analyze(states)
        assert result.findings == []
        assert result.diagnostics == []

    def test_no_states(self):
        result = CrossChainAnalyzer().analyze([])
        assert result.findings == []
        assert result.diagnostics == []

"""Cross-chain bridge message detectors (Wormhole VAAs, LayerZero and
generic message receivers)."""

from __future__ import annotations

import re

from xcaudit.analyzer.base_detector import BaseDetector, CoLocationDetector
from xcaudit.analyzer.models import ContractState, FunctionModel, Parameter
from xcaudit.core.lexer import find_closing
from xcaudit.core.types import Confidence, Severity, VulnerabilityFinding

# Calls that parse and/or verify a Wormhole VAA.
VAA_CALLS = frozenset({"parseAndVerifyVM", "parseVM", "verifyVM"})


class WormholeGuardianCheckDetector(CoLocationDetector):
    """Bridge message verification without a guardian-set / quorum check."""

    DETECTOR_ID = "XC-BRIDGE-001"
    NAME = "Wormhole Guardian Verification Missing"
    DESCRIPTION = "A guardian-set or signature-quorum check"
    SEVERITY = Severity.CRITICAL
    CATEGORY = "bridge-guardian-verification"
    CONFIDENCE = Confidence.HEURISTIC

    TRIGGER_CALLS = VAA_CALLS
    SAFEGUARD_IDENTIFIERS = (
        r"(?i)guardian",
        r"(?i)quorum",
        r"^verifyVMSignatures$",
        r"^verifySignatures$",
    )
    SAFEGUARD_CHECKS = (r"\bvalid\b",)

    TITLE = "Wormhole message verified without guardian quorum check"
    IMPACT = (
        "Attackers can forge Wormhole messages and execute arbitrary "
        "cross-chain actions such as minting wrapped assets."
    )
    RECOMMENDATION = (
        "Check the verification result and the guardian set (verifyVMSignatures "
        "against the current guardian set and quorum) before acting on a VAA."
    )
    ECONOMIC_IMPACT = "Total bridge funds at risk (e.g., $325M Wormhole hack)"
    POC_CODE = """\
// Vulnerable Wormhole integration
function processWormholeMessage(bytes memory encodedVM) external {
    (IWormhole.VM memory vm, bool valid, string memory reason) = wormhole.parseAndVerifyVM(encodedVM);

    // Missing: guardian signature / quorum verification
    // require(valid, reason);

    executeAction(vm.payload);
}

// Attacker submits a crafted VAA
bytes memory fakeVAA = craftFakeWormholeVAA(...);
victim.processWormholeMessage(fakeVAA);
"""


class WormholeEmitterValidationDetector(CoLocationDetector):
    """Accepts VAAs without checking both emitter chain and emitter address."""

    DETECTOR_ID = "XC-BRIDGE-002"
    NAME = "Wormhole Emitter Validation Missing"
    DESCRIPTION = "Validation of the emitter chain and emitter address"
    SEVERITY = Severity.HIGH
    CATEGORY = "bridge-emitter-validation"

    TRIGGER_CALLS = VAA_CALLS
    SAFEGUARD_CHECKS = (r"emitterAddress", r"emitterChainId")
    REQUIRE_ALL = True

    TITLE = "Wormhole emitter not validated"
    IMPACT = "Any contract on any chain can send messages that are treated as trusted."
    RECOMMENDATION = (
        "Require vm.emitterChainId and vm.emitterAddress to match a registered, "
        "trusted emitter before processing the payload."
    )


class BridgeMessageReplayDetector(CoLocationDetector):
    """Processes VAAs without consumed-message tracking."""

    DETECTOR_ID = "XC-BRIDGE-003"
    NAME = "Bridge Message Replay"
    DESCRIPTION = "Tracking of consumed messages"
    SEVERITY = Severity.HIGH
    CATEGORY = "bridge-message-replay"

    TRIGGER_CALLS = VAA_CALLS | {"receiveWormholeMessages"}
    SAFEGUARD_IDENTIFIERS = (
        r"(?i)consumed",
        r"(?i)processed",
        r"(?i)completed",
        r"(?i)executed",
        r"(?i)delivered",
    )

    TITLE = "Bridge message can be replayed"
    IMPACT = "The same message can be processed repeatedly, releasing funds each time."
    RECOMMENDATION = (
        "Record the VAA hash in a mapping(bytes32 => bool) of consumed messages "
        "and reject hashes that were already processed."
    )
    ECONOMIC_IMPACT = "Multiple fund transfers from a single message (e.g., $190M Nomad bridge hack)"


class LayerZeroEndpointDetector(CoLocationDetector):
    """lzReceive callable by anyone, not just the LayerZero endpoint."""

    DETECTOR_ID = "XC-BRIDGE-004"
    NAME = "LayerZero lzReceive Exposed"
    DESCRIPTION = "A check that the caller is the LayerZero endpoint"
    SEVERITY = Severity.HIGH
    CATEGORY = "bridge-lz-endpoint-validation"

    TRIGGER_FUNCTIONS = frozenset({"lzReceive"})
    SAFEGUARD_MODIFIERS = (r"(?i)^only_?(lz_?)?endpoint$",)
    SAFEGUARD_CHECKS = (
        r"msg\.sender\s*[!=]=.*(?i:endpoint)",
        r"(?i:endpoint).*[!=]=\s*msg\.sender",
    )

    TITLE = "LayerZero lzReceive callable by anyone"
    IMPACT = "Anyone can call lzReceive directly with a crafted source and payload."
    RECOMMENDATION = (
        "Require msg.sender to be the LayerZero endpoint (or apply an onlyEndpoint "
        "modifier), or inherit the OApp receiver and implement _lzReceive instead."
    )
    ECONOMIC_IMPACT = "Can bypass cross-chain message validation"
    POC_CODE = """\
// Vulnerable receiver: no endpoint check
function lzReceive(uint16 _srcChainId, bytes calldata _srcAddress, uint64 _nonce, bytes calldata _payload) external {
    (address to, uint256 amount) = abi.decode(_payload, (address, uint256));
    _mint(to, amount);
}

// Attacker skips the endpoint entirely
victim.lzReceive(101, trustedRemote, 1, abi.encode(attacker, 1_000_000 ether));
"""


# Handler names of cross-chain message receivers.
_RECEIVER_NAME_RE = re.compile(r"receive|execute|handle", re.IGNORECASE)
# Parameters naming the chain a message came from.
_SOURCE_PARAM_RE = re.compile(r"^_?(src|source|origin)_?(chain|eid|domain)", re.IGNORECASE)
# Internal helpers that validate the arguments they are handed.
_VALIDATOR_CALL_RE = re.compile(r"valid|check|verify|trusted|allowed|only", re.IGNORECASE)


class SourceChainValidationDetector(BaseDetector):
    """Message handler whose source-chain argument is never checked.

    A source parameter counts as validated when it appears in a
    require/assert/if condition or is handed to an internal validator
    (``_checkTrustedRemote(_srcChainId, ...)``).
    """

    DETECTOR_ID = "XC-BRIDGE-005"
    NAME = "Source Chain Validation Missing"
    DESCRIPTION = "Cross-chain handler that accepts messages from any source chain"
    SEVERITY = Severity.HIGH
    CATEGORY = "bridge-source-chain-validation"

    def analyze(self, state: ContractState) -> list[VulnerabilityFinding]:
        findings: list[VulnerabilityFinding] = []
        for fn in self.implemented_functions(state):
            if not _RECEIVER_NAME_RE.search(fn.name):
                continue
            unchecked = [p for p in self.source_parameters(fn) if not self.is_validated(fn, p.name)]
            if not unchecked:
                continue
            names = ", ".join(f"`{p.name}`" for p in unchecked)
            findings.append(
                self._make_finding(
                    state,
                    fn,
                    title="Cross-chain message source chain not validated",
                    description=(
                        f"{state.contract_name}.{fn.name} takes {names} but never checks "
                        "it against a trusted source, so messages from any chain are accepted."
                    ),
                    impact="Messages sent from an untrusted chain or remote are processed as trusted.",
                    recommendation=(
                        "Keep a mapping of trusted remotes per source chain and require the "
                        "source chain and sender to match it before decoding the payload."
                    ),
                    evidence=tuple(f"{p.type_name} {p.name} is never checked" for p in unchecked),
                    economic_impact="Can enable cross-chain replay attacks",
                )
            )
        return findings

    @staticmethod
    def source_parameters(fn: FunctionModel) -> list[Parameter]:
        return [
            p
            for p in fn.parameters
            if _SOURCE_PARAM_RE.match(p.name)
            or (p.name.lstrip("_").lower() == "origin" and p.type_name.startswith("uint"))
        ]

    @staticmethod
    def is_validated(fn: FunctionModel, name: str) -> bool:
        word = re.compile(rf"(?<![\w$]){re.escape(name)}(?![\w$])")
        if any(word.search(check) for check in fn.require_checks):
            return True
        body = list(fn.body)
        for i, tok in enumerate(body[:-1]):
            if tok.is_ident() and _VALIDATOR_CALL_RE.search(tok.text) and body[i + 1].is_punct("("):
                close = find_closing(body, i + 1)
                if any(t.is_ident(name) for t in body[i + 2 : close]):
                    return True
        return False

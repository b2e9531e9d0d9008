"""Signature replay and malleability detectors."""

from __future__ import annotations

import re

from xcaudit.analyzer.base_detector import BaseDetector, CoLocationDetector, find_calls
from xcaudit.analyzer.models import ContractState, EffectKind, FunctionModel
from xcaudit.core.lexer import find_closing, render
from xcaudit.core.types import Confidence, Severity, VulnerabilityFinding

RECOVERY_CALLS = frozenset(
    {"ecrecover", "recover", "tryRecover", "isValidSignatureNow", "isValidSignature"}
)
DIGEST_BUILDERS = frozenset(
    {"keccak256", "_hashTypedDataV4", "toEthSignedMessageHash", "toTypedDataHash"}
)

_BINDINGS = {
    "nonce": re.compile(r"nonce", re.IGNORECASE),
    "chain id": re.compile(
        r"chainid|_hashTypedDataV4|_domainSeparatorV4|domain_?separator|toTypedDataHash",
        re.IGNORECASE,
    ),
    "deadline": re.compile(r"deadline|expir|valid_?until|valid_?before", re.IGNORECASE),
}

# A mapping of spent digests/signatures stands in for a nonce.
_SPENT_TRACKING_RE = re.compile(r"^_?(used|spent|consumed|executed|processed)", re.IGNORECASE)

_POC_CODE = """\
// Vulnerable signature verification
function executeWithSignature(address target, bytes calldata data, bytes calldata signature) external {
    bytes32 messageHash = keccak256(abi.encodePacked(target, data));
    address signer = ECDSA.recover(messageHash, signature);
    require(signer == owner, "Invalid signer");
    (bool success,) = target.call(data);
}

// Attacker replays the same signature
victim.executeWithSignature(target, data, signature);
victim.executeWithSignature(target, data, signature);
"""


class SignatureReplayDetector(BaseDetector):
    """Signed digest that does not bind a nonce, a chain id and a deadline.

    The digest is the text of every keccak256 / EIP-712 hashing span in
    the function, the initializers of constants those spans reference
    (type hashes), and the hashing spans of internal helpers they call.
    When no hashing span exists the whole body stands in for it. A
    recovery helper that is handed its digest is judged at each internal
    caller, where the digest is built.
    """

    DETECTOR_ID = "XC-SIG-001"
    NAME = "Signature Replay"
    DESCRIPTION = "Signature recovery whose digest omits nonce, chain id or deadline"
    SEVERITY = Severity.HIGH
    CATEGORY = "signature-replay"
    CONFIDENCE = Confidence.CONFIRMED

    def analyze(self, state: ContractState) -> list[VulnerabilityFinding]:
        findings: list[VulnerabilityFinding] = []
        for fn in self.implemented_functions(state):
            triggers = find_calls(fn.body, RECOVERY_CALLS)
            if not triggers:
                continue
            for context, line in self.digest_contexts(state, fn, triggers[0].line):
                finding = self._check(state, fn, context, triggers[0].text, line)
                if finding is not None:
                    findings.append(finding)
        return findings

    def digest_contexts(
        self, state: ContractState, fn: FunctionModel, line: int, seen: set[str] | None = None
    ) -> list[tuple[FunctionModel, int]]:
        """Functions whose hashing produces the digest recovered in ``fn``.

        A non-entry helper that hashes nothing itself receives the digest
        from its internal callers, so each caller is judged instead.
        """
        seen = seen if seen is not None else set()
        seen.add(fn.name)
        if fn.is_entry_point or self.hashing_spans(fn):
            return [(fn, line)]
        contexts: list[tuple[FunctionModel, int]] = []
        for caller in self.implemented_functions(state):
            if caller.name in seen:
                continue
            call = next(
                (
                    e
                    for e in caller.effects
                    if e.kind is EffectKind.INTERNAL_CALL and e.target == fn.name
                ),
                None,
            )
            if call is not None:
                contexts.extend(self.digest_contexts(state, caller, call.line, seen))
        return contexts or [(fn, line)]

    def _check(
        self,
        state: ContractState,
        recovering: FunctionModel,
        fn: FunctionModel,
        recovery_call: str,
        line: int,
    ) -> VulnerabilityFinding | None:
        digest = self.digest_text(state, fn)
        missing = [name for name, pattern in _BINDINGS.items() if not pattern.search(digest)]
        identifiers = fn.identifiers() | recovering.identifiers()
        if "nonce" in missing and any(_SPENT_TRACKING_RE.match(i) for i in identifiers):
            missing.remove("nonce")
        if not missing:
            return None

        total = len(missing) == len(_BINDINGS)
        via = f" through {recovering.name}" if recovering is not fn else ""
        return self._make_finding(
            state,
            fn,
            title=(
                "Signature replay: digest binds no nonce, chain id or deadline"
                if total
                else f"Signature replay: digest omits {', '.join(missing)}"
            ),
            description=(
                f"{state.contract_name}.{fn.name} recovers a signer with "
                f"{recovery_call}(){via} but the signed digest does not include "
                f"{', '.join(missing)}. A valid signature can be submitted again"
                + (" on another chain" if "chain id" in missing else "")
                + (" or after it should have expired" if "deadline" in missing else "")
                + "."
            ),
            line=line,
            severity=Severity.HIGH if total else Severity.MEDIUM,
            confidence=Confidence.CONFIRMED if total else Confidence.HEURISTIC,
            impact="Signed authorizations can be replayed to repeat the authorized action.",
            recommendation=(
                "Hash an EIP-712 struct that includes a per-signer nonce (incremented on use) "
                "and a deadline checked against block.timestamp, under a domain separator "
                "that includes block.chainid."
            ),
            evidence=tuple(f"digest lacks {name}" for name in missing),
            economic_impact=(
                "Complete loss of signed authorizations" if "nonce" in missing else None
            ),
            poc_code=_POC_CODE if "nonce" in missing else None,
        )

    @staticmethod
    def hashing_spans(fn: FunctionModel) -> list[str]:
        body = list(fn.body)
        spans: list[str] = []
        for i, tok in enumerate(body[:-1]):
            if tok.is_ident() and tok.text in DIGEST_BUILDERS and body[i + 1].is_punct("("):
                close = find_closing(body, i + 1)
                spans.append(render(body[i : close + 1] if close != -1 else body[i:]))
                if tok.text != "keccak256":
                    spans.append(tok.text)
        return spans

    def digest_text(
        self, state: ContractState, fn: FunctionModel, seen: set[str] | None = None
    ) -> str:
        seen = seen if seen is not None else set()
        seen.add(fn.name)
        spans = self.hashing_spans(fn) or [render(list(fn.body))]

        parts = list(spans)
        referenced = set(re.findall(r"[A-Za-z_$][A-Za-z0-9_$]*", " ".join(spans)))
        for name in sorted(referenced):
            var = state.variable(name)
            if var is not None and var.initial_value:
                parts.append(var.initial_value)
            helper = state.function(name)
            if helper is not None and helper.has_body and name not in seen:
                parts.append(self.digest_text(state, helper, seen))
        return " ".join(parts)


class SignatureMalleabilityDetector(CoLocationDetector):
    """Raw ecrecover without the EIP-2 bound on ``s``.

    For every valid (v, r, s) the pair (v', r, n - s) recovers the same
    signer, so code that keys anything on the signature bytes can be
    fooled by the flipped copy.
    """

    DETECTOR_ID = "XC-SIG-002"
    NAME = "ECDSA Signature Malleability"
    DESCRIPTION = "An upper bound on the signature's s value"
    SEVERITY = Severity.MEDIUM
    CATEGORY = "signature-malleability"

    TRIGGER_CALLS = frozenset({"ecrecover"})
    SAFEGUARD_IDENTIFIERS = (r"(?i)half_?(curve_?)?(n|order)$", r"(?i)^_?max_?s$", r"(?i)secp256k1_?n")
    SAFEGUARD_CHECKS = (r"(?i)0x7f{7}", r"(?<![\w$.])_?s\)?\s*(<|<=)\s*\w")

    TITLE = "ecrecover accepts malleable signatures"
    IMPACT = "Attacker can derive a second valid signature for the same message."
    RECOMMENDATION = (
        "Use OpenZeppelin's ECDSA.recover, or reject s values above "
        "0x7FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFF5D576E7357A4501DDFE92F46681B20A0 and "
        "v values other than 27 or 28 before calling ecrecover."
    )
    ECONOMIC_IMPACT = "Can bypass replay protection keyed on signature bytes"

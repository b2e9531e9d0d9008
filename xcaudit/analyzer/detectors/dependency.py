"""Detectors for risky calls out of a contract.

Delegatecall into foreign code sharing this contract's storage, low-level
calls whose success flag is dropped, and entry points that let any caller
pick the target of such a call.
"""

from __future__ import annotations

import re

from xcaudit.analyzer.base_detector import BaseDetector
from xcaudit.analyzer.models import CallKind, CallSite, ContractState, EffectKind, FunctionModel
from xcaudit.core.lexer import Token, find_opening, split_top_level
from xcaudit.core.types import Confidence, Severity, VulnerabilityFinding

_RAW_KINDS = (CallKind.LOW_LEVEL, CallKind.DELEGATECALL, CallKind.STATICCALL)

# Members that report failure through their return value instead of reverting.
_FLAG_RETURNING_MEMBERS = frozenset({"call", "send", "delegatecall", "staticcall"})

_SELF_RECEIVERS = frozenset({"address(this)", "this"})


def _is_self_call(site: CallSite) -> bool:
    return site.receiver in _SELF_RECEIVERS


# ── Delegatecall storage ─────────────────────────────────────────────────────


class DelegatecallStorageCollisionDetector(BaseDetector):
    """Delegatecall from a contract that keeps its own sequential storage.

    The callee runs against this contract's slots, so any layout mismatch
    between the two overwrites state. Constants, immutables and libraries
    own no slots; delegatecalls back into ``address(this)`` are ignored.
    """

    DETECTOR_ID = "XC-DEP-001"
    NAME = "Delegatecall Storage Collision"
    DESCRIPTION = "Delegatecall into code that shares this contract's storage layout"
    SEVERITY = Severity.HIGH
    CATEGORY = "delegatecall-storage-collision"

    def analyze(self, state: ContractState) -> list[VulnerabilityFinding]:
        if state.kind == "library":
            return []
        slots = [v.name for v in state.state_variables if not (v.constant or v.immutable)]
        if not slots:
            return []

        findings: list[VulnerabilityFinding] = []
        for fn in self.implemented_functions(state):
            site = next(
                (s for s in fn.call_sites if s.kind is CallKind.DELEGATECALL and not _is_self_call(s)),
                None,
            )
            if site is None:
                continue
            findings.append(
                self._make_finding(
                    state,
                    fn,
                    title=f"Delegatecall from {state.contract_name} can corrupt its storage",
                    description=(
                        f"{state.contract_name}.{fn.name} delegatecalls `{site.receiver}` while "
                        f"{state.contract_name} stores {', '.join(slots)} in sequential slots. "
                        "The target writes through its own layout and overwrites them "
                        "whenever the layouts differ."
                    ),
                    line=site.line,
                    impact="Proxy state such as the owner or implementation address can be overwritten.",
                    recommendation=(
                        "Keep proxy state in EIP-1967 slots (or another unstructured storage "
                        "pattern) and add storage gaps to upgradeable implementations."
                    ),
                    evidence=(
                        f"{site.callee_expression}() at line {site.line}",
                        f"storage slots: {', '.join(slots)}",
                    ),
                )
            )
        return findings


# ── Unchecked low-level calls ────────────────────────────────────────────────


def _member_index(body: list[Token], site: CallSite, taken: set[int]) -> int | None:
    for i in range(1, len(body)):
        tok = body[i]
        if (
            i not in taken
            and tok.is_ident(site.member)
            and tok.line == site.line
            and body[i - 1].is_punct(".")
        ):
            return i
    return None


def _statement_context(body: list[Token], idx: int) -> tuple[int, list[int]]:
    """Start of the statement holding ``body[idx]`` and the parens enclosing it."""
    enclosing: list[int] = []
    j = idx - 1
    while j >= 0:
        tok = body[j]
        if tok.is_punct(")") or tok.is_punct("]"):
            opening = find_opening(body, j)
            if opening == -1:
                break
            j = opening - 1
            continue
        if tok.is_punct("(") or tok.is_punct("["):
            enclosing.append(j)
        elif tok.is_punct(";") or tok.is_punct("{") or tok.is_punct("}"):
            break
        j -= 1
    return j + 1, enclosing


def _result_variable(lhs: list[Token]) -> str | None:
    """Name bound to a call's success flag: ``(bool ok, ) =`` or ``bool ok =``."""
    if lhs and lhs[0].is_punct("("):
        inner = lhs[1:-1]
        if not inner or inner[0].is_punct(","):
            return None
        lhs = split_top_level(inner)[0]
    names = [t.text for t in lhs if t.is_ident()]
    return names[-1] if names else None


class UncheckedLowLevelCallDetector(BaseDetector):
    """Low-level call whose boolean result is ignored.

    A call counts as checked when it sits inside a require/assert/if
    condition, is returned to the caller, or its result is bound to a
    variable that is read afterwards.
    """

    DETECTOR_ID = "XC-DEP-002"
    NAME = "Unchecked Low-Level Call"
    DESCRIPTION = "Low-level call return value not checked"
    SEVERITY = Severity.MEDIUM
    CATEGORY = "unchecked-low-level-call"
    CONFIDENCE = Confidence.CONFIRMED

    def analyze(self, state: ContractState) -> list[VulnerabilityFinding]:
        findings: list[VulnerabilityFinding] = []
        for fn in self.implemented_functions(state):
            body = list(fn.body)
            taken: set[int] = set()
            for site in fn.call_sites:
                if site.kind not in _RAW_KINDS or site.member not in _FLAG_RETURNING_MEMBERS:
                    continue
                idx = _member_index(body, site, taken)
                if idx is None:
                    continue
                taken.add(idx)
                if self.is_checked(body, idx):
                    continue
                findings.append(
                    self._make_finding(
                        state,
                        fn,
                        title=f"Unchecked return value of low-level {site.member}",
                        description=(
                            f"{state.contract_name}.{fn.name} ignores whether "
                            f"`{site.callee_expression}` succeeded. A failed call does not "
                            "revert, so execution continues as if it had."
                        ),
                        line=site.line,
                        impact="Transfers or calls can fail silently while state records them as done.",
                        recommendation=(
                            'Capture the result and revert on failure: '
                            '(bool success, ) = target.call(data); require(success, "call failed");'
                        ),
                        evidence=(f"{site.callee_expression}() at line {site.line}",),
                    )
                )
                break
        return findings

    @staticmethod
    def is_checked(body: list[Token], idx: int) -> bool:
        start, enclosing = _statement_context(body, idx)
        for paren in enclosing:
            if paren > 0 and body[paren - 1].is_ident("require", "assert", "if", "while"):
                return True
        if start < len(body) and body[start].is_ident("return"):
            return True

        assign = next(
            (
                k
                for k in range(start, idx)
                if body[k].text == "=" and not _nested(body, start, k)
            ),
            None,
        )
        if assign is None:
            return False
        name = _result_variable(body[start:assign])
        if name is None:
            return False
        return any(t.is_ident(name) for t in body[idx + 1 :])


def _nested(body: list[Token], start: int, k: int) -> bool:
    """True when ``body[k]`` is nested in brackets opened at or after ``start``."""
    depth = 0
    for tok in body[start:k]:
        if tok.is_punct("(") or tok.is_punct("[") or tok.is_punct("{"):
            depth += 1
        elif tok.is_punct(")") or tok.is_punct("]") or tok.is_punct("}"):
            depth -= 1
    return depth > 0


# ── Access control ───────────────────────────────────────────────────────────

_GUARD_NAME_RE = re.compile(
    r"^_?only|auth|restricted|admin|owner|role|governance|guardian|keeper", re.IGNORECASE
)
_GUARD_CHECK_RES = (
    re.compile(r"msg\.sender"),
    re.compile(r"owner|admin|role|auth|signer", re.IGNORECASE),
)
# Low-level members that forward caller-supplied calldata.
_ARBITRARY_CALL_MEMBERS = frozenset({"call", "functionCall", "functionCallWithValue"})
_PAYLOAD_TYPE_RE = re.compile(r"bytes(\[|$)")
_IDENT_RE = re.compile(r"[A-Za-z_$][\w$]*")
_ACCESS_BASES = {
    "Ownable": "onlyOwner",
    "Ownable2Step": "onlyOwner",
    "OwnableUpgradeable": "onlyOwner",
    "AccessControl": "onlyRole",
    "AccessControlUpgradeable": "onlyRole",
    "AccessControlEnumerable": "onlyRole",
}


class MissingAccessControlDetector(BaseDetector):
    """Unguarded entry point that delegatecalls or makes an arbitrary call.

    An arbitrary call forwards caller-supplied calldata to a caller-chosen
    target. Guards are recognized as modifiers or internal helpers named like
    ``onlyOwner`` / ``_checkRole``, and as conditions on ``msg.sender`` or
    an owner/role/signer. Fallback and receive are skipped.
    """

    DETECTOR_ID = "XC-DEP-003"
    NAME = "Missing Access Control on Cross-Contract Call"
    DESCRIPTION = "Unrestricted entry point making a privileged external call"
    SEVERITY = Severity.HIGH
    CATEGORY = "missing-access-control"

    def analyze(self, state: ContractState) -> list[VulnerabilityFinding]:
        findings: list[VulnerabilityFinding] = []
        for fn in self.implemented_functions(state):
            if not fn.is_entry_point or not fn.is_mutating or fn.name in ("fallback", "receive"):
                continue
            site = self.privileged_call(fn)
            if site is None or self.is_guarded(fn):
                continue
            findings.append(
                self._make_finding(
                    state,
                    fn,
                    title=f"Unrestricted {site.member} in {state.contract_name}.{fn.name}",
                    description=(
                        f"Anyone can call {state.contract_name}.{fn.name}, which makes "
                        f"`{site.callee_expression}` with no access check on the caller."
                    ),
                    line=site.line,
                    impact=(
                        "Callers can run arbitrary code in this contract's context"
                        if site.kind is CallKind.DELEGATECALL
                        else "Callers can make this contract call any target with its funds and approvals"
                    ),
                    recommendation=self.recommendation(state),
                    evidence=(f"{site.callee_expression}() at line {site.line}",),
                )
            )
        return findings

    @staticmethod
    def privileged_call(fn: FunctionModel) -> CallSite | None:
        params = {p.name for p in fn.parameters if p.name}
        takes_payload = any(_PAYLOAD_TYPE_RE.match(p.type_name) for p in fn.parameters)
        for site in fn.call_sites:
            if site.kind not in _RAW_KINDS or _is_self_call(site) or site.receiver == "msg.sender":
                continue
            if site.kind is CallKind.DELEGATECALL:
                return site
            if (
                site.member in _ARBITRARY_CALL_MEMBERS
                and takes_payload
                and params & set(_IDENT_RE.findall(site.receiver))
            ):
                return site
        return None

    @staticmethod
    def is_guarded(fn: FunctionModel) -> bool:
        if any(_GUARD_NAME_RE.search(m) for m in fn.modifiers):
            return True
        if any(p.search(check) for p in _GUARD_CHECK_RES for check in fn.require_checks):
            return True
        return any(
            e.kind is EffectKind.INTERNAL_CALL and e.target and _GUARD_NAME_RE.search(e.target)
            for e in fn.effects
        )

    @staticmethod
    def recommendation(state: ContractState) -> str:
        inherited = [b for b in state.bases if b in _ACCESS_BASES]
        if inherited:
            return (
                f"Apply the {_ACCESS_BASES[inherited[0]]} modifier inherited from "
                f"{inherited[0]} to this function."
            )
        local = [m for m in state.modifier_definitions if _GUARD_NAME_RE.search(m)]
        if local:
            return f"Apply one of {state.contract_name}'s guards ({', '.join(local)}) to this function."
        return (
            "Restrict the function with an access-control modifier (e.g., onlyOwner "
            "from OpenZeppelin Ownable) or validate msg.sender before the call."
        )

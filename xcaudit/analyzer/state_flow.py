"""Cross-contract state flow analysis.

Builds call/state flows that cross contract boundaries through the
dependency graph and inspects them for:
  - Checks-effects-interactions violations spanning several contracts
  - Violated structural invariants (accounting, share price, slippage)
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, Sequence

from xcaudit.analyzer.dependency_mapper import DependencyGraph
from xcaudit.analyzer.models import ContractState, Effect, EffectKind, FunctionModel
from xcaudit.core.config import get_settings
from xcaudit.core.errors import DiagnosticCode, RecursionLimitExceeded
from xcaudit.core.lexer import render
from xcaudit.core.types import (
    Confidence,
    Diagnostic,
    FindingLocation,
    Severity,
    VulnerabilityFinding,
)

logger = logging.getLogger(__name__)

REENTRANCY_CLASS = "cross-contract-reentrancy"
FLAG_PARTIAL_FLOW = "partial-flow"
FLAG_UNRESOLVED = "unresolved-dependencies"


# ── Data Structures ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class FlowStep:
    """One effect on a flow. ``depth`` counts contract boundaries crossed."""

    contract: str
    function: str
    effect_kind: EffectKind
    variable: str | None = None
    line: int = 0
    depth: int = 0
    callee: str | None = None
    moves_value: bool = False


@dataclass(frozen=True)
class CrossContractFlow:
    entry_contract: str
    entry_function: str
    entry_modifiers: frozenset[str]
    target_call: str
    steps: tuple[FlowStep, ...] = ()
    partial: bool = False
    truncation: DiagnosticCode | None = None

    @property
    def contracts(self) -> tuple[str, ...]:
        """Contracts the flow actually walked through, in order."""
        return tuple(dict.fromkeys(step.contract for step in self.steps))


@dataclass(frozen=True)
class StateInvariant:
    id: str
    contract: str
    description: str
    applicable_pattern: str
    violated: bool
    evidence: tuple[str, ...] = ()
    functions: tuple[str, ...] = ()


@dataclass(frozen=True)
class InvariantPattern:
    """A catalogue entry: when it applies and how to judge it."""

    id: str
    title: str
    description: str
    severity: Severity
    impact: str
    recommendation: str
    applies: Callable[[ContractState], bool]
    evaluate: Callable[[ContractState], tuple[bool, tuple[str, ...], tuple[str, ...]]]


@dataclass
class StateFlowResult:
    flows: list[CrossContractFlow] = field(default_factory=list)
    findings: list[VulnerabilityFinding] = field(default_factory=list)
    invariants: list[StateInvariant] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)


# ── Flow construction ────────────────────────────────────────────────────────


def _walk_local(state: ContractState, fn: FunctionModel) -> Iterator[tuple[FunctionModel, Effect]]:
    """Yield effects of ``fn`` with internal helpers inlined once each."""
    visited: set[str] = set()

    def visit(func: FunctionModel) -> Iterator[tuple[FunctionModel, Effect]]:
        visited.add(func.name)
        for effect in func.effects:
            if effect.kind is EffectKind.INTERNAL_CALL:
                helper = state.function(effect.target or "")
                if helper is not None and helper.has_body and helper.name not in visited:
                    yield from visit(helper)
                continue
            yield func, effect

    yield from visit(fn)


class _FlowBuilder:
    """Builds one flow, expanding a single targeted call from the entry contract."""

    def __init__(
        self, graph: DependencyGraph, max_depth: int, target: tuple[str, str, int]
    ) -> None:
        self.graph = graph
        self.max_depth = max_depth
        self.target = target
        self.steps: list[FlowStep] = []
        self.visited: set[tuple[str, str]] = set()
        self.partial = False

    def walk(self, state: ContractState, fn: FunctionModel, hops: int, frames: int) -> None:
        if frames > self.max_depth:
            raise RecursionLimitExceeded(self.max_depth)
        self.visited.add((state.contract_name, fn.name))

        for effect in fn.effects:
            if effect.kind is EffectKind.INTERNAL_CALL:
                helper = state.function(effect.target or "")
                if (
                    helper is not None
                    and helper.has_body
                    and (state.contract_name, helper.name) not in self.visited
                ):
                    self._descend(state, helper, hops, frames + 1)
                continue

            if effect.kind is not EffectKind.EXTERNAL_CALL:
                self.steps.append(
                    FlowStep(state.contract_name, fn.name, effect.kind, effect.target, effect.line, hops)
                )
                continue

            site = fn.call_sites[effect.call_index or 0]
            callee_state = self.graph.resolve_call(state.contract_name, site)
            callee_fn = callee_state.function(site.member) if callee_state else None
            label = (
                f"{callee_state.contract_name}.{site.member}"
                if callee_state is not None
                else site.callee_expression
            )
            self.steps.append(
                FlowStep(
                    state.contract_name,
                    fn.name,
                    EffectKind.EXTERNAL_CALL,
                    None,
                    effect.line,
                    hops,
                    label,
                    site.moves_value,
                )
            )
            expand = hops > 0 or (state.contract_name, fn.name, effect.call_index) == self.target
            if (
                expand
                and callee_state is not None
                and callee_fn is not None
                and callee_fn.has_body
                and (callee_state.contract_name, callee_fn.name) not in self.visited
            ):
                self._descend(callee_state, callee_fn, hops + 1, frames + 1)

    def _descend(self, state: ContractState, fn: FunctionModel, hops: int, frames: int) -> None:
        try:
            self.walk(state, fn, hops, frames)
        except RecursionLimitExceeded as exc:
            logger.debug(
                "Flow truncated at %s.%s: %s", state.contract_name, fn.name, exc,
                extra={"contract": state.contract_name},
            )
            self.partial = True


def _resolvable_targets(
    state: ContractState, fn: FunctionModel, graph: DependencyGraph
) -> list[tuple[str, str, int, str]]:
    targets: list[tuple[str, str, int, str]] = []
    for func, effect in _walk_local(state, fn):
        if effect.kind is not EffectKind.EXTERNAL_CALL or effect.call_index is None:
            continue
        site = func.call_sites[effect.call_index]
        callee = graph.resolve_call(state.contract_name, site)
        if callee is not None:
            targets.append(
                (state.contract_name, func.name, effect.call_index, f"{callee.contract_name}.{site.member}")
            )
    return targets


def analyze_cross_contract_flows(
    states: Iterable[ContractState],
    graph: DependencyGraph,
    max_depth: int | None = None,
) -> list[CrossContractFlow]:
    """Build one flow per resolvable external call reachable from an entry point.

    Entry points are public/external functions with a body. Internal
    helpers are inlined. The chosen call is followed into its callee and
    from there every further resolvable call is followed, up to
    ``max_depth`` function frames. A (contract, function) pair is entered
    at most once per flow.
    """
    bound = max_depth if max_depth is not None else get_settings().max_flow_depth
    flows: list[CrossContractFlow] = []

    for state in states:
        for fn in state.functions:
            if not fn.is_entry_point:
                continue
            try:
                targets = _resolvable_targets(state, fn, graph)
            except Exception:
                logger.exception(
                    "Could not enumerate calls of %s.%s", state.contract_name, fn.name,
                    extra={"contract": state.contract_name},
                )
                continue
            for contract, function, call_index, label in targets:
                builder = _FlowBuilder(graph, bound, (contract, function, call_index))
                try:
                    builder.walk(state, fn, hops=0, frames=1)
                except Exception as exc:
                    logger.warning(
                        "Flow from %s.%s degraded to partial: %s",
                        state.contract_name, fn.name, exc,
                        extra={"contract": state.contract_name},
                    )
                    builder.partial = True
                flows.append(
                    CrossContractFlow(
                        entry_contract=state.contract_name,
                        entry_function=fn.name,
                        entry_modifiers=fn.modifiers,
                        target_call=label,
                        steps=tuple(builder.steps),
                        partial=builder.partial,
                        truncation=DiagnosticCode.RECURSION_LIMIT_EXCEEDED if builder.partial else None,
                    )
                )
    return flows


# ── Reentrancy ───────────────────────────────────────────────────────────────


def _cei_violations(
    flow: CrossContractFlow,
) -> list[tuple[str, FlowStep, FlowStep, FlowStep, bool]]:
    """Find writes of V after an external call, where V is read in the entry context.

    The read may come before the call (a balance check) or be the read
    half of a compound assignment at the write itself.
    """
    steps = flow.steps
    hits: list[tuple[str, FlowStep, FlowStep, FlowStep, bool]] = []
    handled: set[str] = set()
    for k, write in enumerate(steps):
        variable = write.variable
        if (
            write.effect_kind is not EffectKind.STATE_WRITE
            or write.depth != 0
            or not variable
            or variable in handled
        ):
            continue
        call_idx = next(
            (j for j in range(k) if steps[j].effect_kind is EffectKind.EXTERNAL_CALL),
            None,
        )
        if call_idx is None:
            continue
        reads = [
            i
            for i in range(k)
            if steps[i].effect_kind is EffectKind.STATE_READ
            and steps[i].depth == 0
            and steps[i].variable == variable
        ]
        if not reads:
            continue
        before_call = [i for i in reads if i < call_idx]
        read_idx = before_call[0] if before_call else reads[-1]
        moves_value = any(
            s.effect_kind is EffectKind.EXTERNAL_CALL and s.moves_value
            for s in steps[call_idx:k]
        )
        handled.add(variable)
        hits.append((variable, steps[read_idx], steps[call_idx], write, moves_value))
    return hits


def detect_cross_contract_reentrancy(
    flows: Iterable[CrossContractFlow],
    graph: DependencyGraph | None = None,
    guard_markers: Sequence[str] | None = None,
    accounting_keywords: Sequence[str] | None = None,
) -> list[VulnerabilityFinding]:
    """Flag flows that call out and then write a state variable they read, unguarded."""
    settings = get_settings()
    guards = set(guard_markers if guard_markers is not None else settings.reentrancy_guard_markers)
    accounting = [
        k.lower()
        for k in (accounting_keywords if accounting_keywords is not None else settings.accounting_keywords)
    ]

    results: dict[tuple[str, str, str], VulnerabilityFinding] = {}
    for flow in flows:
        if flow.entry_modifiers & guards:
            continue
        for variable, read, call, write, moves_value in _cei_violations(flow):
            is_accounting = any(k in variable.lower() for k in accounting)
            if is_accounting:
                severity = Severity.CRITICAL if moves_value else Severity.HIGH
            else:
                severity = Severity.MEDIUM

            flags: list[str] = []
            if flow.partial:
                flags.append(FLAG_PARTIAL_FLOW)
            if graph is not None and graph.unresolved_for(flow.entry_contract):
                flags.append(FLAG_UNRESOLVED)

            file_path = ""
            if graph is not None and flow.entry_contract in graph.nodes:
                file_path = graph.nodes[flow.entry_contract].source_path

            where = f"{flow.entry_contract}.{flow.entry_function}"
            if read.line < call.line:
                sequence = (
                    f"{where} reads `{variable}` (line {read.line}), calls "
                    f"{call.callee} (line {call.line}) and only afterwards writes "
                    f"`{variable}` (line {write.line})."
                )
            else:
                sequence = (
                    f"{where} calls {call.callee} (line {call.line}) before updating "
                    f"`{variable}` from its current value (line {write.line})."
                )
            finding = VulnerabilityFinding(
                title=f"Cross-contract reentrancy in {where}",
                severity=severity,
                description=(
                    f"{sequence} Code reached through the external call can re-enter "
                    f"{flow.entry_contract} while `{variable}` still holds its stale value."
                ),
                impact=(
                    "A re-entrant caller can act on stale accounting, e.g. withdraw "
                    "the same balance repeatedly and drain funds."
                    if is_accounting
                    else "A re-entrant caller can observe and act on inconsistent state."
                ),
                locations=(
                    FindingLocation(
                        contract=flow.entry_contract,
                        function=flow.entry_function,
                        line=call.line,
                        file_path=file_path,
                    ),
                ),
                recommendation=(
                    f"Update `{variable}` before calling out (checks-effects-interactions) "
                    "or protect the entry point with a reentrancy guard such as nonReentrant."
                ),
                confidence=Confidence.HEURISTIC if flow.partial else Confidence.CONFIRMED,
                vulnerability_class=REENTRANCY_CLASS,
                detector_id="XC-STATE-REENTRANCY",
                evidence=(
                    f"read {variable} at line {read.line}",
                    f"external call {call.callee} at line {call.line}",
                    f"write {variable} at line {write.line}",
                ),
                flags=tuple(flags),
            )

            key = (flow.entry_contract, flow.entry_function, variable)
            current = results.get(key)
            if current is None or _stronger(finding, current):
                results[key] = finding
    return list(results.values())


def _stronger(a: VulnerabilityFinding, b: VulnerabilityFinding) -> bool:
    if a.severity.rank != b.severity.rank:
        return a.severity.rank > b.severity.rank
    return a.confidence is Confidence.CONFIRMED and b.confidence is not Confidence.CONFIRMED


# ── Invariant catalogue ──────────────────────────────────────────────────────


_TOTAL_RE = re.compile(r"^_?total|supply", re.IGNORECASE)
_PER_ACCOUNT_RE = re.compile(r"balance|share", re.IGNORECASE)
_RATIO_FN_RE = re.compile(r"price|rate|ratio|convert|preview|totalassets|pershare", re.IGNORECASE)
_SELF_BALANCE_RE = re.compile(r"balanceOf\(address\(this\)\)|address\(this\)\.balance")
_DONATION_GUARD_RE = re.compile(
    r"virtual|offset|minimum_?liquidity|min_?liquidity|dead_?shares", re.IGNORECASE
)
_SLIPPAGE_PARAM_RE = re.compile(r"min|limit|slippage", re.IGNORECASE)
_SLIPPAGE_CHECK_RE = re.compile(r"min|slippage|reserve", re.IGNORECASE)


def _local_effects(state: ContractState, fn: FunctionModel) -> list[Effect]:
    return [effect for _, effect in _walk_local(state, fn)]


def _local_checks(state: ContractState, fn: FunctionModel) -> list[str]:
    checks = list(fn.require_checks)
    for effect in fn.effects:
        if effect.kind is EffectKind.INTERNAL_CALL:
            helper = state.function(effect.target or "")
            if helper is not None and helper is not fn:
                checks.extend(helper.require_checks)
    return checks


def _per_account_vars(state: ContractState) -> list[str]:
    return [v.name for v in state.state_variables if v.is_mapping and _PER_ACCOUNT_RE.search(v.name)]


def _aggregate_vars(state: ContractState) -> list[str]:
    return [
        v.name
        for v in state.state_variables
        if not v.is_mapping and not v.constant and _TOTAL_RE.search(v.name)
    ]


def _accounting_applies(state: ContractState) -> bool:
    return bool(_per_account_vars(state)) and bool(_aggregate_vars(state))


def _accounting_evaluate(state: ContractState) -> tuple[bool, tuple[str, ...], tuple[str, ...]]:
    """Every mutation of the per-account map or the aggregate must touch both.

    A function that writes the per-account map at least twice is taken
    as a transfer between accounts, which leaves the sum unchanged.
    A check mentioning both sides also counts as reconciliation.
    """
    accounts = set(_per_account_vars(state))
    totals = set(_aggregate_vars(state))
    evidence: list[str] = []
    offenders: list[str] = []
    for fn in state.functions:
        if not fn.is_entry_point or not fn.is_mutating:
            continue
        writes = [e.target for e in _local_effects(state, fn) if e.kind is EffectKind.STATE_WRITE]
        touched_accounts = accounts.intersection(writes)
        touched_totals = totals.intersection(writes)
        if bool(touched_accounts) == bool(touched_totals):
            continue
        if touched_accounts and not touched_totals:
            if any(writes.count(name) >= 2 for name in touched_accounts):
                continue
        checks = _local_checks(state, fn)
        if any(
            any(a in c for a in accounts) and any(t in c for t in totals) for c in checks
        ):
            continue
        touched = sorted(touched_accounts or touched_totals)
        missing = sorted(totals if touched_accounts else accounts)
        offenders.append(fn.name)
        evidence.append(
            f"{fn.name} updates {', '.join(touched)} without updating {', '.join(missing)}"
        )
    return bool(offenders), tuple(evidence), tuple(offenders)


def _share_price_applies(state: ContractState) -> bool:
    has_shares = any(
        "share" in v.name.lower() or "totalsupply" in v.name.lower() for v in state.state_variables
    )
    return has_shares and any(fn.has_body and _RATIO_FN_RE.search(fn.name) for fn in state.functions)


def _share_price_evaluate(state: ContractState) -> tuple[bool, tuple[str, ...], tuple[str, ...]]:
    identifiers: set[str] = {v.name for v in state.state_variables}
    for fn in state.functions:
        identifiers |= fn.identifiers()
    if any(_DONATION_GUARD_RE.search(name) for name in identifiers):
        return False, (), ()

    evidence: list[str] = []
    offenders: list[str] = []
    for fn in state.functions:
        if not fn.has_body or not _RATIO_FN_RE.search(fn.name):
            continue
        bodies = [render(list(fn.body))]
        for effect in fn.effects:
            if effect.kind is EffectKind.INTERNAL_CALL:
                helper = state.function(effect.target or "")
                if helper is not None:
                    bodies.append(render(list(helper.body)))
        for text in bodies:
            match = _SELF_BALANCE_RE.search(text)
            if match:
                offenders.append(fn.name)
                evidence.append(f"{fn.name} derives its ratio from {match.group()}")
                break
    return bool(offenders), tuple(evidence), tuple(offenders)


def _swap_applies(state: ContractState) -> bool:
    has_reserves = any("reserve" in v.name.lower() for v in state.state_variables)
    return has_reserves and any(fn.is_entry_point and "swap" in fn.name.lower() for fn in state.functions)


def _swap_evaluate(state: ContractState) -> tuple[bool, tuple[str, ...], tuple[str, ...]]:
    evidence: list[str] = []
    offenders: list[str] = []
    for fn in state.functions:
        if not fn.is_entry_point or "swap" not in fn.name.lower():
            continue
        if any(_SLIPPAGE_PARAM_RE.search(p.name) for p in fn.parameters):
            continue
        if any(_SLIPPAGE_CHECK_RE.search(c) for c in _local_checks(state, fn)):
            continue
        offenders.append(fn.name)
        evidence.append(f"{fn.name} takes no minimum-output bound and checks none")
    return bool(offenders), tuple(evidence), tuple(offenders)


INVARIANT_CATALOGUE: tuple[InvariantPattern, ...] = (
    InvariantPattern(
        id="INV-ACCOUNTING-RECONCILIATION",
        title="Per-account balances and aggregate total can diverge",
        description=(
            "A contract tracking both per-account balances and an aggregate total "
            "must keep them reconciled on every mutating function."
        ),
        severity=Severity.HIGH,
        impact="Supply mismatch leads to accounting errors, insolvency or locked funds.",
        recommendation=(
            "Update the aggregate together with every per-account change, "
            "or assert their relation after the update."
        ),
        applies=_accounting_applies,
        evaluate=_accounting_evaluate,
    ),
    InvariantPattern(
        id="INV-SHARE-PRICE-DONATION",
        title="Share price can be moved by direct balance donation",
        description=(
            "A vault exposing a share-price-like ratio must not let a direct token "
            "transfer change that ratio without matching share issuance."
        ),
        severity=Severity.HIGH,
        impact="Donation / inflation attacks let the first depositor steal later deposits.",
        recommendation=(
            "Track deposited assets internally, or use virtual shares and a decimals "
            "offset, or lock a minimum liquidity on first deposit."
        ),
        applies=_share_price_applies,
        evaluate=_share_price_evaluate,
    ),
    InvariantPattern(
        id="INV-SWAP-SLIPPAGE",
        title="Swap without slippage protection",
        description="A pool swap entry point must let the caller bound the minimum output.",
        severity=Severity.MEDIUM,
        impact="Users are exposed to sandwich attacks and MEV extraction.",
        recommendation="Accept a minimum output amount (and deadline) and revert when it is not met.",
        applies=_swap_applies,
        evaluate=_swap_evaluate,
    ),
)


def check_state_invariants(
    states: Iterable[ContractState],
    catalogue: Sequence[InvariantPattern] = INVARIANT_CATALOGUE,
) -> list[StateInvariant]:
    """Evaluate every applicable catalogue entry against every contract."""
    invariants: list[StateInvariant] = []
    for state in states:
        if state.kind != "contract":
            continue
        for pattern in catalogue:
            try:
                if not pattern.applies(state):
                    continue
                violated, evidence, functions = pattern.evaluate(state)
            except Exception:
                logger.exception(
                    "Invariant %s failed on %s", pattern.id, state.contract_name,
                    extra={"contract": state.contract_name},
                )
                continue
            invariants.append(
                StateInvariant(
                    id=pattern.id,
                    contract=state.contract_name,
                    description=pattern.description,
                    applicable_pattern=pattern.title,
                    violated=violated,
                    evidence=evidence,
                    functions=functions,
                )
            )
    return invariants


def invariant_findings(
    invariants: Iterable[StateInvariant],
    catalogue: Sequence[InvariantPattern] = INVARIANT_CATALOGUE,
    graph: DependencyGraph | None = None,
) -> list[VulnerabilityFinding]:
    """Turn violated invariants into findings."""
    by_id = {p.id: p for p in catalogue}
    findings: list[VulnerabilityFinding] = []
    for inv in invariants:
        if not inv.violated:
            continue
        pattern = by_id.get(inv.id)
        if pattern is None:
            continue
        file_path = ""
        if graph is not None and inv.contract in graph.nodes:
            file_path = graph.nodes[inv.contract].source_path
        findings.append(
            VulnerabilityFinding(
                title=pattern.title,
                severity=pattern.severity,
                description=f"{pattern.description} In {inv.contract}: {'; '.join(inv.evidence)}.",
                impact=pattern.impact,
                locations=tuple(
                    FindingLocation(contract=inv.contract, function=fn, file_path=file_path)
                    for fn in (inv.functions or ("",))
                ),
                recommendation=pattern.recommendation,
                confidence=Confidence.HEURISTIC,
                vulnerability_class=inv.id.lower(),
                detector_id=inv.id,
                evidence=inv.evidence,
            )
        )
    return findings


# ── Analyzer ─────────────────────────────────────────────────────────────────


class StateFlowAnalyzer:
    """Runs flow construction, reentrancy detection and invariant checks."""

    def __init__(
        self,
        max_depth: int | None = None,
        guard_markers: Sequence[str] | None = None,
        accounting_keywords: Sequence[str] | None = None,
    ) -> None:
        self.max_depth = max_depth
        self.guard_markers = guard_markers
        self.accounting_keywords = accounting_keywords

    def analyze(self, states: Sequence[ContractState], graph: DependencyGraph) -> StateFlowResult:
        result = StateFlowResult()
        result.flows = analyze_cross_contract_flows(states, graph, self.max_depth)
        result.findings = detect_cross_contract_reentrancy(
            result.flows, graph, self.guard_markers, self.accounting_keywords
        )
        result.invariants = check_state_invariants(states)
        result.findings.extend(invariant_findings(result.invariants, graph=graph))

        for flow in result.flows:
            if flow.partial:
                result.diagnostics.append(
                    Diagnostic(
                        code=DiagnosticCode.RECURSION_LIMIT_EXCEEDED,
                        message=(
                            f"flow {flow.entry_contract}.{flow.entry_function} -> "
                            f"{flow.target_call} was truncated"
                        ),
                        source=flow.entry_contract,
                    )
                )
        logger.info(
            "State flow: %d flows, %d findings, %d invariants checked",
            len(result.flows), len(result.findings), len(result.invariants),
        )
        return result

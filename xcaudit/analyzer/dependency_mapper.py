"""Dependency mapper: resolves state-variable types to sibling contracts.

Resolution is two-tier and each tier is a separate, testable function:

  1. declared type   ``IERC20 token``  ->  the ``IERC20`` declaration
  2. naming fallback ``address token`` ->  a declaration named ``Token``

References that resolve to nothing in the batch never create an edge;
they are kept as ``UnresolvedReference`` annotations on their contract.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Mapping

from xcaudit.analyzer.extractor import (
    extract_contracts,
    parse_state_variable,
    referenced_type_name,
)
from xcaudit.analyzer.models import CallSite, ContractState
from xcaudit.core.errors import SourceParseError
from xcaudit.core.lexer import split_top_level, tokenize
from xcaudit.core.types import SourceUnit

logger = logging.getLogger(__name__)


# ── Data Structures ──────────────────────────────────────────────────────────


class Resolution(str, Enum):
    RESOLVED = "resolved"
    UNRESOLVED_EXTERNAL = "unresolved_external"


class ResolutionTier(str, Enum):
    DECLARED_TYPE = "declared_type"
    NAMING_CONVENTION = "naming_convention"


@dataclass(frozen=True)
class DependencyEdge:
    from_contract: str
    to_contract: str
    via_variable: str
    resolution: Resolution = Resolution.RESOLVED
    tier: ResolutionTier = ResolutionTier.DECLARED_TYPE


@dataclass(frozen=True)
class UnresolvedReference:
    """A user-defined type with no declaration in the batch."""

    contract: str
    variable: str
    declared_type: str
    resolution: Resolution = Resolution.UNRESOLVED_EXTERNAL


@dataclass(frozen=True)
class DependencyGraph:
    """Directed contract graph. Never mutated after ``build_dependency_graph``."""

    nodes: Mapping[str, ContractState] = field(default_factory=dict)
    edges: tuple[DependencyEdge, ...] = ()
    unresolved: tuple[UnresolvedReference, ...] = ()
    cycles: tuple[tuple[str, ...], ...] = ()

    def edge_for(self, contract: str, variable: str) -> DependencyEdge | None:
        for edge in self.edges:
            if edge.from_contract == contract and edge.via_variable == variable:
                return edge
        return None

    def unresolved_for(self, contract: str) -> list[UnresolvedReference]:
        return [u for u in self.unresolved if u.contract == contract]

    def resolve_call(self, contract: str, call_site: CallSite) -> ContractState | None:
        """Return the contract a call site lands in, if it is part of the batch."""
        if call_site.target_variable:
            edge = self.edge_for(contract, call_site.target_variable)
            if edge is not None:
                return self.nodes.get(edge.to_contract)
        if call_site.resolved_type:
            return find_contract_by_type(call_site.resolved_type, self.nodes.values())
        return None

    def critical_contracts(self) -> list[str]:
        """Contracts with more than three dependency links, or part of a cycle."""
        degree: dict[str, int] = defaultdict(int)
        for edge in self.edges:
            degree[edge.from_contract] += 1
            degree[edge.to_contract] += 1
        in_cycle = {name for cycle in self.cycles for name in cycle}
        return sorted(name for name in self.nodes if degree[name] > 3 or name in in_cycle)


# ── Resolution ───────────────────────────────────────────────────────────────


def extract_variable_types(code: str) -> dict[str, str]:
    """Map each state variable declared in ``code`` to its declared type.

    A syntactic scan over every declaration in the text; no other file
    is needed. Later declarations of the same name win. Text with no
    enclosing contract is read as a bare list of declarations.
    """
    found: dict[str, str] = {}
    try:
        states = extract_contracts(SourceUnit(name="inline", text=code))
    except SourceParseError:
        for statement in split_top_level(tokenize(code), ";"):
            var = parse_state_variable(statement)
            if var is not None:
                found[var.name] = var.declared_type
        return found
    for state in states:
        found.update({v.name: v.declared_type for v in state.state_variables})
    return found


def _normalize(name: str) -> str:
    return name.replace("_", "").lower()


def find_contract_by_type(
    type_name: str, states: Iterable[ContractState]
) -> ContractState | None:
    """Tier 1: exact, then case-normalized match on a declared type name."""
    candidates = list(states)
    simple = type_name.split(".")[-1].strip()
    for state in candidates:
        if state.contract_name == simple:
            return state
    wanted = _normalize(simple)
    for state in candidates:
        if _normalize(state.contract_name) == wanted:
            return state
    return None


def find_contract_by_name(
    var_name: str, states: Iterable[ContractState]
) -> ContractState | None:
    """Tier 2: naming-convention match of a variable name to a declaration.

    ``token`` / ``_token`` match ``Token`` and, failing that, ``IToken``.
    """
    wanted = _normalize(var_name)
    if not wanted:
        return None
    candidates = list(states)
    for state in candidates:
        if _normalize(state.contract_name) == wanted:
            return state
    for state in candidates:
        if _normalize(state.contract_name) == "i" + wanted:
            return state
    return None


def build_dependency_graph(states: Iterable[ContractState]) -> DependencyGraph:
    """Build the batch graph: one node per contract, one edge per resolved variable."""
    nodes = {s.contract_name: s for s in states}
    all_states = list(nodes.values())
    edges: list[DependencyEdge] = []
    unresolved: list[UnresolvedReference] = []

    for state in all_states:
        local_types = set(state.type_declarations)
        for var in state.state_variables:
            if var.constant:
                continue
            target = None
            tier = ResolutionTier.DECLARED_TYPE
            type_name = referenced_type_name(var.declared_type)

            if type_name is not None:
                target = find_contract_by_type(type_name, all_states)
            if target is None and (type_name is None or not _is_local_type(type_name, local_types)):
                if type_name is None and not _references_address(var.declared_type):
                    continue
                fallback = find_contract_by_name(var.name, all_states)
                if fallback is not None:
                    target = fallback
                    tier = ResolutionTier.NAMING_CONVENTION

            if target is not None and target.contract_name != state.contract_name:
                edges.append(
                    DependencyEdge(state.contract_name, target.contract_name, var.name, tier=tier)
                )
            elif target is None and type_name is not None and not _is_local_type(type_name, local_types):
                logger.debug(
                    "Unresolved type %s for %s.%s",
                    type_name, state.contract_name, var.name,
                    extra={"contract": state.contract_name},
                )
                unresolved.append(UnresolvedReference(state.contract_name, var.name, type_name))

    graph_edges = tuple(edges)
    return DependencyGraph(
        nodes=nodes,
        edges=graph_edges,
        unresolved=tuple(unresolved),
        cycles=tuple(_find_cycles(nodes, graph_edges)),
    )


def _is_local_type(type_name: str, local_types: set[str]) -> bool:
    return type_name.split(".")[-1] in local_types


def _references_address(declared_type: str) -> bool:
    value = declared_type
    if "=>" in value:
        value = value.rsplit("=>", 1)[1].rstrip(") ")
    words = value.split("[")[0].split()
    return bool(words) and words[0] == "address"


def _find_cycles(
    nodes: Mapping[str, ContractState], edges: tuple[DependencyEdge, ...]
) -> list[tuple[str, ...]]:
    """Depth-first cycle search, each cycle reported once from its smallest member."""
    adjacency: dict[str, list[str]] = defaultdict(list)
    for edge in edges:
        if edge.to_contract not in adjacency[edge.from_contract]:
            adjacency[edge.from_contract].append(edge.to_contract)

    cycles: set[tuple[str, ...]] = set()
    visited: set[str] = set()

    def dfs(node: str, stack: list[str], on_stack: set[str]) -> None:
        visited.add(node)
        stack.append(node)
        on_stack.add(node)
        for nxt in adjacency.get(node, []):
            if nxt in on_stack:
                cycle = stack[stack.index(nxt):]
                pivot = cycle.index(min(cycle))
                cycles.add(tuple(cycle[pivot:] + cycle[:pivot]))
            elif nxt not in visited:
                dfs(nxt, stack, on_stack)
        stack.pop()
        on_stack.discard(node)

    for name in sorted(nodes):
        if name not in visited:
            dfs(name, [], set())
    return sorted(cycles)

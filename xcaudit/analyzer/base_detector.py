"""Base detector class — all contract-level detectors inherit from this."""

from __future__ import annotations

import abc
import re
from typing import Iterator

from xcaudit.analyzer.models import ContractState, FunctionModel
from xcaudit.core.lexer import Token
from xcaudit.core.types import Confidence, FindingLocation, Severity, VulnerabilityFinding


class BaseDetector(abc.ABC):
    """Abstract base class for pluggable detectors.

    Each detector implements ``analyze()`` which receives one extracted
    ContractState and returns any findings.

    Detector metadata:
        - DETECTOR_ID: Unique identifier (e.g., "XC-BRIDGE-001")
        - NAME: Human-readable detector name
        - DESCRIPTION: What this detector looks for
        - SEVERITY: Default severity level
        - CATEGORY: High-level category, used as the vulnerability class
        - CONFIDENCE: Default confidence
    """

    DETECTOR_ID: str = ""
    NAME: str = ""
    DESCRIPTION: str = ""
    SEVERITY: Severity = Severity.MEDIUM
    CATEGORY: str = ""
    CONFIDENCE: Confidence = Confidence.HEURISTIC

    @abc.abstractmethod
    def analyze(self, state: ContractState) -> list[VulnerabilityFinding]:
        """Run the detector against one contract.

        Returns:
            List of findings detected. Empty if no issues found.
        """
        ...

    @staticmethod
    def implemented_functions(state: ContractState) -> Iterator[FunctionModel]:
        for fn in state.functions:
            if fn.has_body:
                yield fn

    def _make_finding(
        self,
        state: ContractState,
        function: FunctionModel,
        title: str,
        description: str,
        line: int | None = None,
        severity: Severity | None = None,
        confidence: Confidence | None = None,
        impact: str = "",
        recommendation: str = "",
        evidence: tuple[str, ...] = (),
        economic_impact: str | None = None,
        poc_code: str | None = None,
    ) -> VulnerabilityFinding:
        """Helper to create a finding with this detector's metadata."""
        return VulnerabilityFinding(
            title=title,
            severity=severity or self.SEVERITY,
            description=description,
            impact=impact,
            locations=(
                FindingLocation(
                    contract=state.contract_name,
                    function=function.name,
                    line=line or function.line,
                    file_path=state.source_path,
                ),
            ),
            recommendation=recommendation,
            confidence=confidence or self.CONFIDENCE,
            vulnerability_class=self.CATEGORY,
            detector_id=self.DETECTOR_ID,
            evidence=evidence,
            economic_impact=economic_impact,
            poc_code=poc_code,
        )


def find_calls(body: tuple[Token, ...] | list[Token], names: frozenset[str]) -> list[Token]:
    """Return identifier tokens in ``names`` that are immediately invoked."""
    hits: list[Token] = []
    for i, tok in enumerate(body[:-1]):
        if tok.is_ident() and tok.text in names and body[i + 1].is_punct("("):
            hits.append(tok)
    return hits


class CoLocationDetector(BaseDetector):
    """Flags functions that reach a trigger without a co-located safeguard.

    Subclasses describe the pattern as data:
        - TRIGGER_CALLS: call names that start the pattern
        - TRIGGER_FUNCTIONS: entry points that are triggers by name alone
        - SAFEGUARD_IDENTIFIERS: regexes matched against body identifiers
        - SAFEGUARD_CHECKS: regexes matched against require/assert/if conditions
        - SAFEGUARD_MODIFIERS: regexes matched against applied modifiers
        - REQUIRE_ALL: every safeguard must be present, not just one
    One finding is emitted per offending function, at the first trigger.
    """

    TRIGGER_CALLS: frozenset[str] = frozenset()
    TRIGGER_FUNCTIONS: frozenset[str] = frozenset()
    SAFEGUARD_IDENTIFIERS: tuple[str, ...] = ()
    SAFEGUARD_CHECKS: tuple[str, ...] = ()
    SAFEGUARD_MODIFIERS: tuple[str, ...] = ()
    REQUIRE_ALL: bool = False

    TITLE: str = ""
    IMPACT: str = ""
    RECOMMENDATION: str = ""
    ECONOMIC_IMPACT: str | None = None
    POC_CODE: str | None = None

    def triggers(self, fn: FunctionModel) -> list[tuple[str, int]]:
        """(name, line) of each trigger in ``fn``, in source order."""
        if fn.name in self.TRIGGER_FUNCTIONS and fn.is_entry_point:
            return [(fn.name, fn.line)]
        return [(tok.text, tok.line) for tok in find_calls(fn.body, self.TRIGGER_CALLS)]

    def safeguards_present(self, fn: FunctionModel) -> list[bool]:
        identifiers = fn.identifiers()
        present = [
            any(re.search(pattern, name) for name in identifiers)
            for pattern in self.SAFEGUARD_IDENTIFIERS
        ]
        present += [
            any(re.search(pattern, check) for check in fn.require_checks)
            for pattern in self.SAFEGUARD_CHECKS
        ]
        present += [
            any(re.search(pattern, name) for name in fn.modifiers)
            for pattern in self.SAFEGUARD_MODIFIERS
        ]
        return present

    def is_protected(self, fn: FunctionModel) -> bool:
        present = self.safeguards_present(fn)
        if not present:
            return False
        return all(present) if self.REQUIRE_ALL else any(present)

    def describe(self, state: ContractState, fn: FunctionModel, trigger: str) -> str:
        if trigger == fn.name:
            return f"{state.contract_name}.{fn.name} can be called without {self.DESCRIPTION.lower()}."
        return f"{state.contract_name}.{fn.name} calls {trigger} without {self.DESCRIPTION.lower()}."

    def analyze(self, state: ContractState) -> list[VulnerabilityFinding]:
        findings: list[VulnerabilityFinding] = []
        for fn in self.implemented_functions(state):
            triggers = self.triggers(fn)
            if not triggers or self.is_protected(fn):
                continue
            name, line = triggers[0]
            findings.append(
                self._make_finding(
                    state,
                    fn,
                    title=self.TITLE or self.NAME,
                    description=self.describe(state, fn, name),
                    line=line,
                    impact=self.IMPACT,
                    recommendation=self.RECOMMENDATION,
                    evidence=(f"{name}() at line {line}",),
                    economic_impact=self.ECONOMIC_IMPACT,
                    poc_code=self.POC_CODE,
                )
            )
        return findings

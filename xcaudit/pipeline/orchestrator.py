"""Audit pipeline orchestrator — wires the analysis stages together.

Pipeline stages:
  1. Validate the batch (empty or malformed input yields an empty report)
  2. Extract per-contract state from every source unit
  3. Resolve dependencies across the whole batch (barrier)
  4. State-flow analysis: cross-contract flows, reentrancy, invariants
  5. Cross-chain pattern detectors
  6. Aggregate, filter, deduplicate, score and rank

Stages 4 and 5 are independent; ``run_async`` runs them concurrently.
Each run is a pure function of its input batch.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from typing import Any, Iterable, Mapping, Sequence

from pydantic import ValidationError

from xcaudit.analyzer.cross_chain import CrossChainAnalyzer, CrossChainResult
from xcaudit.analyzer.dependency_mapper import DependencyGraph, ResolutionTier, build_dependency_graph
from xcaudit.analyzer.extractor import extract_batch, extract_unit, merge_extractions
from xcaudit.analyzer.models import ContractState, ParseWarning
from xcaudit.analyzer.state_flow import StateFlowAnalyzer, StateFlowResult
from xcaudit.core.config import Settings, get_settings
from xcaudit.core.errors import DiagnosticCode, InvalidInput
from xcaudit.core.logging import bind_run_id
from xcaudit.core.types import (
    AuditReport,
    Confidence,
    Diagnostic,
    SourceUnit,
    VulnerabilityFinding,
)
from xcaudit.reports.generator import ReportGenerator

logger = logging.getLogger(__name__)


def compute_run_id(units: Sequence[SourceUnit]) -> str:
    """Deterministic identifier for a batch: identical input, identical ID."""
    digest = hashlib.sha256()
    for unit in units:
        digest.update(unit.name.encode())
        digest.update(b"\0")
        digest.update(unit.path.encode())
        digest.update(b"\0")
        digest.update(unit.text.encode())
        digest.update(b"\1")
    return digest.hexdigest()[:16]


def validate_batch(units: Iterable[Any]) -> list[SourceUnit]:
    """Coerce a batch into SourceUnits; raises InvalidInput on malformed entries."""
    if units is None:
        raise InvalidInput("no source batch supplied")
    if isinstance(units, (str, bytes)) or not isinstance(units, Iterable):
        raise InvalidInput("source batch must be a sequence of {name, path, text} entries")

    validated: list[SourceUnit] = []
    for idx, entry in enumerate(units):
        if isinstance(entry, SourceUnit):
            validated.append(entry)
            continue
        if not isinstance(entry, Mapping):
            raise InvalidInput(f"entry {idx} is a {type(entry).__name__}, not a source unit")
        try:
            validated.append(SourceUnit.model_validate(dict(entry)))
        except ValidationError as exc:
            raise InvalidInput(f"entry {idx} is malformed: {exc.error_count()} error(s)") from exc
    return validated


def _warning_to_diagnostic(warning: ParseWarning) -> Diagnostic:
    message = warning.message
    if warning.line:
        message = f"{message} (line {warning.line})"
    return Diagnostic(code=warning.code, message=message, source=warning.source_name)


class AuditPipeline:
    """Runs one analysis over a batch of source units.

    Holds configuration only; no state survives between runs.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        apply_filter: bool = True,
    ) -> None:
        self.settings = settings or get_settings()
        self.apply_filter = apply_filter
        self._state_flow = StateFlowAnalyzer(
            max_depth=self.settings.max_flow_depth,
            guard_markers=self.settings.reentrancy_guard_markers,
            accounting_keywords=self.settings.accounting_keywords,
        )
        self._cross_chain = CrossChainAnalyzer()
        self._reporter = ReportGenerator(
            garbage_keywords=self.settings.garbage_keywords,
            severity_weights=self.settings.severity_weights,
            risk_damping=self.settings.risk_damping,
            apply_filter=apply_filter,
        )

    # ── Entry points ─────────────────────────────────────────────────────

    def run(
        self,
        units: Iterable[Any],
        extra_findings: Iterable[VulnerabilityFinding] = (),
    ) -> AuditReport:
        """Run the full pipeline synchronously."""
        prepared = self._prepare(units)
        if isinstance(prepared, AuditReport):
            return prepared
        batch, diagnostics = prepared

        with bind_run_id(compute_run_id(batch)):
            start = time.monotonic()
            states, warnings = extract_batch(batch)
            graph = self._resolve(states, warnings, diagnostics)
            flow_result = self._analyze_flows(states, graph)
            chain_result = self._detect_cross_chain(states)
            return self._report(
                batch, states, graph, flow_result, chain_result,
                diagnostics, extra_findings, start,
            )

    async def run_async(
        self,
        units: Iterable[Any],
        extra_findings: Iterable[VulnerabilityFinding] = (),
    ) -> AuditReport:
        """Run the pipeline with parallel extraction and concurrent analyzers."""
        prepared = self._prepare(units)
        if isinstance(prepared, AuditReport):
            return prepared
        batch, diagnostics = prepared

        with bind_run_id(compute_run_id(batch)):
            start = time.monotonic()
            semaphore = asyncio.Semaphore(self.settings.extraction_workers)

            async def extract_one(unit: SourceUnit):
                async with semaphore:
                    return unit, await asyncio.to_thread(extract_unit, unit)

            # Barrier: dependency resolution needs every unit.
            results = await asyncio.gather(*(extract_one(u) for u in batch))
            states, warnings = merge_extractions(results)
            graph = self._resolve(states, warnings, diagnostics)

            flow_result, chain_result = await asyncio.gather(
                asyncio.to_thread(self._analyze_flows, states, graph),
                asyncio.to_thread(self._detect_cross_chain, states),
            )
            return self._report(
                batch, states, graph, flow_result, chain_result,
                diagnostics, extra_findings, start,
            )

    # ── Stages ───────────────────────────────────────────────────────────

    def _prepare(
        self, units: Iterable[Any]
    ) -> AuditReport | tuple[list[SourceUnit], list[Diagnostic]]:
        try:
            batch = validate_batch(units)
        except InvalidInput as exc:
            logger.warning("Invalid input batch: %s", exc)
            return self._reporter.generate(
                [],
                [Diagnostic(code=DiagnosticCode.INVALID_INPUT, message=str(exc))],
                {"units": 0, "contracts": 0},
            )

        diagnostics: list[Diagnostic] = []
        if not batch:
            logger.info("Empty batch, nothing to analyze")
            return self._reporter.generate([], diagnostics, {"units": 0, "contracts": 0})

        limit = self.settings.max_files
        if len(batch) > limit:
            logger.warning("Batch of %d units exceeds file cap %d; truncating", len(batch), limit)
            diagnostics.append(
                Diagnostic(
                    code=DiagnosticCode.FILE_LIMIT_EXCEEDED,
                    message=f"{len(batch) - limit} unit(s) beyond the {limit}-file cap were not analyzed",
                )
            )
            batch = batch[:limit]
        return batch, diagnostics

    def _resolve(
        self,
        states: list[ContractState],
        warnings: list[ParseWarning],
        diagnostics: list[Diagnostic],
    ) -> DependencyGraph:
        diagnostics.extend(_warning_to_diagnostic(w) for w in warnings)
        graph = build_dependency_graph(states)
        for ref in graph.unresolved:
            diagnostics.append(
                Diagnostic(
                    code=DiagnosticCode.UNRESOLVED_DEPENDENCY,
                    message=f"{ref.variable}: type {ref.declared_type} is not part of the batch",
                    source=ref.contract,
                    confidence=Confidence.CONFIRMED,
                )
            )
        logger.info(
            "Dependency graph: %d contracts, %d edges, %d unresolved, %d cycles",
            len(graph.nodes), len(graph.edges), len(graph.unresolved), len(graph.cycles),
        )
        return graph

    def _analyze_flows(self, states: list[ContractState], graph: DependencyGraph) -> StateFlowResult:
        try:
            return self._state_flow.analyze(states, graph)
        except Exception as exc:
            logger.exception("State-flow analysis failed")
            return StateFlowResult(
                diagnostics=[
                    Diagnostic(
                        code=DiagnosticCode.DETECTOR_FAILED,
                        message=f"state-flow analysis failed: {exc}",
                    )
                ]
            )

    def _detect_cross_chain(self, states: list[ContractState]) -> CrossChainResult:
        return self._cross_chain.analyze(states)

    def _report(
        self,
        batch: list[SourceUnit],
        states: list[ContractState],
        graph: DependencyGraph,
        flow_result: StateFlowResult,
        chain_result: CrossChainResult,
        diagnostics: list[Diagnostic],
        extra_findings: Iterable[VulnerabilityFinding],
        start: float,
    ) -> AuditReport:
        findings = [*flow_result.findings, *chain_result.findings, *extra_findings]
        all_diagnostics = [*diagnostics, *flow_result.diagnostics, *chain_result.diagnostics]
        metadata = {
            "units": len(batch),
            "contracts": len(states),
            "dependencyEdges": len(graph.edges),
            "namingFallbackEdges": sum(
                1 for e in graph.edges if e.tier is ResolutionTier.NAMING_CONVENTION
            ),
            "flows": len(flow_result.flows),
            "invariantsChecked": len(flow_result.invariants),
            "cycles": [list(c) for c in graph.cycles],
            "criticalContracts": graph.critical_contracts(),
        }
        report = self._reporter.generate(findings, all_diagnostics, metadata)
        logger.info(
            "Pipeline finished: %d units, %d findings",
            len(batch), report.summary.total_findings,
            extra={"duration_ms": round((time.monotonic() - start) * 1000, 2)},
        )
        return report

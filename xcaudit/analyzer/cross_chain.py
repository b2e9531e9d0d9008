"""Cross-chain analyzer: runs the stateless detectors over every contract
and library (interfaces have no code to inspect).

Detectors are independent of one another and of the dependency graph;
a detector that raises is reported as a diagnostic and the rest still run.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Iterable, Sequence, Type

from xcaudit.analyzer.base_detector import BaseDetector
from xcaudit.analyzer.detectors.bridge import WormholeGuardianCheckDetector
from xcaudit.analyzer.detectors.signature import SignatureReplayDetector
from xcaudit.analyzer.extractor import extract_contracts
from xcaudit.analyzer.models import ContractState
from xcaudit.analyzer.registry import registry
from xcaudit.core.errors import DiagnosticCode, SourceParseError
from xcaudit.core.types import Diagnostic, SourceUnit, VulnerabilityFinding

logger = logging.getLogger(__name__)


@dataclass
class CrossChainResult:
    findings: list[VulnerabilityFinding] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)


class CrossChainAnalyzer:
    """Runs a set of detectors (all registered ones by default) over contracts."""

    def __init__(self, detectors: Sequence[Type[BaseDetector]] | None = None) -> None:
        classes = list(detectors) if detectors is not None else registry.get_all()
        self.detectors: list[BaseDetector] = [cls() for cls in classes]

    def analyze(self, states: Iterable[ContractState]) -> CrossChainResult:
        result = CrossChainResult()
        for state in states:
            if state.is_interface:
                continue
            for detector in self.detectors:
                start = time.monotonic()
                try:
                    result.findings.extend(detector.analyze(state))
                except Exception as exc:
                    logger.exception(
                        "Detector %s failed on %s", detector.DETECTOR_ID, state.contract_name,
                        extra={"detector": detector.DETECTOR_ID, "contract": state.contract_name},
                    )
                    result.diagnostics.append(
                        Diagnostic(
                            code=DiagnosticCode.DETECTOR_FAILED,
                            message=f"{detector.DETECTOR_ID} failed: {exc}",
                            source=state.contract_name,
                        )
                    )
                    continue
                logger.debug(
                    "Detector %s ran on %s",
                    detector.DETECTOR_ID, state.contract_name,
                    extra={
                        "detector": detector.DETECTOR_ID,
                        "duration_ms": round((time.monotonic() - start) * 1000, 2),
                    },
                )
        return result


def _run_on_code(code: str, detector: Type[BaseDetector]) -> list[VulnerabilityFinding]:
    try:
        states = extract_contracts(SourceUnit(name="inline", text=code))
    except SourceParseError as exc:
        logger.warning("Cannot analyze inline code: %s", exc)
        return []
    return CrossChainAnalyzer([detector]).analyze(states).findings


def detect_wormhole_vulnerabilities(code: str) -> list[VulnerabilityFinding]:
    """Bridge-message verification without a co-located guardian/quorum check."""
    return _run_on_code(code, WormholeGuardianCheckDetector)


def detect_signature_replay(code: str) -> list[VulnerabilityFinding]:
    """Signature recovery whose digest omits nonce, chain id or deadline."""
    return _run_on_code(code, SignatureReplayDetector)

"""Report generator: filter, deduplicate, score and rank findings.

Pure reduction over the complete finding set. No network or file I/O
happens here; serializers return strings for the caller to write.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
from typing import Any, Iterable, Sequence

from xcaudit.core.config import get_settings
from xcaudit.core.types import (
    AuditReport,
    Confidence,
    Diagnostic,
    FindingLocation,
    ReportSummary,
    Severity,
    VulnerabilityFinding,
)

logger = logging.getLogger(__name__)

SARIF_SCHEMA = "https://raw.githubusercontent.com/oasis-tcs/sarif-spec/master/Schemata/sarif-schema-2.1.0.json"


def filter_garbage_findings(
    findings: Iterable[VulnerabilityFinding],
    keywords: Sequence[str] | None = None,
) -> list[VulnerabilityFinding]:
    """Drop low-value findings (gas / style chatter).

    A finding carrying a PoC or an economic impact is always kept,
    whatever its wording. Matching is a plain case-insensitive keyword
    search over title and description, so a genuine issue that happens
    to use one of the phrases is lost unless it carries exploit context.
    """
    phrases = [k.lower() for k in (keywords if keywords is not None else get_settings().garbage_keywords)]
    kept: list[VulnerabilityFinding] = []
    for finding in findings:
        if finding.has_exploit_context:
            kept.append(finding)
            continue
        text = f"{finding.title} {finding.description}".lower()
        if any(phrase in text for phrase in phrases):
            logger.debug("Filtered low-value finding: %s", finding.title)
            continue
        kept.append(finding)
    return kept


def _merge_unique(*groups: Iterable[Any]) -> tuple[Any, ...]:
    seen: dict[Any, None] = {}
    for group in groups:
        for item in group:
            seen.setdefault(item, None)
    return tuple(seen)


class ReportGenerator:
    """Aggregate findings from every analyzer into one immutable report."""

    def __init__(
        self,
        garbage_keywords: Sequence[str] | None = None,
        severity_weights: dict[str, float] | None = None,
        risk_damping: float | None = None,
        apply_filter: bool = True,
    ) -> None:
        settings = get_settings()
        self.garbage_keywords = list(
            garbage_keywords if garbage_keywords is not None else settings.garbage_keywords
        )
        self.severity_weights = dict(
            severity_weights if severity_weights is not None else settings.severity_weights
        )
        self.risk_damping = risk_damping if risk_damping is not None else settings.risk_damping
        self.apply_filter = apply_filter

    # ── Pipeline steps ───────────────────────────────────────────────────

    def filter_garbage_findings(
        self, findings: Iterable[VulnerabilityFinding]
    ) -> list[VulnerabilityFinding]:
        return filter_garbage_findings(findings, self.garbage_keywords)

    def deduplicate(self, findings: Iterable[VulnerabilityFinding]) -> list[VulnerabilityFinding]:
        """Collapse findings sharing (contract, function, vulnerability class)."""
        groups: dict[tuple[str, str, str], list[VulnerabilityFinding]] = {}
        for finding in findings:
            groups.setdefault(finding.dedup_key, []).append(finding)

        merged: list[VulnerabilityFinding] = []
        for group in groups.values():
            if len(group) == 1:
                merged.append(group[0])
                continue
            lead = max(group, key=lambda f: f.severity.rank)
            merged.append(
                lead.model_copy(
                    update={
                        "locations": _merge_unique(*(f.locations for f in group)),
                        "evidence": _merge_unique(*(f.evidence for f in group)),
                        "flags": _merge_unique(*(f.flags for f in group)),
                        "confidence": (
                            Confidence.CONFIRMED
                            if any(f.confidence is Confidence.CONFIRMED for f in group)
                            else Confidence.HEURISTIC
                        ),
                        "economic_impact": next(
                            (f.economic_impact for f in group if f.economic_impact), None
                        ),
                        "poc_code": next((f.poc_code for f in group if f.poc_code), None),
                    }
                )
            )
        return merged

    def rank(self, findings: Iterable[VulnerabilityFinding]) -> list[VulnerabilityFinding]:
        """Severity, then exploit context, then confidence; stable tiebreak on location."""

        def sort_key(f: VulnerabilityFinding) -> tuple:
            loc = f.primary_location or FindingLocation(contract="")
            return (
                -f.severity.rank,
                0 if f.has_exploit_context else 1,
                0 if f.confidence is Confidence.CONFIRMED else 1,
                loc.contract,
                loc.function,
                loc.line or 0,
                f.vulnerability_class,
                f.title,
            )

        return sorted(findings, key=sort_key)

    def risk_score(self, findings: Iterable[VulnerabilityFinding]) -> float:
        """Severity-weighted count passed through 100 * (1 - e^(-w / damping))."""
        weighted = sum(self.severity_weights.get(f.severity.value, 0.0) for f in findings)
        return round(100.0 * (1.0 - math.exp(-weighted / self.risk_damping)), 1)

    @staticmethod
    def summarize(findings: Sequence[VulnerabilityFinding]) -> ReportSummary:
        by_severity = {sev.value: 0 for sev in Severity}
        for f in findings:
            by_severity[f.severity.value] += 1
        return ReportSummary(total_findings=len(findings), by_severity=by_severity)

    @staticmethod
    def finding_id(f: VulnerabilityFinding) -> str:
        contract, function, vuln_class = f.dedup_key
        digest = hashlib.sha1(f"{contract}|{function}|{vuln_class}".encode()).hexdigest()
        return f"XC-{digest[:10].upper()}"

    def generate(
        self,
        findings: Iterable[VulnerabilityFinding],
        diagnostics: Iterable[Diagnostic] = (),
        metadata: dict[str, Any] | None = None,
    ) -> AuditReport:
        """Produce the final report from every producer's findings."""
        raw = list(findings)
        kept = self.filter_garbage_findings(raw) if self.apply_filter else raw
        unique = self.deduplicate(kept)
        ranked = [f.model_copy(update={"id": self.finding_id(f)}) for f in self.rank(unique)]

        meta = dict(metadata or {})
        meta.update(
            {
                "rawFindings": len(raw),
                "filteredOut": len(raw) - len(kept),
                "duplicatesMerged": len(kept) - len(unique),
            }
        )
        report = AuditReport(
            findings=tuple(ranked),
            risk_score=self.risk_score(ranked),
            summary=self.summarize(ranked),
            diagnostics=tuple(diagnostics),
            metadata=meta,
        )
        logger.info(
            "Report: %d findings (%d filtered, %d merged), risk %.1f",
            len(ranked), meta["filteredOut"], meta["duplicatesMerged"], report.risk_score,
        )
        return report

    # ── Serializers ──────────────────────────────────────────────────────

    def generate_json(self, report: AuditReport) -> str:
        """Machine-readable JSON. Deterministic: no timestamps."""
        data = report.to_dict()
        data["metadata"] = report.metadata_dict()
        return json.dumps(data, indent=2, default=str)

    def generate_sarif(self, report: AuditReport, tool_version: str = "0.1.0") -> str:
        """Generate SARIF 2.1.0 for code-scanning integrations."""
        rules: dict[str, dict[str, Any]] = {}
        results = []

        for f in report.findings:
            rule_id = f.detector_id or f.vulnerability_class or f.id
            if rule_id not in rules:
                rules[rule_id] = {
                    "id": rule_id,
                    "name": f.title.replace(" ", ""),
                    "shortDescription": {"text": f.title},
                    "fullDescription": {"text": f.description[:1000]},
                    "defaultConfiguration": {"level": self._severity_to_sarif_level(f.severity)},
                    "properties": {
                        "security-severity": str(self._severity_to_score(f.severity)),
                        "tags": ["security", f.vulnerability_class] if f.vulnerability_class else ["security"],
                    },
                }

            results.append({
                "ruleId": rule_id,
                "message": {"text": f.description},
                "level": self._severity_to_sarif_level(f.severity),
                "locations": [
                    {
                        "physicalLocation": {
                            "artifactLocation": {"uri": loc.file_path or loc.contract},
                            "region": {"startLine": loc.line or 1},
                        },
                        "logicalLocations": [
                            {
                                "fullyQualifiedName": (
                                    f"{loc.contract}.{loc.function}" if loc.function else loc.contract
                                ),
                            }
                        ],
                    }
                    for loc in f.locations
                ],
                "partialFingerprints": {"primaryLocationLineHash": f.id},
                "properties": {"confidence": f.confidence.value, "flags": list(f.flags)},
                "fixes": [
                    {"description": {"text": f.recommendation}},
                ] if f.recommendation else [],
            })

        sarif = {
            "$schema": SARIF_SCHEMA,
            "version": "2.1.0",
            "runs": [
                {
                    "tool": {
                        "driver": {
                            "name": "xcaudit",
                            "version": tool_version,
                            "rules": list(rules.values()),
                        }
                    },
                    "results": results,
                }
            ],
        }
        return json.dumps(sarif, indent=2)

    @staticmethod
    def _severity_to_sarif_level(severity: Severity) -> str:
        return {
            Severity.CRITICAL: "error",
            Severity.HIGH: "error",
            Severity.MEDIUM: "warning",
            Severity.LOW: "note",
            Severity.INFORMATIONAL: "note",
        }.get(severity, "note")

    @staticmethod
    def _severity_to_score(severity: Severity) -> float:
        return {
            Severity.CRITICAL: 9.5,
            Severity.HIGH: 7.5,
            Severity.MEDIUM: 5.5,
            Severity.LOW: 3.5,
            Severity.INFORMATIONAL: 1.0,
        }.get(severity, 1.0)

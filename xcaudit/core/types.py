"""Shared enums and schemas used across the engine."""

from __future__ import annotations

import enum
from types import MappingProxyType
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from xcaudit.core.errors import DiagnosticCode


# ── Enums ────────────────────────────────────────────────────────────────────


class Severity(str, enum.Enum):
    """Vulnerability severity level."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFORMATIONAL = "informational"

    @property
    def rank(self) -> int:
        """Numeric rank, higher is more severe."""
        return _SEVERITY_RANK[self]

    @classmethod
    def from_label(cls, label: str) -> "Severity":
        """Parse a user-facing label ("High", "info", ...)."""
        normalized = label.strip().lower()
        if normalized == "info":
            normalized = "informational"
        return cls(normalized)


_SEVERITY_RANK = {
    Severity.CRITICAL: 4,
    Severity.HIGH: 3,
    Severity.MEDIUM: 2,
    Severity.LOW: 1,
    Severity.INFORMATIONAL: 0,
}


class Confidence(str, enum.Enum):
    """How strongly the evidence supports a finding."""

    CONFIRMED = "confirmed"
    HEURISTIC = "heuristic"


# ── Input ────────────────────────────────────────────────────────────────────


class SourceUnit(BaseModel):
    """One named contract source file handed to the engine."""

    model_config = ConfigDict(frozen=True)

    name: str
    path: str = ""
    text: str


# ── Findings ─────────────────────────────────────────────────────────────────


class FindingLocation(BaseModel):
    """Where a finding applies."""

    model_config = ConfigDict(frozen=True)

    contract: str
    function: str = ""
    line: int | None = None
    file_path: str = ""

    def label(self) -> str:
        text = self.contract
        if self.function:
            text += f"::{self.function}"
        if self.line:
            text += f" (line {self.line})"
        return text


class VulnerabilityFinding(BaseModel):
    """A single security finding produced by an analyzer or detector."""

    model_config = ConfigDict(frozen=True)

    id: str = ""
    title: str
    severity: Severity
    description: str
    impact: str = ""
    locations: tuple[FindingLocation, ...] = ()
    recommendation: str = ""
    confidence: Confidence = Confidence.HEURISTIC
    vulnerability_class: str = ""
    detector_id: str = ""
    evidence: tuple[str, ...] = ()
    flags: tuple[str, ...] = ()
    economic_impact: str | None = None
    poc_code: str | None = None

    @property
    def primary_location(self) -> FindingLocation | None:
        return self.locations[0] if self.locations else None

    @property
    def has_exploit_context(self) -> bool:
        """True when the finding carries a PoC or an economic impact estimate."""
        return bool(self.poc_code) or bool(self.economic_impact)

    @property
    def dedup_key(self) -> tuple[str, str, str]:
        loc = self.primary_location
        return (
            loc.contract if loc else "",
            loc.function if loc else "",
            self.vulnerability_class or self.title,
        )


class Diagnostic(BaseModel):
    """A contained, non-fatal problem that reduced analysis completeness."""

    model_config = ConfigDict(frozen=True)

    code: DiagnosticCode
    message: str
    source: str = ""
    confidence: Confidence = Confidence.HEURISTIC


# ── Report ───────────────────────────────────────────────────────────────────


def freeze(value: Any) -> Any:
    """Read-only copy: mappings become mapping proxies, lists become tuples."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    """Plain JSON-ready copy of a frozen value."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [thaw(v) for v in value]
    return value


class ReportSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_findings: int = 0
    by_severity: Mapping[str, int] = Field(default_factory=lambda: MappingProxyType({}))

    @field_validator("by_severity", mode="after")
    @classmethod
    def _freeze_counts(cls, value: Mapping[str, int]) -> Mapping[str, int]:
        return freeze(value)

    @field_serializer("by_severity")
    def _serialize_counts(self, value: Mapping[str, int]) -> dict[str, int]:
        return dict(value)


class AuditReport(BaseModel):
    """Final, read-only result of one analysis run."""

    model_config = ConfigDict(frozen=True)

    findings: tuple[VulnerabilityFinding, ...] = ()
    risk_score: float = 0.0
    summary: ReportSummary = Field(default_factory=ReportSummary)
    diagnostics: tuple[Diagnostic, ...] = ()
    metadata: Mapping[str, Any] = Field(default_factory=lambda: MappingProxyType({}))

    @field_validator("metadata", mode="after")
    @classmethod
    def _freeze_metadata(cls, value: Mapping[str, Any]) -> Mapping[str, Any]:
        return freeze(value)

    @field_serializer("metadata")
    def _serialize_metadata(self, value: Mapping[str, Any]) -> dict[str, Any]:
        return thaw(value)

    def metadata_dict(self) -> dict[str, Any]:
        return thaw(self.metadata)

    def to_dict(self) -> dict[str, Any]:
        """Render the public output contract (camelCase keys)."""
        return {
            "findings": [finding_to_dict(f) for f in self.findings],
            "riskScore": self.risk_score,
            "summary": {
                "totalFindings": self.summary.total_findings,
                "bySeverity": dict(self.summary.by_severity),
            },
            "diagnostics": [
                {"code": d.code.value, "message": d.message, "source": d.source}
                for d in self.diagnostics
            ],
        }


def finding_to_dict(f: VulnerabilityFinding) -> dict[str, Any]:
    loc = f.primary_location
    data: dict[str, Any] = {
        "id": f.id,
        "title": f.title,
        "severity": f.severity.value,
        "description": f.description,
        "impact": f.impact,
        "location": loc.label() if loc else "",
        "locations": [
            {"contract": l.contract, "function": l.function, "line": l.line}
            for l in f.locations
        ],
        "recommendation": f.recommendation,
        "confidence": f.confidence.value,
        "category": f.vulnerability_class,
        "evidence": list(f.evidence),
        "flags": list(f.flags),
    }
    if f.economic_impact:
        data["economicImpact"] = f.economic_impact
    if f.poc_code:
        data["pocCode"] = f.poc_code
    return data

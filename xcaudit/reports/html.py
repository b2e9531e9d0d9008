"""HTML report rendering using Jinja2."""

from __future__ import annotations

from pathlib import Path

from jinja2 import Environment, FileSystemLoader

from xcaudit.core.types import AuditReport, Severity, finding_to_dict

TEMPLATE_DIR = Path(__file__).parent / "templates"


class HTMLReportRenderer:
    """Render an AuditReport as a standalone HTML page."""

    def __init__(self) -> None:
        self._jinja_env = Environment(
            loader=FileSystemLoader(str(TEMPLATE_DIR)),
            autoescape=True,
        )
        self._jinja_env.filters["severity_color"] = self._severity_color

    def render(self, report: AuditReport, project_name: str = "Unnamed Project") -> str:
        template = self._jinja_env.get_template("report.html")

        findings_by_severity: dict[str, list[dict]] = {sev.value: [] for sev in Severity}
        for f in report.findings:
            findings_by_severity[f.severity.value].append(finding_to_dict(f))

        context = {
            "project_name": project_name,
            "risk_score": report.risk_score,
            "risk_color": self._risk_to_color(report.risk_score),
            "total_findings": report.summary.total_findings,
            "by_severity": report.summary.by_severity,
            "findings_by_severity": findings_by_severity,
            "diagnostics": [
                {"code": d.code.value, "message": d.message, "source": d.source}
                for d in report.diagnostics
            ],
            "metadata": report.metadata,
        }
        return template.render(**context)

    @staticmethod
    def _severity_color(severity: str) -> str:
        return {
            "critical": "#dc2626",
            "high": "#ea580c",
            "medium": "#ca8a04",
            "low": "#2563eb",
            "informational": "#6b7280",
        }.get(severity.lower(), "#6b7280")

    @staticmethod
    def _risk_to_color(score: float) -> str:
        if score >= 75:
            return "#dc2626"
        elif score >= 50:
            return "#ea580c"
        elif score >= 25:
            return "#ca8a04"
        return "#16a34a"

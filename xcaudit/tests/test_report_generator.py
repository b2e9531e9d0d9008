"""Tests for xcaudit.reports — filtering, deduplication, scoring and output."""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from xcaudit.core.errors import DiagnosticCode
from xcaudit.core.types import Confidence, Diagnostic, Severity
from xcaudit.reports.generator import ReportGenerator, filter_garbage_findings
from xcaudit.reports.html import HTMLReportRenderer
from xcaudit.tests.samples import make_finding


@pytest.fixture
def generator() -> ReportGenerator:
    return ReportGenerator()


# ── Filtering ────────────────────────────────────────────────────────────────


class TestFilterGarbageFindings:
    def test_drops_style_and_gas_chatter(self, sample_findings):
        kept = filter_garbage_findings(sample_findings)
        assert [f.title for f in kept] == [
            "Reentrancy in withdraw",
            "Gas optimization hides unchecked bridge call",
        ]

    def test_exploit_context_is_always_kept(self, sample_findings):
        kept = filter_garbage_findings(sample_findings)
        for finding in sample_findings:
            if finding.has_exploit_context:
                assert finding in kept

    def test_never_grows(self, sample_findings):
        assert len(filter_garbage_findings(sample_findings)) <= len(sample_findings)
        assert filter_garbage_findings([]) == []

    def test_matches_description_case_insensitively(self):
        finding = make_finding("Loop", description="Consider this GAS SAVING trick")
        assert filter_garbage_findings([finding]) == []

    def test_custom_keywords(self, sample_findings):
        assert filter_garbage_findings(sample_findings, keywords=[]) == sample_findings
        kept = filter_garbage_findings(sample_findings, keywords=["reentrancy"])
        assert "Reentrancy in withdraw" not in [f.title for f in kept]


# ── Deduplication and ranking ────────────────────────────────────────────────


class TestDeduplicate:
    def test_merges_same_contract_function_class(self, generator):
        first = make_finding("Reentrancy", Severity.MEDIUM, line=10, evidence=("a",))
        second = make_finding(
            "Reentrancy (flow)",
            Severity.HIGH,
            line=20,
            evidence=("b",),
            confidence=Confidence.CONFIRMED,
            flags=("partial-flow",),
        )
        merged = generator.deduplicate([first, second])
        assert len(merged) == 1
        finding = merged[0]
        assert finding.severity is Severity.HIGH
        assert finding.title == "Reentrancy (flow)"
        assert [loc.line for loc in finding.locations] == [10, 20]
        assert finding.evidence == ("a", "b")
        assert finding.flags == ("partial-flow",)
        assert finding.confidence is Confidence.CONFIRMED

    def test_keeps_exploit_context_from_any_member(self, generator):
        plain = make_finding("Bridge", Severity.HIGH)
        rich = make_finding("Bridge", Severity.LOW, economic_impact="$1M", poc_code="exploit()")
        finding = generator.deduplicate([plain, rich])[0]
        assert finding.severity is Severity.HIGH
        assert finding.economic_impact == "$1M"
        assert finding.poc_code == "exploit()"

    def test_distinct_keys_are_kept(self, generator):
        findings = [
            make_finding("A", function="deposit"),
            make_finding("A", function="withdraw"),
            make_finding("A", function="withdraw", vulnerability_class="other"),
        ]
        assert len(generator.deduplicate(findings)) == 3


class TestRank:
    def test_severity_first(self, generator):
        low = make_finding("low", Severity.LOW, function="a")
        critical = make_finding("critical", Severity.CRITICAL, function="b")
        medium = make_finding("medium", Severity.MEDIUM, function="c")
        assert [f.title for f in generator.rank([low, critical, medium])] == [
            "critical",
            "medium",
            "low",
        ]

    def test_exploit_context_then_confidence(self, generator):
        heuristic = make_finding("heuristic", Severity.HIGH, function="a")
        confirmed = make_finding("confirmed", Severity.HIGH, function="b", confidence=Confidence.CONFIRMED)
        with_poc = make_finding("poc", Severity.HIGH, function="c", poc_code="x()")
        ranked = generator.rank([heuristic, confirmed, with_poc])
        assert [f.title for f in ranked] == ["poc", "confirmed", "heuristic"]

    def test_ties_break_on_location(self, generator):
        b = make_finding("same", contract="B")
        a = make_finding("same", contract="A")
        assert [f.primary_location.contract for f in generator.rank([b, a])] == ["A", "B"]


# ── Scoring ──────────────────────────────────────────────────────────────────


class TestRiskScore:
    def test_empty_is_zero(self, generator):
        assert generator.risk_score([]) == 0.0

    def test_bounded_and_monotonic(self, generator):
        findings = []
        previous = 0.0
        for i in range(60):
            findings.append(make_finding(f"f{i}", Severity.CRITICAL, function=f"fn{i}"))
            score = generator.risk_score(findings)
            assert previous <= score <= 100.0
            previous = score
        assert previous > 99.0

    def test_weights_are_configurable(self):
        flat = ReportGenerator(severity_weights={"medium": 25.0}, risk_damping=25.0)
        assert flat.risk_score([make_finding(severity=Severity.MEDIUM)]) == 63.2
        assert flat.risk_score([make_finding(severity=Severity.LOW)]) == 0.0


# ── Report ───────────────────────────────────────────────────────────────────


class TestGenerate:
    def test_full_reduction(self, generator, sample_findings):
        report = generator.generate(sample_findings)
        assert [f.severity for f in report.findings] == [Severity.CRITICAL, Severity.HIGH]
        assert report.summary.total_findings == 2
        assert report.summary.by_severity == {
            "critical": 1,
            "high": 1,
            "medium": 0,
            "low": 0,
            "informational": 0,
        }
        assert report.risk_score == 45.1
        assert report.metadata["rawFindings"] == 4
        assert report.metadata["filteredOut"] == 2
        assert report.metadata["duplicatesMerged"] == 0

    def test_filter_can_be_disabled(self, sample_findings):
        report = ReportGenerator(apply_filter=False).generate(sample_findings)
        assert report.summary.total_findings == 4

    def test_empty_input(self, generator):
        report = generator.generate([])
        assert report.findings == ()
        assert report.risk_score == 0.0
        assert report.summary.total_findings == 0
        assert set(report.summary.by_severity) == {s.value for s in Severity}

    def test_ids_are_stable_and_keyed_on_location(self, generator):
        one = generator.generate([make_finding("Reentrancy", vulnerability_class="reentrancy")])
        two = generator.generate([make_finding("Reentrancy again", vulnerability_class="reentrancy")])
        assert one.findings[0].id == two.findings[0].id
        assert one.findings[0].id.startswith("XC-")

    def test_diagnostics_and_metadata_pass_through(self, generator):
        diag = Diagnostic(code=DiagnosticCode.PARSE_WARNING, message="bad", source="X.sol")
        report = generator.generate([], diagnostics=[diag], metadata={"units": 3})
        assert report.diagnostics == (diag,)
        assert report.metadata["units"] == 3

    def test_report_is_frozen(self, generator):
        report = generator.generate([])
        with pytest.raises(ValidationError):
            report.risk_score = 50.0

    def test_report_mappings_are_read_only(self, generator):
        report = generator.generate([], metadata={"cycles": [["A", "B"]], "units": 2})
        with pytest.raises(TypeError):
            report.metadata["units"] = 3
        with pytest.raises(TypeError):
            report.summary.by_severity["critical"] = 9
        assert report.metadata["cycles"] == (("A", "B"),)
        assert report.metadata_dict()["cycles"] == [["A", "B"]]
        assert report.model_dump()["summary"]["by_severity"]["critical"] == 0

    def test_caller_metadata_is_copied(self, generator):
        metadata = {"units": 1}
        report = generator.generate([], metadata=metadata)
        metadata["units"] = 99
        assert report.metadata["units"] == 1


class TestSerializers:
    def test_to_dict_uses_public_keys(self, generator, sample_findings):
        data = generator.generate(sample_findings).to_dict()
        assert set(data) == {"findings", "riskScore", "summary", "diagnostics"}
        assert data["summary"]["totalFindings"] == 2
        top = data["findings"][0]
        assert top["severity"] == "critical"
        assert top["economicImpact"] == "Total bridge funds at risk"
        assert top["location"] == "Bridge::receive (line 10)"
        assert "pocCode" not in top

    def test_json_is_deterministic(self, generator, sample_findings):
        first = generator.generate_json(generator.generate(sample_findings))
        second = generator.generate_json(generator.generate(sample_findings))
        assert first == second
        assert json.loads(first)["metadata"]["rawFindings"] == 4

    def test_sarif_structure(self, generator, sample_findings):
        sarif = json.loads(generator.generate_sarif(generator.generate(sample_findings), "9.9.9"))
        assert sarif["version"] == "2.1.0"
        run = sarif["runs"][0]
        assert run["tool"]["driver"]["name"] == "xcaudit"
        assert run["tool"]["driver"]["version"] == "9.9.9"
        assert [r["ruleId"] for r in run["results"]] == ["bridge", "reentrancy"]
        assert run["results"][0]["level"] == "error"
        logical = run["results"][1]["locations"][0]["logicalLocations"][0]
        assert logical["fullyQualifiedName"] == "Vault.withdraw"

    def test_html_render(self, generator, sample_findings):
        report = generator.generate(
            sample_findings,
            diagnostics=[Diagnostic(code=DiagnosticCode.PARSE_WARNING, message="skipped", source="X.sol")],
        )
        html = HTMLReportRenderer().render(report, project_name="Demo <Protocol>")
        assert "Demo &lt;Protocol&gt;" in html
        assert "Reentrancy in withdraw" in html
        assert "Total bridge funds at risk" in html
        assert str(report.risk_score) in html

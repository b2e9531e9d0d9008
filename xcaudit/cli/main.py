"""xcaudit CLI — local multi-contract security analysis.

Usage:
    xcaudit scan <path>              Analyze a contract file or project directory
    xcaudit config                   Show current configuration
    xcaudit --version                Print version

Examples:
    xcaudit scan ./contracts/
    xcaudit scan ./contracts/ --severity high --format sarif -o results.sarif
    xcaudit scan ./src --format html -o audit.html --max-depth 12
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from xcaudit.core.types import AuditReport, Severity, VulnerabilityFinding

VERSION = "0.1.0"


# ── Coloured output helpers ──────────────────────────────────────────────────

_RESET = "\033[0m"
_BOLD = "\033[1m"
_RED = "\033[91m"
_YELLOW = "\033[93m"
_GREEN = "\033[92m"
_CYAN = "\033[96m"
_DIM = "\033[2m"

_SEV_COLOR = {
    "critical": _RED,
    "high": "\033[38;5;208m",  # orange
    "medium": _YELLOW,
    "low": _CYAN,
    "informational": _DIM,
}


def _c(text: str, code: str) -> str:
    return f"{code}{text}{_RESET}"


# ── Banner ───────────────────────────────────────────────────────────────────

BANNER = rf"""
{_BOLD}{_CYAN}__  _____   __ _ _   _  __| (_) |_
\ \/ / __| / _` | | | |/ _` | | __|
 >  < (__ | (_| | |_| | (_| | | |_
/_/\_\___| \__,_|\__,_|\__,_|_|\__|{_RESET}
  {_DIM}Cross-contract security analyzer, v{VERSION}{_RESET}
"""


# ── CLI argument parser ─────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="xcaudit",
        description="xcaudit: multi-contract static security analysis",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="store_true", help="Print version and exit")
    parser.add_argument("--no-banner", action="store_true", help="Suppress the startup banner")
    parser.add_argument("--quiet", "-q", action="store_true", help="Minimal output")

    sub = parser.add_subparsers(dest="command")

    # ── scan ─────────────────────────────────────────────────────────────────
    scan_p = sub.add_parser("scan", help="Analyze contract files")
    scan_p.add_argument("path", help="Path to a contract file or project directory")
    scan_p.add_argument(
        "--severity",
        choices=["critical", "high", "medium", "low", "info"],
        help="Minimum severity to report",
    )
    scan_p.add_argument(
        "--format",
        "-f",
        default="table",
        choices=["table", "json", "sarif", "html"],
        help="Output format (default: table)",
    )
    scan_p.add_argument("--output", "-o", help="Write output to file instead of stdout")
    scan_p.add_argument("--max-findings", type=int, default=0, help="Limit findings shown (0=all)")
    scan_p.add_argument("--max-depth", type=int, help="Flow traversal depth bound")
    scan_p.add_argument("--max-files", type=int, help="Maximum number of files to analyze")
    scan_p.add_argument(
        "--no-filter",
        action="store_true",
        help="Keep vendored library paths and low-value findings",
    )
    # Also accepted after the subcommand; SUPPRESS keeps the global value.
    scan_p.add_argument(
        "--quiet", "-q", action="store_true", default=argparse.SUPPRESS, help="Minimal output"
    )
    scan_p.add_argument(
        "--no-banner", action="store_true", default=argparse.SUPPRESS, help="Suppress the startup banner"
    )

    # ── config ───────────────────────────────────────────────────────────────
    sub.add_parser("config", help="Show current configuration")

    return parser


# ── Scan command ─────────────────────────────────────────────────────────────


def _filter_findings(
    report: AuditReport, min_severity: str | None, max_count: int
) -> list[VulnerabilityFinding]:
    """Apply the severity floor and count limit; report order is kept."""
    findings = list(report.findings)
    if min_severity:
        floor = Severity.from_label(min_severity).rank
        findings = [f for f in findings if f.severity.rank >= floor]
    if max_count > 0:
        findings = findings[:max_count]
    return findings


def _print_table(findings: list[VulnerabilityFinding], report: AuditReport, quiet: bool = False) -> None:
    """Pretty-print findings as a coloured table."""
    if not quiet:
        score = report.risk_score
        print(f"\n{_BOLD}Analysis complete{_RESET}")
        print(
            f"  Risk: {_c(f'{score:.1f}/100', _GREEN if score < 25 else _YELLOW if score < 50 else _RED)}"
            f"  |  Contracts: {report.metadata.get('contracts', 0)}"
            f"  |  Files: {report.metadata.get('units', 0)}\n"
        )

    if not findings:
        print(_c("  ✓ No findings at the requested severity level.", _GREEN))
    else:
        by_sev: dict[str, int] = {}
        for f in findings:
            by_sev[f.severity.value] = by_sev.get(f.severity.value, 0) + 1

        summary_parts = []
        for sev in Severity:
            count = by_sev.get(sev.value, 0)
            if count > 0:
                summary_parts.append(f"{_SEV_COLOR.get(sev.value, '')}{count} {sev.value.upper()}{_RESET}")
        print(f"  {' · '.join(summary_parts)}\n")

        for i, f in enumerate(findings, 1):
            sev_col = _SEV_COLOR.get(f.severity.value, "")
            badge = _c(f" {f.severity.value.upper()} ", sev_col + _BOLD)
            title = _c(f.title, _BOLD)
            loc = f.primary_location
            where = _c(f"  {loc.label()}", _DIM) if loc else ""

            print(f"  {_DIM}{i:>3}.{_RESET} {badge} {title}{where}")

            if f.description and not quiet:
                desc = f.description[:200]
                if len(f.description) > 200:
                    desc += "…"
                print(f"       {_DIM}{desc}{_RESET}")
            if f.flags:
                print(f"       {_DIM}Flags: {', '.join(f.flags)}{_RESET}")
            print()

    if report.diagnostics and not quiet:
        print(f"  {_YELLOW}{len(report.diagnostics)} diagnostic(s){_RESET}")
        for d in report.diagnostics[:20]:
            source = f" {d.source}:" if d.source else ""
            print(f"    {_DIM}[{d.code.value}]{source} {d.message}{_RESET}")
        print()


def _run_scan(args: argparse.Namespace) -> int:
    """Execute an analysis and print or write the results."""
    from pydantic import ValidationError

    from xcaudit.core.config import Settings, get_settings
    from xcaudit.ingestion.local_files import load_source_units
    from xcaudit.pipeline.orchestrator import AuditPipeline
    from xcaudit.reports.generator import ReportGenerator
    from xcaudit.reports.html import HTMLReportRenderer

    settings = get_settings()
    overrides = {}
    if args.max_depth is not None:
        overrides["max_flow_depth"] = args.max_depth
    if args.max_files is not None:
        overrides["max_files"] = args.max_files
    if args.no_filter:
        overrides["apply_path_filter"] = False
    if overrides:
        try:
            settings = Settings.model_validate({**settings.model_dump(), **overrides})
        except ValidationError as exc:
            for error in exc.errors():
                field = ".".join(str(part) for part in error["loc"])
                print(_c(f"Error: invalid {field}: {error['msg']}", _RED), file=sys.stderr)
            return 1

    path = Path(args.path)
    try:
        units = load_source_units(path, max_files=settings.max_files, apply_filter=settings.apply_path_filter)
    except OSError as exc:
        print(_c(f"Error: {exc}", _RED), file=sys.stderr)
        return 1
    if not units:
        print(_c(f"Error: no contract sources found in '{path}'.", _RED), file=sys.stderr)
        return 1
    if not args.quiet:
        print(f"  Analyzing {_c(str(len(units)), _CYAN)} file(s) in {path}…", file=sys.stderr)

    pipeline = AuditPipeline(settings=settings, apply_filter=not args.no_filter)
    report = asyncio.run(pipeline.run_async(units))

    findings = _filter_findings(report, args.severity, args.max_findings)
    shown = report.model_copy(
        update={"findings": tuple(findings), "summary": ReportGenerator.summarize(findings)}
    )

    reporter = ReportGenerator()
    fmt = args.format
    if fmt == "table":
        _print_table(findings, report, quiet=args.quiet)
        output = None
    elif fmt == "json":
        output = reporter.generate_json(shown)
    elif fmt == "sarif":
        output = reporter.generate_sarif(shown, tool_version=VERSION)
    else:
        output = HTMLReportRenderer().render(shown, project_name=path.name or str(path))

    if output is not None:
        if args.output:
            try:
                Path(args.output).write_text(output, encoding="utf-8")
            except OSError as exc:
                print(_c(f"Error: cannot write {args.output}: {exc}", _RED), file=sys.stderr)
                return 1
            if not args.quiet:
                print(f"  Written to {_c(args.output, _CYAN)}", file=sys.stderr)
        else:
            print(output)
    return 0


# ── Config command ───────────────────────────────────────────────────────────


def _run_config() -> int:
    """Print current settings."""
    from xcaudit.core.config import get_settings

    s = get_settings()
    print(f"\n{_BOLD}xcaudit configuration{_RESET}\n")
    for field_name in sorted(type(s).model_fields.keys()):
        val = getattr(s, field_name, "")
        print(f"  {_DIM}{field_name}:{_RESET}  {val}")
    print()
    return 0


# ── Entrypoint ───────────────────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as exc:
        return 0 if exc.code in (0, None) else 1

    if args.version:
        print(f"xcaudit {VERSION}")
        return 0

    if not args.no_banner and not args.quiet:
        print(BANNER, file=sys.stderr)

    if not args.command:
        parser.print_help()
        return 0

    from xcaudit.core.config import get_settings
    from xcaudit.core.logging import setup_logging

    settings = get_settings()
    setup_logging(settings.app_env, "WARNING" if args.quiet else settings.log_level)

    if args.command == "config":
        return _run_config()

    if args.command == "scan":
        return _run_scan(args)

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())

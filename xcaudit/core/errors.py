"""Error taxonomy for the analysis engine.

Failures are contained at the unit or flow level and surface in the
report as diagnostics:

    ParseWarning            a source file could not be modeled
    UnresolvedDependency    a declared type has no match in the batch
    RecursionLimitExceeded  a flow traversal hit its depth bound
    InvalidInput            the batch itself is empty or malformed
"""

from __future__ import annotations

from enum import Enum


class DiagnosticCode(str, Enum):
    """Standard codes attached to report diagnostics."""

    PARSE_WARNING = "PARSE_WARNING"
    UNRESOLVED_DEPENDENCY = "UNRESOLVED_DEPENDENCY"
    RECURSION_LIMIT_EXCEEDED = "RECURSION_LIMIT_EXCEEDED"
    INVALID_INPUT = "INVALID_INPUT"
    DETECTOR_FAILED = "DETECTOR_FAILED"
    FILE_LIMIT_EXCEEDED = "FILE_LIMIT_EXCEEDED"
    DUPLICATE_CONTRACT = "DUPLICATE_CONTRACT"


class XcauditError(Exception):
    """Base class for engine errors."""

    code: DiagnosticCode = DiagnosticCode.INVALID_INPUT


class SourceParseError(XcauditError):
    """Raised by the extractor when a source text cannot be modeled."""

    code = DiagnosticCode.PARSE_WARNING

    def __init__(self, message: str, line: int | None = None) -> None:
        super().__init__(message)
        self.line = line


class RecursionLimitExceeded(XcauditError):
    """Raised when a flow traversal exceeds the configured depth bound."""

    code = DiagnosticCode.RECURSION_LIMIT_EXCEEDED

    def __init__(self, depth: int) -> None:
        super().__init__(f"flow traversal exceeded depth bound {depth}")
        self.depth = depth


class InvalidInput(XcauditError):
    """Raised when a batch is empty or contains malformed entries."""

    code = DiagnosticCode.INVALID_INPUT

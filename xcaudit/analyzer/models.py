"""Per-contract model produced by the extractor.

Plain frozen dataclasses: these structures live only for one analysis
run and are never serialized, so they stay out of the pydantic schemas
in ``xcaudit.core.types``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from xcaudit.core.errors import DiagnosticCode
from xcaudit.core.lexer import Token


class Visibility(str, Enum):
    PUBLIC = "public"
    EXTERNAL = "external"
    INTERNAL = "internal"
    PRIVATE = "private"


class EffectKind(str, Enum):
    EXTERNAL_CALL = "external_call"
    STATE_READ = "state_read"
    STATE_WRITE = "state_write"
    INTERNAL_CALL = "internal_call"


class CallKind(str, Enum):
    HIGH_LEVEL = "high_level"
    LOW_LEVEL = "low_level"
    DELEGATECALL = "delegatecall"
    STATICCALL = "staticcall"


@dataclass(frozen=True)
class StateVariable:
    name: str
    declared_type: str
    visibility: Visibility = Visibility.INTERNAL
    constant: bool = False
    immutable: bool = False
    initial_value: str = ""
    line: int = 0

    @property
    def is_mapping(self) -> bool:
        return self.declared_type.startswith("mapping")


@dataclass(frozen=True)
class Parameter:
    name: str
    type_name: str


VALUE_MOVING_MEMBERS = frozenset(
    {
        "transfer",
        "transferFrom",
        "safeTransfer",
        "safeTransferFrom",
        "safeTransferETH",
        "send",
        "sendValue",
        "functionCallWithValue",
    }
)


@dataclass(frozen=True)
class CallSite:
    """An external (cross-contract or low-level) call inside a function body."""

    callee_expression: str
    member: str
    kind: CallKind = CallKind.HIGH_LEVEL
    receiver: str = ""
    resolved_type: str | None = None
    target_variable: str | None = None
    sends_value: bool = False
    line: int = 0

    @property
    def moves_value(self) -> bool:
        return self.sends_value or self.member in VALUE_MOVING_MEMBERS


@dataclass(frozen=True)
class Effect:
    """One observable step of a function body, in source order.

    ``target`` is the state variable for reads and writes, the callee
    function name for internal calls, and unset for external calls,
    which reference ``call_index`` into ``FunctionModel.call_sites``.
    """

    kind: EffectKind
    target: str | None = None
    line: int = 0
    call_index: int | None = None


@dataclass(frozen=True)
class FunctionModel:
    name: str
    visibility: Visibility = Visibility.PUBLIC
    mutability: str = ""
    modifiers: frozenset[str] = frozenset()
    parameters: tuple[Parameter, ...] = ()
    call_sites: tuple[CallSite, ...] = ()
    effects: tuple[Effect, ...] = ()
    require_checks: tuple[str, ...] = ()
    body: tuple[Token, ...] = ()
    has_body: bool = False
    line: int = 0
    end_line: int = 0

    @property
    def is_entry_point(self) -> bool:
        return (
            self.has_body
            and self.visibility in (Visibility.PUBLIC, Visibility.EXTERNAL)
            and self.name != "constructor"
        )

    @property
    def is_mutating(self) -> bool:
        return self.mutability not in ("view", "pure")

    def identifiers(self) -> set[str]:
        return {tok.text for tok in self.body if tok.is_ident()}


@dataclass(frozen=True)
class ContractState:
    """Everything the extractor learned about one contract declaration."""

    contract_name: str
    kind: str = "contract"
    source_name: str = ""
    source_path: str = ""
    bases: tuple[str, ...] = ()
    state_variables: tuple[StateVariable, ...] = ()
    functions: tuple[FunctionModel, ...] = ()
    modifier_definitions: tuple[str, ...] = ()
    type_declarations: tuple[str, ...] = ()
    line: int = 0
    _var_index: dict[str, StateVariable] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        self._var_index.update({v.name: v for v in self.state_variables})

    @property
    def is_interface(self) -> bool:
        return self.kind == "interface"

    def variable(self, name: str) -> StateVariable | None:
        return self._var_index.get(name)

    def function(self, name: str) -> FunctionModel | None:
        """Return the implemented overload of ``name`` if any, else the first."""
        matches = [f for f in self.functions if f.name == name]
        for fn in matches:
            if fn.has_body:
                return fn
        return matches[0] if matches else None


@dataclass(frozen=True)
class ParseWarning:
    """Returned in place of a ContractState when a source cannot be modeled."""

    source_name: str
    message: str
    source_path: str = ""
    line: int | None = None
    code: DiagnosticCode = DiagnosticCode.PARSE_WARNING

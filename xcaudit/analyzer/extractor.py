"""State extractor: turns one source text into per-contract models.

Works on the shared token stream from ``xcaudit.core.lexer``. Every
declaration in a file (contract, interface, library) is modeled; no
other file is consulted, so units can be extracted in parallel.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Iterable

from xcaudit.analyzer.models import (
    CallKind,
    CallSite,
    ContractState,
    Effect,
    EffectKind,
    FunctionModel,
    Parameter,
    ParseWarning,
    StateVariable,
    Visibility,
)
from xcaudit.core.errors import DiagnosticCode, SourceParseError
from xcaudit.core.lexer import (
    ASSIGNMENT_OPERATORS,
    Token,
    TokenKind,
    find_closing,
    find_opening,
    render,
    split_top_level,
    tokenize,
)
from xcaudit.core.types import SourceUnit

logger = logging.getLogger(__name__)

DECLARATION_KINDS = ("contract", "interface", "library")

_ELEMENTARY_RE = re.compile(
    r"^(address|bool|string|byte|bytes\d*|u?int\d*|u?fixed[\dx]*)$"
)

_VISIBILITY_WORDS = {v.value: v for v in Visibility}
_MUTABILITY_WORDS = {"view", "pure", "payable", "constant"}
_LOCATION_WORDS = {"memory", "storage", "calldata", "indexed", "payable"}
_STATE_VAR_WORDS = set(_VISIBILITY_WORDS) | {
    "constant", "immutable", "override", "transient",
}

# Words that can open a statement but never a local declaration.
_STATEMENT_KEYWORDS = {
    "return", "emit", "delete", "revert", "else", "new", "throw", "assembly",
    "unchecked", "try", "catch", "do", "if", "while", "for", "require",
    "assert", "break", "continue", "returns",
}

# Roots whose members are builtins rather than external calls.
_BUILTIN_ROOTS = {"abi", "block", "tx", "super", "type", "msg", "bytes", "string"}

_LOW_LEVEL_KINDS = {
    "call": CallKind.LOW_LEVEL,
    "send": CallKind.LOW_LEVEL,
    "transfer": CallKind.LOW_LEVEL,
    "sendValue": CallKind.LOW_LEVEL,
    "functionCall": CallKind.LOW_LEVEL,
    "functionCallWithValue": CallKind.LOW_LEVEL,
    "delegatecall": CallKind.DELEGATECALL,
    "functionDelegateCall": CallKind.DELEGATECALL,
    "staticcall": CallKind.STATICCALL,
    "functionStaticCall": CallKind.STATICCALL,
}

# Libraries whose static helpers perform the external call themselves.
_TRANSFER_LIBRARIES = {"SafeERC20", "Address", "SafeTransferLib", "TransferHelper"}


# ── Type helpers ─────────────────────────────────────────────────────────────


def is_elementary_type(type_name: str) -> bool:
    return bool(_ELEMENTARY_RE.match(type_name.strip()))


def referenced_type_name(declared_type: str) -> str | None:
    """Return the user-defined type a declaration ultimately refers to.

    Mappings resolve to their value type and arrays to their element
    type. Elementary types (``address``, ``uint256``...) return None.
    """
    text = declared_type.strip()
    while text.startswith("mapping"):
        inner = text[text.find("(") + 1 : text.rfind(")")]
        depth = 0
        for i, ch in enumerate(inner):
            if ch == "(":
                depth += 1
            elif ch == ")":
                depth -= 1
            elif ch == "=" and depth == 0 and inner[i : i + 2] == "=>":
                text = inner[i + 2 :].strip()
                break
        else:
            return None
    text = re.sub(r"\[[^\]]*\]", "", text).strip()
    if not text:
        return None
    text = text.split()[0]
    if is_elementary_type(text):
        return None
    return text


def _is_address_type(type_name: str | None) -> bool:
    return bool(type_name) and type_name.split()[0] == "address"


def _scan_type(tokens: list[Token], start: int) -> int:
    """Return the index just past a type expression at ``start``, or -1."""
    n = len(tokens)
    if start >= n or not tokens[start].is_ident():
        return -1
    if tokens[start].text == "mapping":
        if start + 1 >= n or not tokens[start + 1].is_punct("("):
            return -1
        close = find_closing(tokens, start + 1)
        if close == -1:
            return -1
        end = close + 1
    else:
        end = start + 1
        while end + 1 < n and tokens[end].is_punct(".") and tokens[end + 1].is_ident():
            end += 2
        if tokens[start].text == "address" and end < n and tokens[end].is_ident("payable"):
            end += 1
    while end < n and tokens[end].is_punct("["):
        close = find_closing(tokens, end)
        if close == -1:
            return -1
        end = close + 1
    return end


def _parse_typed_name(tokens: list[Token], skip: set[str]) -> tuple[str, str, list[str]] | None:
    """Split ``Type [words...] name`` into (type, name, words)."""
    end = _scan_type(tokens, 0)
    if end == -1:
        return None
    words: list[str] = []
    depth = 0
    for tok in tokens[end:]:
        if tok.is_punct("("):
            depth += 1
        elif tok.is_punct(")"):
            depth -= 1
        elif depth == 0 and tok.is_ident():
            words.append(tok.text)
    names = [w for w in words if w not in skip]
    return render(tokens[:end]), (names[-1] if names else ""), words


def _statement_end(tokens: list[Token], start: int) -> int:
    """Index of the ``;`` ending the statement that contains ``start``."""
    depth = 0
    for i in range(start, len(tokens)):
        tok = tokens[i]
        if tok.kind is not TokenKind.PUNCT:
            continue
        if tok.text in "([{":
            depth += 1
        elif tok.text in ")]}":
            depth -= 1
            if depth < 0:
                return i
        elif tok.text == ";" and depth == 0:
            return i
    return len(tokens) - 1


# ── Declarations ─────────────────────────────────────────────────────────────


@dataclass
class _RawFunction:
    name: str
    params: list[Parameter]
    specifiers: list[Token]
    body: list[Token]
    has_body: bool
    line: int
    end_line: int


@dataclass
class _Members:
    state_variables: list[StateVariable] = field(default_factory=list)
    functions: list[_RawFunction] = field(default_factory=list)
    modifiers: list[_RawFunction] = field(default_factory=list)
    types: list[str] = field(default_factory=list)


def extract_contracts(unit: SourceUnit) -> list[ContractState]:
    """Model every contract, interface and library declared in ``unit``.

    Raises:
        SourceParseError: the text holds no declaration or is unbalanced.
    """
    if not unit.text.strip():
        raise SourceParseError("source text is empty")

    tokens = tokenize(unit.text)
    states: list[ContractState] = []
    i = 0
    n = len(tokens)
    while i < n:
        tok = tokens[i]
        if (
            tok.is_ident(*DECLARATION_KINDS)
            and i + 1 < n
            and tokens[i + 1].is_ident()
            and not (i > 0 and tokens[i - 1].is_punct("."))
        ):
            state, i = _parse_declaration(tokens, i, unit)
            states.append(state)
            continue
        if tok.is_punct("{"):
            close = find_closing(tokens, i)
            if close == -1:
                raise SourceParseError("unbalanced braces", tok.line)
            i = close + 1
            continue
        i += 1

    if not states:
        raise SourceParseError("no contract, interface or library declaration found")
    return states


def _parse_declaration(
    tokens: list[Token], start: int, unit: SourceUnit
) -> tuple[ContractState, int]:
    kind = tokens[start].text
    name_tok = tokens[start + 1]
    k = start + 2
    while k < len(tokens) and not tokens[k].is_punct("{"):
        if tokens[k].is_punct(";"):
            raise SourceParseError(f"{kind} {name_tok.text} has no body", name_tok.line)
        k += 1
    if k >= len(tokens):
        raise SourceParseError(f"{kind} {name_tok.text} has no body", name_tok.line)

    bases: list[str] = []
    header = tokens[start + 2 : k]
    if header and header[0].is_ident("is"):
        for part in split_top_level(header[1:]):
            name_end = next((j for j, t in enumerate(part) if t.is_punct("(")), len(part))
            bases.append(render(part[:name_end]))

    close = find_closing(tokens, k)
    if close == -1:
        raise SourceParseError(
            f"unbalanced braces in {kind} {name_tok.text}", name_tok.line
        )

    members = _parse_members(tokens[k + 1 : close], kind)
    state_vars = {v.name: v for v in members.state_variables}
    function_names = {f.name for f in members.functions}
    context = _BodyContext(
        contract_name=name_tok.text,
        state_vars=state_vars,
        function_names=function_names,
        type_names=set(members.types),
    )
    functions = tuple(_build_function(raw, kind, context) for raw in members.functions)

    state = ContractState(
        contract_name=name_tok.text,
        kind=kind,
        source_name=unit.name,
        source_path=unit.path,
        bases=tuple(bases),
        state_variables=tuple(members.state_variables),
        functions=functions,
        modifier_definitions=tuple(m.name for m in members.modifiers),
        type_declarations=tuple(members.types),
        line=name_tok.line,
    )
    return state, close + 1


def _parse_members(tokens: list[Token], kind: str) -> _Members:
    members = _Members()
    n = len(tokens)
    i = 0
    while i < n:
        tok = tokens[i]
        nxt = tokens[i + 1] if i + 1 < n else None

        if tok.is_ident("function", "modifier") or (
            tok.is_ident("constructor", "fallback", "receive") and nxt is not None and nxt.is_punct("(")
        ):
            raw, i = _parse_function(tokens, i)
            if tok.text == "modifier":
                members.modifiers.append(raw)
            else:
                members.functions.append(raw)
            continue

        if tok.is_ident("struct", "enum") and nxt is not None and nxt.is_ident():
            members.types.append(nxt.text)
            j = i + 2
            if j < n and tokens[j].is_punct("{"):
                close = find_closing(tokens, j)
                if close == -1:
                    raise SourceParseError(f"unbalanced {tok.text} {nxt.text}", tok.line)
                i = close + 1
                continue

        end = _statement_end(tokens, i)
        statement = tokens[i:end]

        if tok.is_ident("type") and nxt is not None and nxt.is_ident():
            members.types.append(nxt.text)
        elif not tok.is_ident("event", "error", "struct", "enum", "using"):
            var = parse_state_variable(statement)
            if var is not None:
                members.state_variables.append(var)
        i = end + 1
    return members


def parse_state_variable(statement: list[Token]) -> StateVariable | None:
    if not statement:
        return None
    eq = next(
        (j for j, t in enumerate(statement) if t.kind is TokenKind.OPERATOR and t.text == "="),
        None,
    )
    decl = statement[:eq] if eq is not None else statement
    parsed = _parse_typed_name(decl, _STATE_VAR_WORDS)
    if parsed is None:
        return None
    type_text, name, words = parsed
    if not name:
        return None
    visibility = next(
        (_VISIBILITY_WORDS[w] for w in words if w in _VISIBILITY_WORDS), Visibility.INTERNAL
    )
    return StateVariable(
        name=name,
        declared_type=type_text,
        visibility=visibility,
        constant="constant" in words,
        immutable="immutable" in words,
        initial_value=render(statement[eq + 1 :]) if eq is not None else "",
        line=statement[0].line,
    )


def _parse_params(tokens: list[Token]) -> list[Parameter]:
    params: list[Parameter] = []
    for part in split_top_level(tokens):
        parsed = _parse_typed_name(part, _LOCATION_WORDS)
        if parsed is not None:
            params.append(Parameter(name=parsed[1], type_name=parsed[0]))
    return params


def _parse_function(tokens: list[Token], start: int) -> tuple[_RawFunction, int]:
    n = len(tokens)
    keyword = tokens[start]
    p = start + 1
    if keyword.text in ("function", "modifier") and p < n and tokens[p].is_ident():
        name = tokens[p].text
        p += 1
    elif keyword.text == "function":
        name = "fallback"
    else:
        name = keyword.text

    params: list[Parameter] = []
    if p < n and tokens[p].is_punct("("):
        close = find_closing(tokens, p)
        if close == -1:
            raise SourceParseError(f"unbalanced parameter list in {name}", keyword.line)
        params = _parse_params(tokens[p + 1 : close])
        p = close + 1

    q = p
    while q < n and not (tokens[q].is_punct("{") or tokens[q].is_punct(";")):
        if tokens[q].is_punct("("):
            close = find_closing(tokens, q)
            if close == -1:
                raise SourceParseError(f"unbalanced specifiers in {name}", keyword.line)
            q = close
        q += 1
    if q >= n:
        raise SourceParseError(f"function {name} is not terminated", keyword.line)

    specifiers = tokens[p:q]
    if tokens[q].is_punct("{"):
        close = find_closing(tokens, q)
        if close == -1:
            raise SourceParseError(f"unbalanced body in {name}", keyword.line)
        raw = _RawFunction(
            name, params, specifiers, tokens[q + 1 : close], True, keyword.line, tokens[close].line
        )
        return raw, close + 1
    raw = _RawFunction(name, params, specifiers, [], False, keyword.line, tokens[q].line)
    return raw, q + 1


def _parse_specifiers(
    specifiers: list[Token], default: Visibility
) -> tuple[Visibility, str, frozenset[str]]:
    visibility = default
    mutability = ""
    modifiers: set[str] = set()
    i = 0
    while i < len(specifiers):
        tok = specifiers[i]
        has_args = i + 1 < len(specifiers) and specifiers[i + 1].is_punct("(")
        if tok.is_ident():
            if tok.text in _VISIBILITY_WORDS:
                visibility = _VISIBILITY_WORDS[tok.text]
            elif tok.text in _MUTABILITY_WORDS:
                mutability = "view" if tok.text == "constant" else tok.text
            elif tok.text not in ("virtual", "override", "returns"):
                modifiers.add(tok.text)
        if has_args:
            i = find_closing(specifiers, i + 1)
            if i == -1:
                break
        i += 1
    return visibility, mutability, frozenset(modifiers)


# ── Function bodies ──────────────────────────────────────────────────────────


@dataclass
class _BodyContext:
    contract_name: str
    state_vars: dict[str, StateVariable]
    function_names: set[str]
    type_names: set[str]


def _build_function(raw: _RawFunction, kind: str, ctx: _BodyContext) -> FunctionModel:
    if raw.name in ("fallback", "receive") or kind == "interface":
        default = Visibility.EXTERNAL
    else:
        default = Visibility.PUBLIC
    visibility, mutability, modifiers = _parse_specifiers(raw.specifiers, default)
    if raw.name == "receive":
        mutability = "payable"

    analysis = _BodyAnalyzer(raw, ctx).run() if raw.has_body else None
    return FunctionModel(
        name=raw.name,
        visibility=visibility,
        mutability=mutability,
        modifiers=modifiers,
        parameters=tuple(raw.params),
        call_sites=tuple(analysis.call_sites) if analysis else (),
        effects=tuple(analysis.effects) if analysis else (),
        require_checks=tuple(analysis.checks) if analysis else (),
        body=tuple(raw.body),
        has_body=raw.has_body,
        line=raw.line,
        end_line=raw.end_line,
    )


@dataclass
class _BodyResult:
    call_sites: list[CallSite]
    effects: list[Effect]
    checks: list[str]


class _BodyAnalyzer:
    """Single forward pass over a function body collecting effects."""

    def __init__(self, raw: _RawFunction, ctx: _BodyContext) -> None:
        self.raw = raw
        self.ctx = ctx
        self.body = raw.body
        self.locals = {p.name: p.type_name for p in raw.params if p.name}
        self.locals.update(_collect_locals(self.body))
        self.call_sites: list[CallSite] = []
        self.checks: list[str] = []
        self._effects: list[tuple[int, int, Effect]] = []

    def run(self) -> _BodyResult:
        body = self.body
        n = len(body)
        for k, tok in enumerate(body):
            nxt = body[k + 1] if k + 1 < n else None
            prev = body[k - 1] if k > 0 else None

            if tok.is_punct("."):
                self._member_call(k)
                continue
            if not tok.is_ident():
                continue

            if tok.text in ("require", "assert", "if") and nxt is not None and nxt.is_punct("("):
                close = find_closing(body, k + 1)
                if close != -1:
                    args = split_top_level(body[k + 2 : close])
                    if args:
                        self.checks.append(render(args[0]))

            if prev is not None and prev.is_punct("."):
                continue
            if nxt is not None and nxt.is_punct("(") and tok.text in self.ctx.function_names:
                if prev is None or not prev.is_ident("function", "new", "emit"):
                    close = find_closing(body, k + 1)
                    self._add(close if close != -1 else k, Effect(EffectKind.INTERNAL_CALL, tok.text, tok.line))
                continue
            if tok.text in self.ctx.state_vars and tok.text not in self.locals:
                self._state_access(k)

        ordered = [e for _, _, e in sorted(self._effects, key=lambda item: (item[0], item[1]))]
        return _BodyResult(self.call_sites, _collapse(ordered), self.checks)

    def _add(self, position: int, effect: Effect) -> None:
        self._effects.append((position, len(self._effects), effect))

    # ── state variables ──

    def _state_access(self, k: int) -> None:
        body = self.body
        n = len(body)
        tok = body[k]
        e = k + 1
        while e < n:
            if body[e].is_punct("["):
                close = find_closing(body, e)
                if close == -1:
                    break
                e = close + 1
            elif (
                body[e].is_punct(".")
                and e + 2 < n
                and body[e + 1].is_ident()
                and not body[e + 2].is_punct("(")
            ):
                e += 2
            else:
                break
        nxt = body[e] if e < n else None
        prev = body[k - 1] if k > 0 else None
        read = Effect(EffectKind.STATE_READ, tok.text, tok.line)
        write = Effect(EffectKind.STATE_WRITE, tok.text, tok.line)

        if nxt is not None and nxt.kind is TokenKind.OPERATOR and nxt.text in ASSIGNMENT_OPERATORS:
            if nxt.text != "=":
                self._add(k, read)
            self._add(_statement_end(body, k), write)
        elif (nxt is not None and nxt.text in ("++", "--")) or (
            prev is not None and prev.text in ("++", "--")
        ):
            self._add(k, read)
            self._add(k, write)
        elif prev is not None and prev.is_ident("delete"):
            self._add(k, write)
        elif (
            nxt is not None
            and nxt.is_punct(".")
            and e + 2 < n
            and body[e + 1].is_ident("push", "pop")
            and body[e + 2].is_punct("(")
        ):
            close = find_closing(body, e + 2)
            self._add(close if close != -1 else k, write)
        else:
            self._add(k, read)

    # ── external calls ──

    def _member_call(self, dot: int) -> None:
        body = self.body
        n = len(body)
        if dot + 2 >= n or not body[dot + 1].is_ident():
            return
        member = body[dot + 1].text
        cursor = dot + 2
        sends_value = False
        if body[cursor].is_punct("{"):
            close = find_closing(body, cursor)
            if close == -1 or close + 1 >= n:
                return
            sends_value = any(t.is_ident("value") for t in body[cursor:close])
            cursor = close + 1
        if not body[cursor].is_punct("("):
            return
        args_close = find_closing(body, cursor)
        if args_close == -1:
            return

        start = _receiver_start(body, dot)
        if start is None:
            return
        receiver = body[start:dot]
        classified = self._classify(receiver, member)
        if classified is None:
            return
        kind, resolved_type, target_variable = classified
        if member in ("send", "transfer", "sendValue", "functionCallWithValue") and kind is CallKind.LOW_LEVEL:
            sends_value = True

        site = CallSite(
            callee_expression=render(body[start:cursor]),
            member=member,
            kind=kind,
            receiver=render(receiver),
            resolved_type=resolved_type,
            target_variable=target_variable,
            sends_value=sends_value,
            line=body[dot + 1].line,
        )
        self.call_sites.append(site)
        self._add(
            args_close,
            Effect(EffectKind.EXTERNAL_CALL, None, site.line, len(self.call_sites) - 1),
        )

    def _classify(
        self, receiver: list[Token], member: str
    ) -> tuple[CallKind, str | None, str | None] | None:
        root = receiver[0]
        if not root.is_ident():
            return CallKind.HIGH_LEVEL, None, None
        name = root.text
        rendered = render(receiver)

        if name == "msg":
            if rendered == "msg.sender" and member in _LOW_LEVEL_KINDS:
                return _LOW_LEVEL_KINDS[member], None, None
            return None
        if name in _BUILTIN_ROOTS:
            return None
        if name == "this":
            return CallKind.HIGH_LEVEL, self.ctx.contract_name, None

        is_cast = (
            len(receiver) >= 3
            and receiver[1].is_punct("(")
            and find_closing(receiver, 1) == len(receiver) - 1
        )
        if is_cast:
            if name in ("address", "payable"):
                return _address_member(member)
            if is_elementary_type(name):
                return None
            if name[:1].isupper():
                return CallKind.HIGH_LEVEL, name, None
            return CallKind.HIGH_LEVEL, None, None

        declared = self.locals.get(name)
        target_variable = None
        if declared is None and name in self.ctx.state_vars:
            declared = self.ctx.state_vars[name].declared_type
            target_variable = name

        if declared is None:
            if name[:1].isupper():
                if name in _TRANSFER_LIBRARIES:
                    return CallKind.HIGH_LEVEL, None, None
                return None
            return CallKind.HIGH_LEVEL, None, None

        if any(t.is_punct(".") for t in receiver):
            return CallKind.HIGH_LEVEL, None, None
        element = declared if len(receiver) == 1 else _value_type(declared)
        if _is_address_type(element):
            return _address_member(member)
        base = referenced_type_name(element)
        if base is None or base in self.ctx.type_names:
            return None
        return CallKind.HIGH_LEVEL, base, target_variable


def _value_type(declared: str) -> str:
    """Innermost value type of a mapping/array declaration, as written."""
    text = declared
    while text.startswith("mapping"):
        idx = text.find("=>")
        if idx == -1:
            break
        text = text[idx + 2 : text.rfind(")")].strip()
    return re.sub(r"\[[^\]]*\]", "", text).strip()


def _address_member(member: str) -> tuple[CallKind, None, None] | None:
    if member in _LOW_LEVEL_KINDS:
        return _LOW_LEVEL_KINDS[member], None, None
    return None


def _receiver_start(body: list[Token], dot: int) -> int | None:
    j = dot - 1
    while j >= 0:
        tok = body[j]
        if tok.is_punct(")") or tok.is_punct("]"):
            opening = find_opening(body, j)
            if opening == -1:
                return None
            if opening > 0 and body[opening - 1].is_ident():
                j = opening - 1
                continue
            return opening
        if tok.is_ident():
            if j >= 2 and body[j - 1].is_punct("."):
                j -= 2
                continue
            return j
        break
    return None


def _collect_locals(body: list[Token]) -> dict[str, str]:
    found: dict[str, str] = {}
    n = len(body)
    for k, tok in enumerate(body):
        if not tok.is_ident() or tok.text in _STATEMENT_KEYWORDS:
            continue
        prev = body[k - 1] if k > 0 else None
        if prev is not None and not (prev.kind is TokenKind.PUNCT and prev.text in "{};(,"):
            continue
        type_end = _scan_type(body, k)
        if type_end == -1:
            continue
        end = type_end
        while end < n and body[end].is_ident(*_LOCATION_WORDS):
            end += 1
        if end + 1 >= n or not body[end].is_ident():
            continue
        after = body[end + 1]
        if (after.kind is TokenKind.OPERATOR and after.text == "=") or (
            after.kind is TokenKind.PUNCT and after.text in ";,)"
        ):
            found[body[end].text] = render(body[k:type_end])
    return found


def _collapse(effects: list[Effect]) -> list[Effect]:
    out: list[Effect] = []
    for effect in effects:
        if (
            out
            and effect.kind in (EffectKind.STATE_READ, EffectKind.STATE_WRITE)
            and out[-1].kind is effect.kind
            and out[-1].target == effect.target
        ):
            continue
        out.append(effect)
    return out


# ── Public API ───────────────────────────────────────────────────────────────


def _primary(states: list[ContractState], unit: SourceUnit) -> ContractState:
    stem = PurePosixPath(unit.path or unit.name).stem
    for state in states:
        if state.contract_name == stem:
            return state
    for state in states:
        if state.kind == "contract":
            return state
    return states[0]


def extract_state(unit: SourceUnit) -> ContractState | ParseWarning:
    """Model the primary declaration of one source unit.

    The primary declaration is the one named after the file, else the
    first ``contract``, else the first declaration of any kind.
    """
    result = extract_unit(unit)
    if isinstance(result, ParseWarning):
        return result
    return _primary(result, unit)


def extract_unit(unit: SourceUnit) -> list[ContractState] | ParseWarning:
    """Model every declaration of one unit, containing any failure."""
    try:
        return extract_contracts(unit)
    except SourceParseError as exc:
        logger.warning(
            "Skipping %s: %s", unit.name, exc, extra={"source": unit.name}
        )
        return ParseWarning(unit.name, str(exc), unit.path, exc.line)
    except Exception as exc:
        logger.exception("Extractor failed on %s", unit.name, extra={"source": unit.name})
        return ParseWarning(unit.name, f"extractor failed: {exc}", unit.path)


def merge_extractions(
    results: Iterable[tuple[SourceUnit, list[ContractState] | ParseWarning]],
) -> tuple[list[ContractState], list[ParseWarning]]:
    """Fold per-unit results into one batch, first declaration of a name wins."""
    states: list[ContractState] = []
    warnings: list[ParseWarning] = []
    seen: dict[str, str] = {}
    for unit, result in results:
        if isinstance(result, ParseWarning):
            warnings.append(result)
            continue
        for state in result:
            if state.contract_name in seen:
                logger.warning(
                    "Duplicate declaration %s in %s (first seen in %s)",
                    state.contract_name, unit.name, seen[state.contract_name],
                )
                warnings.append(
                    ParseWarning(
                        unit.name,
                        f"duplicate declaration of {state.contract_name}; "
                        f"keeping the one from {seen[state.contract_name]}",
                        unit.path,
                        state.line,
                        DiagnosticCode.DUPLICATE_CONTRACT,
                    )
                )
                continue
            seen[state.contract_name] = unit.name
            states.append(state)
    return states, warnings


def extract_batch(
    units: Iterable[SourceUnit],
) -> tuple[list[ContractState], list[ParseWarning]]:
    """Extract a whole batch sequentially."""
    return merge_extractions((unit, extract_unit(unit)) for unit in units)

"""Lightweight token model shared by the extractor and every detector.

This is deliberately not a full grammar: it splits contract source into
identifiers, literals, operators and punctuation, drops comments and
whitespace, and offers bracket matching so that callers can carve out
declarations, bodies and argument lists.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum, auto


# ── Token Types ──────────────────────────────────────────────────────────────


class TokenKind(Enum):
    IDENT = auto()
    NUMBER = auto()
    STRING = auto()
    OPERATOR = auto()
    PUNCT = auto()
    OTHER = auto()


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    text: str
    line: int
    offset: int

    def is_ident(self, *names: str) -> bool:
        return self.kind is TokenKind.IDENT and (not names or self.text in names)

    def is_punct(self, text: str) -> bool:
        return self.kind is TokenKind.PUNCT and self.text == text


_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<comment>//[^\n]*|/\*.*?(?:\*/|\Z))
  | (?P<string>(?:hex|unicode)?"(?:\\.|[^"\\\n])*"|(?:hex|unicode)?'(?:\\.|[^'\\\n])*')
  | (?P<number>0[xX][0-9a-fA-F_]+|\d[\d_]*(?:\.\d+)?(?:[eE]-?\d+)?)
  | (?P<ident>[A-Za-z_$][A-Za-z0-9_$]*)
  | (?P<operator>\*\*=|>>>=|<<=|>>=|>>>|\+\+|--|\*\*|==|!=|<=|>=|&&|\|\||<<|>>
                 |\+=|-=|\*=|/=|%=|&=|\|=|\^=|=>|->|[=+\-*/%!<>&|^~?:])
  | (?P<punct>[()\[\]{};,.])
  | (?P<other>.)
    """,
    re.VERBOSE | re.DOTALL,
)

_KINDS = {
    "string": TokenKind.STRING,
    "number": TokenKind.NUMBER,
    "ident": TokenKind.IDENT,
    "operator": TokenKind.OPERATOR,
    "punct": TokenKind.PUNCT,
    "other": TokenKind.OTHER,
}

_PAIRS = {"(": ")", "[": "]", "{": "}"}
_CLOSERS = {v: k for k, v in _PAIRS.items()}

ASSIGNMENT_OPERATORS = frozenset(
    {"=", "+=", "-=", "*=", "/=", "%=", "&=", "|=", "^=", "<<=", ">>=", ">>>=", "**="}
)


# ── Lexer ────────────────────────────────────────────────────────────────────


def tokenize(text: str) -> list[Token]:
    """Split source text into tokens, dropping whitespace and comments."""
    tokens: list[Token] = []
    line = 1
    for match in _TOKEN_RE.finditer(text):
        group = match.lastgroup
        value = match.group()
        if group not in ("ws", "comment"):
            tokens.append(Token(_KINDS[group], value, line, match.start()))
        line += value.count("\n")
    return tokens


def find_closing(tokens: list[Token], idx: int) -> int:
    """Return the index of the bracket closing ``tokens[idx]``, or -1."""
    opener = tokens[idx].text
    closer = _PAIRS.get(opener)
    if closer is None:
        return -1
    depth = 0
    for i in range(idx, len(tokens)):
        tok = tokens[i]
        if tok.kind is not TokenKind.PUNCT:
            continue
        if tok.text == opener:
            depth += 1
        elif tok.text == closer:
            depth -= 1
            if depth == 0:
                return i
    return -1


def find_opening(tokens: list[Token], idx: int) -> int:
    """Return the index of the bracket opening ``tokens[idx]``, or -1."""
    closer = tokens[idx].text
    opener = _CLOSERS.get(closer)
    if opener is None:
        return -1
    depth = 0
    for i in range(idx, -1, -1):
        tok = tokens[i]
        if tok.kind is not TokenKind.PUNCT:
            continue
        if tok.text == closer:
            depth += 1
        elif tok.text == opener:
            depth -= 1
            if depth == 0:
                return i
    return -1


def split_top_level(tokens: list[Token], separator: str = ",") -> list[list[Token]]:
    """Split a token run on ``separator`` occurring outside any brackets."""
    parts: list[list[Token]] = [[]]
    depth = 0
    for tok in tokens:
        if tok.kind is TokenKind.PUNCT:
            if tok.text in _PAIRS:
                depth += 1
            elif tok.text in _CLOSERS:
                depth -= 1
            elif tok.text == separator and depth == 0:
                parts.append([])
                continue
        parts[-1].append(tok)
    return [p for p in parts if p]


def render(tokens: list[Token]) -> str:
    """Render tokens back into compact, single-line source text."""
    out: list[str] = []
    prev: Token | None = None
    for tok in tokens:
        if prev is not None and _needs_space(prev, tok):
            out.append(" ")
        out.append(tok.text)
        prev = tok
    return "".join(out)


def _needs_space(prev: Token, tok: Token) -> bool:
    if tok.kind is TokenKind.PUNCT and tok.text in ").],;":
        return False
    if prev.kind is TokenKind.PUNCT and prev.text in "([.":
        return False
    if tok.kind is TokenKind.PUNCT and tok.text in "([" and prev.kind is TokenKind.IDENT:
        return False
    if prev.kind is TokenKind.OPERATOR and prev.text in ("!", "~"):
        return False
    if tok.kind is TokenKind.OPERATOR and tok.text in ("++", "--"):
        return False
    return True

"""Shell-like tokenization of user supplied argument strings."""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum

from buildorch.util.errors import UnterminatedQuoteError

_SPECIAL = frozenset({" ", "'", '"', "\\"})


class _State(Enum):
    DEFAULT = "default"
    SINGLE_QUOTE = "single"
    DOUBLE_QUOTE = "double"


def _escaped(state: _State, char: str) -> str:
    if state is _State.DOUBLE_QUOTE:
        return char
    if state is _State.SINGLE_QUOTE:
        return char if char in ("\\", "'") else "\\" + char
    return char if char in _SPECIAL else "\\" + char


def sanitize_arguments(arguments: str) -> str:
    """Flatten newlines and tabs so multi-line config values tokenize on spaces."""
    return arguments.replace("\n", " ").replace("\t", " ")


def tokenize(arguments: str) -> list[str]:
    """
    Split an argument string into an argument vector.

    Only spaces separate tokens. Backslash escapes the next character outside
    quotes and inside double quotes; inside single quotes it only escapes a
    backslash or a single quote. An escaped ordinary character outside quotes
    keeps its backslash.
    """
    tokens: list[str] = []
    current: list[str] = []
    state = _State.DEFAULT
    escape = False

    for char in arguments:
        if escape:
            escape = False
            current.append(_escaped(state, char))
            continue
        if char == "\\":
            escape = True
            continue

        if state is _State.SINGLE_QUOTE:
            if char == "'":
                state = _State.DEFAULT
            else:
                current.append(char)
        elif state is _State.DOUBLE_QUOTE:
            if char == '"':
                state = _State.DEFAULT
            else:
                current.append(char)
        elif char == "'":
            state = _State.SINGLE_QUOTE
        elif char == '"':
            state = _State.DOUBLE_QUOTE
        elif char == " ":
            if current:
                tokens.append("".join(current))
                current.clear()
        else:
            current.append(char)

    if escape:
        current.append("\\")
    if state is _State.SINGLE_QUOTE:
        raise UnterminatedQuoteError("'", arguments)
    if state is _State.DOUBLE_QUOTE:
        raise UnterminatedQuoteError('"', arguments)
    if current:
        tokens.append("".join(current))
    return tokens


def quote_argument(token: str) -> str:
    return "".join("\\" + char if char in _SPECIAL else char for char in token)


def join_arguments(tokens: Iterable[str]) -> str:
    """Inverse of :func:`tokenize` for non-empty tokens."""
    return " ".join(quote_argument(token) for token in tokens)

"""Ask the engine's own parser whether code is complete or assignable."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from rbridge.errors import ParseError
from rbridge.exchange import DataExchange
from rbridge.protocol import snippets
from rbridge.protocol.codec import CharacterVector, to_python

UNRECOVERABLE_PREFIX = "Unrecoverable parse error: "


@dataclass(frozen=True)
class Complete:
    pass


@dataclass(frozen=True)
class Incomplete:
    pass


@dataclass(frozen=True)
class Unrecoverable:
    line: int
    column: int
    text: str

    def describe(self) -> str:
        pointer = " " * (len(UNRECOVERABLE_PREFIX) + max(self.column - 1, 0))
        return f"{UNRECOVERABLE_PREFIX}{self.text}\n{pointer}^..."


ProbeResult = Complete | Incomplete | Unrecoverable

COMPLETE = Complete()
INCOMPLETE = Incomplete()


def split_lines(code: str | Sequence[str]) -> list[str]:
    if isinstance(code, str):
        return code.splitlines() or [""]
    lines = [line.rstrip("\r\n") for line in code]
    return lines or [""]


def classify_parse_failure(lines: Sequence[str], line: int, column: int, ends_with_separator: bool) -> ProbeResult:
    """Decide whether a failed parse could still succeed with more input.

    ``line``/``column`` locate the end of the last token the parser saw
    (1-based, 0 when nothing was parsed). A trailing ``;`` counts as one extra
    line, so a failure stopping at it is never mistaken for a continuation.
    """
    last = len(lines) + (1 if ends_with_separator else 0)
    if not 0 < line <= last or line > len(lines):
        return INCOMPLETE
    text = lines[line - 1]
    if line == last and not text[column:].strip():
        return INCOMPLETE
    return Unrecoverable(line, column, text)


class CompletenessOracle:
    """Probes are read-only: they only touch the bridge's own engine environment."""

    def __init__(self, exchange: DataExchange) -> None:
        self._exchange = exchange

    def is_complete(self, code: str | Sequence[str]) -> ProbeResult:
        lines = split_lines(code)
        if self._probe(lines, snippets.PARSEABLE) > 0:
            return COMPLETE
        position = to_python(self._exchange.fetch_value(snippets.last_parse_data()), singleton=True)
        line, column, separator = ([*(position or [])] + [0, 0, 0])[:3]  # type: ignore[misc]
        return classify_parse_failure(lines, int(line or 0), int(column or 0), bool(separator))

    def check_parseable(self, code: str | Sequence[str]) -> None:
        """Raise ``ParseError`` unless ``code`` is complete.

        On success the engine holds a function evaluating the parsed code.
        """
        result = self.is_complete(code)
        if isinstance(result, Unrecoverable):
            raise ParseError(result.describe(), result)
        if isinstance(result, Incomplete):
            raise ParseError(f"Parse error (incomplete input): {_joined(code)}", result)

    def is_assignable(self, name: str) -> bool:
        """Whether ``name <- value`` is a valid assignment in the engine."""
        status = self._probe([name], snippets.ASSIGNABLE)
        if status < 0:
            raise ParseError(f"Parse error: {name}")
        return status > 0

    def _probe(self, lines: list[str], check: str) -> int:
        self._exchange.send_value(snippets.ASSIGN_TEST_STRING, CharacterVector(tuple(lines)))
        return self._exchange.query_status(snippets.probe_call(check))


def _joined(code: str | Sequence[str]) -> str:
    return code if isinstance(code, str) else "\n".join(code)

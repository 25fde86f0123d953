"""Decoder profiles turning raw agent output into an :class:`ExecutionResult`.

Agents print newline-delimited JSON records. Two record dialects exist:

``stream-json``
    a terminal ``{"type": "result", "result": ..., "usage": {...}}`` record.
``opencode-json``
    incremental ``{"type": "text", "part": {"text": ...}}`` fragments and a
    ``{"type": "step_finish", "part": {"tokens": {...}, "cost": ...}}`` record.

Any line that is not a JSON object is skipped; decoding never raises.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Iterator, Protocol

NO_NARRATIVE = "Task completed"
COMPLETION_MARKER = "<promise>COMPLETE</promise>"


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Structured outcome of one agent attempt."""

    success: bool
    response_text: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float | None = None
    error_message: str | None = None

    @property
    def signals_completion(self) -> bool:
        return COMPLETION_MARKER in self.response_text


def iter_records(raw: str) -> Iterator[dict[str, Any]]:
    """Yield every line of ``raw`` that parses as a JSON object."""

    for line in raw.splitlines():
        stripped = line.strip()
        if not stripped.startswith("{"):
            continue
        try:
            record = json.loads(stripped)
        except json.JSONDecodeError:
            continue
        if isinstance(record, dict):
            yield record


def detect_error(raw: str) -> str | None:
    """Return the message of the first ``error`` record, if any."""

    for record in iter_records(raw):
        if record.get("type") != "error":
            continue
        error = record.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        if record.get("message"):
            return str(record["message"])
        return "Unknown error"
    return None


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(value, 0)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return 0


def _as_cost(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        cost = float(value)
    except (TypeError, ValueError):
        return None
    return cost if cost > 0 else None


class OutputDecoder(Protocol):
    """Shared contract for decoder profiles."""

    name: str

    def parse_result(self, raw: str) -> ExecutionResult:
        ...


def _finish(raw: str, text: str, input_tokens: int, output_tokens: int, cost: float | None) -> ExecutionResult:
    error = detect_error(raw)
    return ExecutionResult(
        success=bool(raw.strip()) and error is None,
        response_text=text or NO_NARRATIVE,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cost=cost,
        error_message=error,
    )


class StreamJsonDecoder:
    """Terminal ``result`` record dialect; the last result record wins."""

    name = "stream-json"

    def parse_result(self, raw: str) -> ExecutionResult:
        text = ""
        input_tokens = output_tokens = 0
        for record in iter_records(raw):
            if record.get("type") != "result":
                continue
            result = record.get("result")
            text = result if isinstance(result, str) else ""
            usage = record.get("usage") if isinstance(record.get("usage"), dict) else {}
            input_tokens = _as_int(usage.get("input_tokens"))
            output_tokens = _as_int(usage.get("output_tokens"))
        return _finish(raw, text, input_tokens, output_tokens, None)


class OpenCodeJsonDecoder:
    """Text fragments plus a final ``step_finish`` usage record."""

    name = "opencode-json"

    def parse_result(self, raw: str) -> ExecutionResult:
        fragments: list[str] = []
        input_tokens = output_tokens = 0
        cost: float | None = None
        for record in iter_records(raw):
            part = record.get("part") if isinstance(record.get("part"), dict) else {}
            kind = record.get("type")
            if kind == "text":
                fragment = part.get("text")
                if isinstance(fragment, str):
                    fragments.append(fragment)
            elif kind == "step_finish":
                tokens = part.get("tokens") if isinstance(part.get("tokens"), dict) else {}
                input_tokens = _as_int(tokens.get("input"))
                output_tokens = _as_int(tokens.get("output"))
                cost = _as_cost(part.get("cost"))
        return _finish(raw, "".join(fragments), input_tokens, output_tokens, cost)


class AutoDecoder:
    """Prefer a terminal result record, fall back to text fragments."""

    name = "auto"

    def parse_result(self, raw: str) -> ExecutionResult:
        if any(record.get("type") == "result" for record in iter_records(raw)):
            return StreamJsonDecoder().parse_result(raw)
        return OpenCodeJsonDecoder().parse_result(raw)


DECODERS: dict[str, OutputDecoder] = {
    decoder.name: decoder
    for decoder in (StreamJsonDecoder(), OpenCodeJsonDecoder(), AutoDecoder())
}


def get_decoder(name: str) -> OutputDecoder:
    try:
        return DECODERS[name]
    except KeyError as exc:
        raise ValueError(
            f"Unknown decoder profile '{name}'. Use one of {sorted(DECODERS)}"
        ) from exc


def parse_result(raw: str, profile: str = "auto") -> ExecutionResult:
    """Decode ``raw`` agent output with the named profile."""

    return get_decoder(profile).parse_result(raw)


__all__ = [
    "COMPLETION_MARKER",
    "DECODERS",
    "NO_NARRATIVE",
    "AutoDecoder",
    "ExecutionResult",
    "OpenCodeJsonDecoder",
    "OutputDecoder",
    "StreamJsonDecoder",
    "detect_error",
    "get_decoder",
    "iter_records",
    "parse_result",
]

"""Tolerant parsing of the result field posted by the automation engine.

The engine sometimes sends the result as a string that is almost JSON: single
quoted keys and values, unescaped double quotes inside values, or Python
literals (True/False/None). parse_loose_json never raises; it degrades through:

1. strict JSON
2. quote repair, then JSON
3. regex extraction of error_message / error_code
4. the whole string as the error message
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Optional

import structlog

from blumpo.models.generation_job import JobStatus
from blumpo.services.exceptions import MalformedCallbackPayload

logger = structlog.get_logger()

_CLOSING_LOOKAHEAD = frozenset("},:]")
_PYTHON_LITERALS = {"True": "true", "False": "false", "None": "null"}

_EXTRACT_TEMPLATE = r"""['"]?{field}['"]?\s*[:=]\s*(['"])(.*?)\1\s*(?:[,}}]|$)"""
ERROR_MESSAGE_RE = re.compile(
    _EXTRACT_TEMPLATE.format(field="error_message"), re.DOTALL | re.IGNORECASE
)
ERROR_CODE_RE = re.compile(_EXTRACT_TEMPLATE.format(field="error_code"), re.DOTALL | re.IGNORECASE)

SUCCESS_STATUSES = frozenset({"completed", "done"})
CANCELED_STATUSES = frozenset({"canceled", "cancelled"})


@dataclass(frozen=True)
class LooseJsonResult:
    """Outcome of parse_loose_json.

    Attributes:
        ok: True if a JSON value was recovered (strict or repaired)
        value: Parsed value, or a dict of extracted fields when ok is False
        error_message: Best-effort failure reason when ok is False
        error_code: Extracted error code, if any
        strategy: Which step produced the result (strict, repaired, extracted, raw)
    """

    ok: bool
    value: Any = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    strategy: str = "strict"


def _is_closing_quote(text: str, index: int) -> bool:
    """A quote closes its string when the next non-blank char ends a JSON value."""
    j = index + 1
    while j < len(text) and text[j].isspace():
        j += 1
    return j == len(text) or text[j] in _CLOSING_LOOKAHEAD


def repair_quotes(text: str) -> str:
    """Rewrite almost-JSON into JSON.

    Strings opened with either quote are re-emitted double quoted. Inside a
    string, the opening quote char only closes it when followed by one of
    ``} , : ]`` or end of input (whitespace skipped); any other occurrence is
    part of the value. Bare Python literals outside strings become JSON literals.
    """
    out: list[str] = []
    quote: Optional[str] = None
    i = 0
    n = len(text)

    while i < n:
        ch = text[i]

        if quote is None:
            if ch in ("'", '"'):
                quote = ch
                out.append('"')
                i += 1
                continue
            if ch.isalpha():
                j = i
                while j < n and (text[j].isalnum() or text[j] == "_"):
                    j += 1
                word = text[i:j]
                out.append(_PYTHON_LITERALS.get(word, word))
                i = j
                continue
            out.append(ch)
            i += 1
            continue

        if ch == "\\" and i + 1 < n:
            nxt = text[i + 1]
            # \' is not a JSON escape
            out.append("'" if nxt == "'" else ch + nxt)
            i += 2
            continue

        if ch == quote and _is_closing_quote(text, i):
            out.append('"')
            quote = None
        elif ch == '"':
            out.append('\\"')
        elif ch == "\n":
            out.append("\\n")
        elif ch == "\r":
            out.append("\\r")
        elif ch == "\t":
            out.append("\\t")
        else:
            out.append(ch)
        i += 1

    return "".join(out)


def _extract(pattern: re.Pattern, text: str) -> Optional[str]:
    match = pattern.search(text)
    return match.group(2) if match else None


def parse_loose_json(text: str) -> LooseJsonResult:
    """Parse a JSON-or-almost-JSON string without ever raising.

    Examples:
        >>> parse_loose_json('{"ok": true}').value
        {'ok': True}
        >>> parse_loose_json("{'ok': false, 'error_message': 'bad \\"quoted\\" value'}").value
        {'ok': False, 'error_message': 'bad "quoted" value'}
    """
    try:
        return LooseJsonResult(ok=True, value=json.loads(text), strategy="strict")
    except ValueError as e:
        strict_error = str(e)

    try:
        value = json.loads(repair_quotes(text))
    except ValueError as e:
        error = MalformedCallbackPayload(f"{strict_error}; after repair: {e}")
        logger.warning(
            "callback.result_unparseable",
            error=str(error),
            error_type=type(error).__name__,
            preview=text[:200],
        )
    else:
        logger.info("callback.result_repaired", error=strict_error)
        return LooseJsonResult(ok=True, value=value, strategy="repaired")

    error_message = _extract(ERROR_MESSAGE_RE, text)
    error_code = _extract(ERROR_CODE_RE, text)
    if error_message is not None:
        value = {"error_message": error_message}
        if error_code is not None:
            value["error_code"] = error_code
        return LooseJsonResult(
            ok=False,
            value=value,
            error_message=error_message,
            error_code=error_code,
            strategy="extracted",
        )

    stripped = text.strip()
    return LooseJsonResult(
        ok=False,
        value=None,
        error_message=stripped or None,
        error_code=error_code,
        strategy="raw",
    )


def map_callback_status(status: Optional[str], ok: Optional[bool]) -> JobStatus:
    """Map the engine's status and ok flag to a terminal job status.

    Unrecognized combinations map to FAILED, never to SUCCEEDED.
    """
    reported = (status or "").strip().lower()

    if reported in SUCCESS_STATUSES and ok is True:
        return JobStatus.SUCCEEDED
    if reported == "failed" or ok is False:
        return JobStatus.FAILED
    if reported in CANCELED_STATUSES:
        return JobStatus.CANCELED
    if reported in SUCCESS_STATUSES:
        return JobStatus.SUCCEEDED
    return JobStatus.FAILED

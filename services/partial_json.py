"""Best-effort parsing of truncated JSON text.

A fenced JSON block arrives one token at a time, so most of the time the
text is cut off mid-value.  ``repair_json`` closes what is open (string,
arrays, objects) so a strict parser can produce a preview value.  This is a
heuristic, not a grammar: the repaired text may still fail to parse, and a
value that does parse may not be what the model eventually produces.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Literal

ParseState = Literal["partial", "complete", "error"]


@dataclass(frozen=True)
class PartialJsonResult:
    """Outcome of ``parse_partial_json``.

    ``value`` is ``None`` when nothing could be parsed (``state`` is then
    ``"partial"`` for empty input or ``"error"`` when repair failed).
    """

    value: Any
    state: ParseState


def repair_json(text: str) -> str:
    """Close an unterminated string, then open brackets, then open braces.

    Quotes toggle string state unless escaped; brace/bracket depth is only
    counted outside strings.  When the text stops right after a colon inside
    an object, a ``null`` placeholder is added for the missing value.
    """
    result = text
    open_braces = 0
    open_brackets = 0
    in_string = False
    escape_next = False

    for char in result:
        if escape_next:
            escape_next = False
            continue
        if char == "\\":
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "{":
            open_braces += 1
        elif char == "}":
            open_braces -= 1
        elif char == "[":
            open_brackets += 1
        elif char == "]":
            open_brackets -= 1

    if in_string:
        result += '"'

    stripped = result.strip()
    last_char = stripped[-1:] if stripped else ""
    if last_char not in ("}", "]", '"', ",") and open_braces > 0 and ":" in result:
        after_colon = result[result.rfind(":") + 1 :].strip()
        if not after_colon:
            result += "null"

    result += "]" * max(open_brackets, 0)
    result += "}" * max(open_braces, 0)
    return result


def parse_partial_json(text: str) -> PartialJsonResult:
    """Parse ``text`` strictly, falling back to a repaired copy."""
    trimmed = text.strip()
    if not trimmed:
        return PartialJsonResult(value=None, state="partial")

    try:
        return PartialJsonResult(value=json.loads(trimmed), state="complete")
    except ValueError:
        pass

    try:
        return PartialJsonResult(value=json.loads(repair_json(trimmed)), state="partial")
    except ValueError:
        return PartialJsonResult(value=None, state="error")

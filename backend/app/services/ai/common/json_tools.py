"""Pull a JSON object out of free-form model output."""

from __future__ import annotations

import json
import logging
import re

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)


def strip_code_fence(text: str) -> str:
    """Remove a surrounding markdown code fence, if the whole text is fenced."""
    stripped = text.strip()
    match = _FENCE_RE.match(stripped)
    return match.group(1) if match else stripped


def extract_json_object(text: str) -> dict | None:
    """Return the first JSON object found in *text*, or ``None``.

    Tries, in order: the fenced-or-bare text as a whole, then every ``{``
    position with string-aware brace balancing. Arrays and scalars are
    rejected because a receipt is always an object.
    """
    if not text or not text.strip():
        return None

    candidate = strip_code_fence(text)
    try:
        parsed = json.loads(candidate)
    except ValueError:
        parsed = None
    if isinstance(parsed, dict):
        return parsed

    start = candidate.find("{")
    while start != -1:
        found = _balanced_object(candidate, start)
        if found is not None:
            return found
        start = candidate.find("{", start + 1)

    logger.debug("No JSON object in model output: %s", text[:200])
    return None


def _balanced_object(text: str, start: int) -> dict | None:
    depth = 0
    in_string = False
    escape = False

    for i in range(start, len(text)):
        ch = text[i]
        if escape:
            escape = False
        elif ch == "\\" and in_string:
            escape = True
        elif ch == '"':
            in_string = not in_string
        elif in_string:
            continue
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                try:
                    parsed = json.loads(text[start : i + 1])
                except ValueError:
                    return None
                return parsed if isinstance(parsed, dict) else None
    return None

"""Locate a JSON plan object inside raw generated text."""

import json
import re
from typing import Optional

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?```")
_BARE_OBJECT = re.compile(r"\{[\s\S]*\}")


def _parse_object(candidate: str) -> Optional[dict]:
    try:
        value = json.loads(candidate)
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def extract_plan(raw_text: Optional[str]) -> Optional[dict]:
    """
    Return the first parseable JSON object in `raw_text`, or None.

    A fenced code block is preferred; failing that, the widest `{...}` span
    is tried.
    """
    if not raw_text:
        return None

    fenced = _FENCED_BLOCK.search(raw_text)
    if fenced:
        parsed = _parse_object(fenced.group(1).strip())
        if parsed is not None:
            return parsed

    bare = _BARE_OBJECT.search(raw_text)
    if bare:
        return _parse_object(bare.group(0))

    return None

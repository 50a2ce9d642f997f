from __future__ import annotations

import json
import re
from typing import Any

from .errors import ExtractionFailedError

FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
PREVIEW_CHARS = 80


def extract_json(text: str) -> Any:
    """Recover a JSON value from raw model output.

    Tried in order: the whole text, the first fenced code block, then the
    span from the first ``{`` to the last ``}``.
    """
    if not isinstance(text, str):
        raise ExtractionFailedError(
            f"Could not parse JSON from response: expected text, got {type(text).__name__}"
        )

    stripped = text.strip()
    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        pass

    fenced = FENCED_BLOCK.search(stripped)
    if fenced:
        try:
            return json.loads(fenced.group(1).strip())
        except json.JSONDecodeError:
            pass

    start = stripped.find("{")
    end = stripped.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(stripped[start : end + 1])
        except json.JSONDecodeError:
            pass

    raise ExtractionFailedError(
        f"Could not parse JSON from response ({_describe_shape(stripped)})",
        text_length=len(text),
        preview=stripped[:PREVIEW_CHARS],
    )


def _describe_shape(text: str) -> str:
    if not text:
        return "empty text"
    has_fence = "```" in text
    has_braces = "{" in text and "}" in text
    preview = text[:PREVIEW_CHARS].replace("\n", " ")
    suffix = "..." if len(text) > PREVIEW_CHARS else ""
    return (
        f"{len(text)} chars, fenced={'yes' if has_fence else 'no'}, "
        f"braces={'yes' if has_braces else 'no'}, starts with {preview!r}{suffix}"
    )

"""Lenient parsing of JSON emitted by generative models."""

import json
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")
_NA_RE = re.compile(r'(?<=[:\[,])(\s*)"?N/A"?(?=\s*[,\}\]])')
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_SMART_QUOTES = str.maketrans({"“": '"', "”": '"', "‘": "'", "’": "'"})


def strip_code_fence(text: str) -> str:
    return _FENCE_RE.sub("", text.strip()).strip()


def clean_model_json(text: str) -> str:
    """Apply the repairs models most often need: fences, smart quotes, N/A, trailing commas."""
    cleaned = strip_code_fence(text).translate(_SMART_QUOTES)
    cleaned = _NA_RE.sub(r"\1null", cleaned)
    return _TRAILING_COMMA_RE.sub(r"\1", cleaned)


def parse_model_output(text: str) -> Any:
    """Parse *text* as JSON, repairing it once if needed.

    Returns the parsed value, or the cleaned text itself when even the repaired
    text is not valid JSON; callers store either form.
    """
    raw = strip_code_fence(text)
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        pass
    cleaned = clean_model_json(text)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as exc:
        logger.warning("model output is not valid JSON after repair (%s); storing text", exc)
        return cleaned

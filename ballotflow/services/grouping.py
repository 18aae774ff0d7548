"""Split spreadsheet rows into per-election batches."""

import json
import math
import re
from collections.abc import Iterable, Mapping
from typing import Any

from ballotflow.schemas.payloads import RawRow
from ballotflow.services.types import BatchGroup

ANALYZE_PROMPT_OVERHEAD = 1_200
# Structure prompts also carry the analysis hand-off.
STRUCTURE_PROMPT_OVERHEAD = 1_600
CHARS_PER_TOKEN = 4

_WS_RE = re.compile(r"\s+")


def _norm(value: str) -> str:
    return _WS_RE.sub(" ", value).strip().lower()


def normalize_group_key(row: RawRow) -> str:
    """Return the ``city|state|position`` key rows are batched under."""
    position = _norm(row.position) or "unknown-position"
    return f"{_norm(row.municipality)}|{_norm(row.state)}|{position}"


def estimate_tokens(rows: list[dict[str, Any]], overhead: int) -> int:
    chars = len(json.dumps(rows, separators=(",", ":"), ensure_ascii=False))
    return math.ceil((chars + overhead) / CHARS_PER_TOKEN)


def group_rows(rows: Iterable[Mapping[str, Any] | RawRow]) -> list[BatchGroup]:
    """Group rows by election and order the groups by state, municipality, position.

    Pure and deterministic: the same rows always yield the same groups in the
    same order, with rows kept in input order inside each group.
    """
    groups: dict[str, BatchGroup] = {}
    for item in rows:
        row = item if isinstance(item, RawRow) else RawRow.model_validate(dict(item))
        key = normalize_group_key(row)
        group = groups.get(key)
        if group is None:
            group = BatchGroup(
                key=key,
                municipality=row.municipality,
                state=row.state,
                position=_WS_RE.sub(" ", row.position).strip(),
                rows=[],
                estimated_analyze_tokens=0,
                estimated_structure_tokens=0,
            )
            groups[key] = group
        group["rows"].append(row.to_stored())

    for group in groups.values():
        group["estimated_analyze_tokens"] = estimate_tokens(group["rows"], ANALYZE_PROMPT_OVERHEAD)
        group["estimated_structure_tokens"] = estimate_tokens(
            group["rows"], STRUCTURE_PROMPT_OVERHEAD
        )

    return sorted(groups.values(), key=lambda g: (g["state"], g["municipality"], g["position"]))

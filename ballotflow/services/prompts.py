"""Prompt texts and the structure response schema, loaded once at startup."""

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from ballotflow.config import Settings
from ballotflow.services.errors import ConfigurationError

logger = logging.getLogger(__name__)


class PromptBundle(BaseModel):
    analyze: str
    structure: str
    structure_schema: dict[str, Any]


def _read(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"cannot read prompt file {path}: {exc}") from exc


def load_prompts(settings: Settings) -> PromptBundle:
    schema_text = _read(settings.structure_schema_path)
    try:
        schema = json.loads(schema_text)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(
            f"structure schema {settings.structure_schema_path} is not valid JSON: {exc}"
        ) from exc
    bundle = PromptBundle(
        analyze=_read(settings.analyze_prompt_path),
        structure=_read(settings.structure_prompt_path),
        structure_schema=schema,
    )
    logger.info(
        "loaded prompts (analyze %d chars, structure %d chars)",
        len(bundle.analyze),
        len(bundle.structure),
    )
    return bundle

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, Tuple

from advisor.services.settings import settings

logger = logging.getLogger(__name__)

DEFAULT_INSTRUCTION_PATH = (
    Path(__file__).resolve().parent.parent / "prompts" / "system_instruction.json"
)


@dataclass(frozen=True)
class SystemInstruction:
    """The persona, rules and product knowledge sent with every model call."""

    parts: Tuple[str, ...]

    def as_message(self) -> dict:
        return {
            "role": "system",
            "content": [{"type": "text", "text": part} for part in self.parts],
        }


def load_system_instruction(path: str | Path | None = None) -> SystemInstruction:
    """Read the instruction file and expand the product placeholders in its parts.

    Parts reference products with ``str.format`` item syntax, e.g.
    ``{MBI[name]}``. Product descriptions may be stored as a list of lines.
    """
    source = Path(path) if path else DEFAULT_INSTRUCTION_PATH
    with source.open(encoding="utf-8") as handle:
        raw = json.load(handle)

    catalogue: Dict[str, Dict[str, str]] = {}
    for key, entry in (raw.get("products") or {}).items():
        description = entry.get("description", "")
        if isinstance(description, list):
            description = "\n".join(description)
        catalogue[key] = {
            "name": entry["name"],
            "description": description,
            "link": entry.get("link", ""),
        }

    parts = tuple(str(part).format(**catalogue) for part in raw.get("parts") or [])
    if not parts:
        raise ValueError(f"System instruction file {source} does not define any parts")

    logger.info(
        "Loaded system instruction from %s (%d part(s), %d product(s))",
        source,
        len(parts),
        len(catalogue),
    )
    return SystemInstruction(parts=parts)


@lru_cache(maxsize=1)
def get_system_instruction() -> SystemInstruction:
    return load_system_instruction(settings.system_instruction_path)

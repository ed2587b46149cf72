"""
Text extraction for streamed model replies.

Every chunk of a streamed chat completion is classified into one of a closed
set of shapes, tried in a fixed order:

1. ``TextFragment``  - ``choices[0].delta.content`` is a plain string.
2. ``PartsFragment`` - the text is nested in a list of parts, either as
   ``delta.content = [{"type": "text", "text": ...}]`` or as an extra
   ``delta.parts = [{"text": ...}]`` field, which degraded Gemini responses use.
3. ``EmptyFragment`` - a chunk that carries no text by design: the terminal
   chunk with a ``finish_reason``, a role-only opener or a usage-only trailer.
4. ``UnknownFragment`` - anything else. It contributes no text and is logged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Tuple, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TextFragment:
    text: str


@dataclass(frozen=True)
class PartsFragment:
    parts: Tuple[str, ...]

    @property
    def text(self) -> str:
        return "".join(self.parts)


@dataclass(frozen=True)
class EmptyFragment:
    reason: str

    @property
    def text(self) -> str:
        return ""


@dataclass(frozen=True)
class UnknownFragment:
    raw: Any

    @property
    def text(self) -> str:
        return ""


Fragment = Union[TextFragment, PartsFragment, EmptyFragment, UnknownFragment]


def classify_fragment(chunk: Any) -> Fragment:
    choices = _get(chunk, "choices")
    if not choices:
        if _get(chunk, "usage") is not None:
            return EmptyFragment(reason="usage")
        return UnknownFragment(raw=chunk)

    choice = choices[0]
    delta = _get(choice, "delta")
    content = _get(delta, "content") if delta is not None else None

    if isinstance(content, str):
        return TextFragment(text=content)

    parts = _nested_parts(delta, content)
    if parts is not None:
        return PartsFragment(parts=parts)

    finish_reason = _get(choice, "finish_reason")
    if finish_reason:
        return EmptyFragment(reason=str(finish_reason))
    if delta is not None and content is None and _get(delta, "role"):
        return EmptyFragment(reason="role")

    return UnknownFragment(raw=chunk)


def fragment_text(chunk: Any) -> str:
    """Return the text carried by ``chunk``; unknown shapes yield ``""``."""
    fragment = classify_fragment(chunk)
    if isinstance(fragment, UnknownFragment):
        logger.warning(
            "Unexpected fragment shape in model stream, contributing no text: %r",
            fragment.raw,
        )
    return fragment.text


def _nested_parts(delta: Any, content: Any) -> Optional[Tuple[str, ...]]:
    candidates = content if isinstance(content, list) else _get(delta, "parts")
    if not isinstance(candidates, (list, tuple)):
        return None

    texts = []
    for part in candidates:
        text = part if isinstance(part, str) else _get(part, "text")
        if isinstance(text, str):
            texts.append(text)
    if not texts:
        return None
    return tuple(texts)


def _get(value: Any, name: str) -> Any:
    if value is None:
        return None
    if isinstance(value, dict):
        return value.get(name)
    return getattr(value, name, None)

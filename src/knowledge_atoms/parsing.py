"""Decoding of the extraction model's JSON reply into candidate atoms.

Models asked for "a JSON object with an atoms array" answer in a handful
of shapes.  :func:`decode_payload` recognises them in priority order and
tags the result with the shape it matched:

==================  =====================================================
Shape               Payload
==================  =====================================================
``atoms``           ``{"atoms": [...]}``
``knowledge``       ``{"knowledge": [...]}``
``extracted``       ``{"extracted": [...]}``
``results``         ``{"results": [...]}``
``array``           ``[...]``
``empty``           blank reply (fallback)
``invalid_json``    not JSON at all (fallback)
``no_array``        JSON, but no list under any known key (fallback)
==================  =====================================================

Fallback shapes always carry an empty item list.  Decoding never raises.

:func:`filter_candidates` then turns raw items into
:class:`ExtractedCandidate` objects, dropping anything without a type, a
content string, or a numeric confidence of at least the configured
minimum.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from knowledge_atoms.atoms import ATOM_TYPES, DEFAULT_ATOM_TYPE
from knowledge_atoms.errors import ParseError

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Shapes
# ---------------------------------------------------------------------------

WRAPPER_KEYS: tuple[str, ...] = ("atoms", "knowledge", "extracted", "results")
"""Object keys tried in order when the reply is a JSON object."""

SHAPE_ARRAY = "array"
SHAPE_EMPTY = "empty"
SHAPE_INVALID_JSON = "invalid_json"
SHAPE_NO_ARRAY = "no_array"

FALLBACK_SHAPES: frozenset[str] = frozenset(
    {SHAPE_EMPTY, SHAPE_INVALID_JSON, SHAPE_NO_ARRAY}
)

_TYPE_CHARS_RE = re.compile(r"[^A-Z_]")

# Compact spellings ("TALKINGPOINT") map to the canonical type.
_TYPE_LOOKUP: dict[str, str] = {t.replace("_", ""): t for t in ATOM_TYPES}


@dataclass(frozen=True)
class DecodeResult:
    """Outcome of decoding one model reply."""

    shape: str
    items: list[Any]

    @property
    def is_fallback(self) -> bool:
        return self.shape in FALLBACK_SHAPES


@dataclass
class ExtractedCandidate:
    """A validated, normalised atom proposal awaiting capacity checks."""

    type: str
    content: str
    confidence: float
    context: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "content": self.content,
            "confidence": self.confidence,
            "context": self.context,
        }


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def _is_present(value: Any) -> bool:
    """True for any value except ``None``, ``False``, zero and ``""``.

    Lists count as present even when empty, so ``{"atoms": []}`` is an
    ``atoms``-shaped reply with no items.
    """
    if isinstance(value, list):
        return True
    return bool(value)


def _select_items(payload: Any) -> DecodeResult:
    if isinstance(payload, list):
        return DecodeResult(SHAPE_ARRAY, payload)
    if not isinstance(payload, dict):
        raise ParseError(f"Expected an object or array, got {type(payload).__name__}")

    for key in WRAPPER_KEYS:
        value = payload.get(key)
        if not _is_present(value):
            continue
        if isinstance(value, list):
            return DecodeResult(key, value)
        raise ParseError(f"Key {key!r} holds {type(value).__name__}, not a list")

    raise ParseError(f"No candidate list under any of {', '.join(WRAPPER_KEYS)}")


def decode_payload(content: str | None) -> DecodeResult:
    """Decode a model reply into a tagged list of raw items."""
    if not content or not content.strip():
        return DecodeResult(SHAPE_EMPTY, [])

    try:
        payload = json.loads(content)
    except json.JSONDecodeError as exc:
        log.warning("Extraction reply is not valid JSON: %s", exc)
        return DecodeResult(SHAPE_INVALID_JSON, [])

    try:
        return _select_items(payload)
    except ParseError as exc:
        keys = sorted(payload) if isinstance(payload, dict) else []
        log.warning("Extraction reply has no usable array (%s); keys=%s", exc, keys)
        return DecodeResult(SHAPE_NO_ARRAY, [])


# ---------------------------------------------------------------------------
# Candidate filtering
# ---------------------------------------------------------------------------


def normalize_atom_type(raw: Any) -> str:
    """Map a free-form type label onto one of :data:`ATOM_TYPES`.

    The label is upper-cased and stripped of everything except letters
    and underscores.  Unrecognised labels become ``TALKING_POINT``.
    """
    normalized = _TYPE_CHARS_RE.sub("", str(raw).upper())
    return _TYPE_LOOKUP.get(normalized.replace("_", ""), DEFAULT_ATOM_TYPE)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def filter_candidates(
    items: list[Any],
    *,
    min_confidence: float = 0.4,
    max_content_chars: int = 1000,
    max_context_chars: int = 500,
) -> list[ExtractedCandidate]:
    """Validate raw items and normalise the survivors, preserving order."""
    candidates: list[ExtractedCandidate] = []
    for item in items:
        if not isinstance(item, dict):
            log.debug("Dropping non-object candidate: %r", item)
            continue
        raw_type = item.get("type")
        raw_content = item.get("content")
        confidence = item.get("confidence")
        if not raw_type or not raw_content or not _is_number(confidence):
            log.debug(
                "Dropping candidate (type=%r, has_content=%s, confidence=%r)",
                raw_type,
                bool(raw_content),
                confidence,
            )
            continue
        if not confidence >= min_confidence:
            log.debug("Dropping low-confidence candidate (%.2f)", confidence)
            continue

        content = str(raw_content).strip()[:max_content_chars]
        if not content:
            continue
        raw_context = item.get("context")
        context = str(raw_context)[:max_context_chars] if raw_context else None

        candidates.append(
            ExtractedCandidate(
                type=normalize_atom_type(raw_type),
                content=content,
                confidence=min(float(confidence), 1.0),
                context=context,
            )
        )
    return candidates

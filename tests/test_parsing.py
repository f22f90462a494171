"""Tests for decoding extraction replies and filtering candidates."""

from __future__ import annotations

import json

import pytest

from knowledge_atoms.parsing import (
    SHAPE_ARRAY,
    SHAPE_EMPTY,
    SHAPE_INVALID_JSON,
    SHAPE_NO_ARRAY,
    decode_payload,
    filter_candidates,
    normalize_atom_type,
)

_ITEM = {"type": "QUESTION", "content": "What is this costing you today?", "confidence": 0.8}


# -----------------------------------------------------------------------
# decode_payload
# -----------------------------------------------------------------------


class TestDecodePayload:
    @pytest.mark.parametrize("key", ["atoms", "knowledge", "extracted", "results"])
    def test_wrapper_keys(self, key: str) -> None:
        result = decode_payload(json.dumps({key: [_ITEM]}))
        assert result.shape == key
        assert result.items == [_ITEM]
        assert not result.is_fallback

    def test_bare_array(self) -> None:
        result = decode_payload(json.dumps([_ITEM, _ITEM]))
        assert result.shape == SHAPE_ARRAY
        assert len(result.items) == 2

    def test_key_priority(self) -> None:
        """``atoms`` wins over later keys when both are present."""
        payload = {"results": [_ITEM, _ITEM], "atoms": [_ITEM]}
        result = decode_payload(json.dumps(payload))
        assert result.shape == "atoms"
        assert len(result.items) == 1

    def test_empty_list_counts_as_present(self) -> None:
        result = decode_payload(json.dumps({"atoms": [], "knowledge": [_ITEM]}))
        assert result.shape == "atoms"
        assert result.items == []

    def test_falsy_value_skipped(self) -> None:
        result = decode_payload(json.dumps({"atoms": None, "knowledge": [_ITEM]}))
        assert result.shape == "knowledge"

    @pytest.mark.parametrize("content", ["", "   \n", None])
    def test_empty_reply(self, content) -> None:
        result = decode_payload(content)
        assert result.shape == SHAPE_EMPTY
        assert result.items == []
        assert result.is_fallback

    def test_invalid_json(self) -> None:
        result = decode_payload("Sure! Here are the atoms: [")
        assert result.shape == SHAPE_INVALID_JSON
        assert result.items == []

    @pytest.mark.parametrize(
        "payload",
        [
            {"summary": "nothing useful"},
            {"atoms": "not a list"},
            {"atoms": {"type": "QUESTION"}},
            "just a string",
            42,
        ],
    )
    def test_no_array(self, payload) -> None:
        result = decode_payload(json.dumps(payload))
        assert result.shape == SHAPE_NO_ARRAY
        assert result.items == []


# -----------------------------------------------------------------------
# normalize_atom_type
# -----------------------------------------------------------------------


class TestNormalizeAtomType:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("QUESTION", "QUESTION"),
            ("question", "QUESTION"),
            ("Objection Response", "OBJECTION_RESPONSE"),
            ("closing-technique", "CLOSING_TECHNIQUE"),
            ("topic_expertise!", "TOPIC_EXPERTISE"),
            ("TalkingPoint", "TALKING_POINT"),
            ("INSIGHT", "TALKING_POINT"),
            (123, "TALKING_POINT"),
        ],
    )
    def test_mapping(self, raw, expected: str) -> None:
        assert normalize_atom_type(raw) == expected


# -----------------------------------------------------------------------
# filter_candidates
# -----------------------------------------------------------------------


class TestFilterCandidates:
    def test_keeps_valid_items_in_order(self) -> None:
        items = [
            {"type": "question", "content": "First?", "confidence": 0.9, "context": "intro"},
            {"type": "TOPIC_EXPERTISE", "content": "Second.", "confidence": 0.5},
        ]
        out = filter_candidates(items)
        assert [c.content for c in out] == ["First?", "Second."]
        assert out[0].type == "QUESTION"
        assert out[0].context == "intro"
        assert out[1].context is None

    @pytest.mark.parametrize(
        "item",
        [
            {"content": "no type", "confidence": 0.9},
            {"type": "QUESTION", "confidence": 0.9},
            {"type": "QUESTION", "content": "", "confidence": 0.9},
            {"type": "QUESTION", "content": "no confidence"},
            {"type": "QUESTION", "content": "string confidence", "confidence": "0.9"},
            {"type": "QUESTION", "content": "bool confidence", "confidence": True},
            {"type": "QUESTION", "content": "too unsure", "confidence": 0.39},
            {"type": "QUESTION", "content": "   ", "confidence": 0.9},
            "not an object",
            None,
        ],
    )
    def test_drops_invalid_items(self, item) -> None:
        assert filter_candidates([item]) == []

    def test_confidence_boundary_kept(self) -> None:
        out = filter_candidates([{"type": "QUESTION", "content": "edge", "confidence": 0.4}])
        assert len(out) == 1

    def test_integer_confidence_accepted(self) -> None:
        out = filter_candidates([{"type": "QUESTION", "content": "sure", "confidence": 1}])
        assert out[0].confidence == 1.0

    def test_confidence_clamped(self) -> None:
        out = filter_candidates([{"type": "QUESTION", "content": "very sure", "confidence": 7}])
        assert out[0].confidence == 1.0

    def test_content_trimmed_and_truncated(self) -> None:
        out = filter_candidates(
            [{"type": "QUESTION", "content": "  " + "x" * 1500, "confidence": 0.9}]
        )
        assert out[0].content == "x" * 1000

    def test_context_truncated(self) -> None:
        out = filter_candidates(
            [{"type": "QUESTION", "content": "c", "confidence": 0.9, "context": "y" * 800}]
        )
        assert out[0].context == "y" * 500

    def test_custom_threshold(self) -> None:
        items = [{"type": "QUESTION", "content": "c", "confidence": 0.5}]
        assert filter_candidates(items, min_confidence=0.6) == []

    def test_to_dict(self) -> None:
        (candidate,) = filter_candidates([_ITEM])
        assert candidate.to_dict() == {
            "type": "QUESTION",
            "content": "What is this costing you today?",
            "confidence": 0.8,
            "context": None,
        }

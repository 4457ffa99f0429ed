"""Tests for delta log reconstruction."""

from __future__ import annotations

import json

import pytest

from tokenledger.parsing.patch_log import (
    AppendAtPath,
    ReplaceRoot,
    SetAtPath,
    apply_record,
    decode_record,
    is_patch_log,
    is_safe_segment,
    reconstruct_state,
)


def _lines(*records: dict) -> list[str]:
    return [json.dumps(r) for r in records]


def _all_keys(value: object) -> set[str]:
    if isinstance(value, dict):
        keys = set(value)
        for child in value.values():
            keys |= _all_keys(child)
        return keys
    if isinstance(value, list):
        return set().union(*(_all_keys(item) for item in value)) if value else set()
    return set()


class TestDecodeRecord:
    """Test suite for decode_record."""

    def test_kinds(self) -> None:
        assert decode_record({"kind": 0, "v": {"a": 1}}) == ReplaceRoot({"a": 1})
        assert decode_record({"kind": 1, "k": ["a", 0], "v": 2}) == SetAtPath(("a", "0"), 2)
        assert decode_record({"kind": 2, "k": ["items"], "v": [1]}) == AppendAtPath(("items",), [1])

    @pytest.mark.parametrize(
        "raw",
        [
            {"kind": 3, "k": ["a"], "v": 1},
            {"kind": True, "k": ["a"], "v": 1},
            {"kind": 1, "k": [], "v": 1},
            {"kind": 1, "k": "a", "v": 1},
            {"kind": 1, "k": ["__proto__", "polluted"], "v": True},
            {"kind": 2, "k": ["requests", "constructor"], "v": 1},
            ["not", "an", "object"],
        ],
    )
    def test_rejected_records(self, raw) -> None:
        """Unknown kinds, bad paths and forbidden segments are dropped."""
        assert decode_record(raw) is None

    def test_safe_segments(self) -> None:
        assert is_safe_segment("requests")
        assert is_safe_segment("0")
        assert not is_safe_segment("prototype")
        assert not is_safe_segment("__class__")


class TestApplyRecord:
    """Test suite for apply_record."""

    def test_set_creates_intermediate_containers(self) -> None:
        state = apply_record({}, SetAtPath(("a", "0", "b"), "x"))
        assert state == {"a": [{"b": "x"}]}

    def test_set_pads_lists(self) -> None:
        state = apply_record({"items": []}, SetAtPath(("items", "2"), "c"))
        assert state == {"items": [None, None, "c"]}

    def test_append_extends_with_list_value(self) -> None:
        state = apply_record({"items": [1]}, AppendAtPath(("items",), [2, 3]))
        assert state == {"items": [1, 2, 3]}

    def test_append_single_value(self) -> None:
        state = apply_record({}, AppendAtPath(("items",), {"a": 1}))
        assert state == {"items": [{"a": 1}]}

    def test_replace_root(self) -> None:
        assert apply_record({"old": 1}, ReplaceRoot({"new": 2})) == {"new": 2}

    def test_non_container_replaced_on_descend(self) -> None:
        state = apply_record({"a": 5}, SetAtPath(("a", "b"), 1))
        assert state == {"a": {"b": 1}}


class TestReconstructState:
    """Test suite for reconstruct_state."""

    def test_detects_patch_log(self) -> None:
        assert is_patch_log(["", '{"kind": 0, "v": {}}'])
        assert not is_patch_log(['{"requests": []}'])
        assert not is_patch_log(["not json"])
        assert not is_patch_log([])

    def test_skips_bad_lines(self) -> None:
        lines = _lines({"kind": 0, "v": {"requests": []}})
        lines.append("{broken")
        lines += _lines({"kind": 2, "k": ["requests"], "v": [{"id": 1}]})
        assert reconstruct_state(lines) == {"requests": [{"id": 1}]}

    def test_forbidden_segment_leaves_state_untouched(self) -> None:
        lines = _lines(
            {"kind": 0, "v": {"requests": []}},
            {"kind": 1, "k": ["__proto__", "polluted"], "v": True},
        )
        state = reconstruct_state(lines)

        assert state == {"requests": []}

    def test_forbidden_segments_never_become_keys(self) -> None:
        dict_attrs = set(dir(dict))
        object_attrs = set(dir(object))
        records: list[dict] = [{"kind": 0, "v": {"requests": [{"message": {}}]}}]
        for segment in ("__proto__", "constructor", "prototype", "hasOwnProperty"):
            for prefix in ([], ["requests"], ["requests", 0], ["requests", 0, "message"]):
                records.append({"kind": 1, "k": [*prefix, segment], "v": {"polluted": True}})
                records.append({"kind": 1, "k": [*prefix, segment, "polluted"], "v": True})
                records.append({"kind": 2, "k": [*prefix, segment], "v": [1]})

        state = reconstruct_state(_lines(*records))

        assert state == {"requests": [{"message": {}}]}
        assert _all_keys(state).isdisjoint({"__proto__", "constructor", "prototype", "hasOwnProperty"})
        assert set(dir(dict)) == dict_attrs
        assert set(dir(object)) == object_attrs

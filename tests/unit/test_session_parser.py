"""Tests for the session log parser."""

from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest

from tokenledger.parsing.session_parser import (
    normalize_model_id,
    normalize_timestamp_ms,
    parse_session_content,
)
from tokenledger.parsing.token_estimator import TokenEstimator


def length_estimate(text: str, model: str) -> int:
    return len(text)


def _patch_log(*records: dict) -> str:
    return "\n".join(json.dumps(r) for r in records)


class TestNormalization:
    """Test suite for model and timestamp normalization."""

    def test_model_id(self) -> None:
        assert normalize_model_id("copilot/gpt-4o") == "gpt-4o"
        assert normalize_model_id("  claude-sonnet-4  ") == "claude-sonnet-4"
        assert normalize_model_id("copilot/copilot/x") == "copilot/x"
        assert normalize_model_id("") == "gpt-4o"
        assert normalize_model_id(None, "fallback") == "fallback"

    def test_timestamps(self) -> None:
        assert normalize_timestamp_ms(1_700_000_000) == 1_700_000_000_000
        assert normalize_timestamp_ms(1_700_000_000_000) == 1_700_000_000_000
        assert normalize_timestamp_ms("1700000000") == 1_700_000_000_000
        expected = datetime(2026, 1, 16, tzinfo=UTC).timestamp() * 1000
        assert normalize_timestamp_ms("2026-01-16T00:00:00Z") == expected
        assert normalize_timestamp_ms("yesterday") is None
        assert normalize_timestamp_ms(True) is None
        assert normalize_timestamp_ms(-5) is None


class TestTokenEstimator:
    """Test suite for TokenEstimator."""

    def test_ratio_lookup(self) -> None:
        estimator = TokenEstimator()
        assert estimator.ratio_for("claude-sonnet-4") == 0.24
        assert estimator.ratio_for("gemini-2.5-pro") == 0.26
        assert estimator.ratio_for("unknown-model") == 0.25

    def test_rounds_up(self) -> None:
        estimator = TokenEstimator(ratios={}, default_ratio=0.25)
        assert estimator("abcde", "any") == 2
        assert estimator("", "any") == 0


class TestPatchLogSessions:
    """Test suite for delta log sessions."""

    def test_single_request(self) -> None:
        """A replayed request yields one interaction with estimated usage."""
        content = _patch_log(
            {"kind": 0, "v": {"requests": []}},
            {
                "kind": 2,
                "k": ["requests"],
                "v": [
                    {
                        "modelId": "m",
                        "message": {"text": "hi"},
                        "response": [{"content": {"value": "hello"}}],
                    }
                ],
            },
        )

        metrics = parse_session_content("session.jsonl", content, length_estimate)

        assert metrics.interactions == 1
        assert metrics.model_usage["m"].input_tokens == 2
        assert metrics.model_usage["m"].output_tokens == 5
        assert metrics.tokens == 7

    def test_content_value_preferred_over_value(self) -> None:
        content = _patch_log(
            {"kind": 0, "v": {"requests": []}},
            {
                "kind": 2,
                "k": ["requests"],
                "v": {
                    "modelId": "m",
                    "message": {"text": "q"},
                    "response": [{"value": "wrapper", "content": {"value": "abc"}}, {"value": "de"}],
                },
            },
        )

        metrics = parse_session_content("s.jsonl", content, length_estimate)

        assert metrics.model_usage["m"].output_tokens == 5

    def test_thinking_excluded_from_model_usage(self) -> None:
        content = _patch_log(
            {"kind": 0, "v": {"requests": []}},
            {
                "kind": 2,
                "k": ["requests"],
                "v": {
                    "modelId": "m",
                    "message": {"text": "q"},
                    "response": [{"kind": "thinking", "value": "hmmm"}, {"value": "ok"}],
                },
            },
        )

        metrics = parse_session_content("s.jsonl", content, length_estimate)

        assert metrics.thinking_tokens == 4
        assert metrics.model_usage["m"].total == 3
        assert metrics.tokens == 7

    def test_blank_message_is_not_an_interaction(self) -> None:
        content = _patch_log(
            {"kind": 0, "v": {"requests": [{"modelId": "m", "message": {"text": "  "}}]}},
        )

        metrics = parse_session_content("s.jsonl", content, length_estimate)

        assert metrics.interactions == 0

    def test_model_resolver_overrides_embedded_model(self) -> None:
        content = _patch_log(
            {"kind": 0, "v": {"requests": [{"modelId": "m", "message": {"text": "hi"}}]}},
        )

        metrics = parse_session_content(
            "s.jsonl", content, length_estimate, model_resolver=lambda request: "copilot/claude-opus"
        )

        assert list(metrics.model_usage) == ["claude-opus"]

    def test_request_timestamp_falls_back_to_last_message_date(self) -> None:
        content = _patch_log(
            {
                "kind": 0,
                "v": {
                    "lastMessageDate": 1_768_521_600_000,
                    "requests": [
                        {"modelId": "m", "message": {"text": "a"}, "timestamp": 1_768_435_200_000},
                        {"modelId": "m", "message": {"text": "b"}},
                    ],
                },
            },
        )

        metrics = parse_session_content("s.jsonl", content, length_estimate)

        assert [r.timestamp_ms for r in metrics.requests] == [1_768_435_200_000, 1_768_521_600_000]


class TestSnapshotSessions:
    """Test suite for full JSON sessions."""

    def test_requests_with_parts_and_responses(self) -> None:
        session = {
            "requests": [
                {
                    "model": "copilot/gpt-4o",
                    "message": {"parts": [{"text": "ab"}, {"text": "cd"}]},
                    "response": [{"value": "xyz"}, {"message": {"parts": [{"text": "12"}]}}],
                }
            ]
        }

        metrics = parse_session_content("s.json", json.dumps(session), length_estimate)

        assert metrics.interactions == 1
        assert metrics.model_usage["gpt-4o"].input_tokens == 4
        assert metrics.model_usage["gpt-4o"].output_tokens == 5

    def test_legacy_history(self) -> None:
        session = {"history": [{"message": {"text": "abc"}}, {"message": {"text": "d"}}]}

        metrics = parse_session_content("s.json", json.dumps(session), length_estimate)

        assert metrics.interactions == 2
        assert metrics.model_usage["gpt-4o"].input_tokens == 4

    @pytest.mark.parametrize("content", ["{not json", "", "[1, 2"])
    def test_invalid_content_yields_empty_metrics(self, content: str) -> None:
        metrics = parse_session_content("s.json", content, length_estimate)

        assert metrics.tokens == 0
        assert metrics.interactions == 0
        assert metrics.model_usage == {}
        assert metrics.parse_failed

    def test_valid_content_is_not_flagged(self) -> None:
        metrics = parse_session_content("s.json", json.dumps({"requests": []}), length_estimate)

        assert not metrics.parse_failed


class TestEventLogSessions:
    """Test suite for CLI event logs."""

    def test_messages_and_tool_results(self) -> None:
        content = _patch_log(
            {"type": "session.start", "data": {}},
            {"type": "user.message", "data": {"content": "abcd"}, "model": "copilot/o3", "timestamp": 1_768_521_600},
            {"type": "assistant.message", "data": {"content": "xyz"}, "model": "o3", "timestamp": 1_768_521_601},
            {"type": "tool.result", "data": {"output": "12"}, "model": "o3"},
            {"type": "assistant.message", "data": {}},
        )

        metrics = parse_session_content("events.jsonl", content, length_estimate)

        assert not metrics.parse_failed
        assert metrics.interactions == 1
        assert metrics.model_usage["o3"].input_tokens == 6
        assert metrics.model_usage["o3"].output_tokens == 3
        assert [r.is_interaction for r in metrics.requests] == [True, False, False]
        assert metrics.requests[0].timestamp_ms == 1_768_521_600_000
        assert metrics.requests[2].timestamp_ms is None

    def test_malformed_lines_skipped(self) -> None:
        content = "\n".join(
            [
                json.dumps({"type": "user.message", "data": {"content": "hi"}}),
                "{broken",
                json.dumps(["not", "an", "event"]),
                json.dumps({"type": "user.message", "data": {"content": "yo"}}),
            ]
        )

        metrics = parse_session_content("events.jsonl", content, length_estimate)

        assert metrics.interactions == 2
        assert metrics.model_usage["gpt-4o"].input_tokens == 4

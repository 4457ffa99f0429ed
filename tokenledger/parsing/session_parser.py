"""Session log parser.

Turns the raw content of one chat session file into token and interaction
metrics. Three layouts are understood:

- Delta logs (``.jsonl`` whose first line carries a numeric ``kind``), replayed
  with :mod:`tokenledger.parsing.patch_log` before reading ``requests``
- CLI event logs (``.jsonl`` with one ``{type, data, model, timestamp}``
  event per line)
- Full JSON snapshots with ``requests`` (or legacy ``history``)

Parsing never raises: any failure yields empty metrics.
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from tokenledger.models.schemas import DEFAULT_MODEL, ModelUsage, RequestUsage, SessionMetrics
from tokenledger.monitoring.metrics import record_file_error
from tokenledger.parsing.patch_log import is_patch_log, reconstruct_state
from tokenledger.parsing.token_estimator import EstimateFn, TokenEstimator

logger = logging.getLogger(__name__)

ModelResolver = Callable[[dict[str, Any]], str | None]

COPILOT_PREFIX = "copilot/"

# Epoch values below this are seconds rather than milliseconds
EPOCH_MS_THRESHOLD = 1e12

# CLI event types and the data field holding their text
EVENT_INPUT_TYPES = {"user.message": "content", "tool.result": "output"}
EVENT_OUTPUT_TYPES = {"assistant.message": "content"}


def normalize_model_id(model: Any, default: str = DEFAULT_MODEL) -> str:
    """Trim a model id and strip one ``copilot/`` prefix.

    Args:
        model: Raw model value
        default: Returned for non-strings and blank strings

    Returns:
        Normalized model id
    """
    if not isinstance(model, str):
        return default
    trimmed = model.strip()
    if not trimmed:
        return default
    if trimmed.startswith(COPILOT_PREFIX):
        return trimmed[len(COPILOT_PREFIX) :]
    return trimmed


def normalize_timestamp_ms(value: Any) -> float | None:
    """Normalize epoch seconds, epoch milliseconds or ISO strings to epoch ms.

    Returns:
        Milliseconds since the epoch, or None when the value is unusable
    """
    if isinstance(value, bool) or value is None:
        return None

    if isinstance(value, (int, float)):
        number = float(value)
        if not math.isfinite(number) or number <= 0:
            return None
        return number * 1000 if number < EPOCH_MS_THRESHOLD else number

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return normalize_timestamp_ms(float(text))
        except ValueError:
            pass
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed.timestamp() * 1000

    return None


class _UsageTally:
    """Running totals for one file."""

    def __init__(self, estimate: EstimateFn) -> None:
        self.estimate = estimate
        self.model_usage: dict[str, ModelUsage] = {}
        self.input_tokens = 0
        self.output_tokens = 0
        self.thinking_tokens = 0

    def usage(self, model: str) -> ModelUsage:
        return self.model_usage.setdefault(model, ModelUsage())

    def add_input(self, model: str, text: str) -> int:
        tokens = self.estimate(text, model)
        self.usage(model).input_tokens += tokens
        self.input_tokens += tokens
        return tokens

    def add_output(self, model: str, text: str) -> int:
        tokens = self.estimate(text, model)
        self.usage(model).output_tokens += tokens
        self.output_tokens += tokens
        return tokens

    def add_thinking(self, model: str, text: str) -> int:
        tokens = self.estimate(text, model)
        self.thinking_tokens += tokens
        return tokens

    def metrics(
        self,
        interactions: int,
        requests: list[RequestUsage],
        last_message_ms: float | None,
    ) -> SessionMetrics:
        return SessionMetrics(
            tokens=self.input_tokens + self.output_tokens + self.thinking_tokens,
            interactions=interactions,
            model_usage=self.model_usage,
            thinking_tokens=self.thinking_tokens,
            requests=requests,
            last_message_ms=last_message_ms,
        )


def _split_response_text(response: Any) -> tuple[str, str]:
    """Concatenate response and thinking text of a delta-log response list.

    ``content.value`` is preferred over a sibling ``value`` so wrapper text is
    not counted twice.
    """
    if not isinstance(response, list):
        return "", ""

    response_text: list[str] = []
    thinking_text: list[str] = []
    for item in response:
        if not isinstance(item, dict):
            continue
        value = item.get("value")
        if item.get("kind") == "thinking":
            if isinstance(value, str) and value:
                thinking_text.append(value)
            continue
        content = item.get("content")
        content_value = content.get("value") if isinstance(content, dict) else None
        if isinstance(content_value, str) and content_value:
            response_text.append(content_value)
        elif isinstance(value, str) and value:
            response_text.append(value)
    return "".join(response_text), "".join(thinking_text)


def _embedded_model(request: dict[str, Any]) -> Any:
    if request.get("modelId") is not None:
        return request["modelId"]
    selected = request.get("selectedModel")
    if isinstance(selected, dict) and selected.get("identifier") is not None:
        return selected["identifier"]
    return request.get("model")


def _parse_patch_log(
    lines: list[str],
    estimate: EstimateFn,
    model_resolver: ModelResolver | None,
) -> SessionMetrics:
    state = reconstruct_state(lines)
    raw_requests = state.get("requests") if isinstance(state, dict) else None
    last_message_ms = (
        normalize_timestamp_ms(state.get("lastMessageDate")) if isinstance(state, dict) else None
    )
    if not isinstance(raw_requests, list):
        return SessionMetrics(last_message_ms=last_message_ms)

    tally = _UsageTally(estimate)
    requests: list[RequestUsage] = []
    interactions = 0

    for request in raw_requests:
        if not isinstance(request, dict):
            continue

        model = normalize_model_id(_embedded_model(request))
        if model_resolver is not None:
            override = normalize_model_id(model_resolver(request), "")
            if override and override != DEFAULT_MODEL:
                model = override

        message = request.get("message")
        text = message.get("text") if isinstance(message, dict) else None
        is_interaction = isinstance(text, str) and bool(text.strip())
        if is_interaction:
            interactions += 1

        input_tokens = tally.add_input(model, text) if isinstance(text, str) else 0
        response_text, thinking_text = _split_response_text(request.get("response"))
        output_tokens = tally.add_output(model, response_text) if response_text else 0
        thinking_tokens = tally.add_thinking(model, thinking_text) if thinking_text else 0

        timestamp = normalize_timestamp_ms(request.get("timestamp"))
        requests.append(
            RequestUsage(
                timestamp_ms=timestamp if timestamp is not None else last_message_ms,
                model=model,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                thinking_tokens=thinking_tokens,
                is_interaction=is_interaction,
            )
        )

    return tally.metrics(interactions, requests, last_message_ms)


def _parse_snapshot(
    session: Any,
    estimate: EstimateFn,
    model_resolver: ModelResolver | None,
) -> SessionMetrics:
    if not isinstance(session, dict):
        return SessionMetrics.empty()

    raw_requests = session.get("requests")
    if not isinstance(raw_requests, list):
        raw_requests = session.get("history")
    if not isinstance(raw_requests, list):
        raw_requests = []

    last_message_ms = normalize_timestamp_ms(session.get("lastMessageDate"))
    tally = _UsageTally(estimate)
    requests: list[RequestUsage] = []

    for request in raw_requests:
        req = request if isinstance(request, dict) else {}
        raw_model = model_resolver(req) if model_resolver is not None else req.get("model")
        model = normalize_model_id(raw_model)
        tally.usage(model)

        input_tokens = 0
        message = req.get("message")
        if isinstance(message, dict) and message.get("parts"):
            for part in message["parts"] if isinstance(message["parts"], list) else []:
                part_text = part.get("text") if isinstance(part, dict) else None
                if isinstance(part_text, str) and part_text:
                    input_tokens += tally.add_input(model, part_text)
        elif isinstance(message, dict) and isinstance(message.get("text"), str):
            input_tokens += tally.add_input(model, message["text"])

        output_tokens = 0
        thinking_tokens = 0
        responses = req.get("response")
        if not isinstance(responses, list):
            responses = req.get("responses")
        for item in responses if isinstance(responses, list) else []:
            if not isinstance(item, dict):
                continue
            value = item.get("value")
            if item.get("kind") == "thinking" and isinstance(value, str) and value:
                thinking_tokens += tally.add_thinking(model, value)
                continue
            if isinstance(value, str) and value:
                output_tokens += tally.add_output(model, value)
            nested = item.get("message")
            parts = nested.get("parts") if isinstance(nested, dict) else None
            for part in parts if isinstance(parts, list) else []:
                part_text = part.get("text") if isinstance(part, dict) else None
                if isinstance(part_text, str) and part_text:
                    output_tokens += tally.add_output(model, part_text)

        timestamp = normalize_timestamp_ms(req.get("timestamp"))
        requests.append(
            RequestUsage(
                timestamp_ms=timestamp if timestamp is not None else last_message_ms,
                model=model,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                thinking_tokens=thinking_tokens,
                is_interaction=True,
            )
        )

    return tally.metrics(len(raw_requests), requests, last_message_ms)


def is_event_log(lines: list[str]) -> bool:
    """Check whether JSONL lines are a CLI event log (objects with a string ``type``)."""
    for line in lines:
        if not line.strip():
            continue
        try:
            first = json.loads(line)
        except ValueError:
            return False
        return isinstance(first, dict) and isinstance(first.get("type"), str)
    return False


def _parse_event_log(lines: list[str], estimate: EstimateFn) -> SessionMetrics:
    """Count a CLI event log.

    A user message adds input tokens and one interaction, an assistant message
    adds output tokens and a tool result adds input tokens. Malformed lines
    are skipped.
    """
    tally = _UsageTally(estimate)
    requests: list[RequestUsage] = []
    interactions = 0

    for line in lines:
        if not line.strip():
            continue
        try:
            event = json.loads(line)
        except ValueError:
            continue
        if not isinstance(event, dict):
            continue

        kind = event.get("type")
        data = event.get("data")
        data = data if isinstance(data, dict) else {}
        model = normalize_model_id(event.get("model"))

        input_tokens = output_tokens = 0
        is_interaction = False
        if kind in EVENT_INPUT_TYPES:
            text = data.get(EVENT_INPUT_TYPES[kind])
            if not isinstance(text, str) or not text:
                continue
            input_tokens = tally.add_input(model, text)
            is_interaction = kind == "user.message"
        elif kind in EVENT_OUTPUT_TYPES:
            text = data.get(EVENT_OUTPUT_TYPES[kind])
            if not isinstance(text, str) or not text:
                continue
            output_tokens = tally.add_output(model, text)
        else:
            continue

        if is_interaction:
            interactions += 1
        requests.append(
            RequestUsage(
                timestamp_ms=normalize_timestamp_ms(event.get("timestamp")),
                model=model,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                is_interaction=is_interaction,
            )
        )

    last_message_ms = max((r.timestamp_ms for r in requests if r.timestamp_ms is not None), default=None)
    return tally.metrics(interactions, requests, last_message_ms)


def parse_session_content(
    path: str,
    content: str,
    estimate: EstimateFn | None = None,
    model_resolver: ModelResolver | None = None,
) -> SessionMetrics:
    """Parse one session file into metrics.

    Args:
        path: File path (only the ``.jsonl`` suffix is inspected)
        content: Decoded file content
        estimate: Token estimator ``(text, model) -> int``
        model_resolver: Optional callback returning a model id for a request

    Returns:
        Session metrics, empty and flagged ``parse_failed`` when the content
        cannot be decoded
    """
    estimate = estimate or TokenEstimator()

    try:
        if path.endswith(".jsonl"):
            lines = content.splitlines()
            if is_patch_log(lines):
                return _parse_patch_log(lines, estimate, model_resolver)
            if is_event_log(lines):
                return _parse_event_log(lines, estimate)
            session = json.loads(content.strip())
        else:
            session = json.loads(content)
        return _parse_snapshot(session, estimate, model_resolver)
    except ValueError:
        record_file_error("parse")
        logger.warning("Session file is not valid JSON; counting it as empty")
        return SessionMetrics.failed()
    except Exception as e:
        record_file_error("parse")
        logger.warning(f"Session file could not be parsed ({e.__class__.__name__}); counting it as empty")
        return SessionMetrics.failed()

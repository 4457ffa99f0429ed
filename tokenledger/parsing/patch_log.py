"""Reconstruction of session state from delta (patch) logs.

Each line of a delta log is a record ``{"kind": n, "k": [...], "v": ...}``:

- kind 0 replaces the whole state with ``v``
- kind 1 sets ``v`` at the key path ``k``
- kind 2 appends ``v`` to the list at ``k`` (a list ``v`` is extended element-wise)

Key paths are walked with a cursor that creates missing containers on the way.
Segments that could reach object internals are refused and the record is
dropped without touching the state.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

FORBIDDEN_SEGMENTS = frozenset({"__proto__", "prototype", "constructor", "hasOwnProperty"})


def is_safe_segment(segment: str) -> bool:
    """Check a key-path segment against the denylist."""
    return segment not in FORBIDDEN_SEGMENTS and not segment.startswith("__")


def is_index_segment(segment: str) -> bool:
    """True for non-negative integer literals such as ``"0"`` or ``"12"``."""
    return segment.isascii() and segment.isdigit()


@dataclass(frozen=True)
class ReplaceRoot:
    value: Any


@dataclass(frozen=True)
class SetAtPath:
    path: tuple[str, ...]
    value: Any


@dataclass(frozen=True)
class AppendAtPath:
    path: tuple[str, ...]
    value: Any


PatchRecord = ReplaceRoot | SetAtPath | AppendAtPath


def decode_record(raw: Any) -> PatchRecord | None:
    """Turn one decoded log line into a patch record.

    Args:
        raw: JSON value of the line

    Returns:
        The record, or None for unknown kinds, empty or non-list paths and
        paths containing a forbidden segment
    """
    if not isinstance(raw, dict):
        return None

    kind = raw.get("kind")
    if isinstance(kind, bool):
        return None
    if kind == 0:
        return ReplaceRoot(raw.get("v"))
    if kind not in (1, 2):
        return None

    keys = raw.get("k")
    if not isinstance(keys, list) or not keys:
        return None

    path = tuple(_segment_text(k) for k in keys)
    if not all(is_safe_segment(seg) for seg in path):
        logger.debug(f"Dropping patch record with forbidden key path segment (kind={kind})")
        return None

    if kind == 1:
        return SetAtPath(path, raw.get("v"))
    return AppendAtPath(path, raw.get("v"))


def _segment_text(key: Any) -> str:
    if isinstance(key, bool):
        return "true" if key else "false"
    if isinstance(key, float) and key.is_integer():
        return str(int(key))
    if key is None:
        return "null"
    return str(key)


def _new_container(next_segment: str) -> list[Any] | dict[str, Any]:
    return [] if is_index_segment(next_segment) else {}


def _ensure_index(items: list[Any], index: int) -> None:
    if index >= len(items):
        items.extend([None] * (index + 1 - len(items)))


class PathCursor:
    """Walks a key path through nested dicts and lists, creating containers."""

    def __init__(self, root: dict[str, Any] | list[Any]) -> None:
        self.current: Any = root

    def descend(self, segment: str, next_segment: str) -> bool:
        """Step into ``segment``, replacing non-containers with a fresh one.

        Returns:
            False when the current position cannot hold children
        """
        if isinstance(self.current, list) and is_index_segment(segment):
            index = int(segment)
            _ensure_index(self.current, index)
            child = self.current[index]
            if not isinstance(child, (dict, list)):
                child = _new_container(next_segment)
                self.current[index] = child
            self.current = child
            return True

        if isinstance(self.current, dict):
            child = self.current.get(segment)
            if not isinstance(child, (dict, list)):
                child = _new_container(next_segment)
                self.current[segment] = child
            self.current = child
            return True

        return False

    def set(self, segment: str, value: Any) -> None:
        if isinstance(self.current, list) and is_index_segment(segment):
            index = int(segment)
            _ensure_index(self.current, index)
            self.current[index] = value
        elif isinstance(self.current, dict):
            self.current[segment] = value

    def append(self, segment: str, value: Any) -> None:
        target: list[Any] | None = None
        if isinstance(self.current, list) and is_index_segment(segment):
            index = int(segment)
            _ensure_index(self.current, index)
            if not isinstance(self.current[index], list):
                self.current[index] = []
            target = self.current[index]
        elif isinstance(self.current, dict):
            if not isinstance(self.current.get(segment), list):
                self.current[segment] = []
            target = self.current[segment]

        if target is None:
            return
        if isinstance(value, list):
            target.extend(value)
        else:
            target.append(value)


def apply_record(state: Any, record: PatchRecord) -> Any:
    """Apply one patch record and return the new state."""
    if isinstance(record, ReplaceRoot):
        return record.value

    root = state if isinstance(state, (dict, list)) else {}
    cursor = PathCursor(root)
    path = record.path

    for segment, next_segment in zip(path, path[1:]):
        if not cursor.descend(segment, next_segment):
            return root

    if isinstance(record, SetAtPath):
        cursor.set(path[-1], record.value)
    else:
        cursor.append(path[-1], record.value)
    return root


def is_patch_log(lines: list[str]) -> bool:
    """Detect a delta log: the first non-blank line is an object with a numeric ``kind``."""
    for line in lines:
        if not line.strip():
            continue
        try:
            first = json.loads(line)
        except ValueError:
            return False
        kind = first.get("kind") if isinstance(first, dict) else None
        return isinstance(kind, (int, float)) and not isinstance(kind, bool)
    return False


def reconstruct_state(lines: list[str]) -> Any:
    """Replay every decodable line of a delta log, starting from an empty root.

    Lines that are not valid JSON are skipped.
    """
    state: Any = {}
    skipped = 0
    for line in lines:
        if not line.strip():
            continue
        try:
            raw = json.loads(line)
        except ValueError:
            skipped += 1
            continue
        record = decode_record(raw)
        if record is not None:
            state = apply_record(state, record)

    if skipped:
        logger.debug(f"Skipped {skipped} undecodable patch log line(s)")
    return state

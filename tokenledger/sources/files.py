"""Session file sources: discovery, filesystem access and the metrics cache.

The rollup builder depends only on the protocols below; the local adapters
implement them on top of the filesystem and an in-memory LRU.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from pydantic import ValidationError

from tokenledger.models.schemas import FileStat, SessionFileCache, SessionMetrics

logger = logging.getLogger(__name__)

SESSION_SUFFIXES = (".json", ".jsonl")


@runtime_checkable
class FileEnumerator(Protocol):
    async def list_files(self) -> Sequence[str]: ...


@runtime_checkable
class FileProvider(Protocol):
    async def stat(self, path: str) -> FileStat: ...

    async def read(self, path: str) -> bytes: ...


@runtime_checkable
class SessionCache(Protocol):
    async def get(self, path: str, mtime_ms: float) -> Mapping[str, Any] | None: ...


def _is_session_file(path: Path) -> bool:
    if path.suffix not in SESSION_SUFFIXES or not path.is_file():
        return False
    parts = [p.lower() for p in path.parts]
    return (
        "chatsessions" in parts
        or "emptywindowchatsessions" in parts
        or "github.copilot-chat" in parts
        or "session-state" in parts
    )


class LocalSessionFiles:
    """Discover session logs under configured roots and read them from disk."""

    def __init__(self, roots: Sequence[str | Path]) -> None:
        """Initialize file source.

        Args:
            roots: Directories searched recursively for session logs
        """
        self.roots = [Path(r).expanduser() for r in roots]

    def _discover(self) -> list[str]:
        found: set[str] = set()
        for root in self.roots:
            if not root.is_dir():
                continue
            try:
                for candidate in root.rglob("*"):
                    if _is_session_file(candidate):
                        found.add(str(candidate))
            except OSError as e:
                logger.warning(f"Session discovery failed under one root: {e.__class__.__name__}")
                logger.debug(f"Discovery error for {root}: {e}")
        return sorted(found)

    async def list_files(self) -> list[str]:
        files = await asyncio.to_thread(self._discover)
        logger.debug(f"Discovered {len(files)} session file(s) under {len(self.roots)} root(s)")
        return files

    async def stat(self, path: str) -> FileStat:
        result = await asyncio.to_thread(Path(path).stat)
        return FileStat(mtime_ms=result.st_mtime * 1000, size=result.st_size)

    async def read(self, path: str) -> bytes:
        return await asyncio.to_thread(Path(path).read_bytes)


class MemorySessionCache:
    """Bounded LRU of parsed session metrics keyed by ``(path, mtime)``.

    Entries are validated on read; an invalid entry is evicted and reported as
    a miss so the file is parsed again.
    """

    def __init__(self, max_entries: int = 1000) -> None:
        self.max_entries = max_entries
        self._entries: OrderedDict[tuple[str, float], dict[str, Any]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, path: str, mtime_ms: float) -> dict[str, Any] | None:
        key = (path, mtime_ms)
        entry = self._entries.get(key)
        if entry is None:
            return None
        try:
            SessionFileCache.model_validate(entry)
        except ValidationError:
            logger.warning("Evicting invalid session cache entry")
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return entry

    def put(self, path: str, mtime_ms: float, metrics: SessionMetrics) -> None:
        """Store parsed metrics, including the request timeline, for a file version."""
        self._entries[(path, mtime_ms)] = {
            "tokens": metrics.tokens,
            "interactions": metrics.interactions,
            "modelUsage": {
                model: {"inputTokens": usage.input_tokens, "outputTokens": usage.output_tokens}
                for model, usage in metrics.model_usage.items()
            },
            "mtime": mtime_ms,
            "requests": [
                {
                    "timestampMs": request.timestamp_ms,
                    "model": request.model,
                    "inputTokens": request.input_tokens,
                    "outputTokens": request.output_tokens,
                    "interaction": request.is_interaction,
                }
                for request in metrics.requests
            ],
        }
        self._entries.move_to_end((path, mtime_ms))
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()

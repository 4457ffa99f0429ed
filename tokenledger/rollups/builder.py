"""Compute daily rollups from local session files.

Files are processed concurrently under a semaphore. Each file produces a list
of contributions; only the builder folds them into the rollup map, one file at
a time as they complete.
"""

from __future__ import annotations

import asyncio
import json
import logging
import socket
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any
from urllib.parse import unquote

from pydantic import ValidationError

from tokenledger.models.schemas import (
    DEFAULT_MODEL,
    DailyRollupKey,
    DailyRollupValue,
    ModelUsage,
    RequestUsage,
    SessionFileCache,
    SessionMetrics,
)
from tokenledger.monitoring.metrics import record_file_error, session_files_processed_total
from tokenledger.parsing.session_parser import ModelResolver, parse_session_content
from tokenledger.parsing.token_estimator import EstimateFn, TokenEstimator
from tokenledger.rollups.aggregator import RollupMap, upsert_daily_rollup
from tokenledger.rollups.daykeys import lookback_start, to_utc_day_key

if TYPE_CHECKING:
    from tokenledger.sources.files import FileEnumerator, FileProvider, SessionCache

logger = logging.getLogger(__name__)

MAX_DISPLAY_NAME_LENGTH = 64

Contribution = tuple[DailyRollupKey, DailyRollupValue]

# (timestamp_ms, model, input_tokens, output_tokens, interactions)
_Slice = tuple[float | None, str, int, int, int]


def _request_slices(requests: Iterable[RequestUsage]) -> list[_Slice]:
    return [
        (r.timestamp_ms, r.model, r.input_tokens, r.output_tokens, 1 if r.is_interaction else 0)
        for r in requests
    ]


def _no_estimate(text: str, model: str) -> int:
    return 0


def extract_workspace_id(session_path: str) -> str:
    """Derive the workspace id from where a session file lives."""
    normalized = session_path.replace("\\", "/")
    parts = normalized.split("/")
    lowered = normalized.lower()

    for idx, part in enumerate(parts):
        if part.lower() == "workspacestorage" and idx + 1 < len(parts) and parts[idx + 1]:
            return parts[idx + 1]
    if "/globalstorage/emptywindowchatsessions/" in lowered:
        return "emptyWindow"
    if "/globalstorage/github.copilot-chat/" in lowered:
        return "copilot-chat"
    if "/.copilot/session-state/" in lowered:
        return "copilot-cli"
    return "unknown"


def normalize_display_name(name: Any) -> str | None:
    """Trim a display name, truncating it to 64 characters; blank means None."""
    if not isinstance(name, str):
        return None
    trimmed = name.strip()
    if not trimmed:
        return None
    return trimmed[:MAX_DISPLAY_NAME_LENGTH]


def strip_hostname_domain(hostname: str) -> str:
    trimmed = (hostname or "").strip()
    idx = trimmed.find(".")
    return trimmed[:idx] if idx > 0 else trimmed


def local_machine_name() -> str | None:
    return normalize_display_name(strip_hostname_domain(socket.gethostname()))


def workspace_metadata_candidates(session_path: str) -> list[str]:
    """Return ``workspace.json`` and ``meta.json`` paths next to a workspace storage folder."""
    normalized = session_path.replace("\\", "/")
    marker = "/workspacestorage/"
    idx = normalized.lower().find(marker)
    if idx < 0:
        return []
    storage_id = normalized[idx + len(marker) :].split("/")[0]
    if not storage_id:
        return []
    root = f"{session_path[:idx]}/workspaceStorage/{storage_id}"
    return [f"{root}/workspace.json", f"{root}/meta.json"]


def workspace_name_from_metadata(raw: bytes) -> str | None:
    """Extract a folder or workspace name from a workspace metadata document."""
    try:
        parsed = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    if not isinstance(parsed, dict):
        return None

    uri = parsed.get("folder") or parsed.get("workspace") or parsed.get("configuration") or ""
    uri = str(uri)
    if not uri:
        return None

    fs_path = uri
    if uri.startswith("file://"):
        fs_path = unquote(uri[len("file://") :])
        if len(fs_path) > 2 and fs_path[0] == "/" and fs_path[2] == ":":
            fs_path = fs_path[1:]

    base = PurePosixPath(fs_path.replace("\\", "/").rstrip("/")).name
    if not base:
        return None
    if base.lower().endswith(".code-workspace"):
        base = base[: -len(".code-workspace")]
    return normalize_display_name(base)


def apportion(total: int, weights: dict[str, int]) -> dict[str, int]:
    """Split ``total`` across keys in proportion to ``weights``.

    Uses largest remainders so the parts always sum to ``total``. Ties are
    broken by key name; all-zero weights split evenly.

    Example:
        >>> apportion(5, {"a": 1, "b": 1, "c": 1})
        {'a': 2, 'b': 2, 'c': 1}
    """
    names = sorted(weights)
    if not names or total <= 0:
        return {name: 0 for name in names}

    effective = {name: max(weights[name], 0) for name in names}
    weight_sum = sum(effective.values())
    if weight_sum == 0:
        effective = {name: 1 for name in names}
        weight_sum = len(names)

    shares: dict[str, int] = {}
    remainders: list[tuple[int, str]] = []
    for name in names:
        quotient, remainder = divmod(total * effective[name], weight_sum)
        shares[name] = quotient
        remainders.append((remainder, name))

    leftover = total - sum(shares.values())
    for _, name in sorted(remainders, key=lambda item: (-item[0], item[1]))[:leftover]:
        shares[name] += 1
    return shares


@dataclass
class RollupBuildStats:
    files_seen: int = 0
    files_skipped: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    errors: int = 0


@dataclass
class RollupBuildResult:
    """Rollups plus the names observed while building them."""

    rollups: RollupMap = field(default_factory=dict)
    workspace_names: dict[str, str] = field(default_factory=dict)
    machine_names: dict[str, str] = field(default_factory=dict)
    stats: RollupBuildStats = field(default_factory=RollupBuildStats)
    start_day: str = ""
    end_day: str = ""


@dataclass
class _FileOutcome:
    contributions: list[Contribution] = field(default_factory=list)
    workspace_id: str | None = None
    workspace_name: str | None = None
    skipped: bool = False
    cache_hit: bool | None = None
    error: bool = False


class RollupBuilder:
    """Build privacy-agnostic daily rollups from local session files.

    Example:
        >>> builder = RollupBuilder(files, files, machine_id="m1")
        >>> result = await builder.build(lookback_days=30)
    """

    def __init__(
        self,
        enumerator: FileEnumerator,
        provider: FileProvider,
        machine_id: str,
        machine_name: str | None = None,
        cache: SessionCache | None = None,
        estimate: EstimateFn | None = None,
        model_resolver: ModelResolver | None = None,
        max_concurrency: int = 16,
    ) -> None:
        self.enumerator = enumerator
        self.provider = provider
        self.machine_id = machine_id
        self.machine_name = machine_name
        self.cache = cache
        self.estimate = estimate or TokenEstimator()
        self.model_resolver = model_resolver
        self._semaphore = asyncio.Semaphore(max(1, max_concurrency))

    async def build(
        self,
        lookback_days: int,
        user_id: str | None = None,
        now: datetime | None = None,
        session_files: list[str] | None = None,
    ) -> RollupBuildResult:
        """Compute rollups for the lookback window.

        Args:
            lookback_days: Days to include, counting today
            user_id: Optional user dimension applied to every bucket
            now: Reference time (defaults to the current UTC time)
            session_files: Pre-enumerated files (enumerated when omitted)

        Returns:
            Rollups, names and processing statistics
        """
        now = now or datetime.now(UTC)
        start = lookback_start(lookback_days, now)
        start_ms = start.timestamp() * 1000
        user = (user_id or "").strip() or None

        result = RollupBuildResult(start_day=to_utc_day_key(start), end_day=to_utc_day_key(now))
        if self.machine_name:
            result.machine_names[self.machine_id] = self.machine_name

        files = list(session_files) if session_files is not None else list(await self.enumerator.list_files())
        result.stats.files_seen = len(files)
        logger.info(
            f"Building rollups for {result.start_day}..{result.end_day} "
            f"from {len(files)} session file(s)"
        )

        tasks = [asyncio.create_task(self._process_file(path, start_ms, user)) for path in files]
        for finished in asyncio.as_completed(tasks):
            outcome = await finished
            self._fold(result, outcome)

        stats = result.stats
        looked_up = stats.cache_hits + stats.cache_misses
        if looked_up:
            logger.info(
                f"Session cache: {stats.cache_hits} hit(s), {stats.cache_misses} miss(es) "
                f"({stats.cache_hits * 100 / looked_up:.1f}% hit rate)"
            )
        logger.info(
            f"Built {len(result.rollups)} rollup bucket(s); "
            f"{stats.files_skipped} file(s) outside window, {stats.errors} error(s)"
        )
        return result

    def _fold(self, result: RollupBuildResult, outcome: _FileOutcome) -> None:
        stats = result.stats
        if outcome.skipped:
            stats.files_skipped += 1
        if outcome.error:
            stats.errors += 1
        if outcome.cache_hit is True:
            stats.cache_hits += 1
        elif outcome.cache_hit is False:
            stats.cache_misses += 1

        for key, value in outcome.contributions:
            upsert_daily_rollup(result.rollups, key, value)

        if (
            outcome.workspace_id
            and outcome.workspace_name
            and outcome.workspace_id not in result.workspace_names
        ):
            result.workspace_names[outcome.workspace_id] = outcome.workspace_name

    async def _process_file(self, path: str, start_ms: float, user_id: str | None) -> _FileOutcome:
        async with self._semaphore:
            outcome = _FileOutcome()

            try:
                stat = await self.provider.stat(path)
            except OSError as e:
                self._warn("stat", path, e)
                outcome.error = True
                return outcome

            if stat.mtime_ms < start_ms:
                outcome.skipped = True
                return outcome

            workspace_id = extract_workspace_id(path)
            outcome.workspace_id = workspace_id

            cached = await self._lookup_cache(path, stat.mtime_ms)
            if cached is not None:
                outcome.cache_hit = True
                timeline = cached.request_usage()
                if timeline is not None:
                    slices = _request_slices(timeline)
                else:
                    slices = await self._split_cached_totals(path, cached)
                session_files_processed_total.labels(source="cache").inc()
            else:
                if self.cache is not None:
                    outcome.cache_hit = False
                try:
                    raw = await self.provider.read(path)
                except OSError as e:
                    self._warn("read", path, e)
                    outcome.error = True
                    return outcome

                metrics = parse_session_content(
                    path,
                    raw.decode("utf-8", errors="replace"),
                    self.estimate,
                    self.model_resolver,
                )
                if metrics.parse_failed:
                    outcome.error = True
                else:
                    self._remember(path, stat.mtime_ms, metrics)
                slices = _request_slices(metrics.requests)
                session_files_processed_total.labels(source="parse").inc()

            outcome.contributions = self._bucket(slices, stat.mtime_ms, start_ms, workspace_id, user_id)

            outcome.workspace_name = await self._resolve_workspace_name(path)
            return outcome

    async def _lookup_cache(self, path: str, mtime_ms: float) -> SessionFileCache | None:
        if self.cache is None:
            return None
        try:
            raw = await self.cache.get(path, mtime_ms)
        except Exception as e:
            self._warn("cache", path, e)
            return None
        if raw is None:
            return None
        try:
            return SessionFileCache.model_validate(dict(raw))
        except (ValidationError, TypeError, ValueError) as e:
            self._warn("cache", path, e)
            return None

    def _remember(self, path: str, mtime_ms: float, metrics: SessionMetrics) -> None:
        put = getattr(self.cache, "put", None)
        if callable(put):
            put(path, mtime_ms, metrics)

    async def _split_cached_totals(self, path: str, cached: SessionFileCache) -> list[_Slice]:
        """Spread cached per-model totals over the file's request timeline.

        The file is re-read without token estimation to recover each request's
        time and model. Each model's tokens are split evenly across its
        requests and cached interactions across interactive requests, both by
        largest remainders. Without a readable timeline the totals are kept
        whole and land on the mtime day.
        """
        usage = cached.usage_by_model()
        timeline = await self._read_timeline(path)

        if not timeline:
            weights = {model: u.total for model, u in usage.items()} or {DEFAULT_MODEL: 0}
            interactions = apportion(int(cached.interactions), weights)
            empty = ModelUsage()
            return [
                (
                    None,
                    model,
                    usage.get(model, empty).input_tokens,
                    usage.get(model, empty).output_tokens,
                    interactions[model],
                )
                for model in weights
            ]

        slot_names = [f"{idx:08d}" for idx in range(len(timeline))]
        interactions = apportion(
            int(cached.interactions),
            {name: 1 if request.is_interaction else 0 for name, request in zip(slot_names, timeline)},
        )
        by_model: dict[str, list[str]] = {}
        for name, request in zip(slot_names, timeline):
            by_model.setdefault(request.model, []).append(name)

        slices: list[_Slice] = []
        inputs: dict[str, int] = {}
        outputs: dict[str, int] = {}
        for model, model_usage in usage.items():
            names = by_model.get(model)
            if not names:
                slices.append((None, model, model_usage.input_tokens, model_usage.output_tokens, 0))
                continue
            inputs.update(apportion(model_usage.input_tokens, dict.fromkeys(names, 1)))
            outputs.update(apportion(model_usage.output_tokens, dict.fromkeys(names, 1)))

        for name, request in zip(slot_names, timeline):
            slices.append(
                (
                    request.timestamp_ms,
                    request.model,
                    inputs.get(name, 0),
                    outputs.get(name, 0),
                    interactions[name],
                )
            )
        return slices

    async def _read_timeline(self, path: str) -> list[RequestUsage]:
        try:
            raw = await self.provider.read(path)
        except OSError as e:
            self._warn("read", path, e)
            return []
        metrics = parse_session_content(
            path,
            raw.decode("utf-8", errors="replace"),
            _no_estimate,
            self.model_resolver,
        )
        return metrics.requests

    def _bucket(
        self,
        slices: Iterable[_Slice],
        mtime_ms: float,
        start_ms: float,
        workspace_id: str,
        user_id: str | None,
    ) -> list[Contribution]:
        """Key each slice by its own UTC day, dropping slices before the window."""
        contributions: list[Contribution] = []
        for timestamp_ms, model, input_tokens, output_tokens, interactions in slices:
            event_ms = timestamp_ms if timestamp_ms is not None else mtime_ms
            if event_ms < start_ms:
                continue
            if not (input_tokens or output_tokens or interactions):
                continue
            key = DailyRollupKey(to_utc_day_key(event_ms), model, workspace_id, self.machine_id, user_id)
            contributions.append((key, DailyRollupValue(input_tokens, output_tokens, interactions)))
        return contributions

    async def _resolve_workspace_name(self, path: str) -> str | None:
        for candidate in workspace_metadata_candidates(path):
            try:
                raw = await self.provider.read(candidate)
            except OSError:
                continue
            name = workspace_name_from_metadata(raw)
            if name:
                return name
        return None

    @staticmethod
    def _warn(kind: str, path: str, error: BaseException) -> None:
        record_file_error(kind)
        logger.warning(f"Session file {kind} error: {error.__class__.__name__}")
        logger.debug(f"Session file {kind} error for {path}: {error}")

"""Per-candidate model statistics shared across concurrent runs.

Stores exact event timestamps per candidate key and counter (``success``,
``error``, ``skip``) plus learned capability flags. All reads-then-writes happen
under one lock so concurrent runs see consistent backoff state.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable

from .storage import KeyValueStore

STATS_STORAGE_KEY = "model_stats"
COUNTERS = ("success", "error", "skip")


class ModelStatsStore:
    def __init__(
        self,
        store: KeyValueStore | None = None,
        *,
        max_entries: int = 10_000,
        retention_s: float = 30 * 24 * 3600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._max_entries = max_entries
        self._retention_s = retention_s
        self._clock = clock
        self._data: dict[str, dict[str, list[Any]]] = {}
        self._loaded = False
        self._lock = asyncio.Lock()

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        if self._store is not None:
            self._data = await self._store.get(STATS_STORAGE_KEY) or {}
        self._loaded = True

    async def _persist(self) -> None:
        if self._store is not None:
            await self._store.set(STATS_STORAGE_KEY, self._data)

    def _append(self, key: str, counter: str) -> None:
        entries = self._data.setdefault(key, {}).setdefault(counter, [])
        entries.append(self._clock())
        if len(entries) > self._max_entries:
            cutoff = self._clock() - self._retention_s
            kept = sorted((ts for ts in entries if ts >= cutoff), reverse=True)[: self._max_entries]
            self._data[key][counter] = sorted(kept)

    def _entries(self, key: str, counter: str) -> list[float]:
        return sorted(self._data.get(key, {}).get(counter, []), reverse=True)

    async def increment(self, key: str, counter: str) -> None:
        if counter not in COUNTERS:
            raise ValueError(f"Unknown counter: {counter}")
        async with self._lock:
            await self._ensure_loaded()
            self._append(key, counter)
            await self._persist()

    async def entries(self, key: str, counter: str) -> list[float]:
        """Timestamps for one counter, newest first."""
        async with self._lock:
            await self._ensure_loaded()
            return self._entries(key, counter)

    async def count_since(self, key: str, counter: str, window_s: float) -> int:
        async with self._lock:
            await self._ensure_loaded()
            cutoff = self._clock() - window_s
            return sum(1 for ts in self._data.get(key, {}).get(counter, []) if ts >= cutoff)

    async def should_skip(self, key: str, *, window_s: float) -> bool:
        """Backoff check; records a skip when it decides to skip.

        A candidate whose latest error is newer than its latest success and falls
        inside ``window_s`` is skipped until it has been skipped as many times as
        it has failed since its last success.
        """
        async with self._lock:
            await self._ensure_loaded()
            successes = self._entries(key, "success")
            errors = self._entries(key, "error")
            last_success = successes[0] if successes else 0.0
            last_error = errors[0] if errors else 0.0

            if last_success >= last_error:
                return False
            if self._clock() - last_error > window_s:
                return False
            errors_since_success = sum(1 for ts in errors if ts > last_success)
            if errors_since_success == 0:
                return False
            # Inclusive: a skip recorded in the same clock tick as the error still counts.
            skips_since_error = sum(1 for ts in self._entries(key, "skip") if ts >= last_error)
            if skips_since_error < errors_since_success:
                self._append(key, "skip")
                await self._persist()
                return True
            return False

    async def learn_flag(self, key: str, flag: str) -> None:
        async with self._lock:
            await self._ensure_loaded()
            flags = self._data.setdefault(key, {}).setdefault("flags", [])
            if flag not in flags:
                flags.append(flag)
                await self._persist()

    async def flags(self, key: str) -> frozenset[str]:
        async with self._lock:
            await self._ensure_loaded()
            return frozenset(self._data.get(key, {}).get("flags", []))

    async def summary(self, window_s: float | None = None) -> dict[str, dict[str, int]]:
        async with self._lock:
            await self._ensure_loaded()
            cutoff = self._clock() - window_s if window_s is not None else float("-inf")
            return {
                key: {c: sum(1 for ts in counters.get(c, []) if ts >= cutoff) for c in COUNTERS}
                for key, counters in self._data.items()
            }

"""Ambient context fetched at render time (current time, environment summaries).

Values are fetched fresh on every request unless a TTL is configured, because
they can change between one model call and the next within the same run.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Protocol, Union
from zoneinfo import ZoneInfo

from .logging import get_logger
from .storage import KeyValueStore

logger = get_logger("context_provider")

AmbientFetcher = Callable[[], Union[Any, Awaitable[Any]]]

PREVIOUS_CHAT_KEY = "previous_chat"


class AmbientContextProvider(Protocol):
    def known(self) -> set[str]:
        ...

    async def fetch(self, names: Iterable[str]) -> dict[str, Any]:
        ...


def current_datetime(tz_name: str) -> dict[str, Any]:
    if tz_name.upper() == "UTC":
        tz = timezone.utc
    else:
        tz = ZoneInfo(tz_name)
    now = datetime.now(tz)
    return {
        "timezone": tz_name,
        "iso": now.isoformat(),
        "epoch_seconds": int(now.timestamp()),
        "display": now.strftime("%A, %B %d, %Y %H:%M %Z"),
    }


class DefaultAmbientContext:
    def __init__(
        self,
        *,
        default_timezone: str = "UTC",
        store: KeyValueStore | None = None,
        cache_ttl_s: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cache_ttl_s = cache_ttl_s
        self._clock = clock
        self._cache: dict[str, tuple[float, Any]] = {}
        self._fetchers: dict[str, AmbientFetcher] = {
            "current_datetime": lambda: current_datetime(default_timezone)["display"],
        }
        if store is not None:
            self._fetchers[PREVIOUS_CHAT_KEY] = lambda: _previous_chat(store)

    def register(self, name: str, fetcher: AmbientFetcher) -> None:
        self._fetchers[name] = fetcher

    def known(self) -> set[str]:
        return set(self._fetchers)

    async def fetch(self, names: Iterable[str]) -> dict[str, Any]:
        wanted = [name for name in dict.fromkeys(names) if name in self._fetchers]
        if not wanted:
            return {}
        values = await asyncio.gather(*(self._fetch_one(name) for name in wanted))
        return dict(zip(wanted, values))

    async def _fetch_one(self, name: str) -> Any:
        now = self._clock()
        if self._cache_ttl_s > 0 and name in self._cache:
            fetched_at, value = self._cache[name]
            if now - fetched_at < self._cache_ttl_s:
                return value
        try:
            value = self._fetchers[name]()
            if inspect.isawaitable(value):
                value = await value
        except Exception as exc:  # noqa: BLE001
            logger.warning("ambient_fetch_failed", extra={"extra": {"name": name, "error": str(exc)}})
            return None
        if self._cache_ttl_s > 0:
            self._cache[name] = (now, value)
        return value


async def _previous_chat(store: KeyValueStore) -> dict[str, Any] | None:
    record = await store.get(PREVIOUS_CHAT_KEY)
    if not record:
        return None
    minutes = round((time.time() - float(record.get("timestamp", 0))) / 60)
    return {**record, "minutes_ago": minutes}

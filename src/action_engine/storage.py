"""Key/value persistence used for model statistics and completed traces.

The engine only needs ``get``/``set``/``delete`` on opaque string keys, so the
backing store is swappable. Values must be JSON-serializable.
"""

from __future__ import annotations

import asyncio
import copy
import hashlib
import json
import os
import re
import uuid
from pathlib import Path
from typing import Any, Protocol


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Any | None:
        ...

    async def set(self, key: str, value: Any) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...


class InMemoryStore:
    def __init__(self) -> None:
        self._data: dict[str, Any] = {}

    async def get(self, key: str) -> Any | None:
        return copy.deepcopy(self._data.get(key))

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


_UNSAFE = re.compile(r"[^A-Za-z0-9._-]")


class JsonFileStore:
    """One JSON file per key under ``root``; file IO runs off the event loop."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    def _path(self, key: str) -> Path:
        name = _UNSAFE.sub("_", key)
        if name != key:
            # Sanitised names get a digest suffix so distinct keys never share a file.
            name = f"{name}-{hashlib.sha1(key.encode('utf-8')).hexdigest()[:12]}"
        return self._root / f"{name}.json"

    async def get(self, key: str) -> Any | None:
        return await asyncio.to_thread(self._read, self._path(key))

    async def set(self, key: str, value: Any) -> None:
        await asyncio.to_thread(self._write, self._path(key), value)

    async def delete(self, key: str) -> None:
        path = self._path(key)
        await asyncio.to_thread(path.unlink, missing_ok=True)

    @staticmethod
    def _read(path: Path) -> Any | None:
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    @staticmethod
    def _write(path: Path, value: Any) -> None:
        os.makedirs(path.parent, exist_ok=True)
        tmp = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")
        tmp.write_text(json.dumps(value, ensure_ascii=False, indent=2, default=str), encoding="utf-8")
        os.replace(tmp, path)

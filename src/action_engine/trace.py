"""Trace recording for end-to-end run replay.

A ``Tracer`` owns the node tree of exactly one run. Child ids are the parent's
id plus the child's position under that parent, so concurrent runs and sibling
subtrees never coordinate on a shared counter. Persistence is asynchronous:
every change queues a snapshot write and ``flush()`` awaits all of them.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from datetime import datetime, timezone
from typing import Any

from .logging import get_logger
from .schemas import TraceKind, TraceNode
from .storage import InMemoryStore, KeyValueStore

logger = get_logger("trace")

TRACE_INDEX_KEY = "trace_index"


def now_utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def new_trace_id() -> str:
    return uuid.uuid4().hex


def _trace_key(trace_id: str) -> str:
    return f"trace_{trace_id}"


def iter_nodes(node: TraceNode):
    yield node
    for child in node.children:
        yield from iter_nodes(child)


def usage_summary(root: TraceNode) -> dict[str, int]:
    """Token and call totals over every model_call node in a tree."""
    totals = {"model_calls": 0, "prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0, "warnings": 0}
    for node in iter_nodes(root):
        if node.kind == "warning":
            totals["warnings"] += 1
        if node.kind != "model_call":
            continue
        totals["model_calls"] += 1
        usage = node.meta.get("usage") or {}
        for key in ("prompt_tokens", "completion_tokens", "total_tokens"):
            totals[key] += int(usage.get(key) or 0)
    return totals


class TraceStore:
    """Bounded trace persistence: newest first, oldest evicted past ``max_traces``."""

    def __init__(self, store: KeyValueStore | None = None, *, max_traces: int = 100) -> None:
        self._store = store if store is not None else InMemoryStore()
        self._max_traces = max_traces
        self._lock = asyncio.Lock()

    async def save(self, snapshot: dict[str, Any]) -> None:
        trace_id = snapshot["id"]
        entry = {
            "trace_id": trace_id,
            "name": snapshot.get("name"),
            "status": snapshot.get("status"),
            "started_at": snapshot.get("started_at"),
            "duration_ms": snapshot.get("duration_ms"),
        }
        async with self._lock:
            index: list[dict[str, Any]] = await self._store.get(TRACE_INDEX_KEY) or []
            existing = [i for i, item in enumerate(index) if item["trace_id"] == trace_id]
            if existing:
                index[existing[0]] = entry
            else:
                index.insert(0, entry)
            evicted = index[self._max_traces :]
            index = index[: self._max_traces]
            await self._store.set(_trace_key(trace_id), snapshot)
            await self._store.set(TRACE_INDEX_KEY, index)
            for item in evicted:
                await self._store.delete(_trace_key(item["trace_id"]))

    async def get(self, trace_id: str) -> dict[str, Any] | None:
        return await self._store.get(_trace_key(trace_id))

    async def list(self, limit: int | None = None) -> list[dict[str, Any]]:
        index = await self._store.get(TRACE_INDEX_KEY) or []
        return index if limit is None else index[:limit]

    async def delete(self, trace_id: str) -> bool:
        async with self._lock:
            index = await self._store.get(TRACE_INDEX_KEY) or []
            remaining = [item for item in index if item["trace_id"] != trace_id]
            if len(remaining) == len(index):
                return False
            await self._store.set(TRACE_INDEX_KEY, remaining)
            await self._store.delete(_trace_key(trace_id))
            return True


class Tracer:
    def __init__(self, sink: TraceStore | None = None, *, trace_id: str | None = None) -> None:
        self.trace_id = trace_id or new_trace_id()
        self.root: TraceNode | None = None
        self._sink = sink
        self._pending: list[asyncio.Task] = []
        self._write_queued = False

    def start(
        self,
        kind: TraceKind,
        name: str,
        parent: TraceNode | None = None,
        *,
        input: Any = None,
        meta: dict[str, Any] | None = None,
    ) -> TraceNode:
        if parent is None:
            if self.root is not None:
                raise RuntimeError("Tracer already has a root node")
            node_id = self.trace_id
        else:
            node_id = f"{parent.id}.{len(parent.children)}"
        node = TraceNode(
            id=node_id,
            kind=kind,
            name=name,
            input=input,
            started_at=now_utc_iso(),
            start_time=time.time(),
            meta=dict(meta or {}),
        )
        if parent is None:
            self.root = node
        else:
            parent.children.append(node)
        self._schedule_write()
        return node

    def end(
        self,
        node: TraceNode,
        *,
        output: Any = None,
        error: BaseException | str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> TraceNode:
        if node.status != "running":
            return node
        node.duration_ms = round((time.time() - node.start_time) * 1000, 3)
        if meta:
            node.meta.update(meta)
        if error is not None:
            node.status = "error"
            node.error = getattr(error, "message", None) or str(error) or type(error).__name__
        else:
            node.status = "success"
            node.output = output
        if node is self.root:
            node.meta["stats"] = usage_summary(node)
        self._schedule_write()
        return node

    def warn(self, parent: TraceNode, name: str, detail: Any = None) -> TraceNode:
        node = self.start("warning", name, parent, input=detail)
        return self.end(node, output=detail)

    def abandon_open(self, reason: str) -> None:
        """Close every node still running, e.g. after cancellation."""
        if self.root is None:
            return
        for node in iter_nodes(self.root):
            if node.status == "running":
                self.end(node, error=reason)

    def snapshot(self) -> dict[str, Any] | None:
        return self.root.model_dump(mode="json") if self.root is not None else None

    def _schedule_write(self) -> None:
        if self._sink is None or self._write_queued:
            return
        self._write_queued = True
        previous = self._pending[-1] if self._pending else None
        self._pending.append(asyncio.get_running_loop().create_task(self._write(previous)))

    async def _write(self, previous: asyncio.Task | None) -> None:
        if previous is not None:
            await previous
        self._write_queued = False
        snapshot = self.snapshot()
        if snapshot is None or self._sink is None:
            return
        try:
            await self._sink.save(snapshot)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "trace_write_failed",
                extra={"extra": {"trace_id": self.trace_id, "error": str(exc)}},
            )

    async def finalize(self) -> None:
        """Refresh root statistics (post-steps may have added calls) and flush."""
        if self.root is not None:
            self.root.meta["stats"] = usage_summary(self.root)
            self._schedule_write()
        await self.flush()

    async def flush(self) -> None:
        while self._pending:
            pending, self._pending = self._pending, []
            await asyncio.gather(*pending)

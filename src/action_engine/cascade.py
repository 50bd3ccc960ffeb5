"""Model selection with per-candidate backoff and a last-resort recovery pass.

``generate`` walks the requested tier's candidates (then every lower tier),
skipping candidates in backoff. If that pass is exhausted it retries every known
candidate, least recently failing first, ignoring backoff: a degraded model is
preferred over failing the run.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Literal, Mapping, Sequence

from .errors import CascadeExhaustedError, ConfigurationError, ModelCallError
from .logging import get_logger
from .model_client import ModelClient, ModelRequest, ModelResponse
from .schemas import NO_TOOL_CHOICE, TIER_ORDER, ModelCandidate, Tier
from .stats import ModelStatsStore

logger = get_logger("cascade")

Phase = Literal["cascade", "fallback"]
ErrorHook = Callable[[ModelCandidate, BaseException, Phase], None]


@dataclass
class Attempt:
    model: str
    phase: Phase
    ok: bool
    latency_ms: int
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "phase": self.phase,
            "ok": self.ok,
            "latency_ms": self.latency_ms,
            "error": self.error,
        }


@dataclass
class Generation:
    response: ModelResponse
    candidate: ModelCandidate
    attempts: list[Attempt]


def _dedupe(candidates: Sequence[ModelCandidate]) -> list[ModelCandidate]:
    seen: set[str] = set()
    unique: list[ModelCandidate] = []
    for candidate in candidates:
        if candidate.key not in seen:
            seen.add(candidate.key)
            unique.append(candidate)
    return unique


class ModelCascade:
    def __init__(
        self,
        tiers: Mapping[Tier, Sequence[ModelCandidate]],
        client: ModelClient,
        stats: ModelStatsStore,
        *,
        attempt_timeout_s: float = 40.0,
        skip_window_s: float = 60.0,
        fallback_error_window_s: float = 3600.0,
    ) -> None:
        unknown = set(tiers) - set(TIER_ORDER)
        if unknown:
            raise ConfigurationError(f"Unknown tiers: {sorted(unknown)}")
        self._tiers = {tier: tuple(tiers.get(tier, ())) for tier in TIER_ORDER}
        self._client = client
        self._stats = stats
        self._attempt_timeout_s = attempt_timeout_s
        self._skip_window_s = skip_window_s
        self._fallback_error_window_s = fallback_error_window_s

    @property
    def stats(self) -> ModelStatsStore:
        return self._stats

    def select_candidates(self, tier: Tier) -> list[ModelCandidate]:
        """Requested tier first, then every lower tier, in declared order."""
        if tier not in TIER_ORDER:
            raise ConfigurationError(f"Unknown tier: {tier}")
        start = TIER_ORDER.index(tier)
        return _dedupe([c for level in TIER_ORDER[start:] for c in self._tiers[level]])

    def all_candidates(self) -> list[ModelCandidate]:
        return _dedupe([c for level in TIER_ORDER for c in self._tiers[level]])

    async def should_skip(self, candidate: ModelCandidate) -> bool:
        return await self._stats.should_skip(candidate.key, window_s=self._skip_window_s)

    async def record_success(self, candidate: ModelCandidate) -> None:
        await self._stats.increment(candidate.key, "success")

    async def record_error(self, candidate: ModelCandidate, error: BaseException | None = None) -> None:
        await self._stats.increment(candidate.key, "error")
        if isinstance(error, ModelCallError) and error.tool_choice_unsupported:
            await self._stats.learn_flag(candidate.key, NO_TOOL_CHOICE)

    async def fallback_candidates(self) -> list[ModelCandidate]:
        """Every known candidate, fewest recent errors first (stable)."""
        candidates = self.all_candidates()
        counts = [
            await self._stats.count_since(c.key, "error", self._fallback_error_window_s) for c in candidates
        ]
        order = sorted(range(len(candidates)), key=lambda i: counts[i])
        return [candidates[i] for i in order]

    async def _effective(self, candidate: ModelCandidate) -> ModelCandidate:
        return candidate.with_flags(await self._stats.flags(candidate.key))

    @staticmethod
    def _unsuitable(request: ModelRequest, candidate: ModelCandidate) -> bool:
        if request.requires_tools and candidate.no_tool_use:
            return True
        return request.requires_tools and request.force_tool_choice and candidate.no_tool_choice

    async def _attempt(
        self,
        request: ModelRequest,
        candidate: ModelCandidate,
        phase: Phase,
        attempts: list[Attempt],
        on_error: ErrorHook | None,
    ) -> ModelResponse | BaseException:
        start = time.time()
        try:
            response = await asyncio.wait_for(
                self._client.call(request, candidate), timeout=self._attempt_timeout_s
            )
        except asyncio.TimeoutError:
            error: BaseException = ModelCallError(f"Model call timed out after {self._attempt_timeout_s:g}s")
        except Exception as exc:  # noqa: BLE001
            error = exc
        else:
            latency_ms = int((time.time() - start) * 1000)
            attempts.append(Attempt(model=candidate.model_id, phase=phase, ok=True, latency_ms=latency_ms))
            await self.record_success(candidate)
            return response

        latency_ms = int((time.time() - start) * 1000)
        attempts.append(
            Attempt(model=candidate.model_id, phase=phase, ok=False, latency_ms=latency_ms, error=str(error))
        )
        await self.record_error(candidate, error)
        logger.info(
            "model_attempt_failed",
            extra={
                "extra": {
                    "model": candidate.model_id,
                    "endpoint": candidate.endpoint,
                    "phase": phase,
                    "latency_ms": latency_ms,
                    "error": str(error),
                }
            },
        )
        if on_error is not None:
            on_error(candidate, error, phase)
        return error

    async def generate(
        self,
        request: ModelRequest,
        *,
        tier: Tier = "MEDIUM",
        on_error: ErrorHook | None = None,
    ) -> Generation:
        attempts: list[Attempt] = []
        last_error: BaseException | None = None

        for candidate in self.select_candidates(tier):
            candidate = await self._effective(candidate)
            if self._unsuitable(request, candidate):
                continue
            if await self.should_skip(candidate):
                logger.info("model_skipped", extra={"extra": {"model": candidate.model_id, "reason": "backoff"}})
                continue
            outcome = await self._attempt(request, candidate, "cascade", attempts, on_error)
            if isinstance(outcome, ModelResponse):
                return Generation(response=outcome, candidate=candidate, attempts=attempts)
            last_error = outcome

        fallback = await self.fallback_candidates()
        logger.info(
            "cascade_fallback",
            extra={"extra": {"tier": tier, "models": [c.model_id for c in fallback]}},
        )
        for candidate in fallback:
            candidate = await self._effective(candidate)
            if self._unsuitable(request, candidate):
                continue
            outcome = await self._attempt(request, candidate, "fallback", attempts, on_error)
            if isinstance(outcome, ModelResponse):
                return Generation(response=outcome, candidate=candidate, attempts=attempts)
            last_error = outcome

        if last_error is None:
            last_error = ModelCallError("No eligible model candidate for this request")
        logger.error(
            "cascade_exhausted",
            extra={"extra": {"tier": tier, "attempts": [a.as_dict() for a in attempts]}},
        )
        raise CascadeExhaustedError(last_error, [a.as_dict() for a in attempts])

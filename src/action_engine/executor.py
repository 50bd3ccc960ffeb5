"""Protocol adapter for incoming run requests.

Keep this layer thin so protocol changes do not affect core engine logic.
Engine errors become one terminal message plus a status code, never a traceback.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from .engine import Engine
from .errors import EngineError, StepFailedError
from .logging import get_logger

logger = get_logger("executor")


class RunRequest(BaseModel):
    action: str = Field(..., min_length=1)
    params: dict[str, Any] = Field(default_factory=dict)
    conversation: list[dict[str, Any]] | None = None


class RunError(BaseModel):
    code: str
    message: str
    step_index: int | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class RunResponse(BaseModel):
    ok: bool
    trace_id: str
    result: dict[str, Any] | None = None
    error: RunError | None = None


_STATUS_BY_CODE = {"INVALID_ARGUMENT": 400, "NOT_FOUND": 404, "CONFLICT": 409}


def _status_for(exc: EngineError) -> int:
    return _STATUS_BY_CODE.get(exc.code, 500)


def error_body(exc: EngineError) -> RunError:
    details = dict(exc.details)
    step_index = None
    if isinstance(exc, StepFailedError):
        step_index = exc.step_index
        if exc.validation_errors:
            details["errors"] = exc.validation_errors
    return RunError(code=exc.code, message=exc.message, step_index=step_index, details=details)


async def handle_run(engine: Engine, payload: RunRequest, trace_id: str) -> tuple[int, RunResponse]:
    try:
        outcome = await engine.run_action(
            payload.action,
            payload.params,
            trace_id=trace_id,
            conversation=payload.conversation,
        )
    except EngineError as exc:
        logger.info(
            "run_failed",
            extra={"extra": {"trace_id": trace_id, "action": payload.action, "code": exc.code, "error": exc.message}},
        )
        return _status_for(exc), RunResponse(ok=False, trace_id=trace_id, error=error_body(exc))
    return 200, RunResponse(ok=True, trace_id=outcome.trace_id, result=outcome.result)

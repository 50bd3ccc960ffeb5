"""FastAPI entry for the action engine service."""

from __future__ import annotations

import uuid

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from .engine import Engine, build_engine
from .executor import RunRequest, handle_run
from .logging import configure_logging, get_logger
from .settings import get_settings

app = FastAPI(title="Action Engine", version="0.1.0")
logger = get_logger("app")


def get_engine(request: Request) -> Engine:
    # Built lazily so a TestClient without lifespan events still gets an engine.
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        engine = build_engine(get_settings())
        request.app.state.engine = engine
    return engine


@app.on_event("startup")
def log_startup_config() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info(
        "engine_config",
        extra={
            "extra": {
                "mock_llm": settings.mock_llm,
                "tiers": {tier: [c.model_id for c in models] for tier, models in settings.tiers.items()},
                "step_timeout_s": settings.step_timeout_s,
                "model_timeout_s": settings.model_timeout_s,
                "state_dir": settings.state_dir,
                "trace_enabled": settings.trace_enabled,
            }
        },
    )


@app.on_event("shutdown")
async def drain_post_steps() -> None:
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.aclose()


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/actions")
def actions(request: Request) -> list[dict[str, object]]:
    return get_engine(request).describe_actions()


@app.post("/v1/run")
async def run(payload: RunRequest, request: Request):
    # Preserve incoming trace_id if provided, else generate one.
    trace_id = request.headers.get("x-trace-id") or uuid.uuid4().hex
    status_code, response = await handle_run(get_engine(request), payload, trace_id)
    return JSONResponse(status_code=status_code, content=response.model_dump(mode="json"))


@app.get("/v1/traces")
async def list_traces(request: Request, limit: int | None = None):
    return await get_engine(request).list_traces(limit)


@app.get("/v1/traces/{trace_id}")
async def get_trace(trace_id: str, request: Request):
    trace = await get_engine(request).get_trace(trace_id)
    if trace is None:
        raise HTTPException(status_code=404, detail=f"Unknown trace: {trace_id}")
    return trace


@app.delete("/v1/traces/{trace_id}")
async def delete_trace(trace_id: str, request: Request):
    if not await get_engine(request).delete_trace(trace_id):
        raise HTTPException(status_code=404, detail=f"Unknown trace: {trace_id}")
    return {"deleted": trace_id}

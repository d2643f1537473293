"""API route handlers and Pydantic response schemas."""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel

from promopipe.errors import ConfigurationError, ValidationError
from promopipe.orchestrator.factory import PipelineRuntime
from promopipe.orchestrator.state import is_terminal
from promopipe.schemas.pipeline import PipelineRequest, PipelineRun

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------

class GenerateRequest(PipelineRequest):
    owner_id: str = "anonymous"


class GenerateResponse(BaseModel):
    run_id: str
    status: str = "queued"


class CancelResponse(BaseModel):
    run_id: str
    cancelled: bool


class QueueStatus(BaseModel):
    name: str
    concurrency: int
    limiter_max: Optional[int] = None
    limiter_duration_ms: int
    counts: dict[str, int]


class PurgeResponse(BaseModel):
    name: str
    removed: int


def _runtime(request: Request) -> PipelineRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Pipeline runtime not started")
    return runtime


async def _queue_status(runtime: PipelineRuntime, name: str) -> QueueStatus:
    try:
        cfg = runtime.registry.config(name)
        counts = await runtime.registry.counts(name)
    except ConfigurationError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return QueueStatus(
        name=name,
        concurrency=cfg.concurrency,
        limiter_max=cfg.limiter_max,
        limiter_duration_ms=cfg.limiter_duration_ms,
        counts=counts,
    )


# ---------------------------------------------------------------------------
# Videos
# ---------------------------------------------------------------------------

@router.post("/videos/generate", status_code=202, response_model=GenerateResponse)
async def generate_video(body: GenerateRequest, request: Request):
    """Start a pipeline run and return its id immediately."""
    runtime = _runtime(request)
    pipeline_request = PipelineRequest.model_validate(body.model_dump(exclude={"owner_id"}))
    try:
        run_id = await runtime.orchestrator.submit_pipeline(body.owner_id, pipeline_request)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return GenerateResponse(run_id=run_id)


@router.get("/videos/{run_id}/status", response_model=PipelineRun)
async def get_video_status(run_id: str, request: Request):
    run = await _runtime(request).orchestrator.get_status(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return run


@router.post("/videos/{run_id}/cancel", response_model=CancelResponse)
async def cancel_video(run_id: str, request: Request):
    orchestrator = _runtime(request).orchestrator
    run = await orchestrator.get_status(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")
    if is_terminal(run.stage):
        raise HTTPException(
            status_code=409,
            detail=f"Run already {run.stage.value}",
        )
    cancelled = await orchestrator.cancel_pipeline(run_id)
    return CancelResponse(run_id=run_id, cancelled=cancelled)


# ---------------------------------------------------------------------------
# Queues
# ---------------------------------------------------------------------------

@router.get("/queues/{name}", response_model=QueueStatus)
async def get_queue(name: str, request: Request):
    return await _queue_status(_runtime(request), name)


@router.post("/queues/{name}/pause", response_model=QueueStatus)
async def pause_queue(name: str, request: Request):
    runtime = _runtime(request)
    try:
        await runtime.registry.pause(name)
    except ConfigurationError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return await _queue_status(runtime, name)


@router.post("/queues/{name}/resume", response_model=QueueStatus)
async def resume_queue(name: str, request: Request):
    runtime = _runtime(request)
    try:
        await runtime.registry.resume(name)
    except ConfigurationError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return await _queue_status(runtime, name)


@router.post("/queues/{name}/purge", response_model=PurgeResponse)
async def purge_queue(
    name: str,
    request: Request,
    older_than: float = Query(3600.0, ge=0, description="Grace period in seconds"),
):
    try:
        removed = await _runtime(request).registry.purge(name, older_than)
    except ConfigurationError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return PurgeResponse(name=name, removed=removed)

"""Pipeline API routes for running, cancelling and reviewing runs.

Endpoints:
    POST   /v1/pipeline/runs                Start a run, stream progress as SSE
    POST   /v1/pipeline/cancel              Request cancellation of a run
    GET    /v1/pipeline/runs/active         In-flight runs
    GET    /v1/pipeline/history             Finished runs, newest first
    GET    /v1/pipeline/history/summary     Aggregate stats over history
    GET    /v1/pipeline/history/{run_id}    One finished run
    DELETE /v1/pipeline/history/{run_id}    Delete a finished run
"""

import asyncio
import logging
from typing import AsyncIterator

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse

from src.executor.pipeline_runner import PipelineRun, PipelineRunner
from src.executor.progress import ProgressChannel, format_sse
from src.executor.rate_governor import RATE_LIMITS, client_identity, rate_limit_headers
from src.executor.run_registry import DuplicateRunError
from src.executor.runtime import (
    get_history_store,
    get_pipeline_runner,
    get_rate_governor,
    get_run_registry,
)
from src.executor.schemas import CancelRunRequest, CancelRunResponse, RunRecord, StartRunRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/pipeline", tags=["pipeline"])

# Strong references to run tasks whose stream may already be gone
_background_runs: set[asyncio.Task] = set()


def _launch_run(runner: PipelineRunner, run: PipelineRun, channel: ProgressChannel) -> asyncio.Task:
    """Start executing a registered run in its own task.

    The task is created before any response is sent, so the run reaches a
    terminal state (and leaves the registry) even if the response body is
    never iterated.
    """
    task = asyncio.create_task(runner.execute(run, channel))
    _background_runs.add(task)
    task.add_done_callback(_background_runs.discard)
    return task


async def _relay_events(
    runner: PipelineRunner,
    run: PipelineRun,
    channel: ProgressChannel,
    task: asyncio.Task,
) -> AsyncIterator[str]:
    """Relay a running pipeline's events as SSE frames.

    If the client goes away before the terminal event, the run is
    cancelled rather than left to spend provider calls nobody will read.
    """
    delivered = False
    try:
        async for event in channel:
            yield format_sse(event)
        delivered = True
    finally:
        if not delivered and not task.done():
            logger.info(f"[{run.run_id}] Client disconnected, requesting cancellation")
            runner.registry.request_cancel(run.run_id)


# --- Run endpoints ---


@router.post("/runs")
async def start_run(body: StartRunRequest, request: Request):
    """Start a pipeline run and stream its progress.

    Rate-limited per client. The response is `text/event-stream`; each
    frame is `data: {json}`. The stream ends after `pipeline_complete`
    or `error`.
    """
    identity = client_identity(request.headers)
    limit = get_rate_governor().check_limit(identity, RATE_LIMITS["pipeline"])
    if not limit.allowed:
        raise HTTPException(
            status_code=429,
            detail={"error": "Too many requests", "retry_after": limit.reset_in_seconds},
            headers=rate_limit_headers(limit),
        )

    runner = get_pipeline_runner()
    try:
        run = runner.begin(body)
    except DuplicateRunError as e:
        raise HTTPException(status_code=409, detail=str(e))

    channel = ProgressChannel()
    task = _launch_run(runner, run, channel)
    logger.info(f"Started run {run.run_id} for client {identity} (mode={body.mode.value})")

    return StreamingResponse(
        _relay_events(runner, run, channel, task),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
            "X-Run-Id": run.run_id,
            **rate_limit_headers(limit),
        },
    )


@router.post("/cancel", response_model=CancelRunResponse)
async def cancel_run(body: CancelRunRequest):
    """Request cancellation of a run.

    Unknown or already-finished runs are a no-op, never an error.
    """
    cancelled = get_run_registry().request_cancel(body.run_id)
    message = (
        "Cancellation requested"
        if cancelled
        else "Run not active (already finished or unknown)"
    )
    return CancelRunResponse(run_id=body.run_id, cancelled=cancelled, message=message)


@router.get("/runs/active")
async def list_active_runs():
    runs = get_run_registry().active_runs()
    return {"runs": runs, "count": len(runs)}


# --- History endpoints ---


@router.get("/history")
async def list_history(limit: int = 20):
    """List finished runs, newest first (stage outputs omitted)."""
    runs = get_history_store().list(limit=limit)
    return {
        "runs": [
            {
                **run.model_dump(mode="json", exclude={"outcomes"}),
                "stages": [o.summary() for o in run.outcomes],
            }
            for run in runs
        ],
        "count": len(runs),
    }


@router.get("/history/summary")
async def history_summary():
    return get_history_store().summary()


@router.get("/history/{run_id}", response_model=RunRecord)
async def get_history_run(run_id: str):
    run = get_history_store().get(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")
    return run


@router.delete("/history/{run_id}")
async def delete_history_run(run_id: str):
    if not get_history_store().delete(run_id):
        raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")
    return {"run_id": run_id, "deleted": True}

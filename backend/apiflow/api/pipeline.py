"""
Pipeline execution API.

POST /api/pipelines/{pipeline_id}/execute
  Start a run. Depending on RUN_DISPATCH the run executes inline, as a
  background task, or on the Redis queue worker.
GET /api/pipelines/executions/{execution_id}
  Run status and counters
GET /api/pipelines/executions/{execution_id}/steps
  Step execution records, ordered by step order
POST /api/pipelines/executions/{execution_id}/cancel
  Request cooperative cancellation before the next step
GET /api/pipelines/{pipeline_id}/executions
  Recent runs of a pipeline, newest first
GET /api/pipelines/jobs/{job_id}
  Status of a queued run job
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from apiflow.api.deps import get_db, get_orchestrator
from apiflow.config import settings
from apiflow.exceptions import (
    NoActiveStepsError, PipelineNotFoundError, RunNotFoundError, RunStateError,
)
from apiflow.models import Pipeline, PipelineExecution
from apiflow.schemas.schemas import (
    ExecuteResponse, JobStatusResponse, PipelineExecutionOut, StepExecutionOut,
)
from apiflow.services.execution_store import ExecutionStore
from apiflow.services.job_queue import enqueue_run, get_job_status
from apiflow.services.run_orchestrator import RunOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/pipelines", tags=["pipelines"])


async def _execution_out(db: AsyncSession, run: PipelineExecution) -> PipelineExecutionOut:
    pipeline = await db.get(Pipeline, run.pipeline_id)
    out = PipelineExecutionOut.model_validate(run)
    out.pipeline_name = pipeline.name if pipeline else None
    return out


async def _execute_in_background(orchestrator: RunOrchestrator, run_id: int) -> None:
    try:
        await orchestrator.execute_run(run_id)
    except Exception:
        logger.exception("Background run %s aborted", run_id)


@router.post("/{pipeline_id}/execute", response_model=ExecuteResponse)
async def execute_pipeline(
    pipeline_id: int,
    background_tasks: BackgroundTasks,
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
    db: AsyncSession = Depends(get_db),
) -> ExecuteResponse:
    """Start a pipeline run. The run row is committed before it is dispatched."""
    try:
        run = await orchestrator.start_run(pipeline_id)
    except PipelineNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except NoActiveStepsError as exc:
        raise HTTPException(status_code=422, detail=str(exc))

    dispatch = settings.run_dispatch
    job_id = None
    if dispatch == "inline":
        run = await orchestrator.execute_run(run.id)
    elif dispatch == "queue":
        job_id = await enqueue_run(run.id, pipeline_id)
    else:
        background_tasks.add_task(_execute_in_background, orchestrator, run.id)

    return ExecuteResponse(
        execution=await _execution_out(db, run),
        dispatch=dispatch,
        job_id=job_id,
    )


@router.get("/executions/{execution_id}", response_model=PipelineExecutionOut)
async def get_execution_status(
    execution_id: int,
    db: AsyncSession = Depends(get_db),
) -> PipelineExecutionOut:
    run = await ExecutionStore(db).get_run(execution_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Execution {execution_id} not found")
    return await _execution_out(db, run)


@router.get("/executions/{execution_id}/steps", response_model=list[StepExecutionOut])
async def get_execution_steps(
    execution_id: int,
    db: AsyncSession = Depends(get_db),
) -> list[StepExecutionOut]:
    store = ExecutionStore(db)
    if await store.get_run(execution_id) is None:
        raise HTTPException(status_code=404, detail=f"Execution {execution_id} not found")
    return [StepExecutionOut.model_validate(s) for s in await store.list_step_executions(execution_id)]


@router.post("/executions/{execution_id}/cancel", response_model=PipelineExecutionOut)
async def cancel_execution(
    execution_id: int,
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
    db: AsyncSession = Depends(get_db),
) -> PipelineExecutionOut:
    """Ask a running run to stop before its next step."""
    try:
        run = await orchestrator.request_cancel(execution_id)
    except RunNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except RunStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return await _execution_out(db, run)


@router.get("/{pipeline_id}/executions", response_model=list[PipelineExecutionOut])
async def get_execution_history(
    pipeline_id: int,
    limit: int | None = Query(None, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> list[PipelineExecutionOut]:
    """Recent runs of a pipeline, newest first."""
    pipeline = await db.get(Pipeline, pipeline_id)
    runs = await ExecutionStore(db).list_recent_runs(pipeline_id, limit or settings.recent_runs_limit)
    name = pipeline.name if pipeline else None
    items = []
    for run in runs:
        out = PipelineExecutionOut.model_validate(run)
        out.pipeline_name = name
        items.append(out)
    return items


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_run_job(job_id: str) -> JobStatusResponse:
    """Get the status of a queued run job."""
    data = await get_job_status(job_id)
    if data is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")

    run_id = data.get("run_id")
    return JobStatusResponse(
        job_id=data.get("job_id", job_id),
        run_id=int(run_id) if run_id else None,
        status=data.get("status", "unknown"),
        run_status=data.get("run_status") or None,
        enqueued_at=data.get("enqueued_at", ""),
        started_at=data.get("started_at", ""),
        completed_at=data.get("completed_at", ""),
        error=data.get("error", ""),
    )

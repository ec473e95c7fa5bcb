"""
Pipeline and execution stores.

PipelineStore is the read side of the definition service: the engine only
ever reads pipelines and their active steps. ExecutionStore owns the run and
step-execution records; every update is committed immediately so progress is
visible to pollers and survives a crash mid-run.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from apiflow.models import Pipeline, PipelineExecution, PipelineStep, StepExecution
from apiflow.models.execution import RunStatus, StepStatus, utcnow
from apiflow.services.step_executor import CallTemplate, StepDefinition


def to_step_definition(step: PipelineStep) -> StepDefinition:
    item = step.api_item
    return StepDefinition(
        id=step.id,
        order=step.step_order,
        name=step.step_name,
        description=step.description,
        call=CallTemplate(
            method=item.method,
            url=item.url,
            headers=item.request_headers,
            params=item.request_params,
            body=item.request_body,
        ),
        extraction_spec=step.data_extractions,
        delay_after_ms=step.delay_after or 0,
        skip=bool(step.is_skip),
    )


class PipelineStore:
    """Read-only access to pipeline definitions."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_pipeline(self, pipeline_id: int) -> Pipeline | None:
        """Active pipeline by id, or None."""
        result = await self.session.execute(
            select(Pipeline).where(Pipeline.id == pipeline_id, Pipeline.is_active.is_(True))
        )
        return result.scalar_one_or_none()

    async def get_active_steps(self, pipeline_id: int) -> list[StepDefinition]:
        result = await self.session.execute(
            select(PipelineStep)
            .options(selectinload(PipelineStep.api_item))
            .where(PipelineStep.pipeline_id == pipeline_id, PipelineStep.is_active.is_(True))
            .order_by(PipelineStep.step_order.asc())
        )
        return [to_step_definition(step) for step in result.scalars()]


class ExecutionStore:
    """Write side for runs and step executions."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_run(self, pipeline: Pipeline, total_steps: int) -> PipelineExecution:
        run = PipelineExecution(
            pipeline_id=pipeline.id,
            status=RunStatus.PENDING.value,
            total_steps=total_steps,
            completed_steps=0,
            successful_steps=0,
            failed_steps=0,
            skipped_steps=0,
            started_at=utcnow(),
            cancel_requested=False,
        )
        self.session.add(run)
        await self.update(run)
        return run

    async def create_step_execution(
        self, run: PipelineExecution, step: StepDefinition, status: StepStatus = StepStatus.RUNNING,
    ) -> StepExecution:
        now = utcnow()
        step_execution = StepExecution(
            pipeline_execution_id=run.id,
            pipeline_step_id=step.id,
            step_order=step.order,
            step_name=step.name,
            step_description=step.description,
            status=status.value,
            started_at=now,
            completed_at=now if status == StepStatus.SKIPPED else None,
        )
        self.session.add(step_execution)
        await self.update(step_execution)
        return step_execution

    async def update(self, *records) -> None:
        """Persist the current field values of the given records."""
        for record in records:
            self.session.add(record)
        await self.session.commit()

    async def get_run(self, run_id: int) -> PipelineExecution | None:
        return await self.session.get(PipelineExecution, run_id)

    async def refresh_run(self, run: PipelineExecution) -> None:
        await self.session.refresh(run, ["cancel_requested"])

    async def list_step_executions(self, run_id: int) -> list[StepExecution]:
        result = await self.session.execute(
            select(StepExecution)
            .where(StepExecution.pipeline_execution_id == run_id)
            .order_by(StepExecution.step_order.asc(), StepExecution.id.asc())
        )
        return list(result.scalars())

    async def list_recent_runs(self, pipeline_id: int, limit: int = 50) -> list[PipelineExecution]:
        result = await self.session.execute(
            select(PipelineExecution)
            .where(PipelineExecution.pipeline_id == pipeline_id)
            .order_by(PipelineExecution.started_at.desc(), PipelineExecution.id.desc())
            .limit(limit)
        )
        return list(result.scalars())

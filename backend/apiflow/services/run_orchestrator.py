"""
Run Orchestrator: drives one pipeline run from PENDING to a terminal state.

    PENDING ──► RUNNING ──► COMPLETED
                   │──────► FAILED      (first failing step, fail-fast)
                   └──────► CANCELLED   (cooperative, checked before each step)

Steps run strictly in order on one task. A succeeded step's extraction is
the whole Context of the next step (pipe semantics); a skipped step leaves
the Context unchanged. Every Run/StepExecution change is committed as soon
as it happens, in a database session owned by the orchestrator rather than
by whatever request triggered the run.

The run-scoped HTTP session is opened before the first step and closed on
every exit path, including failures, cancellation and unexpected errors.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from apiflow.config import settings
from apiflow.database import async_session
from apiflow.exceptions import (
    NoActiveStepsError, PipelineNotFoundError, RunNotFoundError, RunStateError,
)
from apiflow.middleware.metrics import (
    pipeline_duration_seconds,
    pipeline_runs_total,
    pipeline_step_duration_seconds,
    pipeline_step_failures_total,
    pipeline_steps_total,
)
from apiflow.middleware.request_context import run_scope
from apiflow.models import PipelineExecution, StepExecution
from apiflow.models.execution import RunStatus, StepStatus, utcnow
from apiflow.services.execution_store import ExecutionStore, PipelineStore
from apiflow.services.session_manager import RunSession, SessionManager
from apiflow.services.step_executor import (
    StepDefinition, StepExecutor, StepFailure, StepOutcome, StepSuccess,
)
from apiflow.services.template_resolver import EMPTY_CONTEXT, Context

logger = logging.getLogger(__name__)


class RunOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        executor: StepExecutor | None = None,
        session_manager: SessionManager | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        capture_session_cookies: bool | None = None,
    ):
        self.session_factory = session_factory or async_session
        self.executor = executor or StepExecutor()
        self.session_manager = session_manager or SessionManager()
        self.sleep = sleep
        self.capture_session_cookies = (
            settings.debug_session_cookies if capture_session_cookies is None else capture_session_cookies
        )

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def start_run(self, pipeline_id: int) -> PipelineExecution:
        """
        Validate the pipeline and create its PENDING run record.

        Raises PipelineNotFoundError / NoActiveStepsError before anything is
        written. The returned run is committed, so it can be polled before the
        loop is dispatched.
        """
        async with self.session_factory() as db:
            pipelines = PipelineStore(db)
            pipeline = await pipelines.get_pipeline(pipeline_id)
            if pipeline is None:
                raise PipelineNotFoundError(pipeline_id)
            steps = await pipelines.get_active_steps(pipeline_id)
            if not steps:
                raise NoActiveStepsError(pipeline_id)

            run = await ExecutionStore(db).create_run(pipeline, total_steps=len(steps))
            logger.info(
                "Created run %s for pipeline %s (%s) with %d steps",
                run.id, pipeline.id, pipeline.name, len(steps),
            )
            return run

    async def execute_run(self, run_id: int) -> PipelineExecution:
        """
        Execute a PENDING run to completion and return its terminal record.

        An unexpected error (store, executor) marks the run FAILED in a fresh
        session and is then re-raised. Task cancellation is not intercepted:
        the run keeps its last committed state.
        """
        with run_scope(run_id):
            async with self.session_factory() as db:
                store = ExecutionStore(db)
                run = await store.get_run(run_id)
                if run is None:
                    raise RunNotFoundError(run_id)
                if run.status != RunStatus.PENDING.value:
                    raise RunStateError(f"Run {run_id} is {run.status}, expected PENDING")

                steps = await PipelineStore(db).get_active_steps(run.pipeline_id)
                try:
                    return await self._drive(store, run, steps)
                except Exception as exc:
                    logger.error("Run %s aborted: %s", run_id, exc, exc_info=True)
                    try:
                        # release any write lock before _abort opens its own session
                        await db.rollback()
                    except Exception:
                        logger.warning("Rollback after run %s abort failed", run_id, exc_info=True)
                    await self._abort(run_id, exc)
                    raise

    async def run_pipeline(self, pipeline_id: int) -> PipelineExecution:
        run = await self.start_run(pipeline_id)
        return await self.execute_run(run.id)

    async def request_cancel(self, run_id: int) -> PipelineExecution:
        """Flag a run for cooperative cancellation before its next step."""
        async with self.session_factory() as db:
            store = ExecutionStore(db)
            run = await store.get_run(run_id)
            if run is None:
                raise RunNotFoundError(run_id)
            if run.run_status.is_terminal:
                raise RunStateError(f"Run {run_id} is already {run.status}")
            run.cancel_requested = True
            await store.update(run)
            logger.info("Cancellation requested for run %s", run_id)
            return run

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _drive(
        self, store: ExecutionStore, run: PipelineExecution, steps: list[StepDefinition],
    ) -> PipelineExecution:
        started = time.perf_counter()
        run.status = RunStatus.RUNNING.value
        run.total_steps = len(steps)
        await store.update(run)

        if not steps:
            self._finish(run, RunStatus.FAILED, str(NoActiveStepsError(run.pipeline_id)))
            await store.update(run)
            self._observe_run(run, started)
            return run

        logger.info("Run %s started: %d steps", run.id, len(steps))
        context = EMPTY_CONTEXT

        async with self.session_manager.open(run.id) as session:
            for step in steps:
                await store.refresh_run(run)
                if run.cancel_requested:
                    self._finish(run, RunStatus.CANCELLED, f"Cancelled before step {step.order}")
                    await store.update(run)
                    logger.info("Run %s cancelled before step %s", run.id, step.order)
                    break

                if step.skip:
                    await self._record_skip(store, run, step)
                    continue

                record = await store.create_step_execution(run, step, StepStatus.RUNNING)
                logger.info("Run %s: executing step %s (%s)", run.id, step.order, step.name)
                outcome = await self.executor.execute(step, context, session)

                if isinstance(outcome, StepFailure):
                    await self._record_failure(store, run, step, record, outcome, session)
                    break

                await self._record_success(store, run, step, record, outcome)
                context = Context.from_raw(outcome.extracted)

                if step.delay_after_ms > 0:
                    logger.debug("Run %s: waiting %dms after step %s", run.id, step.delay_after_ms, step.order)
                    await self.sleep(step.delay_after_ms / 1000)
            else:
                self._capture_cookies(run, session)
                self._finish(run, RunStatus.COMPLETED)
                await store.update(run)
                logger.info(
                    "Run %s completed: %d succeeded, %d skipped",
                    run.id, run.successful_steps, run.skipped_steps,
                )

        self._observe_run(run, started)
        return run

    async def _record_skip(self, store: ExecutionStore, run: PipelineExecution, step: StepDefinition) -> None:
        record = await store.create_step_execution(run, step, StepStatus.SKIPPED)
        run.completed_steps += 1
        run.skipped_steps += 1
        await store.update(record, run)
        pipeline_steps_total.labels(status=StepStatus.SKIPPED.value).inc()
        logger.info("Run %s: step %s skipped", run.id, step.order)

    async def _record_success(
        self,
        store: ExecutionStore,
        run: PipelineExecution,
        step: StepDefinition,
        record: StepExecution,
        outcome: StepSuccess,
    ) -> None:
        self._apply_outcome(record, outcome)
        record.status = StepStatus.SUCCESS.value
        record.extracted_data = dict(outcome.extracted)
        run.completed_steps += 1
        run.successful_steps += 1
        await store.update(record, run)

        pipeline_steps_total.labels(status=StepStatus.SUCCESS.value).inc()
        pipeline_step_duration_seconds.observe(outcome.elapsed_ms / 1000)
        logger.info(
            "Run %s: step %s succeeded with HTTP %s in %.0fms, extracted %s",
            run.id, step.order, outcome.status_code, outcome.elapsed_ms, sorted(outcome.extracted),
        )

    async def _record_failure(
        self,
        store: ExecutionStore,
        run: PipelineExecution,
        step: StepDefinition,
        record: StepExecution,
        outcome: StepFailure,
        session: RunSession,
    ) -> None:
        self._apply_outcome(record, outcome)
        record.status = StepStatus.FAILED.value
        record.error_message = outcome.detail
        run.completed_steps += 1
        run.failed_steps += 1
        self._capture_cookies(run, session)
        self._finish(run, RunStatus.FAILED, f"Step {step.order} failed: {outcome.detail}")
        await store.update(record, run)

        pipeline_steps_total.labels(status=StepStatus.FAILED.value).inc()
        pipeline_step_failures_total.labels(kind=outcome.kind.value).inc()
        if outcome.elapsed_ms is not None:
            pipeline_step_duration_seconds.observe(outcome.elapsed_ms / 1000)
        logger.warning("Run %s failed at step %s (%s): %s", run.id, step.order, outcome.kind.value, outcome.detail)

    async def _abort(self, run_id: int, exc: Exception) -> None:
        """Best-effort: mark the run and any in-flight step FAILED after an unexpected error."""
        message = f"Run aborted: {type(exc).__name__}: {exc}"
        try:
            async with self.session_factory() as db:
                store = ExecutionStore(db)
                run = await store.get_run(run_id)
                if run is None or run.run_status.is_terminal:
                    return
                in_flight = [
                    record for record in await store.list_step_executions(run_id)
                    if record.status == StepStatus.RUNNING.value
                ]
                for record in in_flight:
                    record.status = StepStatus.FAILED.value
                    record.completed_at = utcnow()
                    record.error_message = message
                    run.completed_steps += 1
                    run.failed_steps += 1
                self._finish(run, RunStatus.FAILED, message)
                await store.update(run, *in_flight)
        except Exception:
            logger.exception("Could not record failure of run %s", run_id)
            return
        pipeline_runs_total.labels(status=RunStatus.FAILED.value).inc()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _apply_outcome(record: StepExecution, outcome: StepOutcome) -> None:
        record.completed_at = utcnow()
        record.request_data = outcome.request.to_dict() if outcome.request else None
        record.http_status = outcome.status_code
        record.response_data = outcome.response_body
        record.response_time = outcome.elapsed_ms

    @staticmethod
    def _finish(run: PipelineExecution, status: RunStatus, error_message: str | None = None) -> None:
        if run.run_status.is_terminal:
            raise RunStateError(f"Run {run.id} is already {run.status}")
        run.status = status.value
        run.completed_at = utcnow()
        if error_message is not None:
            run.error_message = error_message

    def _capture_cookies(self, run: PipelineExecution, session: RunSession) -> None:
        if self.capture_session_cookies:
            run.session_cookies = session.cookie_header() or None

    @staticmethod
    def _observe_run(run: PipelineExecution, started: float) -> None:
        pipeline_runs_total.labels(status=run.status).inc()
        pipeline_duration_seconds.observe(time.perf_counter() - started)

"""Asynchronous runner - queue-based pipeline orchestration.

The runner decides what to enqueue and when a pipeline is done; JobWorker
instances execute the queued jobs and report back through
handle_job_completion / handle_job_failure. Every pipeline mutation happens
under the store's lock for that pipeline (single writer, also across
processes sharing a RedisStore), so counting running jobs before dispatch
cannot over-dispatch.

Lifecycle:
    orchestrate() -> create jobs -> start -> dispatch ready jobs
    worker report -> record result -> retry / fail / dispatch -> completion check

execute_pipeline() is the drain variant: it executes ready jobs inline until
none remain, pausing the pipeline when the iteration cap is reached.
"""

from dataclasses import dataclass, field
from typing import Any, AsyncContextManager, Dict, Optional

from flowrunner.constants import SKIP_REASON_BRANCH_NOT_ACTIVE
from flowrunner.core.config import Settings
from flowrunner.core.logging import get_logger
from flowrunner.exceptions import (
    DataFlowError,
    FlowRunnerError,
    InvalidTransitionError,
    NodeExecutionError,
    OrchestrationError,
)
from flowrunner.models.graph import GraphModel
from .branching import BranchEvaluator
from .compiler import WorkflowCompiler
from .dataflow import DataFlowResolver, group_port_mappings
from .dlq import DLQHandlerProtocol, NullDLQHandler
from .events import EventSinkProtocol, NullEventSink, safe_emit
from .models import (
    CompiledPlan,
    ExecutionContext,
    Job,
    JobStatus,
    Pipeline,
    PipelineStatus,
    RetryStrategy,
)
from .pipeline import completed_outputs, create_pipeline, find_blocked_jobs, get_ready_jobs
from .runtime import NodeRuntime
from .store import PipelineStore

logger = get_logger(__name__)


@dataclass
class PipelineRequest:
    """What to run and how. Either graph or plan must be given."""
    graph: Optional[GraphModel] = None
    plan: Optional[CompiledPlan] = None
    input_data: Dict[str, Any] = field(default_factory=dict)
    pipeline_id: Optional[str] = None
    max_concurrent_jobs: Optional[int] = None
    job_priority_strategy: Optional[str] = None
    retry_strategy: Optional[str] = None


@dataclass
class OrchestrationResponse:
    execution_id: str
    status: PipelineStatus
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "status": self.status.value,
            "metadata": self.metadata,
        }


class AsyncRunner:
    """Orchestrates Pipeline/Job lifecycle over a store and work queue."""

    def __init__(self, compiler: WorkflowCompiler, store: PipelineStore,
                 runtime: NodeRuntime, resolver: DataFlowResolver,
                 evaluator: BranchEvaluator,
                 event_sink: Optional[EventSinkProtocol] = None,
                 dlq: Optional[DLQHandlerProtocol] = None,
                 settings: Optional[Settings] = None):
        self.compiler = compiler
        self.store = store
        self.runtime = runtime
        self.resolver = resolver
        self.evaluator = evaluator
        self.event_sink = event_sink or NullEventSink()
        self.dlq = dlq or NullDLQHandler()
        self.settings = settings or Settings()

    # =========================================================================
    # LOCKING / LOADING
    # =========================================================================

    def _pipeline_lock(self, pipeline_id: str) -> AsyncContextManager:
        return self.store.lock(pipeline_id, timeout=self.settings.pipeline_lock_timeout)

    async def _load(self, pipeline_id: str) -> Pipeline:
        pipeline = await self.store.load_pipeline(pipeline_id)
        if pipeline is None:
            raise OrchestrationError("Pipeline not found", pipeline_id=pipeline_id)
        return pipeline

    async def _emit(self, event_type: str, pipeline: Pipeline, **payload) -> None:
        await safe_emit(self.event_sink, event_type, pipeline.id,
                        {"pipeline_id": pipeline.id, **payload})

    # =========================================================================
    # ORCHESTRATE
    # =========================================================================

    async def orchestrate(self, request: PipelineRequest) -> OrchestrationResponse:
        """Create a pipeline from a graph or plan, start it and dispatch ready jobs.

        Raises:
            OrchestrationError: Wrapping the root cause; the pipeline (when one
                was created) is left failed, never in an unknown state
        """
        pipeline: Optional[Pipeline] = None
        try:
            if request.plan is None and request.graph is None:
                raise ValueError("PipelineRequest needs a graph or a compiled plan")
            plan = request.plan or self.compiler.compile(request.graph)

            pipeline = create_pipeline(
                plan,
                request.input_data,
                pipeline_id=request.pipeline_id,
                max_concurrent_jobs=request.max_concurrent_jobs or self.settings.max_concurrent_jobs,
                job_priority_strategy=request.job_priority_strategy or self.settings.job_priority_strategy,
                retry_strategy=request.retry_strategy or self.settings.retry_strategy,
                default_max_retries=self.settings.default_max_retries,
            )

            async with self._pipeline_lock(pipeline.id):
                await self.store.save_pipeline(pipeline)
                await self._emit("pipeline.created", pipeline,
                                 workflow_id=pipeline.workflow_id,
                                 job_count=len(pipeline.jobs))
                for job in pipeline.jobs:
                    await self._emit("job.created", pipeline, job_id=job.id,
                                     node_id=job.node_id, priority=job.priority)

                pipeline.mark_started()
                await self.store.save_pipeline(pipeline)
                await self._emit("pipeline.started", pipeline,
                                 max_concurrent_jobs=pipeline.max_concurrent_jobs,
                                 retry_strategy=pipeline.retry_strategy.value)
                logger.info("Pipeline started", pipeline_id=pipeline.id,
                            workflow_id=pipeline.workflow_id, job_count=len(pipeline.jobs))

                dispatched = await self._advance(pipeline)
                return self._response(pipeline, jobs_dispatched=dispatched)

        except Exception as e:
            pipeline_id = pipeline.id if pipeline else request.pipeline_id
            logger.error("Orchestration failed", pipeline_id=pipeline_id, error=str(e))
            if pipeline is not None:
                await self._fail_after_error(pipeline, str(e))
            if isinstance(e, OrchestrationError):
                raise
            raise OrchestrationError(f"Orchestration failed: {e}", pipeline_id=pipeline_id,
                                     execution_id=pipeline_id) from e

    async def _fail_after_error(self, pipeline: Pipeline, error: str) -> None:
        """Leave a pipeline failed after an unexpected error (best effort)."""
        try:
            async with self._pipeline_lock(pipeline.id):
                if not pipeline.is_terminal:
                    await self._fail_pipeline(pipeline, f"Orchestration error: {error}")
        except Exception as e:
            logger.error("Could not persist failed pipeline state",
                         pipeline_id=pipeline.id, error=str(e))

    def _response(self, pipeline: Pipeline, **extra) -> OrchestrationResponse:
        return OrchestrationResponse(
            execution_id=pipeline.id,
            status=pipeline.status,
            metadata={
                "pipeline_id": pipeline.id,
                "workflow_id": pipeline.workflow_id,
                "job_counts": pipeline.job_counts(),
                "max_concurrent_jobs": pipeline.max_concurrent_jobs,
                "retry_strategy": pipeline.retry_strategy.value,
                "error_message": pipeline.error_message,
                **extra,
            },
        )

    # =========================================================================
    # DISPATCH
    # =========================================================================

    async def _advance(self, pipeline: Pipeline) -> int:
        """Dispatch what fits, then check whether the pipeline is done."""
        if pipeline.status != PipelineStatus.RUNNING:
            return 0
        dispatched = await self._dispatch(pipeline)
        await self._check_completion(pipeline)
        return dispatched

    def _context_for(self, pipeline: Pipeline) -> ExecutionContext:
        return ExecutionContext(
            execution_id=pipeline.id,
            initial_data=dict(pipeline.input_data),
            node_outputs=completed_outputs(pipeline),
        )

    def _resolve_job_inputs(self, pipeline: Pipeline, job: Job) -> Dict[str, Any]:
        mappings = {job.node_id: group_port_mappings(job.incoming_edges)}
        return self.resolver.resolve_inputs(job.node_id, self._context_for(pipeline), mappings)

    async def _dispatch(self, pipeline: Pipeline) -> int:
        slots = pipeline.max_concurrent_jobs - pipeline.running_count
        if slots <= 0:
            return 0

        ready = get_ready_jobs(pipeline, self.evaluator)
        started = 0
        for job in ready[:slots]:
            inputs = self._resolve_job_inputs(pipeline, job)
            if not await self.store.compare_and_set_job_status(
                    job.id, JobStatus.PENDING, JobStatus.RUNNING):
                logger.warning("Job already claimed, skipping dispatch",
                               pipeline_id=pipeline.id, job_id=job.id)
                continue
            job.mark_running(inputs)
            await self.store.save_job(job)
            await self.store.enqueue(job.id)
            await self._emit("job.started", pipeline, job_id=job.id, node_id=job.node_id,
                             attempt=job.retry_count + 1)
            started += 1

        if started:
            logger.info("Jobs dispatched", pipeline_id=pipeline.id, dispatched=started,
                        ready=len(ready), running=pipeline.running_count)
        return started

    async def _check_completion(self, pipeline: Pipeline) -> None:
        """Resolve a quiescent pipeline to completed or failed."""
        if pipeline.status != PipelineStatus.RUNNING or pipeline.running_count:
            return
        if get_ready_jobs(pipeline, self.evaluator):
            return

        blocked = find_blocked_jobs(pipeline)
        if pipeline.has_failed_jobs() and blocked:
            failed = pipeline.jobs_by_status(JobStatus.FAILED)
            await self._fail_pipeline(
                pipeline,
                f"No further progress possible: {len(blocked)} job(s) blocked by failed "
                f"job(s) {', '.join(j.node_id for j in failed)}")
            return

        for job in pipeline.jobs_by_status(JobStatus.PENDING):
            await self._emit("job.skipped", pipeline, job_id=job.id, node_id=job.node_id,
                             reason=SKIP_REASON_BRANCH_NOT_ACTIVE)

        pipeline.mark_completed()
        await self.store.save_pipeline(pipeline)
        await self._emit("pipeline.completed", pipeline, job_counts=pipeline.job_counts())
        logger.info("Pipeline completed", pipeline_id=pipeline.id,
                    job_counts=pipeline.job_counts())

    async def _fail_pipeline(self, pipeline: Pipeline, error: str) -> None:
        pipeline.mark_failed(error)
        await self.store.save_pipeline(pipeline)
        await self._emit("pipeline.failed", pipeline, error=error,
                         job_counts=pipeline.job_counts())
        logger.error("Pipeline failed", pipeline_id=pipeline.id, error=error)

    # =========================================================================
    # WORKER REPORTS
    # =========================================================================

    async def handle_job_completion(self, pipeline_id: str, job_id: str,
                                    output: Dict[str, Any]) -> Pipeline:
        """Record a worker-reported success and re-evaluate the pipeline."""
        async with self._pipeline_lock(pipeline_id):
            pipeline = await self._load(pipeline_id)
            job = self._running_job(pipeline, job_id)
            if job is None:
                return pipeline
            await self._record_completion(pipeline, job, output)
            await self._advance(pipeline)
            return pipeline

    async def handle_job_failure(self, pipeline_id: str, job_id: str, error: str,
                                 retryable: bool = True) -> Pipeline:
        """Record a worker-reported failure, apply retry policy, re-evaluate."""
        async with self._pipeline_lock(pipeline_id):
            pipeline = await self._load(pipeline_id)
            job = self._running_job(pipeline, job_id)
            if job is None:
                return pipeline
            await self._record_failure(pipeline, job, error, retryable)
            await self._advance(pipeline)
            return pipeline

    def _running_job(self, pipeline: Pipeline, job_id: str) -> Optional[Job]:
        job = pipeline.get_job(job_id)
        if job is None:
            raise OrchestrationError("Job not found", pipeline_id=pipeline.id, job_id=job_id)
        if job.status != JobStatus.RUNNING:
            logger.warning("Ignoring report for job that is not running",
                           pipeline_id=pipeline.id, job_id=job_id, status=job.status.value)
            return None
        return job

    async def _record_completion(self, pipeline: Pipeline, job: Job,
                                 output: Dict[str, Any]) -> None:
        job.mark_completed(output)
        await self.store.save_job(job)
        if pipeline.status == PipelineStatus.CANCELLED:
            logger.info("Discarding result of cancelled pipeline",
                        pipeline_id=pipeline.id, job_id=job.id)
            return
        await self._emit("job.completed", pipeline, job_id=job.id, node_id=job.node_id,
                         retry_count=job.retry_count)

    async def _record_failure(self, pipeline: Pipeline, job: Job, error: str,
                              retryable: bool) -> None:
        will_retry = retryable and job.can_retry and not pipeline.is_terminal
        job.mark_failed(error)
        if pipeline.status == PipelineStatus.CANCELLED:
            await self.store.save_job(job)
            logger.info("Discarding failure of cancelled pipeline",
                        pipeline_id=pipeline.id, job_id=job.id, error=error)
            return

        await self._emit("job.failed", pipeline, job_id=job.id, node_id=job.node_id,
                         error=error, retry_count=job.retry_count, will_retry=will_retry)

        if will_retry:
            job.reset_for_retry()
            await self.store.save_job(job)
            logger.info("Job scheduled for retry", pipeline_id=pipeline.id, job_id=job.id,
                        retry_count=job.retry_count, max_retries=job.max_retries)
            return

        await self.store.save_job(job)
        logger.warning("Job failed", pipeline_id=pipeline.id, job_id=job.id,
                       node_id=job.node_id, retryable=retryable, error=error)
        if pipeline.is_terminal:
            return

        await self.dlq.add_failed_job(pipeline, job, error)
        if pipeline.retry_strategy == RetryStrategy.STOP_ON_FAILURE:
            await self._fail_pipeline(
                pipeline,
                f"Pipeline failed due to job failure with stop_on_failure strategy: "
                f"{job.node_id}: {error}")

    # =========================================================================
    # DRAIN
    # =========================================================================

    async def execute_pipeline(self, pipeline_id: str,
                               max_iterations: Optional[int] = None) -> OrchestrationResponse:
        """Execute ready jobs inline until none remain.

        Each iteration runs every job ready at its start. When the cap is
        reached with jobs still ready the pipeline is paused with a diagnostic.
        """
        cap = max_iterations or self.settings.max_pipeline_iterations
        async with self._pipeline_lock(pipeline_id):
            pipeline = await self._load(pipeline_id)
            try:
                if pipeline.status == PipelineStatus.PENDING:
                    pipeline.mark_started()
                    await self.store.save_pipeline(pipeline)
                    await self._emit("pipeline.started", pipeline, mode="drain")
                if pipeline.status != PipelineStatus.RUNNING:
                    raise OrchestrationError(
                        f"Pipeline is {pipeline.status.value}, cannot execute",
                        pipeline_id=pipeline.id)

                iterations = await self._drain(pipeline, cap)
                if pipeline.status == PipelineStatus.RUNNING:
                    await self._check_completion(pipeline)
                return self._response(pipeline, iterations=iterations)

            except FlowRunnerError:
                raise
            except Exception as e:
                logger.error("Pipeline execution failed", pipeline_id=pipeline.id, error=str(e))
                if not pipeline.is_terminal:
                    await self._fail_pipeline(pipeline, f"Orchestration error: {e}")
                raise OrchestrationError(f"Pipeline execution failed: {e}",
                                         pipeline_id=pipeline.id,
                                         execution_id=pipeline.id) from e

    async def _drain(self, pipeline: Pipeline, cap: int) -> int:
        iterations = 0
        while pipeline.status == PipelineStatus.RUNNING:
            ready = get_ready_jobs(pipeline, self.evaluator)
            if not ready:
                break
            if iterations >= cap:
                reason = (f"Maximum iterations ({cap}) reached with {len(ready)} job(s) "
                          f"still ready; the graph may not converge")
                pipeline.pause(reason)
                await self.store.save_pipeline(pipeline)
                await self._emit("pipeline.paused", pipeline, reason=reason,
                                 iterations=iterations)
                logger.warning("Pipeline paused at iteration cap", pipeline_id=pipeline.id,
                               iterations=iterations)
                break

            iterations += 1
            for job in ready:
                if pipeline.status != PipelineStatus.RUNNING:
                    break
                await self._execute_inline(pipeline, job)
        return iterations

    async def _execute_inline(self, pipeline: Pipeline, job: Job) -> None:
        inputs = self._resolve_job_inputs(pipeline, job)
        if not await self.store.compare_and_set_job_status(
                job.id, JobStatus.PENDING, JobStatus.RUNNING):
            logger.warning("Job already claimed", pipeline_id=pipeline.id, job_id=job.id)
            return
        job.mark_running(inputs)
        await self.store.save_job(job)
        await self._emit("job.started", pipeline, job_id=job.id, node_id=job.node_id,
                         attempt=job.retry_count + 1)

        try:
            result = await self.runtime.execute(
                pipeline.id, job.node_id, job.executor_id, inputs, job.config,
                {"job_id": job.id, "attempt": job.retry_count + 1})
        except DataFlowError as e:
            await self._record_failure(pipeline, job, str(e), retryable=False)
        except NodeExecutionError as e:
            await self._record_failure(pipeline, job, str(e), retryable=True)
        else:
            await self._record_completion(pipeline, job, result.output)

    # =========================================================================
    # OPERATOR CONTROLS
    # =========================================================================

    async def pause(self, pipeline_id: str) -> Pipeline:
        """Stop dispatching; in-flight jobs run to completion."""
        async with self._pipeline_lock(pipeline_id):
            pipeline = await self._load(pipeline_id)
            self._apply(pipeline, pipeline.pause)
            await self.store.save_pipeline(pipeline)
            await self._emit("pipeline.paused", pipeline, reason="operator")
            logger.info("Pipeline paused", pipeline_id=pipeline_id)
            return pipeline

    async def resume(self, pipeline_id: str) -> Pipeline:
        """Resume a paused pipeline and dispatch what became ready."""
        async with self._pipeline_lock(pipeline_id):
            pipeline = await self._load(pipeline_id)
            self._apply(pipeline, pipeline.resume)
            await self.store.save_pipeline(pipeline)
            await self._emit("pipeline.resumed", pipeline)
            logger.info("Pipeline resumed", pipeline_id=pipeline_id)
            await self._advance(pipeline)
            return pipeline

    async def cancel(self, pipeline_id: str) -> Pipeline:
        """Cancel a pipeline; pending jobs are cancelled, running ones are ignored."""
        async with self._pipeline_lock(pipeline_id):
            pipeline = await self._load(pipeline_id)
            self._apply(pipeline, pipeline.mark_cancelled)
            for job in pipeline.jobs_by_status(JobStatus.PENDING):
                job.mark_cancelled()
            await self.store.save_pipeline(pipeline)
            await self._emit("pipeline.cancelled", pipeline, job_counts=pipeline.job_counts())
            logger.info("Pipeline cancelled", pipeline_id=pipeline_id)
            return pipeline

    def _apply(self, pipeline: Pipeline, transition) -> None:
        try:
            transition()
        except InvalidTransitionError as e:
            raise OrchestrationError(str(e), pipeline_id=pipeline.id) from e

    async def get_status(self, pipeline_id: str) -> Dict[str, Any]:
        """Pipeline status document with job counts and per-job summaries."""
        pipeline = await self._load(pipeline_id)
        status = pipeline.to_dict(include_jobs=False)
        status["job_counts"] = pipeline.job_counts()
        status["all_jobs_finished"] = pipeline.all_jobs_finished()
        status["jobs"] = [
            {
                "id": job.id,
                "node_id": job.node_id,
                "status": job.status.value,
                "priority": job.priority,
                "retry_count": job.retry_count,
                "error_message": job.error_message,
            }
            for job in pipeline.jobs
        ]
        return status

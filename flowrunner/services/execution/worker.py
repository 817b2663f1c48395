"""Job worker - consumes the work queue and reports results to the runner.

Workers never decide what runs next; they execute one dequeued job and hand
the outcome to AsyncRunner, which owns every pipeline state transition.
"""

import asyncio
from typing import Dict, List, Optional, TYPE_CHECKING

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError
from structlog.contextvars import bound_contextvars

from flowrunner.core.logging import get_logger
from flowrunner.exceptions import DataFlowError, NodeExecutionError
from .models import Job, JobStatus
from .runtime import NodeRuntime
from .store import PipelineStore

if TYPE_CHECKING:
    from .async_runner import AsyncRunner

logger = get_logger(__name__)

TEMPORARY_FAILURE_KEYWORDS = (
    "connection",
    "timeout",
    "temporary",
    "retry",
    "busy",
    "locked",
    "rate limit",
    "quota exceeded",
)


def is_temporary_failure(exc: BaseException) -> bool:
    """True for infrastructure failures worth requeueing the job for.

    Connection and timeout errors always are. Other OS or Redis errors are
    temporary when their message names a transient condition; anything else
    (serialization, programming errors) is permanent.
    """
    if isinstance(exc, (ConnectionError, TimeoutError, asyncio.TimeoutError,
                        RedisConnectionError, RedisTimeoutError)):
        return True
    if not isinstance(exc, (OSError, RedisError)):
        return False
    message = str(exc).lower()
    return any(keyword in message for keyword in TEMPORARY_FAILURE_KEYWORDS)


class JobWorker:
    """Executes queued jobs through the node runtime."""

    def __init__(self, store: PipelineStore, runtime: NodeRuntime, runner: "AsyncRunner",
                 poll_interval: float = 1.0, max_requeues: int = 3):
        self.store = store
        self.runtime = runtime
        self.runner = runner
        self.poll_interval = poll_interval
        self.max_requeues = max_requeues
        self._requeues: Dict[str, int] = {}
        self._running = False
        self._tasks: List[asyncio.Task] = []

    async def process_next(self, timeout: Optional[float] = None) -> Optional[str]:
        """Dequeue and process one job.

        Args:
            timeout: Seconds to wait for work; None returns immediately when
                the queue is empty

        Returns:
            The processed job id, or None when no job was available
        """
        job_id = await self.store.dequeue(timeout)
        if job_id is None:
            return None

        job: Optional[Job] = None
        try:
            job = await self.store.load_job(job_id)
            if job is None:
                logger.warning("Dequeued unknown job", job_id=job_id)
                return job_id
            if job.status != JobStatus.RUNNING:
                logger.debug("Skipping job that is not running", job_id=job_id,
                             status=job.status.value)
                return job_id
            with bound_contextvars(pipeline_id=job.pipeline_id, job_id=job.id,
                                   node_id=job.node_id):
                await self._execute(job)
            self._requeues.pop(job_id, None)

        except Exception as e:
            requeues = self._requeues.get(job_id, 0)
            if is_temporary_failure(e) and requeues < self.max_requeues:
                self._requeues[job_id] = requeues + 1
                logger.warning("Temporary failure, requeueing job", job_id=job_id,
                               requeues=requeues + 1, error=str(e))
                await self.store.enqueue(job_id)
                return job_id

            self._requeues.pop(job_id, None)
            error = f"Worker error: {e}"
            if requeues:
                error += f" (gave up after {requeues} requeue(s))"
            logger.error("Job processing failed", job_id=job_id, error=error)
            if job is not None:
                await self._report_failure(job, error)
        return job_id

    async def _execute(self, job: Job) -> None:
        try:
            result = await self.runtime.execute(
                job.pipeline_id, job.node_id, job.executor_id, job.input_data, job.config,
                {"job_id": job.id, "attempt": job.retry_count + 1})
        except DataFlowError as e:
            await self.runner.handle_job_failure(job.pipeline_id, job.id, str(e),
                                                 retryable=False)
            return
        except NodeExecutionError as e:
            await self.runner.handle_job_failure(job.pipeline_id, job.id, str(e),
                                                 retryable=True)
            return

        await self.runner.handle_job_completion(job.pipeline_id, job.id, result.output)

    async def _report_failure(self, job: Job, error: str) -> None:
        try:
            await self.runner.handle_job_failure(job.pipeline_id, job.id, error,
                                                 retryable=False)
        except Exception as e:
            logger.error("Could not report job failure", job_id=job.id,
                         pipeline_id=job.pipeline_id, error=str(e))

    async def run_until_empty(self) -> int:
        """Process jobs until the queue is empty. Returns the number processed."""
        processed = 0
        while await self.process_next() is not None:
            processed += 1
        return processed

    # =========================================================================
    # BACKGROUND CONSUMERS
    # =========================================================================

    async def start(self, concurrency: int = 1) -> None:
        """Start background consumer tasks."""
        if self._running:
            logger.warning("Job worker already running")
            return

        self._running = True
        self._tasks = [
            asyncio.create_task(self._consume_loop(index))
            for index in range(concurrency)
        ]
        logger.info("Job worker started", concurrency=concurrency,
                    poll_interval=self.poll_interval)

    async def stop(self) -> None:
        """Stop consumers; a job being executed is cancelled."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Job worker stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _consume_loop(self, index: int) -> None:
        while self._running:
            try:
                await self.process_next(timeout=self.poll_interval)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Worker iteration failed", worker=index, error=str(e))
                await asyncio.sleep(self.poll_interval)

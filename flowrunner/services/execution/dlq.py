"""Dead Letter Queue (DLQ) handler for jobs that exhausted their retries.

Optional: enabled via DLQ_ENABLED. When enabled, terminally failed jobs are
stored with their inputs for later inspection.

Usage:
    dlq = create_dlq_handler(store, settings.dlq_enabled)
    await dlq.add_failed_job(pipeline, job, error)
"""

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Protocol

from flowrunner.core.logging import get_logger
from .models import Job, Pipeline
from .store import PipelineStore

logger = get_logger(__name__)


@dataclass
class DLQEntry:
    """Dead-letter record for a terminally failed job."""
    id: str
    pipeline_id: str
    workflow_id: str
    job_id: str
    node_id: str
    executor_id: str
    error: str
    inputs: Dict[str, Any]
    retry_count: int
    created_at: float = field(default_factory=time.time)

    @classmethod
    def create(cls, pipeline: Pipeline, job: Job, error: str) -> "DLQEntry":
        return cls(
            id=str(uuid.uuid4()),
            pipeline_id=pipeline.id,
            workflow_id=pipeline.workflow_id,
            job_id=job.id,
            node_id=job.node_id,
            executor_id=job.executor_id,
            error=error or "Unknown error",
            inputs=job.input_data,
            retry_count=job.retry_count,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pipeline_id": self.pipeline_id,
            "workflow_id": self.workflow_id,
            "job_id": self.job_id,
            "node_id": self.node_id,
            "executor_id": self.executor_id,
            "error": self.error,
            "inputs": self.inputs,
            "retry_count": self.retry_count,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DLQEntry":
        return cls(
            id=data["id"],
            pipeline_id=data["pipeline_id"],
            workflow_id=data.get("workflow_id", ""),
            job_id=data["job_id"],
            node_id=data["node_id"],
            executor_id=data.get("executor_id", ""),
            error=data.get("error", ""),
            inputs=data.get("inputs") or {},
            retry_count=data.get("retry_count", 0),
            created_at=data.get("created_at", time.time()),
        )


class DLQHandlerProtocol(Protocol):
    """Protocol for DLQ handlers (enables duck typing)."""

    @property
    def enabled(self) -> bool:
        ...

    async def add_failed_job(self, pipeline: Pipeline, job: Job, error: str) -> bool:
        ...

    async def list_entries(self, limit: int = 100) -> List[DLQEntry]:
        ...


class NullDLQHandler:
    """No-op DLQ handler when DLQ is disabled (Null Object pattern)."""

    @property
    def enabled(self) -> bool:
        return False

    async def add_failed_job(self, pipeline: Pipeline, job: Job, error: str) -> bool:
        logger.debug("DLQ disabled, skipping failed job storage",
                     job_id=job.id, node_id=job.node_id, error=error)
        return True

    async def list_entries(self, limit: int = 100) -> List[DLQEntry]:
        return []


class DLQHandler:
    """Stores terminally failed jobs in the pipeline store."""

    def __init__(self, store: PipelineStore):
        self.store = store

    @property
    def enabled(self) -> bool:
        return True

    async def add_failed_job(self, pipeline: Pipeline, job: Job, error: str) -> bool:
        """Add a failed job to the Dead Letter Queue.

        Returns:
            True if stored, False otherwise (never raises)
        """
        try:
            entry = DLQEntry.create(pipeline, job, error)
            await self.store.add_dlq_entry(entry.to_dict())
            logger.info("Job added to DLQ", entry_id=entry.id, pipeline_id=pipeline.id,
                        job_id=job.id, node_id=job.node_id, retry_count=job.retry_count)
            return True
        except Exception as e:
            logger.error("Exception adding job to DLQ", job_id=job.id, error=str(e))
            return False

    async def list_entries(self, limit: int = 100) -> List[DLQEntry]:
        return [DLQEntry.from_dict(d) for d in await self.store.list_dlq_entries(limit)]


def create_dlq_handler(store: PipelineStore, enabled: bool = False) -> DLQHandlerProtocol:
    """Factory function to create the appropriate DLQ handler."""
    if enabled:
        logger.info("DLQ enabled")
        return DLQHandler(store)
    logger.debug("DLQ disabled")
    return NullDLQHandler()

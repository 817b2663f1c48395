"""Execution engine state models.

Plan models (EdgeInfo, PortMapping, NodeMapping, CompiledPlan) are frozen and
built once per graph version. Run models (ExecutionContext, Job, Pipeline)
are mutable and owned by exactly one run. Job and Pipeline are
JSON-serializable for the Redis store.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, List, Optional, Tuple

from flowrunner.exceptions import InvalidTransitionError


class JobStatus(str, Enum):
    """Job lifecycle.

    State transitions:
        PENDING -> RUNNING -> COMPLETED
                           -> FAILED -> PENDING (retry)
                           -> CANCELLED
        PENDING -> CANCELLED (pipeline cancelled)
    """
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PipelineStatus(str, Enum):
    """Pipeline lifecycle."""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RetryStrategy(str, Enum):
    INDIVIDUAL = "individual"
    STOP_ON_FAILURE = "stop_on_failure"


JOB_TRANSITIONS: Dict[JobStatus, Tuple[JobStatus, ...]] = {
    JobStatus.PENDING: (JobStatus.RUNNING, JobStatus.CANCELLED),
    JobStatus.RUNNING: (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED),
    JobStatus.FAILED: (JobStatus.PENDING,),
    JobStatus.COMPLETED: (),
    JobStatus.CANCELLED: (),
}

PIPELINE_TRANSITIONS: Dict[PipelineStatus, Tuple[PipelineStatus, ...]] = {
    PipelineStatus.PENDING: (PipelineStatus.RUNNING, PipelineStatus.FAILED,
                             PipelineStatus.CANCELLED),
    PipelineStatus.RUNNING: (PipelineStatus.COMPLETED, PipelineStatus.FAILED,
                             PipelineStatus.PAUSED, PipelineStatus.CANCELLED),
    PipelineStatus.PAUSED: (PipelineStatus.RUNNING, PipelineStatus.FAILED,
                            PipelineStatus.CANCELLED),
    PipelineStatus.COMPLETED: (),
    PipelineStatus.FAILED: (),
    PipelineStatus.CANCELLED: (),
}

TERMINAL_PIPELINE_STATES = (PipelineStatus.COMPLETED, PipelineStatus.FAILED,
                            PipelineStatus.CANCELLED)


# =============================================================================
# COMPILED PLAN
# =============================================================================

@dataclass(frozen=True)
class EdgeInfo:
    """Edge metadata indexed per node (trigger flag, branch name, handles)."""
    edge_id: str
    source: str
    target: str
    source_handle: str = ""
    target_handle: str = ""
    is_trigger: bool = False
    branch_name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "edge_id": self.edge_id,
            "source": self.source,
            "target": self.target,
            "source_handle": self.source_handle,
            "target_handle": self.target_handle,
            "is_trigger": self.is_trigger,
            "branch_name": self.branch_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EdgeInfo":
        return cls(
            edge_id=data.get("edge_id", ""),
            source=data["source"],
            target=data["target"],
            source_handle=data.get("source_handle", ""),
            target_handle=data.get("target_handle", ""),
            is_trigger=data.get("is_trigger", False),
            branch_name=data.get("branch_name", ""),
        )


@dataclass(frozen=True)
class PortMapping:
    """How one edge carries data from a dependency into a node.

    source_port/target_port are None when the handle is absent or malformed.
    """
    edge_id: str
    source_node: str
    target_node: str
    source_port: Optional[str] = None
    target_port: Optional[str] = None
    is_trigger: bool = False
    branch_name: str = ""
    has_handles: bool = False


@dataclass(frozen=True)
class NodeMapping:
    """Resolved executor and static configuration for a node."""
    node_id: str
    executor_id: str
    type_id: str
    label: str = ""
    config: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class NodeEdges:
    incoming: Tuple[EdgeInfo, ...] = ()
    outgoing: Tuple[EdgeInfo, ...] = ()


@dataclass(frozen=True)
class CompiledPlan:
    """Static, order-resolved representation of a graph."""
    workflow_id: str
    execution_order: Tuple[str, ...]
    node_mappings: Dict[str, NodeMapping]
    input_mappings: Dict[str, Dict[str, Tuple[PortMapping, ...]]]
    output_mappings: Dict[str, Dict[str, Tuple[PortMapping, ...]]]
    edge_metadata: Dict[str, NodeEdges]
    metadata: Dict[str, Any] = field(default_factory=dict)

    def incoming_edges(self, node_id: str) -> Tuple[EdgeInfo, ...]:
        edges = self.edge_metadata.get(node_id)
        return edges.incoming if edges else ()

    def dependencies_of(self, node_id: str) -> List[str]:
        """Upstream node ids for a node, in first-seen edge order."""
        return list(self.input_mappings.get(node_id, {}).keys())


# =============================================================================
# SYNCHRONOUS RUN STATE
# =============================================================================

@dataclass
class ExecutionContext:
    """Per-run store of initial data, node outputs and gateway branch state.

    node_outputs is append-only: a node output is written once per run.
    """
    execution_id: str
    initial_data: Dict[str, Any] = field(default_factory=dict)
    node_outputs: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    gateway_outputs: Dict[str, str] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)

    @classmethod
    def create(cls, initial_data: Optional[Dict[str, Any]] = None,
               execution_id: Optional[str] = None) -> "ExecutionContext":
        return cls(
            execution_id=execution_id or str(uuid.uuid4()),
            initial_data=dict(initial_data or {}),
        )

    def set_node_output(self, node_id: str, output: Dict[str, Any]) -> None:
        if node_id in self.node_outputs:
            raise ValueError(f"Output for node '{node_id}' already recorded")
        self.node_outputs[node_id] = output

    def get_node_output(self, node_id: str) -> Optional[Dict[str, Any]]:
        return self.node_outputs.get(node_id)

    def record_gateway_output(self, node_id: str, active_branches: str) -> None:
        self.gateway_outputs[node_id] = active_branches

    @property
    def executed_node_ids(self) -> List[str]:
        return list(self.node_outputs.keys())


@dataclass
class NodeResult:
    """Output of a single node execution."""
    node_id: str
    output: Dict[str, Any]
    execution_time_ms: float = 0.0
    executor_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "executor_id": self.executor_id,
            "output": self.output,
            "execution_time_ms": self.execution_time_ms,
        }


@dataclass
class RunResult:
    """Aggregated results of a synchronous run."""
    execution_id: str
    results: Dict[str, NodeResult] = field(default_factory=dict)
    skipped_node_ids: List[str] = field(default_factory=list)
    elapsed_time: float = 0.0
    context: Optional[ExecutionContext] = None
    status: str = "completed"
    error: Optional[str] = None

    @property
    def metadata(self) -> Dict[str, Any]:
        return {
            "nodes_executed": len(self.results),
            "nodes_skipped": len(self.skipped_node_ids),
            "skipped_node_ids": list(self.skipped_node_ids),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "status": self.status,
            "results": {k: v.to_dict() for k, v in self.results.items()},
            "skipped_node_ids": list(self.skipped_node_ids),
            "elapsed_time": self.elapsed_time,
            "error": self.error,
            "metadata": self.metadata,
        }


# =============================================================================
# PIPELINE / JOB
# =============================================================================

@dataclass
class Job:
    """Durable unit of work for one node inside a pipeline."""
    id: str
    pipeline_id: str
    node_id: str
    executor_id: str
    type_id: str = ""
    label: str = ""
    config: Dict[str, Any] = field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    input_data: Dict[str, Any] = field(default_factory=dict)
    output_data: Optional[Dict[str, Any]] = None
    retry_count: int = 0
    max_retries: int = 3
    priority: int = 0
    sequence: int = 0  # creation order, priority tie-break
    dependencies: List[str] = field(default_factory=list)  # job ids
    incoming_edges: List[EdgeInfo] = field(default_factory=list)
    error_message: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    def _transition(self, target: JobStatus) -> None:
        if target not in JOB_TRANSITIONS[self.status]:
            raise InvalidTransitionError("job", self.id, self.status.value, target.value)
        self.status = target

    def mark_running(self, input_data: Optional[Dict[str, Any]] = None) -> None:
        self._transition(JobStatus.RUNNING)
        if input_data is not None:
            self.input_data = input_data
        self.started_at = time.time()

    def mark_completed(self, output: Dict[str, Any]) -> None:
        self._transition(JobStatus.COMPLETED)
        self.output_data = output
        self.error_message = None
        self.completed_at = time.time()

    def mark_failed(self, error: str) -> None:
        self._transition(JobStatus.FAILED)
        self.error_message = error
        self.completed_at = time.time()

    def mark_cancelled(self) -> None:
        self._transition(JobStatus.CANCELLED)
        self.completed_at = time.time()

    def reset_for_retry(self) -> None:
        """Failed -> pending, consuming one retry."""
        self._transition(JobStatus.PENDING)
        self.retry_count += 1
        self.started_at = None
        self.completed_at = None

    @property
    def can_retry(self) -> bool:
        return self.retry_count < self.max_retries

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pipeline_id": self.pipeline_id,
            "node_id": self.node_id,
            "executor_id": self.executor_id,
            "type_id": self.type_id,
            "label": self.label,
            "config": self.config,
            "status": self.status.value,
            "input_data": self.input_data,
            "output_data": self.output_data,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "priority": self.priority,
            "sequence": self.sequence,
            "dependencies": list(self.dependencies),
            "incoming_edges": [e.to_dict() for e in self.incoming_edges],
            "error_message": self.error_message,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        return cls(
            id=data["id"],
            pipeline_id=data["pipeline_id"],
            node_id=data["node_id"],
            executor_id=data["executor_id"],
            type_id=data.get("type_id", ""),
            label=data.get("label", ""),
            config=data.get("config") or {},
            status=JobStatus(data.get("status", "pending")),
            input_data=data.get("input_data") or {},
            output_data=data.get("output_data"),
            retry_count=data.get("retry_count", 0),
            max_retries=data.get("max_retries", 3),
            priority=data.get("priority", 0),
            sequence=data.get("sequence", 0),
            dependencies=list(data.get("dependencies") or []),
            incoming_edges=[EdgeInfo.from_dict(e) for e in data.get("incoming_edges") or []],
            error_message=data.get("error_message"),
            created_at=data.get("created_at", time.time()),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
        )


@dataclass
class Pipeline:
    """A running graph as a collection of jobs."""
    id: str
    workflow_id: str
    status: PipelineStatus = PipelineStatus.PENDING
    jobs: List[Job] = field(default_factory=list)
    max_concurrent_jobs: int = 5
    job_priority_strategy: str = "dependency_order"
    retry_strategy: RetryStrategy = RetryStrategy.INDIVIDUAL
    input_data: Dict[str, Any] = field(default_factory=dict)
    output_data: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    def _transition(self, target: PipelineStatus) -> None:
        if target not in PIPELINE_TRANSITIONS[self.status]:
            raise InvalidTransitionError("pipeline", self.id, self.status.value, target.value)
        self.status = target

    def mark_started(self) -> None:
        self._transition(PipelineStatus.RUNNING)
        self.started_at = time.time()

    def pause(self, reason: Optional[str] = None) -> None:
        self._transition(PipelineStatus.PAUSED)
        if reason:
            self.error_message = reason

    def resume(self) -> None:
        if self.status != PipelineStatus.PAUSED:
            raise InvalidTransitionError("pipeline", self.id, self.status.value,
                                         PipelineStatus.RUNNING.value)
        self._transition(PipelineStatus.RUNNING)
        self.error_message = None

    def mark_completed(self) -> None:
        self._transition(PipelineStatus.COMPLETED)
        self.output_data = self.collect_outputs()
        self.completed_at = time.time()

    def mark_failed(self, error: str) -> None:
        self._transition(PipelineStatus.FAILED)
        self.error_message = error
        self.output_data = self.collect_outputs()
        self.completed_at = time.time()

    def mark_cancelled(self) -> None:
        self._transition(PipelineStatus.CANCELLED)
        self.completed_at = time.time()

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PIPELINE_STATES

    # =========================================================================
    # JOB QUERIES
    # =========================================================================

    def get_job(self, job_id: str) -> Optional[Job]:
        for job in self.jobs:
            if job.id == job_id:
                return job
        return None

    def get_job_by_node(self, node_id: str) -> Optional[Job]:
        for job in self.jobs:
            if job.node_id == node_id:
                return job
        return None

    def jobs_by_status(self, status: JobStatus) -> List[Job]:
        return [job for job in self.jobs if job.status == status]

    @property
    def running_count(self) -> int:
        return len(self.jobs_by_status(JobStatus.RUNNING))

    def all_jobs_finished(self) -> bool:
        """No job pending or running (an empty pipeline is never finished)."""
        if not self.jobs:
            return False
        return not any(j.status in (JobStatus.PENDING, JobStatus.RUNNING) for j in self.jobs)

    def has_failed_jobs(self) -> bool:
        return any(job.status == JobStatus.FAILED for job in self.jobs)

    def job_counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        for job in self.jobs:
            counts[job.status.value] += 1
        counts["total"] = len(self.jobs)
        return counts

    def collect_outputs(self) -> Dict[str, Any]:
        """Completed job outputs keyed by node id."""
        return {
            job.node_id: job.output_data
            for job in self.jobs
            if job.status == JobStatus.COMPLETED and job.output_data is not None
        }

    def to_dict(self, include_jobs: bool = True) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "job_ids": [job.id for job in self.jobs],
            "max_concurrent_jobs": self.max_concurrent_jobs,
            "job_priority_strategy": self.job_priority_strategy,
            "retry_strategy": self.retry_strategy.value,
            "input_data": self.input_data,
            "output_data": self.output_data,
            "error_message": self.error_message,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }
        if include_jobs:
            data["jobs"] = [job.to_dict() for job in self.jobs]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], jobs: Optional[List[Job]] = None) -> "Pipeline":
        if jobs is None:
            jobs = [Job.from_dict(j) for j in data.get("jobs") or []]
        return cls(
            id=data["id"],
            workflow_id=data.get("workflow_id", ""),
            status=PipelineStatus(data.get("status", "pending")),
            jobs=jobs,
            max_concurrent_jobs=data.get("max_concurrent_jobs", 5),
            job_priority_strategy=data.get("job_priority_strategy", "dependency_order"),
            retry_strategy=RetryStrategy(data.get("retry_strategy", "individual")),
            input_data=data.get("input_data") or {},
            output_data=data.get("output_data") or {},
            error_message=data.get("error_message"),
            created_at=data.get("created_at", time.time()),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
        )

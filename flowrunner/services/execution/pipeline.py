"""Pipeline construction, job priority and readiness.

A ready job is pending, has every non-trigger dependency completed, and
satisfies the trigger-edge rule with completed jobs as the executed set and
completed gateway outputs as branch state. Ready jobs are ordered by
(priority, sequence): lower priority first, creation order breaking ties.
"""

import uuid
from typing import Any, Dict, List, Optional, Set

from flowrunner.constants import (
    DEFAULT_MAX_CONCURRENT_JOBS,
    DEFAULT_MAX_RETRIES,
    PRIORITY_DEPENDENCY_WEIGHT,
    PRIORITY_INPUT_BONUS,
    PRIORITY_OUTPUT_PENALTY,
)
from flowrunner.core.logging import get_logger
from .branching import BranchEvaluator, gateway_outputs_from
from .models import CompiledPlan, Job, JobStatus, Pipeline, RetryStrategy

logger = get_logger(__name__)

PRIORITY_STRATEGIES = ("dependency_order", "fifo", "custom")


def calculate_priority(strategy: str, type_id: str, dependency_count: int,
                       config: Optional[Dict[str, Any]] = None) -> int:
    """Numeric priority for a job; lower runs sooner.

    dependency_order: dependencies x 10, input-type nodes -50, output-type +50.
    fifo: always 0 (creation order decides).
    custom: node config "priority".
    """
    if strategy == "fifo":
        return 0
    if strategy == "custom":
        return int((config or {}).get("priority", 0))

    priority = dependency_count * PRIORITY_DEPENDENCY_WEIGHT
    type_lower = (type_id or "").lower()
    if "input" in type_lower:
        priority += PRIORITY_INPUT_BONUS
    if "output" in type_lower:
        priority += PRIORITY_OUTPUT_PENALTY
    return priority


def create_pipeline(plan: CompiledPlan, input_data: Optional[Dict[str, Any]] = None,
                    pipeline_id: Optional[str] = None,
                    max_concurrent_jobs: int = DEFAULT_MAX_CONCURRENT_JOBS,
                    job_priority_strategy: str = "dependency_order",
                    retry_strategy: str = "individual",
                    default_max_retries: int = DEFAULT_MAX_RETRIES) -> Pipeline:
    """Build a pending pipeline with one job per plan node.

    Jobs are created in execution order, so `sequence` follows it.
    """
    if job_priority_strategy not in PRIORITY_STRATEGIES:
        logger.warning("Unknown priority strategy, using dependency_order",
                       strategy=job_priority_strategy)
        job_priority_strategy = "dependency_order"

    pipeline = Pipeline(
        id=pipeline_id or str(uuid.uuid4()),
        workflow_id=plan.workflow_id,
        max_concurrent_jobs=max_concurrent_jobs,
        job_priority_strategy=job_priority_strategy,
        retry_strategy=RetryStrategy(retry_strategy),
        input_data=dict(input_data or {}),
    )

    job_ids = {node_id: str(uuid.uuid4()) for node_id in plan.execution_order}
    for sequence, node_id in enumerate(plan.execution_order):
        mapping = plan.node_mappings[node_id]
        dependencies = [job_ids[dep] for dep in plan.dependencies_of(node_id)]
        pipeline.jobs.append(Job(
            id=job_ids[node_id],
            pipeline_id=pipeline.id,
            node_id=node_id,
            executor_id=mapping.executor_id,
            type_id=mapping.type_id,
            label=mapping.label,
            config=dict(mapping.config),
            max_retries=int(mapping.config.get("max_retries", default_max_retries)),
            priority=calculate_priority(job_priority_strategy, mapping.type_id,
                                        len(dependencies), mapping.config),
            sequence=sequence,
            dependencies=dependencies,
            incoming_edges=list(plan.incoming_edges(node_id)),
        ))

    logger.info("Pipeline created", pipeline_id=pipeline.id, workflow_id=plan.workflow_id,
                job_count=len(pipeline.jobs))
    return pipeline


def sort_jobs(jobs: List[Job]) -> List[Job]:
    return sorted(jobs, key=lambda job: (job.priority, job.sequence))


def completed_outputs(pipeline: Pipeline) -> Dict[str, Dict[str, Any]]:
    """Node id -> output for completed jobs."""
    return {
        job.node_id: job.output_data or {}
        for job in pipeline.jobs
        if job.status == JobStatus.COMPLETED
    }


def data_dependency_nodes(job: Job) -> Set[str]:
    """Source nodes feeding the job through at least one non-trigger edge."""
    return {edge.source for edge in job.incoming_edges if not edge.is_trigger}


def is_job_ready(job: Job, completed_nodes: Set[str], gateway_outputs: Dict[str, str],
                 evaluator: BranchEvaluator) -> bool:
    if job.status != JobStatus.PENDING:
        return False
    if not data_dependency_nodes(job) <= completed_nodes:
        return False
    decision = evaluator.evaluate_edges(job.node_id, job.incoming_edges,
                                        gateway_outputs, completed_nodes)
    return decision.execute


def get_ready_jobs(pipeline: Pipeline, evaluator: BranchEvaluator) -> List[Job]:
    """Pending jobs whose dependencies and trigger conditions are satisfied."""
    outputs = completed_outputs(pipeline)
    completed_nodes = set(outputs)
    gateway_outputs = gateway_outputs_from(outputs)
    ready = [
        job for job in pipeline.jobs
        if is_job_ready(job, completed_nodes, gateway_outputs, evaluator)
    ]
    return sort_jobs(ready)


def find_blocked_jobs(pipeline: Pipeline) -> List[Job]:
    """Pending jobs that can never run because an upstream job failed.

    A job is blocked when a data dependency failed (or is itself blocked), or
    when it has trigger edges and every trigger source failed or is blocked.
    """
    dead: Set[str] = {
        job.node_id for job in pipeline.jobs
        if job.status in (JobStatus.FAILED, JobStatus.CANCELLED)
    }
    blocked: List[Job] = []

    for job in sorted(pipeline.jobs, key=lambda j: j.sequence):
        if job.status != JobStatus.PENDING:
            continue
        trigger_sources = {e.source for e in job.incoming_edges if e.is_trigger}
        if data_dependency_nodes(job) & dead or (trigger_sources and trigger_sources <= dead):
            dead.add(job.node_id)
            blocked.append(job)

    return blocked

"""Execution engine package.

Workflow graph compilation and execution with:
- Deterministic compile (topological order, port mappings, executor binding)
- Trigger-edge and gateway branch evaluation
- Synchronous single-pass runner
- Queue-based async runner with retries, priorities and concurrency limits
- Redis or in-memory pipeline store with compare-and-swap status updates
"""

from .models import (
    JobStatus,
    PipelineStatus,
    RetryStrategy,
    EdgeInfo,
    PortMapping,
    NodeMapping,
    CompiledPlan,
    ExecutionContext,
    NodeResult,
    RunResult,
    Job,
    Pipeline,
)
from .registry import ExecutorRegistry, NodeExecutorProtocol
from .compiler import WorkflowCompiler, validate_plan
from .branching import BranchDecision, BranchEvaluator, parse_active_branches
from .dataflow import DataFlowResolver, FieldViolation, MERGE_STRATEGIES
from .conditions import (
    evaluate_condition,
    evaluate_conditions,
    get_nested_value,
    OPERATORS,
)
from .builtins import (
    GatewayExecutor,
    PassthroughExecutor,
    create_registry,
    register_builtin_executors,
)
from .runtime import NodeRuntime
from .sync_runner import SynchronousRunner
from .pipeline import (
    calculate_priority,
    create_pipeline,
    find_blocked_jobs,
    get_ready_jobs,
)
from .store import InMemoryStore, PipelineStore, RedisStore, create_store
from .events import (
    EventSinkProtocol,
    LoggingEventSink,
    MemoryEventSink,
    NullEventSink,
    create_event_sink,
    safe_emit,
)
from .dlq import (
    DLQEntry,
    DLQHandler,
    NullDLQHandler,
    DLQHandlerProtocol,
    create_dlq_handler,
)
from .async_runner import AsyncRunner, OrchestrationResponse, PipelineRequest
from .worker import JobWorker, is_temporary_failure

__all__ = [
    # Models
    "JobStatus",
    "PipelineStatus",
    "RetryStrategy",
    "EdgeInfo",
    "PortMapping",
    "NodeMapping",
    "CompiledPlan",
    "ExecutionContext",
    "NodeResult",
    "RunResult",
    "Job",
    "Pipeline",
    # Registry / compiler
    "ExecutorRegistry",
    "NodeExecutorProtocol",
    "WorkflowCompiler",
    "validate_plan",
    # Branching / data flow
    "BranchDecision",
    "BranchEvaluator",
    "parse_active_branches",
    "DataFlowResolver",
    "FieldViolation",
    "MERGE_STRATEGIES",
    # Conditions
    "evaluate_condition",
    "evaluate_conditions",
    "get_nested_value",
    "OPERATORS",
    # Executors
    "GatewayExecutor",
    "PassthroughExecutor",
    "register_builtin_executors",
    "create_registry",
    "NodeRuntime",
    # Runners
    "SynchronousRunner",
    "AsyncRunner",
    "PipelineRequest",
    "OrchestrationResponse",
    "JobWorker",
    "is_temporary_failure",
    # Pipeline
    "calculate_priority",
    "create_pipeline",
    "find_blocked_jobs",
    "get_ready_jobs",
    # Store
    "PipelineStore",
    "InMemoryStore",
    "RedisStore",
    "create_store",
    # Events
    "EventSinkProtocol",
    "NullEventSink",
    "LoggingEventSink",
    "MemoryEventSink",
    "create_event_sink",
    "safe_emit",
    # DLQ
    "DLQEntry",
    "DLQHandler",
    "NullDLQHandler",
    "DLQHandlerProtocol",
    "create_dlq_handler",
]

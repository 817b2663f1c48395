"""Engine error taxonomy.

CompileError family is raised before anything runs. DataFlowError and
NodeExecutionError belong to a single node. OrchestrationError is what a
pipeline boundary surfaces, always carrying correlation identifiers.
"""

from typing import Any, List, Optional


class FlowRunnerError(Exception):
    """Base class for all engine errors."""


# =============================================================================
# COMPILATION
# =============================================================================

class CompileError(FlowRunnerError):
    """Graph cannot be turned into an execution plan."""

    def __init__(self, message: str, node_id: Optional[str] = None,
                 edge_id: Optional[str] = None):
        super().__init__(message)
        self.node_id = node_id
        self.edge_id = edge_id


class CyclicGraphError(CompileError):
    """Graph contains a cycle; `cycle` lists its members in traversal order."""

    def __init__(self, node_id: str, cycle: Optional[List[str]] = None):
        self.cycle = cycle or [node_id]
        path = " -> ".join(self.cycle + [self.cycle[0]])
        super().__init__(f"Workflow contains a cycle involving node '{node_id}': {path}",
                         node_id=node_id)


class UnknownExecutorError(CompileError):
    """No executor is registered for a node type."""

    def __init__(self, node_id: str, type_id: str):
        self.type_id = type_id
        super().__init__(f"No executor registered for type '{type_id}' (node '{node_id}')",
                         node_id=node_id)


class MalformedGraphError(CompileError):
    """Workflow document structure is invalid."""


# =============================================================================
# RUNTIME
# =============================================================================

class DataFlowError(FlowRunnerError):
    """Schema violation or malformed transform input."""

    def __init__(self, message: str, violations: Optional[List[Any]] = None,
                 node_id: Optional[str] = None):
        super().__init__(message)
        self.violations = violations or []
        self.node_id = node_id


class NodeExecutionError(FlowRunnerError):
    """Failure reported by (or while invoking) a node executor."""

    def __init__(self, message: str, node_id: Optional[str] = None,
                 execution_id: Optional[str] = None, partial_result: Any = None):
        super().__init__(message)
        self.node_id = node_id
        self.execution_id = execution_id
        self.partial_result = partial_result


class InvalidTransitionError(FlowRunnerError):
    """Illegal job or pipeline status change."""

    def __init__(self, entity: str, entity_id: str, current: str, target: str):
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.target = target
        super().__init__(f"Cannot move {entity} '{entity_id}' from {current} to {target}")


class OrchestrationError(FlowRunnerError):
    """Pipeline-level failure wrapping the root cause."""

    def __init__(self, message: str, pipeline_id: Optional[str] = None,
                 job_id: Optional[str] = None, execution_id: Optional[str] = None):
        details = [f"{k}={v}" for k, v in (("pipeline_id", pipeline_id), ("job_id", job_id),
                                            ("execution_id", execution_id)) if v]
        super().__init__(f"{message} [{', '.join(details)}]" if details else message)
        self.pipeline_id = pipeline_id
        self.job_id = job_id
        self.execution_id = execution_id

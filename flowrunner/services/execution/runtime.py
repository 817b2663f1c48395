"""Node runtime - invokes one executor with shaped inputs.

Shared by the synchronous runner and the job worker so both paths apply the
same input schema, timeout and error wrapping.
"""

import asyncio
import time
from typing import Any, Dict, Optional

from structlog.contextvars import bound_contextvars

from flowrunner.core.logging import get_logger
from flowrunner.exceptions import DataFlowError, NodeExecutionError
from .dataflow import DataFlowResolver
from .models import NodeResult
from .registry import ExecutorRegistry

logger = get_logger(__name__)


class NodeRuntime:
    """Executes a single node through the executor registry."""

    def __init__(self, registry: ExecutorRegistry, resolver: DataFlowResolver,
                 default_timeout: Optional[float] = None):
        self.registry = registry
        self.resolver = resolver
        self.default_timeout = default_timeout

    async def execute(self, execution_id: str, node_id: str, executor_id: str,
                      inputs: Dict[str, Any], config: Dict[str, Any],
                      context: Optional[Dict[str, Any]] = None) -> NodeResult:
        """Execute a node.

        Args:
            execution_id: Run or pipeline identifier for correlation
            node_id: Node being executed
            executor_id: Resolved executor id from the compiled plan
            inputs: Resolved input record
            config: Static node configuration
            context: Extra correlation fields for logging (job_id, attempt)

        Returns:
            NodeResult with the output record and execution time

        Raises:
            DataFlowError: Input schema violation (not retryable)
            NodeExecutionError: Executor failure, timeout or missing executor
        """
        context = context or {}
        start_time = time.time()
        timeout = config.get("timeout", self.default_timeout)

        logger.debug("Executing node", execution_id=execution_id, node_id=node_id,
                     executor_id=executor_id, **context)
        try:
            inputs = self.resolver.apply_node_schema(node_id, inputs, config)
            with bound_contextvars(execution_id=execution_id, node_id=node_id):
                call = self.registry.invoke(executor_id, inputs, config)
                if timeout:
                    output = await asyncio.wait_for(call, timeout=timeout)
                else:
                    output = await call
        except DataFlowError as e:
            e.node_id = e.node_id or node_id
            raise
        except asyncio.TimeoutError as e:
            raise NodeExecutionError(
                f"Node execution timed out after {timeout}s for {node_id}",
                node_id=node_id, execution_id=execution_id) from e
        except KeyError as e:
            if self.registry.get(executor_id) is None:
                raise NodeExecutionError(f"Executor not registered: {executor_id}",
                                         node_id=node_id, execution_id=execution_id) from e
            raise NodeExecutionError(f"Node execution failed for {node_id}: {e}",
                                     node_id=node_id, execution_id=execution_id) from e
        except NodeExecutionError as e:
            e.node_id = e.node_id or node_id
            e.execution_id = e.execution_id or execution_id
            raise
        except Exception as e:
            logger.error("Node execution error", execution_id=execution_id,
                         node_id=node_id, error=str(e))
            raise NodeExecutionError(f"Node execution failed for {node_id}: {e}",
                                     node_id=node_id, execution_id=execution_id) from e

        if not isinstance(output, dict):
            output = {"result": output}

        execution_time_ms = round((time.time() - start_time) * 1000, 3)
        logger.debug("Node executed", execution_id=execution_id, node_id=node_id,
                     execution_time_ms=execution_time_ms)
        return NodeResult(node_id=node_id, output=output,
                          execution_time_ms=execution_time_ms, executor_id=executor_id)

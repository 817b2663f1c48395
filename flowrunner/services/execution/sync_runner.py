"""Synchronous runner - executes a compiled plan in one pass.

Nodes run one at a time in compiled execution order. A node whose trigger
edges are all unsatisfied is skipped (reason branch_not_active) and the pass
continues. The first node failure aborts the rest of the plan.
"""

import time
from typing import Any, Dict, Optional

from flowrunner.constants import get_active_branches, has_active_branches
from flowrunner.core.logging import get_logger, log_execution_time
from flowrunner.exceptions import DataFlowError, NodeExecutionError
from flowrunner.models.graph import GraphModel
from .branching import BranchEvaluator
from .compiler import WorkflowCompiler
from .dataflow import DataFlowResolver
from .events import EventSinkProtocol, NullEventSink, safe_emit
from .models import CompiledPlan, ExecutionContext, RunResult
from .runtime import NodeRuntime

logger = get_logger(__name__)


class SynchronousRunner:
    """In-process, single-pass plan execution."""

    def __init__(self, compiler: WorkflowCompiler, runtime: NodeRuntime,
                 resolver: DataFlowResolver, evaluator: BranchEvaluator,
                 event_sink: Optional[EventSinkProtocol] = None):
        self.compiler = compiler
        self.runtime = runtime
        self.resolver = resolver
        self.evaluator = evaluator
        self.event_sink = event_sink or NullEventSink()

    async def run_graph(self, graph: GraphModel,
                        initial_data: Optional[Dict[str, Any]] = None) -> RunResult:
        """Compile then run. Cyclic graphs are refused at compile time."""
        plan = self.compiler.compile(graph)
        return await self.run(plan, initial_data)

    async def run(self, plan: CompiledPlan, initial_data: Optional[Dict[str, Any]] = None,
                  execution_id: Optional[str] = None) -> RunResult:
        """Run a compiled plan to completion.

        Args:
            plan: Compiled plan
            initial_data: Input data available to every node
            execution_id: Optional run identifier

        Returns:
            RunResult with per-node results, skipped node ids and elapsed time

        Raises:
            NodeExecutionError: First node failure; partial_result holds the
                results accumulated before it
        """
        start_time = time.time()
        ctx = ExecutionContext.create(initial_data, execution_id)
        result = RunResult(execution_id=ctx.execution_id, context=ctx)

        logger.info("Synchronous run started", execution_id=ctx.execution_id,
                    workflow_id=plan.workflow_id, node_count=len(plan.execution_order))
        await safe_emit(self.event_sink, "execution.started", ctx.execution_id, {
            "workflow_id": plan.workflow_id,
            "node_count": len(plan.execution_order),
        })

        for node_id in plan.execution_order:
            decision = self.evaluator.evaluate(node_id, ctx.gateway_outputs,
                                               plan.edge_metadata, ctx.executed_node_ids)
            if not decision.execute:
                result.skipped_node_ids.append(node_id)
                logger.info("Node skipped", execution_id=ctx.execution_id,
                            node_id=node_id, reason=decision.reason)
                await safe_emit(self.event_sink, "node.skipped", ctx.execution_id, {
                    "node_id": node_id,
                    "reason": decision.reason,
                })
                continue

            await self._execute_node(plan, ctx, result, node_id, start_time)

        result.elapsed_time = time.time() - start_time
        await safe_emit(self.event_sink, "execution.completed", ctx.execution_id,
                        result.metadata)
        log_execution_time(logger, "synchronous_run", start_time, time.time(),
                           execution_id=ctx.execution_id, **result.metadata)
        return result

    async def _execute_node(self, plan: CompiledPlan, ctx: ExecutionContext,
                            result: RunResult, node_id: str, start_time: float) -> None:
        mapping = plan.node_mappings[node_id]
        inputs = self.resolver.resolve_inputs(node_id, ctx, plan.input_mappings)

        await safe_emit(self.event_sink, "node.started", ctx.execution_id, {
            "node_id": node_id,
            "executor_id": mapping.executor_id,
        })

        try:
            node_result = await self.runtime.execute(
                ctx.execution_id, node_id, mapping.executor_id, inputs, mapping.config)
        except (NodeExecutionError, DataFlowError) as e:
            message = str(e) if isinstance(e, NodeExecutionError) \
                else f"Node execution failed for {node_id}: {e}"
            result.status = "failed"
            result.error = message
            result.elapsed_time = time.time() - start_time

            logger.error("Synchronous run aborted", execution_id=ctx.execution_id,
                         node_id=node_id, error=message)
            await safe_emit(self.event_sink, "node.failed", ctx.execution_id, {
                "node_id": node_id,
                "error": message,
            })
            await safe_emit(self.event_sink, "execution.failed", ctx.execution_id, {
                "node_id": node_id,
                "error": message,
                **result.metadata,
            })
            raise NodeExecutionError(message, node_id=node_id,
                                     execution_id=ctx.execution_id,
                                     partial_result=result) from e

        ctx.set_node_output(node_id, node_result.output)
        result.results[node_id] = node_result
        if has_active_branches(node_result.output):
            ctx.record_gateway_output(node_id, get_active_branches(node_result.output))

        await safe_emit(self.event_sink, "node.completed", ctx.execution_id, {
            "node_id": node_id,
            "execution_time_ms": node_result.execution_time_ms,
        })

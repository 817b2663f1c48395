"""Workflow compiler: GraphModel -> CompiledPlan.

Ordering uses Kahn's algorithm over all edges (data and trigger). Among nodes
that become ready at the same time the one declared first in the document is
taken first, so the same graph always compiles to the same order.
"""

import heapq
import time
from collections import defaultdict
from typing import Dict, List, Optional, Set, Tuple

from flowrunner.core.logging import get_logger, log_execution_time
from flowrunner.exceptions import CyclicGraphError, MalformedGraphError, UnknownExecutorError
from flowrunner.models.graph import GraphModel
from .dataflow import group_port_mappings
from .models import CompiledPlan, EdgeInfo, NodeEdges, NodeMapping, PortMapping
from .registry import ExecutorRegistry

logger = get_logger(__name__)


class WorkflowCompiler:
    """Turns a validated graph into an immutable execution plan."""

    def __init__(self, registry: ExecutorRegistry):
        self.registry = registry

    def compile(self, graph: GraphModel) -> CompiledPlan:
        """Compile a graph.

        Args:
            graph: Ingested workflow document

        Returns:
            CompiledPlan with execution order, mappings and edge index

        Raises:
            MalformedGraphError: Empty graph, duplicate ids, dangling edges
            CyclicGraphError: Graph contains a cycle
            UnknownExecutorError: A node type has no registered executor
        """
        start_time = time.time()
        self._check_structure(graph)

        node_ids = graph.node_ids
        adjacency = self._build_adjacency(graph)

        cycle = self._find_cycle(node_ids, adjacency)
        if cycle:
            logger.warning("Cycle detected", workflow_id=graph.id, cycle=cycle)
            raise CyclicGraphError(cycle[0], cycle)

        execution_order = self._topological_order(node_ids, adjacency)
        node_mappings = self._resolve_executors(graph)
        edge_metadata = self._build_edge_index(graph)
        input_mappings, output_mappings = self._build_port_mappings(edge_metadata)

        plan = CompiledPlan(
            workflow_id=graph.id,
            execution_order=tuple(execution_order),
            node_mappings=node_mappings,
            input_mappings=input_mappings,
            output_mappings=output_mappings,
            edge_metadata=edge_metadata,
            metadata={
                "node_count": len(graph.nodes),
                "edge_count": len(graph.edges),
                "root_nodes": [n for n in execution_order if not edge_metadata[n].incoming],
                "leaf_nodes": [n for n in execution_order if not edge_metadata[n].outgoing],
                "compiled_at": time.time(),
            },
        )

        log_execution_time(logger, "compile_workflow", start_time, time.time(),
                           workflow_id=graph.id,
                           node_count=len(graph.nodes),
                           edge_count=len(graph.edges))
        return plan

    # =========================================================================
    # STRUCTURE
    # =========================================================================

    def _check_structure(self, graph: GraphModel) -> None:
        if not graph.nodes:
            raise MalformedGraphError("Workflow must have at least one node")

        seen: Set[str] = set()
        for node in graph.nodes:
            if node.id in seen:
                raise MalformedGraphError(f"Duplicate node id '{node.id}'", node_id=node.id)
            seen.add(node.id)

        for edge in graph.edges:
            for endpoint in (edge.source, edge.target):
                if endpoint not in seen:
                    raise MalformedGraphError(
                        f"Edge '{edge.id}' references unknown node '{endpoint}'",
                        node_id=endpoint, edge_id=edge.id)

    def _build_adjacency(self, graph: GraphModel) -> Dict[str, List[str]]:
        """Source -> targets, one entry per distinct pair."""
        adjacency: Dict[str, List[str]] = {node_id: [] for node_id in graph.node_ids}
        for edge in graph.edges:
            if edge.target not in adjacency[edge.source]:
                adjacency[edge.source].append(edge.target)
        return adjacency

    # =========================================================================
    # ORDERING
    # =========================================================================

    def _find_cycle(self, node_ids: List[str],
                    adjacency: Dict[str, List[str]]) -> Optional[List[str]]:
        """Iterative DFS; returns the members of the first cycle found."""
        WHITE, GREY, BLACK = 0, 1, 2
        color = {node_id: WHITE for node_id in node_ids}

        for root in node_ids:
            if color[root] != WHITE:
                continue
            path: List[str] = [root]
            stack: List[Tuple[str, int]] = [(root, 0)]
            color[root] = GREY

            while stack:
                node_id, index = stack[-1]
                children = adjacency[node_id]
                if index < len(children):
                    stack[-1] = (node_id, index + 1)
                    child = children[index]
                    if color[child] == GREY:
                        return path[path.index(child):]
                    if color[child] == WHITE:
                        color[child] = GREY
                        path.append(child)
                        stack.append((child, 0))
                else:
                    color[node_id] = BLACK
                    path.pop()
                    stack.pop()
        return None

    def _topological_order(self, node_ids: List[str],
                           adjacency: Dict[str, List[str]]) -> List[str]:
        position = {node_id: i for i, node_id in enumerate(node_ids)}
        in_degree = {node_id: 0 for node_id in node_ids}
        for targets in adjacency.values():
            for target in targets:
                in_degree[target] += 1

        ready = [(position[n], n) for n in node_ids if in_degree[n] == 0]
        heapq.heapify(ready)
        order: List[str] = []

        while ready:
            _, node_id = heapq.heappop(ready)
            order.append(node_id)
            for target in adjacency[node_id]:
                in_degree[target] -= 1
                if in_degree[target] == 0:
                    heapq.heappush(ready, (position[target], target))

        if len(order) != len(node_ids):
            stuck = next(n for n in node_ids if n not in set(order))
            raise CyclicGraphError(stuck)
        return order

    # =========================================================================
    # MAPPINGS
    # =========================================================================

    def _resolve_executors(self, graph: GraphModel) -> Dict[str, NodeMapping]:
        mappings: Dict[str, NodeMapping] = {}
        for node in graph.nodes:
            executor_id = self.registry.resolve_executor_id(node.type_id)
            if executor_id is None:
                logger.error("Unknown node type", node_id=node.id, type_id=node.type_id,
                             registered_types=self.registry.list_types())
                raise UnknownExecutorError(node.id, node.type_id)
            mappings[node.id] = NodeMapping(
                node_id=node.id,
                executor_id=executor_id,
                type_id=node.type_id,
                label=node.label or node.id,
                config=dict(node.config),
            )
        return mappings

    def _build_port_mappings(self, edge_metadata: Dict[str, NodeEdges]):
        """Node -> {neighbour node: port mappings}, for both directions."""
        inputs = {
            node_id: group_port_mappings(edges.incoming)
            for node_id, edges in edge_metadata.items()
        }
        outputs: Dict[str, Dict[str, List[PortMapping]]] = {n: {} for n in edge_metadata}
        for node_id, deps in inputs.items():
            for source, mappings in deps.items():
                outputs[source].setdefault(node_id, []).extend(mappings)

        return inputs, {
            node_id: {target: tuple(items) for target, items in targets.items()}
            for node_id, targets in outputs.items()
        }

    def _build_edge_index(self, graph: GraphModel) -> Dict[str, NodeEdges]:
        incoming = defaultdict(list)
        outgoing = defaultdict(list)
        for edge in graph.edges:
            info = EdgeInfo(
                edge_id=edge.id,
                source=edge.source,
                target=edge.target,
                source_handle=edge.source_handle,
                target_handle=edge.target_handle,
                is_trigger=edge.is_trigger,
                branch_name=edge.branch_name,
            )
            incoming[edge.target].append(info)
            outgoing[edge.source].append(info)

        return {
            node_id: NodeEdges(incoming=tuple(incoming[node_id]),
                               outgoing=tuple(outgoing[node_id]))
            for node_id in graph.node_ids
        }


def validate_plan(plan: CompiledPlan) -> List[str]:
    """Re-check a compiled plan's invariants.

    Returns:
        List of problems (empty when the plan is consistent)
    """
    problems: List[str] = []
    position = {}
    for index, node_id in enumerate(plan.execution_order):
        if node_id in position:
            problems.append(f"Node '{node_id}' appears more than once in execution order")
        position[node_id] = index
        if node_id not in plan.node_mappings:
            problems.append(f"Node '{node_id}' has no executor mapping")

    for node_id in plan.node_mappings:
        if node_id not in position:
            problems.append(f"Node '{node_id}' missing from execution order")

    for node_id, edges in plan.edge_metadata.items():
        for edge in edges.outgoing:
            if edge.source in position and edge.target in position \
                    and position[edge.source] >= position[edge.target]:
                problems.append(
                    f"Edge '{edge.edge_id}' runs against execution order "
                    f"({edge.source} -> {edge.target})")
    return problems

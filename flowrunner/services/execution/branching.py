"""Branch activation for trigger edges.

A node with no trigger edges is always eligible. Otherwise at least one
trigger edge must be satisfied:

- source is a gateway that produced active branches: the edge carries no
  branch name, or its branch name is one of the active branches
  (comma-separated, case-insensitive);
- source is any other node: it has executed.

Not executing is a normal outcome (a skip), never an error.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from flowrunner.constants import SKIP_REASON_BRANCH_NOT_ACTIVE, get_active_branches, has_active_branches
from flowrunner.core.logging import get_logger
from .models import EdgeInfo, NodeEdges

logger = get_logger(__name__)


@dataclass(frozen=True)
class BranchDecision:
    execute: bool
    reason: Optional[str] = None
    satisfied_by: Optional[str] = None  # source node of the satisfying trigger


def parse_active_branches(active_branches: str) -> List[str]:
    """'Approve, Review' -> ['approve', 'review']"""
    return [b.strip() for b in (active_branches or "").lower().split(",") if b.strip()]


class BranchEvaluator:
    """Decides whether a node's trigger preconditions hold."""

    def evaluate(self, node_id: str, gateway_outputs: Mapping[str, str],
                 edge_metadata: Mapping[str, NodeEdges],
                 executed_node_ids: Iterable[str]) -> BranchDecision:
        """Evaluate trigger edges for a node.

        Args:
            node_id: Node about to run
            gateway_outputs: Gateway node id -> active branches string
            edge_metadata: CompiledPlan.edge_metadata (or an equivalent index)
            executed_node_ids: Nodes that have already executed

        Returns:
            BranchDecision with the skip reason when the node must not run
        """
        edges = edge_metadata.get(node_id)
        incoming: Sequence[EdgeInfo] = edges.incoming if edges else ()
        return self.evaluate_edges(node_id, incoming, gateway_outputs, executed_node_ids)

    def evaluate_edges(self, node_id: str, incoming: Sequence[EdgeInfo],
                       gateway_outputs: Mapping[str, str],
                       executed_node_ids: Iterable[str]) -> BranchDecision:
        triggers = [edge for edge in incoming if edge.is_trigger]
        if not triggers:
            return BranchDecision(execute=True)

        executed = set(executed_node_ids)
        for edge in triggers:
            if edge.source in gateway_outputs:
                if not edge.branch_name:
                    return BranchDecision(execute=True, satisfied_by=edge.source)
                active = parse_active_branches(gateway_outputs[edge.source])
                if edge.branch_name.strip().lower() in active:
                    logger.debug("Trigger satisfied by branch", node_id=node_id,
                                 source=edge.source, branch=edge.branch_name,
                                 active=gateway_outputs[edge.source])
                    return BranchDecision(execute=True, satisfied_by=edge.source)
            elif edge.source in executed:
                logger.debug("Trigger satisfied by executed source", node_id=node_id,
                             source=edge.source)
                return BranchDecision(execute=True, satisfied_by=edge.source)

        logger.debug("No trigger satisfied", node_id=node_id, trigger_count=len(triggers))
        return BranchDecision(execute=False, reason=SKIP_REASON_BRANCH_NOT_ACTIVE)

    def should_execute(self, node_id: str, gateway_outputs: Mapping[str, str],
                       edge_metadata: Mapping[str, NodeEdges],
                       executed_node_ids: Iterable[str]) -> bool:
        return self.evaluate(node_id, gateway_outputs, edge_metadata, executed_node_ids).execute


def gateway_outputs_from(outputs: Dict[str, Dict]) -> Dict[str, str]:
    """Extract gateway branch state from a node id -> output mapping."""
    return {
        node_id: get_active_branches(output)
        for node_id, output in outputs.items()
        if has_active_branches(output)
    }

"""Builders for workflow documents used across the test suite."""

from typing import Any, Dict, Iterable, Optional

from flowrunner.models.graph import GraphModel


def node(node_id: str, type_id: str, **config) -> Dict[str, Any]:
    return {"id": node_id, "typeId": type_id, "label": node_id, "config": config}


def edge(source: str, target: str, source_port: Optional[str] = None,
         target_port: Optional[str] = None, trigger: bool = False,
         branch: Optional[str] = None) -> Dict[str, Any]:
    """Editor-shaped edge.

    trigger=True targets the node's trigger handle; branch sets the gateway
    output handle the edge leaves from.
    """
    source_handle = ""
    if branch is not None:
        source_handle = f"{source}-output-{branch}"
    elif source_port:
        source_handle = f"{source}-output-{source_port}"

    target_handle = ""
    if trigger:
        target_handle = f"{target}-input-trigger"
    elif target_port:
        target_handle = f"{target}-input-{target_port}"

    return {
        "id": f"{source}->{target}",
        "source": source,
        "target": target,
        "sourceHandle": source_handle,
        "targetHandle": target_handle,
    }


def build_graph(nodes: Iterable[Dict[str, Any]], edges: Iterable[Dict[str, Any]] = (),
                workflow_id: str = "wf-test") -> GraphModel:
    return GraphModel.from_document({
        "id": workflow_id,
        "name": workflow_id,
        "nodes": list(nodes),
        "edges": list(edges),
    })


def gateway_graph(active: str = "x") -> GraphModel:
    """A(trigger) -> G(gateway) -> {B via branch x, C via branch y}."""
    return build_graph(
        [
            node("A", "manualTrigger"),
            node("G", "gateway", active_branches=active),
            node("B", "echo"),
            node("C", "echo"),
        ],
        [
            edge("A", "G", trigger=True),
            edge("G", "B", branch="x", trigger=True),
            edge("G", "C", branch="y", trigger=True),
        ],
    )


def chain_graph(length: int = 3, type_id: str = "echo") -> GraphModel:
    """n0 -> n1 -> ... linear chain with whole-output edges."""
    ids = [f"n{i}" for i in range(length)]
    return build_graph(
        [node(node_id, type_id) for node_id in ids],
        [edge(a, b) for a, b in zip(ids, ids[1:])],
    )

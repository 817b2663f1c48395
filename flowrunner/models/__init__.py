from .graph import Edge, GraphModel, Node, derive_branch_name

__all__ = ["Edge", "GraphModel", "Node", "derive_branch_name"]

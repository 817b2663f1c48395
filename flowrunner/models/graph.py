"""Pydantic models for workflow graph ingestion.

Documents arrive from the editor with camelCase keys (typeId, sourceHandle,
isTrigger, branchName). Both the aliases and the snake_case field names are
accepted. Models are frozen: a graph is never mutated once ingested.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator

from flowrunner.exceptions import MalformedGraphError

TRIGGER_HANDLE_MARKER = "-input-trigger"
BRANCH_HANDLE_SEPARATOR = "-output-"


def derive_branch_name(source_handle: Optional[str]) -> str:
    """Branch name is whatever follows the single '-output-' in the handle.

    Examples:
        >>> derive_branch_name("gateway-1-output-True")
        'True'
        >>> derive_branch_name("")
        ''
    """
    if not source_handle or BRANCH_HANDLE_SEPARATOR not in source_handle:
        return ""
    parts = source_handle.split(BRANCH_HANDLE_SEPARATOR)
    return parts[1] if len(parts) == 2 else ""


# =============================================================================
# GRAPH MODELS
# =============================================================================

class Node(BaseModel):
    """A typed processing node."""
    model_config = {"frozen": True, "populate_by_name": True, "extra": "ignore"}

    id: str = Field(min_length=1)
    type_id: str = Field(alias="typeId", min_length=1)
    label: str = ""
    config: Dict[str, Any] = Field(default_factory=dict)
    position: Optional[Dict[str, float]] = None  # UI only

    @model_validator(mode="before")
    @classmethod
    def _editor_shape(cls, data: Any) -> Any:
        """Accept `type` for typeId and the editor's nested `data` block."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        nested = data.get("data") if isinstance(data.get("data"), dict) else {}
        if not data.get("typeId") and not data.get("type_id"):
            type_id = data.get("type") or nested.get("typeId") or nested.get("type")
            if type_id:
                data["typeId"] = type_id
        if "config" not in data and isinstance(nested.get("config"), dict):
            data["config"] = nested["config"]
        if "label" not in data and nested.get("label"):
            data["label"] = nested["label"]
        return data


class Edge(BaseModel):
    """A connection between two node ports.

    isTrigger and branchName are derived from the handles when the document
    does not carry them explicitly.
    """
    model_config = {"frozen": True, "populate_by_name": True, "extra": "ignore"}

    id: str = ""
    source: str = Field(min_length=1)
    target: str = Field(min_length=1)
    source_handle: str = Field(default="", alias="sourceHandle")
    target_handle: str = Field(default="", alias="targetHandle")
    is_trigger: bool = Field(default=False, alias="isTrigger")
    branch_name: str = Field(default="", alias="branchName")

    @model_validator(mode="before")
    @classmethod
    def _derive_metadata(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        source_handle = data.get("sourceHandle", data.get("source_handle")) or ""
        target_handle = data.get("targetHandle", data.get("target_handle")) or ""
        data["sourceHandle"] = source_handle
        data["targetHandle"] = target_handle
        data.pop("source_handle", None)
        data.pop("target_handle", None)

        is_trigger = data.pop("is_trigger", None)
        is_trigger = data.get("isTrigger", is_trigger)
        if is_trigger is None:
            is_trigger = TRIGGER_HANDLE_MARKER in target_handle
        data["isTrigger"] = is_trigger

        branch_name = data.pop("branch_name", None)
        branch_name = data.get("branchName", branch_name)
        if branch_name is None:
            branch_name = derive_branch_name(source_handle)
        data["branchName"] = branch_name

        if not data.get("id"):
            data["id"] = f"{data.get('source')}->{data.get('target')}"
        return data


class GraphModel(BaseModel):
    """Immutable workflow document: nodes, edges and node configuration."""
    model_config = {"frozen": True, "populate_by_name": True, "extra": "ignore"}

    id: str = "workflow"
    name: str = ""
    nodes: List[Node] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "GraphModel":
        """Validate a raw workflow document.

        Raises:
            MalformedGraphError: If the structure is invalid
        """
        if not isinstance(document, dict):
            raise MalformedGraphError("Workflow document must be an object")
        try:
            return cls.model_validate(document)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise MalformedGraphError(f"Invalid workflow document: {problems}") from e

    @property
    def node_ids(self) -> List[str]:
        return [node.id for node in self.nodes]

    def get_node(self, node_id: str) -> Optional[Node]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

"""Workflow graph model: nodes, edges and definitions."""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from outflow.core.errors import GraphValidationError


class NodeType(str, Enum):
    TRIGGER = "TRIGGER"
    ACTION_EMAIL = "ACTION_EMAIL"
    DELAY = "DELAY"
    CONDITION = "CONDITION"


CONDITION_HANDLES = ("true", "false")


class Node(BaseModel):
    """A typed step. ``data`` is kept raw; each executor parses its own payload."""
    model_config = ConfigDict(extra="ignore")

    id: str
    type: NodeType
    data: dict[str, Any] = Field(default_factory=dict)


class Edge(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    source: str
    target: str
    handle: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _accept_editor_aliases(cls, values: Any) -> Any:
        # The editor writes sourceHandle; older graphs store a boolean condition
        if not isinstance(values, dict):
            return values
        values = dict(values)
        handle = values.get("handle")
        if handle is None:
            if values.get("sourceHandle") is not None:
                handle = values["sourceHandle"]
            elif isinstance(values.get("condition"), bool):
                handle = values["condition"]
        if isinstance(handle, bool):
            handle = "true" if handle else "false"
        values["handle"] = handle
        return values


class WorkflowDefinition(BaseModel):
    """One version of a workflow graph.

    Instances are treated as read-only snapshots: an execution pins the
    version it started on and never sees later edits.
    """
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    name: str = ""
    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)
    is_active: bool = Field(default=True, alias="isActive")
    version: int = 1

    def get_node(self, node_id: str) -> Optional[Node]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def outgoing(self, node_id: str) -> list[Edge]:
        return [edge for edge in self.edges if edge.source == node_id]

    def incoming(self, node_id: str) -> list[Edge]:
        return [edge for edge in self.edges if edge.target == node_id]

    def trigger_nodes(self) -> list[Node]:
        return [node for node in self.nodes if node.type == NodeType.TRIGGER]

    def trigger_node(self) -> Optional[Node]:
        triggers = self.trigger_nodes()
        return triggers[0] if len(triggers) == 1 else None

    def structure(self) -> dict:
        """Nodes and edges only, used to detect structural edits."""
        return {
            "nodes": [node.model_dump(mode="json") for node in self.nodes],
            "edges": [edge.model_dump(mode="json") for edge in self.edges],
        }


def describe_error(error: dict) -> str:
    location = ".".join(str(part) for part in error["loc"])
    return f"{location}: {error['msg']}"


def parse_definition(data: dict) -> WorkflowDefinition:
    """Build a definition from editor JSON/YAML.

    Raises GraphValidationError listing every field problem.
    """
    try:
        return WorkflowDefinition.model_validate(data)
    except ValidationError as e:
        raise GraphValidationError([describe_error(err) for err in e.errors()]) from e

"""Pydantic models for workflow graphs.

A workflow is a set of typed nodes joined by port-to-port edges. These models
carry data and structural validation only; ordering and cycle detection live in
services.execution.resolver.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from constants import DEFAULT_PORT


class GraphModel(BaseModel):
    """Base model accepting both snake_case and the editor's camelCase keys."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Node(GraphModel):
    """A single unit of work, resolved to a handler by its type."""
    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    name: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    inputs: List[str] = Field(default_factory=lambda: [DEFAULT_PORT])
    outputs: List[str] = Field(default_factory=lambda: [DEFAULT_PORT])
    credentials: Dict[str, str] = Field(default_factory=dict)

    # Failure policy
    retry_on_fail: bool = Field(default=False, alias="retryOnFail")
    max_retries: Optional[int] = Field(default=None, alias="maxRetries", ge=0)
    retry_delay: Optional[int] = Field(default=None, alias="retryDelay", ge=0)  # milliseconds
    continue_on_fail: bool = Field(default=False, alias="continueOnFail")
    disabled: bool = False

    @property
    def display_name(self) -> str:
        return self.name or self.type


class Edge(GraphModel):
    """Directed data link from one node's output port to another's input port."""
    id: str = ""
    source: str = Field(alias="sourceNodeId")
    source_port: str = Field(default=DEFAULT_PORT, alias="sourcePortId")
    target: str = Field(alias="targetNodeId")
    target_port: str = Field(default=DEFAULT_PORT, alias="targetPortId")

    @model_validator(mode="after")
    def default_id(self) -> "Edge":
        if not self.id:
            self.id = f"{self.source}:{self.source_port}->{self.target}:{self.target_port}"
        return self


class WorkflowGraph(GraphModel):
    """A stored workflow: nodes plus edges."""
    id: str = Field(min_length=1)
    name: str = ""
    description: Optional[str] = None
    nodes: List[Node] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)
    active: bool = True

    @field_validator("edges", mode="before")
    @classmethod
    def accept_null_edges(cls, v):
        return v or []

    def nodes_of_type(self, node_type: str) -> List[Node]:
        return sorted((n for n in self.nodes if n.type == node_type), key=lambda n: n.id)

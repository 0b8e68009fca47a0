"""Graph resolver - validation and deterministic execution ordering.

Turns a WorkflowGraph into an ExecutionPlan:
- every edge must reference nodes of the same graph
- dependency-first order via DFS topological sort (temp/permanent marks)
- a cycle fails the resolution; there is no fallback order
- ties between independent branches are broken by node id, so the same graph
  always yields the same plan
"""

from dataclasses import dataclass, field
from typing import Dict, List

from core.logging import get_logger
from models.graph import Edge, Node, WorkflowGraph
from .errors import CycleError, DanglingEdgeError, GraphInvalidError

logger = get_logger(__name__)

_TEMP = 1
_DONE = 2


@dataclass
class ExecutionPlan:
    """Derived, never persisted."""
    workflow_id: str
    order: List[str]
    start_nodes: List[str]
    nodes: Dict[str, Node]
    dependencies: Dict[str, List[str]]
    incoming: Dict[str, List[Edge]] = field(default_factory=dict)
    outgoing: Dict[str, List[Edge]] = field(default_factory=dict)

    def __post_init__(self):
        self._position = {node_id: i for i, node_id in enumerate(self.order)}

    def position(self, node_id: str) -> int:
        return self._position[node_id]

    def terminal_nodes(self) -> List[str]:
        """Nodes without outgoing edges, in plan order."""
        return [node_id for node_id in self.order if not self.outgoing.get(node_id)]


class GraphResolver:
    """Validates graphs and computes execution plans."""

    def resolve(self, graph: WorkflowGraph) -> ExecutionPlan:
        nodes: Dict[str, Node] = {}
        for node in graph.nodes:
            if node.id in nodes:
                raise GraphInvalidError(f"Duplicate node id: {node.id}")
            nodes[node.id] = node

        incoming: Dict[str, List[Edge]] = {node_id: [] for node_id in nodes}
        outgoing: Dict[str, List[Edge]] = {node_id: [] for node_id in nodes}
        upstream: Dict[str, set] = {node_id: set() for node_id in nodes}

        for edge in graph.edges:
            if edge.source not in nodes:
                raise DanglingEdgeError(edge.id, edge.source)
            if edge.target not in nodes:
                raise DanglingEdgeError(edge.id, edge.target)
            incoming[edge.target].append(edge)
            outgoing[edge.source].append(edge)
            upstream[edge.target].add(edge.source)

        dependencies = {node_id: sorted(deps) for node_id, deps in upstream.items()}
        order = self._topological_sort(dependencies)

        start_nodes = [node_id for node_id in order if not dependencies[node_id]]
        if not start_nodes:
            raise GraphInvalidError("No start nodes found in workflow")

        # Stable per-node edge ordering for fan-out
        for edges in outgoing.values():
            edges.sort(key=lambda e: (e.target, e.target_port, e.id))

        logger.debug("Resolved execution plan", workflow_id=graph.id,
                     node_count=len(order), start_nodes=start_nodes)

        return ExecutionPlan(
            workflow_id=graph.id,
            order=order,
            start_nodes=start_nodes,
            nodes=nodes,
            dependencies=dependencies,
            incoming=incoming,
            outgoing=outgoing,
        )

    @staticmethod
    def _topological_sort(dependencies: Dict[str, List[str]]) -> List[str]:
        """Dependency-first DFS with an explicit stack.

        A dependency reached while still temp-marked closes a cycle.
        """
        marks: Dict[str, int] = {}
        order: List[str] = []

        for root in sorted(dependencies):
            if marks.get(root):
                continue

            marks[root] = _TEMP
            path = [root]
            stack = [(root, iter(dependencies[root]))]

            while stack:
                node_id, deps = stack[-1]
                dep = next(deps, None)

                if dep is None:
                    stack.pop()
                    path.pop()
                    marks[node_id] = _DONE
                    order.append(node_id)
                    continue

                mark = marks.get(dep)
                if mark == _DONE:
                    continue
                if mark == _TEMP:
                    # path runs downstream -> upstream; report it in edge direction
                    cycle = path[path.index(dep):] + [dep]
                    raise CycleError(list(reversed(cycle)))

                marks[dep] = _TEMP
                path.append(dep)
                stack.append((dep, iter(dependencies[dep])))

        return order

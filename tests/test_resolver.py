"""Tests for graph validation and execution ordering."""

from __future__ import annotations

import pytest

from conftest import edge, make_graph
from services.execution import CycleError, DanglingEdgeError, GraphInvalidError, GraphResolver


def _nodes(*ids):
    return [{"id": node_id, "type": "echo"} for node_id in ids]


class TestOrdering:
    def test_linear_chain(self):
        graph = make_graph("wf", _nodes("c", "b", "a"), [edge("a", "b"), edge("b", "c")])
        plan = GraphResolver().resolve(graph)
        assert plan.order == ["a", "b", "c"]
        assert plan.start_nodes == ["a"]
        assert plan.terminal_nodes() == ["c"]

    def test_every_node_after_its_dependencies(self):
        graph = make_graph(
            "wf",
            _nodes("a", "b", "c", "d", "e"),
            [edge("a", "c"), edge("b", "c"), edge("c", "d"), edge("a", "e"), edge("e", "d")],
        )
        plan = GraphResolver().resolve(graph)
        for node_id, deps in plan.dependencies.items():
            for dep in deps:
                assert plan.position(dep) < plan.position(node_id)

    def test_independent_branches_ordered_by_id(self):
        graph = make_graph("wf", _nodes("z", "m", "a"))
        plan = GraphResolver().resolve(graph)
        assert plan.order == ["a", "m", "z"]
        assert plan.start_nodes == ["a", "m", "z"]

    def test_same_graph_same_plan(self):
        nodes = _nodes("a", "b", "c", "d")
        edges = [edge("a", "b"), edge("a", "c"), edge("b", "d"), edge("c", "d")]
        first = GraphResolver().resolve(make_graph("wf", nodes, edges))
        second = GraphResolver().resolve(make_graph("wf", list(reversed(nodes)), list(reversed(edges))))
        assert first.order == second.order

    def test_diamond_dependencies(self):
        graph = make_graph(
            "wf", _nodes("a", "b", "c", "d"),
            [edge("a", "b"), edge("a", "c"), edge("b", "d"), edge("c", "d")],
        )
        plan = GraphResolver().resolve(graph)
        assert plan.dependencies["d"] == ["b", "c"]
        assert len(plan.incoming["d"]) == 2
        assert [e.target for e in plan.outgoing["a"]] == ["b", "c"]

    def test_empty_graph_has_no_start_nodes(self):
        with pytest.raises(GraphInvalidError):
            GraphResolver().resolve(make_graph("wf", []))


class TestValidation:
    def test_cycle_rejected(self):
        graph = make_graph("wf", _nodes("a", "b", "c"), [edge("a", "b"), edge("b", "c"), edge("c", "a")])
        with pytest.raises(CycleError) as exc_info:
            GraphResolver().resolve(graph)
        cycle = exc_info.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b", "c"}

    def test_cycle_behind_a_valid_prefix(self):
        graph = make_graph(
            "wf", _nodes("start", "x", "y"),
            [edge("start", "x"), edge("x", "y"), edge("y", "x")],
        )
        with pytest.raises(CycleError):
            GraphResolver().resolve(graph)

    def test_self_loop_rejected(self):
        graph = make_graph("wf", _nodes("a", "b"), [edge("a", "b"), edge("b", "b")])
        with pytest.raises(CycleError):
            GraphResolver().resolve(graph)

    def test_dangling_target(self):
        graph = make_graph("wf", _nodes("a"), [edge("a", "ghost")])
        with pytest.raises(DanglingEdgeError) as exc_info:
            GraphResolver().resolve(graph)
        assert exc_info.value.node_id == "ghost"

    def test_dangling_source(self):
        graph = make_graph("wf", _nodes("a"), [edge("ghost", "a")])
        with pytest.raises(DanglingEdgeError):
            GraphResolver().resolve(graph)

    def test_duplicate_node_id(self):
        graph = make_graph("wf", _nodes("a", "a"))
        with pytest.raises(GraphInvalidError, match="Duplicate node id"):
            GraphResolver().resolve(graph)

    def test_cycle_error_is_graph_invalid(self):
        assert issubclass(CycleError, GraphInvalidError)
        assert issubclass(DanglingEdgeError, GraphInvalidError)

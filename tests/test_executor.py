"""Tests for the execution coordinator."""

from __future__ import annotations

import asyncio

import pytest

from conftest import edge, make_graph
from services.execution import (
    CycleError,
    NodeStatus,
    RunMode,
    RunStatus,
    WorkflowNotFoundError,
)
from services.execution.events import NODE_RETRY, RUN_FINISHED, RUN_STARTED
from services.node_registry import PortOutputs


class TestRunBasics:
    @pytest.mark.asyncio
    async def test_linear_run_completes(self, coordinator, store, script):
        await store.save_workflow(make_graph(
            "wf", [{"id": "a", "type": "echo"}, {"id": "b", "type": "echo"}], [edge("a", "b")],
        ))

        result = await coordinator.run("wf", {"x": 1})

        assert result.success
        assert result.status == RunStatus.COMPLETED
        assert script.calls == ["a", "b"]
        assert result.output == {"node": "b", "input": {"node": "a", "input": {"x": 1}}}

    @pytest.mark.asyncio
    async def test_run_is_persisted(self, coordinator, store):
        await store.save_workflow(make_graph("wf", [{"id": "a", "type": "echo"}]))

        result = await coordinator.run("wf", mode=RunMode.WEBHOOK)

        stored = await store.get_run(result.run_id)
        assert stored.status == RunStatus.COMPLETED
        assert stored.mode == RunMode.WEBHOOK
        assert stored.node_states["a"].status == NodeStatus.COMPLETED
        assert stored.execution_time_ms is not None
        assert stored.end_time is not None
        assert not coordinator.is_running("wf")

    @pytest.mark.asyncio
    async def test_unknown_workflow(self, coordinator):
        with pytest.raises(WorkflowNotFoundError):
            await coordinator.run("missing")

    @pytest.mark.asyncio
    async def test_cycle_fails_before_any_node_runs(self, coordinator, store, script):
        await store.save_workflow(make_graph(
            "wf",
            [{"id": "t", "type": "echo"}, {"id": "a", "type": "echo"}, {"id": "b", "type": "echo"}],
            [edge("t", "a"), edge("a", "b"), edge("b", "a")],
        ))

        with pytest.raises(CycleError):
            await coordinator.run("wf")

        assert script.calls == []
        assert await store.list_runs("wf") == []

    @pytest.mark.asyncio
    async def test_multiple_terminals_output_keyed_by_node(self, coordinator, store):
        await store.save_workflow(make_graph(
            "wf",
            [{"id": "a", "type": "echo"}, {"id": "b", "type": "noOp"}, {"id": "c", "type": "noOp"}],
            [edge("a", "b"), edge("a", "c")],
        ))

        result = await coordinator.run("wf", "in")

        assert set(result.output) == {"b", "c"}
        assert result.output["b"] == {"node": "a", "input": "in"}

    @pytest.mark.asyncio
    async def test_events_published(self, coordinator, store, event_bus):
        queue = event_bus.subscribe()
        await store.save_workflow(make_graph("wf", [{"id": "a", "type": "echo"}]))

        await coordinator.run("wf")

        events = []
        while not queue.empty():
            events.append(queue.get_nowait())
        assert events[0].type == RUN_STARTED
        assert events[-1].type == RUN_FINISHED
        assert events[-1].status == RunStatus.COMPLETED.value


class TestJoins:
    @pytest.mark.asyncio
    async def test_diamond_join_runs_once_with_both_inputs(self, coordinator, store, script):
        await store.save_workflow(make_graph(
            "wf",
            [
                {"id": "a", "type": "echo"},
                {"id": "b", "type": "echo"},
                {"id": "c", "type": "echo"},
                {"id": "d", "type": "echo"},
            ],
            [edge("a", "b"), edge("a", "c"), edge("b", "d"), edge("c", "d")],
        ))

        result = await coordinator.run("wf", {"seed": True})

        assert result.success
        assert script.calls.count("d") == 1
        assert script.calls.index("d") > script.calls.index("b")
        assert script.calls.index("d") > script.calls.index("c")
        d_input = result.output["input"]
        assert set(d_input) == {"b:main", "c:main"}
        assert d_input["b:main"]["node"] == "b"
        assert d_input["c:main"]["node"] == "c"

    @pytest.mark.asyncio
    async def test_join_keys_by_source_port(self, coordinator, store, registry):
        async def split(ctx):
            return PortOutputs({"even": 2, "odd": 1})

        registry.register("split", split)
        await store.save_workflow(make_graph(
            "wf",
            [{"id": "s", "type": "split", "outputs": ["even", "odd"]}, {"id": "j", "type": "noOp"}],
            [edge("s", "j", source_port="even"), edge("s", "j", source_port="odd")],
        ))

        result = await coordinator.run("wf")

        assert result.output == {"s:even": 2, "s:odd": 1}

    @pytest.mark.asyncio
    async def test_merge_node_combines_ports(self, coordinator, store):
        await store.save_workflow(make_graph(
            "wf",
            [
                {"id": "x", "type": "setFields", "parameters": {"fields": {"x": 1}}},
                {"id": "y", "type": "setFields", "parameters": {"fields": {"y": 2}}},
                {"id": "m", "type": "merge", "parameters": {"mode": "combine"}},
            ],
            [edge("x", "m", target_port="a"), edge("y", "m", target_port="b")],
        ))

        result = await coordinator.run("wf")

        assert result.output == {"x": 1, "y": 2}

    @pytest.mark.asyncio
    async def test_port_outputs_route_by_source_port(self, coordinator, store, registry):
        async def branch(ctx):
            return PortOutputs({"true": {"matched": True}})

        registry.register("branch", branch)
        await store.save_workflow(make_graph(
            "wf",
            [
                {"id": "if", "type": "branch", "outputs": ["true", "false"]},
                {"id": "yes", "type": "noOp"},
                {"id": "no", "type": "noOp"},
            ],
            [edge("if", "yes", source_port="true"), edge("if", "no", source_port="false")],
        ))

        result = await coordinator.run("wf")

        assert result.output == {"yes": {"matched": True}, "no": None}


class TestFailurePolicy:
    @pytest.mark.asyncio
    async def test_retry_then_success(self, coordinator, store, script):
        script.failures_left["f"] = 2
        await store.save_workflow(make_graph(
            "wf",
            [{"id": "f", "type": "flaky", "retryOnFail": True, "maxRetries": 2, "retryDelay": 0}],
        ))

        result = await coordinator.run("wf")

        assert result.success
        run = await coordinator.get_run(result.run_id)
        assert run.node_states["f"].status == NodeStatus.COMPLETED
        assert run.node_states["f"].retry_count == 2
        assert script.calls == ["f", "f", "f"]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, coordinator, store, script, event_bus):
        queue = event_bus.subscribe()
        script.failures_left["f"] = 5
        await store.save_workflow(make_graph(
            "wf",
            [{"id": "f", "type": "flaky", "retryOnFail": True, "maxRetries": 1, "retryDelay": 0}],
        ))

        result = await coordinator.run("wf")

        assert not result.success
        assert result.status == RunStatus.ERROR
        assert result.failed_node_id == "f"
        assert len(script.calls) == 2
        retry_events = [e for e in _drain(queue) if e.type == NODE_RETRY]
        assert len(retry_events) == 1

    @pytest.mark.asyncio
    async def test_no_retry_without_flag(self, coordinator, store, script):
        script.failures_left["f"] = 1
        await store.save_workflow(make_graph("wf", [{"id": "f", "type": "flaky", "maxRetries": 3}]))

        result = await coordinator.run("wf")

        assert not result.success
        assert script.calls == ["f"]

    @pytest.mark.asyncio
    async def test_continue_on_fail_delivers_none(self, coordinator, store, script):
        await store.save_workflow(make_graph(
            "wf",
            [{"id": "bad", "type": "fail", "continueOnFail": True}, {"id": "after", "type": "echo"}],
            [edge("bad", "after")],
        ))

        result = await coordinator.run("wf")

        assert result.success
        assert result.status == RunStatus.COMPLETED
        run = await coordinator.get_run(result.run_id)
        assert run.node_states["bad"].status == NodeStatus.ERROR
        assert run.node_states["bad"].error == "boom"
        assert result.output == {"node": "after", "input": None}

    @pytest.mark.asyncio
    async def test_fatal_error_stops_dispatch(self, coordinator, store, script):
        await store.save_workflow(make_graph(
            "wf",
            [{"id": "bad", "type": "fail"}, {"id": "after", "type": "echo"}],
            [edge("bad", "after")],
        ))

        result = await coordinator.run("wf")

        assert result.status == RunStatus.ERROR
        assert result.error == "boom"
        assert result.failed_node_id == "bad"
        assert "after" not in script.calls
        run = await coordinator.get_run(result.run_id)
        assert run.node_states["after"].status == NodeStatus.WAITING

    @pytest.mark.asyncio
    async def test_unknown_node_type_fails_node(self, coordinator, store):
        await store.save_workflow(make_graph("wf", [{"id": "n", "type": "doesNotExist"}]))

        result = await coordinator.run("wf")

        assert result.status == RunStatus.ERROR
        assert "Unknown node type: doesNotExist" in result.error
        assert result.failed_node_id == "n"

    @pytest.mark.asyncio
    async def test_missing_required_parameter(self, coordinator, store):
        await store.save_workflow(make_graph("wf", [{"id": "req", "type": "httpRequest"}]))

        result = await coordinator.run("wf")

        assert result.status == RunStatus.ERROR
        assert "missing required parameters: url" in result.error

    @pytest.mark.asyncio
    async def test_unconfigured_node_abandons_only_its_branch(self, coordinator, store, script):
        await store.save_workflow(make_graph(
            "wf",
            [
                {"id": "a", "type": "echo"},
                {"id": "req", "type": "httpRequest"},
                {"id": "after_req", "type": "echo"},
                {"id": "c", "type": "echo"},
                {"id": "d", "type": "echo"},
            ],
            [edge("a", "req"), edge("req", "after_req"), edge("a", "c"), edge("c", "d")],
        ))

        result = await coordinator.run("wf")

        assert result.status == RunStatus.ERROR
        assert result.failed_node_id == "req"
        assert "d" in script.calls
        assert "after_req" not in script.calls
        run = await coordinator.get_run(result.run_id)
        assert run.node_states["d"].status == NodeStatus.COMPLETED
        assert run.node_states["after_req"].status == NodeStatus.WAITING

    @pytest.mark.asyncio
    async def test_handler_mutation_does_not_touch_snapshots(self, coordinator, store, registry):
        async def touch(ctx):
            ctx.input["touched"] = True
            return ctx.input

        registry.register("touch", touch)
        await store.save_workflow(make_graph(
            "wf",
            [
                {"id": "a", "type": "setFields", "parameters": {"fields": {"x": 1}}},
                {"id": "t", "type": "touch"},
            ],
            [edge("a", "t")],
        ))

        result = await coordinator.run("wf")

        assert result.output == {"x": 1, "touched": True}
        run = await store.get_run(result.run_id)
        assert run.node_states["a"].output == {"x": 1}
        assert run.node_states["t"].input == {"x": 1}

        run.node_states["a"].output["x"] = 99
        assert (await store.get_run(result.run_id)).node_states["a"].output == {"x": 1}

    @pytest.mark.asyncio
    async def test_disabled_node_passes_input_through(self, coordinator, store, script):
        await store.save_workflow(make_graph(
            "wf",
            [{"id": "a", "type": "echo"}, {"id": "off", "type": "fail", "disabled": True}],
            [edge("a", "off")],
        ))

        result = await coordinator.run("wf", 3)

        assert result.success
        assert result.output == {"node": "a", "input": 3}
        assert "off" not in script.calls

    @pytest.mark.asyncio
    async def test_ledger_failure_is_not_fatal(self, store, registry):
        from services.execution import ExecutionCoordinator

        class BrokenLedger:
            async def create_run(self, run):
                raise RuntimeError("disk full")

            async def update_run(self, run):
                raise RuntimeError("disk full")

            async def get_run(self, run_id):
                return None

            async def is_running(self, workflow_id):
                return False

        coordinator = ExecutionCoordinator(store, registry, ledger=BrokenLedger(),
                                           default_retry_delay_ms=0)
        await store.save_workflow(make_graph("wf", [{"id": "a", "type": "echo"}]))

        result = await coordinator.run("wf")

        assert result.success


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_stops_further_dispatch(self, coordinator, store, script):
        await store.save_workflow(make_graph(
            "wf",
            [{"id": "slow", "type": "block"}, {"id": "next", "type": "echo"}],
            [edge("slow", "next")],
        ))

        task = asyncio.create_task(coordinator.run("wf"))
        await asyncio.wait_for(script.started.wait(), timeout=2)
        run_id = coordinator.get_active_runs()[0]
        assert coordinator.is_running("wf")

        assert coordinator.cancel(run_id)
        script.release.set()
        result = await asyncio.wait_for(task, timeout=2)

        assert result.status == RunStatus.CANCELLED
        assert "next" not in script.calls
        stored = await store.get_run(run_id)
        assert stored.status == RunStatus.CANCELLED
        assert stored.node_states["slow"].status == NodeStatus.COMPLETED
        assert stored.node_states["next"].status == NodeStatus.WAITING

    @pytest.mark.asyncio
    async def test_cancel_unknown_run(self, coordinator):
        assert coordinator.cancel("nope") is False

    @pytest.mark.asyncio
    async def test_task_cancellation_finalizes_run(self, coordinator, store, script):
        await store.save_workflow(make_graph("wf", [{"id": "slow", "type": "block"}]))

        task = asyncio.create_task(coordinator.run("wf"))
        await asyncio.wait_for(script.started.wait(), timeout=2)
        run_id = coordinator.get_active_runs()[0]

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        stored = await store.get_run(run_id)
        assert stored.status == RunStatus.CANCELLED
        assert coordinator.get_active_runs() == []


def _drain(queue):
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events

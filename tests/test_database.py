"""Tests for the SQLModel storage adapter."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from conftest import edge, make_graph
from core.config import Settings
from core.database import Database
from services.execution import ExecutionCoordinator, NodeStatus, Run, RunMode, RunStatus
from services.triggers import ScheduleTrigger, WebhookTrigger

UTC = timezone.utc


@pytest.fixture
async def database(tmp_path):
    settings = Settings(database_url=f"sqlite+aiosqlite:///{tmp_path / 'relayflow.db'}")
    db = Database(settings)
    await db.startup()
    yield db
    await db.shutdown()


class TestWorkflows:
    @pytest.mark.asyncio
    async def test_save_and_load(self, database):
        graph = make_graph(
            "wf",
            [{"id": "a", "type": "echo", "retryOnFail": True, "maxRetries": 2},
             {"id": "b", "type": "noOp"}],
            [edge("a", "b", target_port="in")],
            description="demo",
        )

        assert await database.save_workflow(graph)
        loaded = await database.get_workflow("wf")

        assert loaded.description == "demo"
        assert [n.id for n in loaded.nodes] == ["a", "b"]
        assert loaded.nodes[0].retry_on_fail is True
        assert loaded.nodes[0].max_retries == 2
        assert loaded.edges[0].target_port == "in"

    @pytest.mark.asyncio
    async def test_update_and_delete(self, database):
        await database.save_workflow(make_graph("wf", [{"id": "a", "type": "echo"}]))
        await database.save_workflow(make_graph("wf", [{"id": "z", "type": "noOp"}], name="renamed"))

        workflows = await database.list_workflows()
        assert len(workflows) == 1
        assert workflows[0].nodes[0].id == "z"

        assert await database.delete_workflow("wf")
        assert await database.delete_workflow("wf") is False
        assert await database.get_workflow("wf") is None


class TestRunLedger:
    @pytest.mark.asyncio
    async def test_run_round_trip(self, database):
        run = Run.create("wf", {"a": "echo"}, mode=RunMode.SCHEDULE, input_data={"k": [1, 2]})
        await database.create_run(run)
        assert await database.is_running("wf")

        run.status = RunStatus.COMPLETED
        run.output_data = {"done": True}
        run.node_states["a"].status = NodeStatus.COMPLETED
        run.node_states["a"].retry_count = 1
        run.execution_time_ms = 12
        await database.update_run(run)

        loaded = await database.get_run(run.id)
        assert loaded.status == RunStatus.COMPLETED
        assert loaded.mode == RunMode.SCHEDULE
        assert loaded.input_data == {"k": [1, 2]}
        assert loaded.output_data == {"done": True}
        assert loaded.node_states["a"].retry_count == 1
        assert loaded.start_time.tzinfo is not None
        assert not await database.is_running("wf")

    @pytest.mark.asyncio
    async def test_coordinator_against_database(self, database, registry):
        coordinator = ExecutionCoordinator(database, registry, ledger=database, default_retry_delay_ms=0)
        await database.save_workflow(make_graph(
            "wf", [{"id": "a", "type": "echo"}, {"id": "b", "type": "echo"}], [edge("a", "b")],
        ))

        result = await coordinator.run("wf", {"n": 1})

        stored = await database.get_run(result.run_id)
        assert stored.status == RunStatus.COMPLETED
        assert stored.output_data == result.output
        runs = await database.list_runs("wf")
        assert [r.id for r in runs] == [result.run_id]


class TestTriggerStore:
    @pytest.mark.asyncio
    async def test_webhook_upsert_by_path(self, database):
        first = WebhookTrigger(workflow_id="wf", path="orders", auth_type="bearer", auth_config={"token": "t"})
        await database.save_webhook(first)
        await database.save_webhook(WebhookTrigger(workflow_id="wf", path="orders", method="PUT"))

        stored = await database.get_webhook_by_path("orders")
        assert stored.id == first.id
        assert stored.method == "PUT"
        assert len(await database.list_active_webhooks()) == 1

        stored.active = False
        await database.save_webhook(stored)
        assert await database.list_active_webhooks() == []
        assert len(await database.list_webhooks_for_workflow("wf")) == 1

    @pytest.mark.asyncio
    async def test_schedule_upsert_by_workflow(self, database):
        next_run = datetime(2026, 3, 2, 10, 5, tzinfo=UTC)
        await database.save_schedule(ScheduleTrigger(workflow_id="wf", cron_expression="*/5 * * * *",
                                                     next_run=next_run))
        await database.save_schedule(ScheduleTrigger(workflow_id="wf", cron_expression="0 * * * *",
                                                     next_run=next_run))

        stored = await database.get_schedule_for_workflow("wf")
        assert stored.cron_expression == "0 * * * *"
        assert stored.next_run == next_run
        assert [s.workflow_id for s in await database.list_active_schedules()] == ["wf"]

"""Tests for the HTTP API using httpx against the ASGI app."""

from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from core.config import Settings
from core.container import container
from main import app


def _workflow(workflow_id, path="orders", extra_nodes=()):
    return {
        "id": workflow_id,
        "name": workflow_id,
        "nodes": [
            {"id": "hook", "type": "webhookTrigger", "parameters": {"path": path}},
            {"id": "tag", "type": "setFields", "parameters": {"fields": {"seen": True}}},
            *extra_nodes,
        ],
        "edges": [{"sourceNodeId": "hook", "targetNodeId": "tag"}],
    }


@pytest.fixture
async def client():
    """Async client with the container switched to in-memory storage."""
    container.settings.override(Settings(storage="memory", default_retry_delay_ms=0))
    container.reset_singletons()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await container.trigger_manager().shutdown()
    await container.handler_registry().close()
    await container.http_client().aclose()
    container.settings.reset_override()
    container.reset_singletons()


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "OK"
        assert data["active_runs"] == 0


class TestWorkflowsAPI:
    @pytest.mark.asyncio
    async def test_save_registers_webhook(self, client):
        resp = await client.post("/api/workflows", json=_workflow("wf"))
        assert resp.status_code == 200
        assert resp.json()["triggers"]["webhooks"][0]["path"] == "orders"

        triggers = (await client.get("/api/triggers")).json()
        assert [w["path"] for w in triggers["webhooks"]] == ["orders"]

        listed = (await client.get("/api/workflows")).json()
        assert [w["id"] for w in listed["workflows"]] == ["wf"]

    @pytest.mark.asyncio
    async def test_conflicting_path_rejected_and_rolled_back(self, client):
        await client.post("/api/workflows", json=_workflow("wf-a"))

        resp = await client.post("/api/workflows", json=_workflow("wf-b"))

        assert resp.status_code == 409
        assert (await client.get("/api/workflows/wf-b")).status_code == 404

    @pytest.mark.asyncio
    async def test_invalid_cron_rejected(self, client):
        workflow = _workflow("wf", extra_nodes=[
            {"id": "tick", "type": "scheduleTrigger", "parameters": {"rule": "not a cron"}},
        ])
        resp = await client.post("/api/workflows", json=workflow)
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_delete_deactivates_triggers(self, client):
        await client.post("/api/workflows", json=_workflow("wf"))

        resp = await client.delete("/api/workflows/wf")

        assert resp.status_code == 200
        assert resp.json()["deactivated_triggers"] == 1
        assert (await client.get("/api/triggers")).json()["webhooks"] == []
        assert (await client.delete("/api/workflows/wf")).status_code == 404

    @pytest.mark.asyncio
    async def test_manual_run_and_fetch(self, client):
        await client.post("/api/workflows", json=_workflow("wf"))

        resp = await client.post("/api/workflows/wf/run", json={"input": {"a": 1}})
        assert resp.status_code == 200
        result = resp.json()
        assert result["success"] is True
        assert result["output"] == {"a": 1, "seen": True}

        run = (await client.get(f"/api/runs/{result['run_id']}")).json()["run"]
        assert run["status"] == "completed"
        assert run["mode"] == "manual"

    @pytest.mark.asyncio
    async def test_run_unknown_workflow(self, client):
        resp = await client.post("/api/workflows/missing/run")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_run_cyclic_workflow(self, client):
        workflow = {
            "id": "loop",
            "nodes": [{"id": "t", "type": "manualTrigger"}, {"id": "a", "type": "noOp"},
                      {"id": "b", "type": "noOp"}],
            "edges": [
                {"sourceNodeId": "t", "targetNodeId": "a"},
                {"sourceNodeId": "a", "targetNodeId": "b"},
                {"sourceNodeId": "b", "targetNodeId": "a"},
            ],
        }
        await client.post("/api/workflows", json=workflow)

        resp = await client.post("/api/workflows/loop/run")
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_unknown_run(self, client):
        assert (await client.get("/api/runs/nope")).status_code == 404
        assert (await client.post("/api/runs/nope/cancel")).status_code == 400

    @pytest.mark.asyncio
    async def test_node_types(self, client):
        types = [t["type"] for t in (await client.get("/api/node-types")).json()["node_types"]]
        assert "httpRequest" in types
        assert "webhookTrigger" in types


class TestWebhookEndpoint:
    @pytest.mark.asyncio
    async def test_webhook_runs_workflow(self, client):
        await client.post("/api/workflows", json=_workflow("wf"))

        resp = await client.post("/webhook/orders?source=test", json={"id": 7})

        assert resp.status_code == 200
        data = resp.json()
        assert data["triggered"] is True
        assert data["success"] is True
        assert data["output"]["body"] == {"id": 7}
        assert data["output"]["query"] == {"source": "test"}
        assert data["output"]["seen"] is True

    @pytest.mark.asyncio
    async def test_unknown_webhook_path(self, client):
        resp = await client.post("/webhook/nowhere", json={})
        assert resp.status_code == 404
        assert resp.json()["triggered"] is False

    @pytest.mark.asyncio
    async def test_webhook_wrong_method(self, client):
        await client.post("/api/workflows", json=_workflow("wf"))
        resp = await client.get("/webhook/orders")
        assert resp.status_code == 405

    @pytest.mark.asyncio
    async def test_text_body_passed_through(self, client):
        await client.post("/api/workflows", json=_workflow("wf"))
        resp = await client.post("/webhook/orders", content=b"plain text",
                                 headers={"content-type": "text/plain"})
        assert resp.json()["output"]["body"] == "plain text"

"""Shared fixtures for engine, trigger and API tests."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from models.graph import WorkflowGraph
from services.execution import EventBus, ExecutionCoordinator
from services.memory_store import MemoryStore
from services.node_registry import InMemoryCredentialResolver, build_default_registry
from services.triggers import TriggerManager


# ── Graph helpers ───────────────────────────────────────────────


def make_graph(workflow_id: str, nodes: List[Dict[str, Any]], edges: List[Dict[str, Any]] = (),
               **extra) -> WorkflowGraph:
    """Build a graph from editor-shaped dicts."""
    return WorkflowGraph.model_validate({
        "id": workflow_id,
        "name": workflow_id,
        "nodes": list(nodes),
        "edges": list(edges),
        **extra,
    })


def edge(source: str, target: str, source_port: str = "main", target_port: str = "main") -> Dict[str, Any]:
    return {
        "sourceNodeId": source,
        "targetNodeId": target,
        "sourcePortId": source_port,
        "targetPortId": target_port,
    }


class FixedClock:
    """Deterministic clock for the trigger manager."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class HandlerScript:
    """Scripted handlers registered under test-only node types."""

    def __init__(self):
        self.calls: List[str] = []
        self.failures_left: Dict[str, int] = {}
        self.release = asyncio.Event()
        self.started = asyncio.Event()

    async def echo(self, ctx):
        self.calls.append(ctx.node_id)
        return {"node": ctx.node_id, "input": ctx.input}

    async def flaky(self, ctx):
        self.calls.append(ctx.node_id)
        remaining = self.failures_left.get(ctx.node_id, 0)
        if remaining > 0:
            self.failures_left[ctx.node_id] = remaining - 1
            raise RuntimeError(f"transient failure in {ctx.node_id}")
        return {"node": ctx.node_id, "recovered": True}

    async def fail(self, ctx):
        self.calls.append(ctx.node_id)
        raise RuntimeError("boom")

    async def block(self, ctx):
        self.calls.append(ctx.node_id)
        self.started.set()
        await self.release.wait()
        return {"node": ctx.node_id}


# ── Core fixtures ───────────────────────────────────────────────


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def credentials() -> InMemoryCredentialResolver:
    return InMemoryCredentialResolver()


@pytest.fixture
def script() -> HandlerScript:
    return HandlerScript()


@pytest.fixture
async def registry(credentials, script):
    registry = build_default_registry(credential_resolver=credentials)
    registry.register("echo", script.echo, description="Echo input")
    registry.register("flaky", script.flaky, description="Fails a scripted number of times")
    registry.register("fail", script.fail, description="Always fails")
    registry.register("block", script.block, description="Blocks until released")
    yield registry
    await registry.close()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def coordinator(store, registry, event_bus) -> ExecutionCoordinator:
    return ExecutionCoordinator(
        workflow_store=store,
        registry=registry,
        ledger=store,
        event_bus=event_bus,
        max_parallel_nodes=4,
        default_max_retries=3,
        default_retry_delay_ms=0,
    )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2026, 3, 2, 10, 2, 0, tzinfo=timezone.utc))


@pytest.fixture
def scheduler() -> AsyncIOScheduler:
    # Never started: armed jobs stay pending and are fired by hand
    return AsyncIOScheduler(timezone="UTC")


@pytest.fixture
def trigger_manager(coordinator, store, scheduler, clock) -> TriggerManager:
    return TriggerManager(
        coordinator=coordinator,
        workflow_store=store,
        trigger_store=store,
        scheduler=scheduler,
        default_timezone="UTC",
        clock=clock,
    )

"""Storage contracts consumed by the execution engine.

The coordinator depends on these protocols only; concrete adapters live in
core.database (SQLModel) and services.memory_store (in-process dicts).

Usage:
    from services.execution.ledger import ExecutionLedger, NullLedger

    ledger = database if settings.storage == "database" else memory_store
    await ledger.create_run(run)
"""

from typing import List, Optional, Protocol

from core.logging import get_logger
from models.graph import WorkflowGraph
from .models import Run

logger = get_logger(__name__)


class WorkflowStore(Protocol):
    """Read/write access to stored workflow graphs."""

    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowGraph]:
        ...

    async def list_workflows(self) -> List[WorkflowGraph]:
        ...

    async def save_workflow(self, graph: WorkflowGraph) -> bool:
        ...

    async def delete_workflow(self, workflow_id: str) -> bool:
        ...


class ExecutionLedger(Protocol):
    """Persists and queries run and per-node state.

    Implementations may raise; the coordinator wraps every call and never lets
    a ledger failure abort a run.
    """

    async def create_run(self, run: Run) -> None:
        ...

    async def update_run(self, run: Run) -> None:
        ...

    async def get_run(self, run_id: str) -> Optional[Run]:
        ...

    async def is_running(self, workflow_id: str) -> bool:
        ...


class NullLedger:
    """No-op ledger.

    This follows the Null Object pattern - writes succeed silently, reads find
    nothing.
    """

    async def create_run(self, run: Run) -> None:
        logger.debug("Ledger disabled, skipping create_run", run_id=run.id)

    async def update_run(self, run: Run) -> None:
        logger.debug("Ledger disabled, skipping update_run", run_id=run.id)

    async def get_run(self, run_id: str) -> Optional[Run]:
        return None

    async def is_running(self, workflow_id: str) -> bool:
        return False

"""In-memory storage for workflows, runs and trigger registrations.

Implements the WorkflowStore, ExecutionLedger and TriggerStore contracts with
plain dicts. Used by tests and by STORAGE=memory. Everything handed in or out
is copied so callers never share mutable state with the store.
"""
import copy
from typing import Dict, List, Optional

from core.logging import get_logger
from models.graph import WorkflowGraph
from services.execution.models import Run, RunStatus
from services.triggers.models import ScheduleTrigger, WebhookTrigger

logger = get_logger(__name__)


def _copy_run(run: Run) -> Run:
    return copy.deepcopy(run)


def _copy_webhook(trigger: WebhookTrigger) -> WebhookTrigger:
    return WebhookTrigger.from_dict(trigger.to_dict(include_secrets=True))


def _copy_schedule(trigger: ScheduleTrigger) -> ScheduleTrigger:
    return ScheduleTrigger.from_dict(trigger.to_dict())


class MemoryStore:
    """Process-local store. Not shared across workers."""

    def __init__(self):
        self._workflows: Dict[str, WorkflowGraph] = {}
        self._runs: Dict[str, Run] = {}
        self._webhooks: Dict[str, WebhookTrigger] = {}  # path -> trigger
        self._schedules: Dict[str, ScheduleTrigger] = {}  # workflow_id -> trigger

    async def startup(self) -> None:
        logger.info("Memory store ready")

    async def shutdown(self) -> None:
        logger.info("Memory store closed", workflows=len(self._workflows), runs=len(self._runs))

    # ============================================================================
    # Workflows
    # ============================================================================

    async def save_workflow(self, graph: WorkflowGraph) -> bool:
        self._workflows[graph.id] = graph.model_copy(deep=True)
        return True

    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowGraph]:
        graph = self._workflows.get(workflow_id)
        return graph.model_copy(deep=True) if graph else None

    async def list_workflows(self) -> List[WorkflowGraph]:
        return [self._workflows[k].model_copy(deep=True) for k in sorted(self._workflows)]

    async def delete_workflow(self, workflow_id: str) -> bool:
        return self._workflows.pop(workflow_id, None) is not None

    # ============================================================================
    # Runs (ExecutionLedger)
    # ============================================================================

    async def create_run(self, run: Run) -> None:
        self._runs[run.id] = _copy_run(run)

    async def update_run(self, run: Run) -> None:
        self._runs[run.id] = _copy_run(run)

    async def get_run(self, run_id: str) -> Optional[Run]:
        run = self._runs.get(run_id)
        return _copy_run(run) if run else None

    async def list_runs(self, workflow_id: Optional[str] = None, limit: int = 50) -> List[Run]:
        runs = [r for r in self._runs.values() if workflow_id is None or r.workflow_id == workflow_id]
        runs.sort(key=lambda r: r.start_time, reverse=True)
        return [_copy_run(r) for r in runs[:limit]]

    async def is_running(self, workflow_id: str) -> bool:
        return any(
            r.workflow_id == workflow_id and r.status in (RunStatus.WAITING, RunStatus.RUNNING)
            for r in self._runs.values()
        )

    # ============================================================================
    # Trigger registrations (TriggerStore)
    # ============================================================================

    async def list_active_webhooks(self) -> List[WebhookTrigger]:
        return [_copy_webhook(t) for _, t in sorted(self._webhooks.items()) if t.active]

    async def list_active_schedules(self) -> List[ScheduleTrigger]:
        return [_copy_schedule(t) for _, t in sorted(self._schedules.items()) if t.active]

    async def get_webhook_by_path(self, path: str) -> Optional[WebhookTrigger]:
        trigger = self._webhooks.get(path)
        return _copy_webhook(trigger) if trigger else None

    async def list_webhooks_for_workflow(self, workflow_id: str) -> List[WebhookTrigger]:
        return [_copy_webhook(t) for _, t in sorted(self._webhooks.items()) if t.workflow_id == workflow_id]

    async def save_webhook(self, trigger: WebhookTrigger) -> None:
        self._webhooks[trigger.path] = _copy_webhook(trigger)

    async def get_schedule_for_workflow(self, workflow_id: str) -> Optional[ScheduleTrigger]:
        trigger = self._schedules.get(workflow_id)
        return _copy_schedule(trigger) if trigger else None

    async def save_schedule(self, trigger: ScheduleTrigger) -> None:
        self._schedules[trigger.workflow_id] = _copy_schedule(trigger)

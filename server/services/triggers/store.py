"""Persistence contract for trigger registrations."""

from typing import List, Optional, Protocol

from .models import ScheduleTrigger, WebhookTrigger


class TriggerStore(Protocol):
    """Implemented by core.database.Database and services.memory_store.MemoryStore."""

    async def list_active_webhooks(self) -> List[WebhookTrigger]:
        ...

    async def list_active_schedules(self) -> List[ScheduleTrigger]:
        ...

    async def get_webhook_by_path(self, path: str) -> Optional[WebhookTrigger]:
        ...

    async def list_webhooks_for_workflow(self, workflow_id: str) -> List[WebhookTrigger]:
        ...

    async def save_webhook(self, trigger: WebhookTrigger) -> None:
        """Upsert by path."""
        ...

    async def get_schedule_for_workflow(self, workflow_id: str) -> Optional[ScheduleTrigger]:
        ...

    async def save_schedule(self, trigger: ScheduleTrigger) -> None:
        """Upsert by workflow id."""
        ...

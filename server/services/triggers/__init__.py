"""Trigger lifecycle package.

Owns active webhook paths and cron schedules and maps inbound trigger events to
workflow runs.
"""

from .models import ScheduleTrigger, WebhookResult, WebhookTrigger
from .store import TriggerStore
from .manager import TriggerManager, normalize_path, schedule_job_id

__all__ = [
    "ScheduleTrigger",
    "WebhookResult",
    "WebhookTrigger",
    "TriggerStore",
    "TriggerManager",
    "normalize_path",
    "schedule_job_id",
]

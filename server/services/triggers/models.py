"""Trigger registration models.

Registrations are derived from a workflow's trigger nodes and persisted through
a TriggerStore; these dataclasses are the shape both stores hand back.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from services.execution.models import parse_datetime, to_iso, utcnow


def new_trigger_id() -> str:
    return str(uuid.uuid4())


@dataclass
class WebhookTrigger:
    """Inbound HTTP path owned by exactly one workflow."""
    workflow_id: str
    path: str
    method: str = "POST"
    auth_type: str = "none"
    auth_config: Dict[str, Any] = field(default_factory=dict)
    active: bool = True
    id: str = field(default_factory=new_trigger_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self, include_secrets: bool = False) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "path": self.path,
            "method": self.method,
            "auth_type": self.auth_type,
            "auth_config": dict(self.auth_config) if include_secrets else {},
            "active": self.active,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WebhookTrigger":
        return cls(
            id=data.get("id") or new_trigger_id(),
            workflow_id=data["workflow_id"],
            path=data["path"],
            method=data.get("method", "POST"),
            auth_type=data.get("auth_type", "none"),
            auth_config=dict(data.get("auth_config") or {}),
            active=data.get("active", True),
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
            updated_at=parse_datetime(data.get("updated_at")) or utcnow(),
        )


@dataclass
class ScheduleTrigger:
    """Cron schedule. At most one active per workflow."""
    workflow_id: str
    cron_expression: str
    timezone: str = "UTC"
    active: bool = True
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    id: str = field(default_factory=new_trigger_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "cron_expression": self.cron_expression,
            "timezone": self.timezone,
            "active": self.active,
            "last_run": to_iso(self.last_run),
            "next_run": to_iso(self.next_run),
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScheduleTrigger":
        return cls(
            id=data.get("id") or new_trigger_id(),
            workflow_id=data["workflow_id"],
            cron_expression=data["cron_expression"],
            timezone=data.get("timezone", "UTC"),
            active=data.get("active", True),
            last_run=parse_datetime(data.get("last_run")),
            next_run=parse_datetime(data.get("next_run")),
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
            updated_at=parse_datetime(data.get("updated_at")) or utcnow(),
        )


@dataclass
class WebhookResult:
    """Outcome of TriggerManager.execute_webhook()."""
    triggered: bool
    status_code: int = 200
    workflow_id: Optional[str] = None
    run_id: Optional[str] = None
    success: Optional[bool] = None
    output: Any = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "triggered": self.triggered,
            "workflow_id": self.workflow_id,
            "run_id": self.run_id,
            "success": self.success,
            "output": self.output,
            "error": self.error,
        }

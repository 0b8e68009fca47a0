"""SQLModel database models and tables."""

from datetime import datetime, timezone
from typing import Optional, Dict, Any
from sqlmodel import SQLModel, Field, Column, DateTime, JSON
from sqlalchemy import func


class WorkflowRecord(SQLModel, table=True):
    """Workflow definitions. Nodes and edges live in `data`."""

    __tablename__ = "workflows"

    id: str = Field(primary_key=True, max_length=255)
    name: str = Field(default="", max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    active: bool = Field(default=True)
    data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )


class RunRecord(SQLModel, table=True):
    """Workflow run history with per-node state."""

    __tablename__ = "workflow_runs"

    id: str = Field(primary_key=True, max_length=255)
    workflow_id: str = Field(index=True, max_length=255)
    mode: str = Field(default="manual", max_length=20)
    status: str = Field(default="waiting", index=True, max_length=20)
    input_data: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    output_data: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    error: Optional[str] = Field(default=None)
    failed_node_id: Optional[str] = Field(default=None, max_length=255)
    node_states: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    execution_time_ms: Optional[int] = Field(default=None)
    start_time: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True))
    )
    end_time: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True))
    )


class WebhookTriggerRecord(SQLModel, table=True):
    """Webhook endpoints. A path belongs to exactly one workflow."""

    __tablename__ = "webhook_triggers"

    id: str = Field(primary_key=True, max_length=255)
    workflow_id: str = Field(index=True, max_length=255)
    path: str = Field(unique=True, index=True, max_length=500)
    method: str = Field(default="POST", max_length=10)
    auth_type: str = Field(default="none", max_length=20)
    auth_config: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    is_active: bool = Field(default=True)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )


class ScheduleTriggerRecord(SQLModel, table=True):
    """Cron schedules. One row per workflow."""

    __tablename__ = "workflow_schedules"

    id: str = Field(primary_key=True, max_length=255)
    workflow_id: str = Field(unique=True, index=True, max_length=255)
    cron_expression: str = Field(max_length=100)
    timezone: str = Field(default="UTC", max_length=64)
    is_active: bool = Field(default=True)
    last_run: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True))
    )
    next_run: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True))
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )

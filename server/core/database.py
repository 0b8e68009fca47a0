"""Modern async database service with SQLModel and SQLAlchemy 2.0.

Implements the WorkflowStore, ExecutionLedger and TriggerStore contracts.
Ledger and trigger writes raise on failure so callers can decide whether the
error is fatal; workflow writes log and return False.
"""

from datetime import datetime, timezone
from typing import Any, List, Optional

import orjson
from sqlmodel import SQLModel, select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from contextlib import asynccontextmanager

from core.config import Settings
from core.logging import get_logger
from models.database import RunRecord, ScheduleTriggerRecord, WebhookTriggerRecord, WorkflowRecord
from models.graph import WorkflowGraph
from services.execution.models import NodeState, Run, RunMode, RunStatus
from services.triggers.models import ScheduleTrigger, WebhookTrigger

logger = get_logger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; stored values are always UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _json_serializer(value: Any) -> str:
    return orjson.dumps(value, default=str, option=orjson.OPT_NON_STR_KEYS).decode()


class Database:
    """Async database service with SQLModel."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None

    async def startup(self):
        """Initialize database connection and create tables."""
        try:
            self.engine = create_async_engine(
                self.settings.database_url,
                echo=self.settings.database_echo,
                json_serializer=_json_serializer,
                json_deserializer=orjson.loads,
                future=True
            )

            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Database initialized successfully", url=self.settings.database_url)

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Get async database session."""
        if not self.async_session:
            raise RuntimeError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    # ============================================================================
    # Workflows (WorkflowStore)
    # ============================================================================

    async def save_workflow(self, graph: WorkflowGraph) -> bool:
        """Save or update workflow."""
        data = {
            "nodes": [n.model_dump(mode="json") for n in graph.nodes],
            "edges": [e.model_dump(mode="json") for e in graph.edges],
        }
        try:
            async with self.get_session() as session:
                existing = await session.get(WorkflowRecord, graph.id)

                if existing:
                    existing.name = graph.name
                    existing.description = graph.description
                    existing.active = graph.active
                    existing.data = data
                    existing.updated_at = datetime.now(timezone.utc)
                else:
                    session.add(WorkflowRecord(
                        id=graph.id,
                        name=graph.name,
                        description=graph.description,
                        active=graph.active,
                        data=data,
                    ))

                await session.commit()
                return True

        except Exception as e:
            logger.error("Failed to save workflow", workflow_id=graph.id, error=str(e))
            return False

    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowGraph]:
        """Get workflow by ID."""
        async with self.get_session() as session:
            record = await session.get(WorkflowRecord, workflow_id)
            return self._to_graph(record) if record else None

    async def list_workflows(self) -> List[WorkflowGraph]:
        async with self.get_session() as session:
            result = await session.execute(select(WorkflowRecord).order_by(WorkflowRecord.id))
            return [self._to_graph(r) for r in result.scalars().all()]

    async def delete_workflow(self, workflow_id: str) -> bool:
        """Delete workflow. Returns False if it did not exist."""
        try:
            async with self.get_session() as session:
                record = await session.get(WorkflowRecord, workflow_id)
                if record is None:
                    return False
                await session.delete(record)
                await session.commit()
                return True

        except Exception as e:
            logger.error("Failed to delete workflow", workflow_id=workflow_id, error=str(e))
            return False

    @staticmethod
    def _to_graph(record: WorkflowRecord) -> WorkflowGraph:
        data = record.data or {}
        return WorkflowGraph(
            id=record.id,
            name=record.name,
            description=record.description,
            active=record.active,
            nodes=data.get("nodes", []),
            edges=data.get("edges", []),
        )

    # ============================================================================
    # Runs (ExecutionLedger)
    # ============================================================================

    async def create_run(self, run: Run) -> None:
        async with self.get_session() as session:
            session.add(self._run_record(RunRecord(id=run.id, workflow_id=run.workflow_id), run))
            await session.commit()

    async def update_run(self, run: Run) -> None:
        async with self.get_session() as session:
            record = await session.get(RunRecord, run.id)
            if record is None:
                record = RunRecord(id=run.id, workflow_id=run.workflow_id)
                session.add(record)
            self._run_record(record, run)
            await session.commit()

    async def get_run(self, run_id: str) -> Optional[Run]:
        async with self.get_session() as session:
            record = await session.get(RunRecord, run_id)
            return self._to_run(record) if record else None

    async def list_runs(self, workflow_id: Optional[str] = None, limit: int = 50) -> List[Run]:
        async with self.get_session() as session:
            stmt = select(RunRecord).order_by(RunRecord.start_time.desc()).limit(limit)
            if workflow_id is not None:
                stmt = stmt.where(RunRecord.workflow_id == workflow_id)
            result = await session.execute(stmt)
            return [self._to_run(r) for r in result.scalars().all()]

    async def is_running(self, workflow_id: str) -> bool:
        async with self.get_session() as session:
            stmt = select(RunRecord.id).where(
                RunRecord.workflow_id == workflow_id,
                RunRecord.status.in_([RunStatus.WAITING.value, RunStatus.RUNNING.value]),
            ).limit(1)
            result = await session.execute(stmt)
            return result.first() is not None

    @staticmethod
    def _run_record(record: RunRecord, run: Run) -> RunRecord:
        record.mode = run.mode.value
        record.status = run.status.value
        record.input_data = run.input_data
        record.output_data = run.output_data
        record.error = run.error
        record.failed_node_id = run.failed_node_id
        record.node_states = {k: v.to_dict() for k, v in run.node_states.items()}
        record.execution_time_ms = run.execution_time_ms
        record.start_time = run.start_time
        record.end_time = run.end_time
        return record

    @staticmethod
    def _to_run(record: RunRecord) -> Run:
        return Run(
            id=record.id,
            workflow_id=record.workflow_id,
            mode=RunMode(record.mode),
            status=RunStatus(record.status),
            start_time=_aware(record.start_time),
            end_time=_aware(record.end_time),
            input_data=record.input_data,
            output_data=record.output_data,
            error=record.error,
            failed_node_id=record.failed_node_id,
            execution_time_ms=record.execution_time_ms,
            node_states={k: NodeState.from_dict(v) for k, v in (record.node_states or {}).items()},
        )

    # ============================================================================
    # Trigger registrations (TriggerStore)
    # ============================================================================

    async def list_active_webhooks(self) -> List[WebhookTrigger]:
        async with self.get_session() as session:
            stmt = select(WebhookTriggerRecord).where(WebhookTriggerRecord.is_active == True)  # noqa: E712
            result = await session.execute(stmt.order_by(WebhookTriggerRecord.path))
            return [self._to_webhook(r) for r in result.scalars().all()]

    async def list_active_schedules(self) -> List[ScheduleTrigger]:
        async with self.get_session() as session:
            stmt = select(ScheduleTriggerRecord).where(ScheduleTriggerRecord.is_active == True)  # noqa: E712
            result = await session.execute(stmt.order_by(ScheduleTriggerRecord.workflow_id))
            return [self._to_schedule(r) for r in result.scalars().all()]

    async def get_webhook_by_path(self, path: str) -> Optional[WebhookTrigger]:
        async with self.get_session() as session:
            stmt = select(WebhookTriggerRecord).where(WebhookTriggerRecord.path == path)
            record = (await session.execute(stmt)).scalar_one_or_none()
            return self._to_webhook(record) if record else None

    async def list_webhooks_for_workflow(self, workflow_id: str) -> List[WebhookTrigger]:
        async with self.get_session() as session:
            stmt = select(WebhookTriggerRecord).where(WebhookTriggerRecord.workflow_id == workflow_id)
            result = await session.execute(stmt.order_by(WebhookTriggerRecord.path))
            return [self._to_webhook(r) for r in result.scalars().all()]

    async def save_webhook(self, trigger: WebhookTrigger) -> None:
        """Upsert by path."""
        async with self.get_session() as session:
            stmt = select(WebhookTriggerRecord).where(WebhookTriggerRecord.path == trigger.path)
            record = (await session.execute(stmt)).scalar_one_or_none()
            if record is None:
                record = WebhookTriggerRecord(id=trigger.id, workflow_id=trigger.workflow_id,
                                              path=trigger.path, created_at=trigger.created_at)
                session.add(record)
            record.workflow_id = trigger.workflow_id
            record.method = trigger.method
            record.auth_type = trigger.auth_type
            record.auth_config = dict(trigger.auth_config)
            record.is_active = trigger.active
            record.updated_at = datetime.now(timezone.utc)
            await session.commit()

    async def get_schedule_for_workflow(self, workflow_id: str) -> Optional[ScheduleTrigger]:
        async with self.get_session() as session:
            stmt = select(ScheduleTriggerRecord).where(ScheduleTriggerRecord.workflow_id == workflow_id)
            record = (await session.execute(stmt)).scalar_one_or_none()
            return self._to_schedule(record) if record else None

    async def save_schedule(self, trigger: ScheduleTrigger) -> None:
        """Upsert by workflow id."""
        async with self.get_session() as session:
            stmt = select(ScheduleTriggerRecord).where(
                ScheduleTriggerRecord.workflow_id == trigger.workflow_id)
            record = (await session.execute(stmt)).scalar_one_or_none()
            if record is None:
                record = ScheduleTriggerRecord(id=trigger.id, workflow_id=trigger.workflow_id,
                                               cron_expression=trigger.cron_expression,
                                               created_at=trigger.created_at)
                session.add(record)
            record.cron_expression = trigger.cron_expression
            record.timezone = trigger.timezone
            record.is_active = trigger.active
            record.last_run = trigger.last_run
            record.next_run = trigger.next_run
            record.updated_at = datetime.now(timezone.utc)
            await session.commit()

    @staticmethod
    def _to_webhook(record: WebhookTriggerRecord) -> WebhookTrigger:
        return WebhookTrigger(
            id=record.id,
            workflow_id=record.workflow_id,
            path=record.path,
            method=record.method,
            auth_type=record.auth_type,
            auth_config=dict(record.auth_config or {}),
            active=record.is_active,
            created_at=_aware(record.created_at),
            updated_at=_aware(record.updated_at),
        )

    @staticmethod
    def _to_schedule(record: ScheduleTriggerRecord) -> ScheduleTrigger:
        return ScheduleTrigger(
            id=record.id,
            workflow_id=record.workflow_id,
            cron_expression=record.cron_expression,
            timezone=record.timezone,
            active=record.is_active,
            last_run=_aware(record.last_run),
            next_run=_aware(record.next_run),
            created_at=_aware(record.created_at),
            updated_at=_aware(record.updated_at),
        )

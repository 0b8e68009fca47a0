"""Trigger Management - lifecycle of webhook and cron triggers.

Triggers are derived state: refresh_triggers() re-reads a workflow's trigger
nodes and rebuilds its registrations. Every mutation of the webhook index and
the armed-schedule map happens under a single asyncio.Lock.

Schedules are armed one occurrence at a time. A fire computes the next
occurrence from its own scheduled time, so runtime never shifts the cadence.
"""

import asyncio
import base64
import hmac
import itertools
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from constants import (
    DEFAULT_CRON_EXPRESSION,
    SCHEDULE_TRIGGER_TYPE,
    WEBHOOK_AUTH_TYPES,
    WEBHOOK_METHODS,
    WEBHOOK_TRIGGER_TYPE,
)
from core.logging import get_logger
from services import scheduler as cron_scheduler
from services.execution.errors import (
    GraphInvalidError,
    TriggerConflictError,
    TriggerError,
    WorkflowNotFoundError,
)
from services.execution.executor import ExecutionCoordinator
from services.execution.ledger import WorkflowStore
from services.execution.models import RunMode, RunResult, utcnow
from services.handlers.triggers import trigger_parameters
from .models import ScheduleTrigger, WebhookResult, WebhookTrigger
from .store import TriggerStore

logger = get_logger(__name__)


def normalize_path(path: str) -> str:
    return (path or "").strip().strip("/")


def schedule_job_id(workflow_id: str) -> str:
    return f"schedule:{workflow_id}"


@dataclass
class _ArmedSchedule:
    schedule: ScheduleTrigger
    cron: CronTrigger
    fire_at: datetime
    token: int


class TriggerManager:
    """Manages webhook and schedule trigger lifecycle."""

    def __init__(
        self,
        coordinator: ExecutionCoordinator,
        workflow_store: WorkflowStore,
        trigger_store: TriggerStore,
        scheduler: AsyncIOScheduler,
        default_timezone: str = "UTC",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.coordinator = coordinator
        self.workflow_store = workflow_store
        self.trigger_store = trigger_store
        self.scheduler = scheduler
        self.default_timezone = default_timezone
        self._clock = clock or utcnow

        self._lock = asyncio.Lock()
        self._webhooks: Dict[str, WebhookTrigger] = {}  # path -> trigger
        self._armed: Dict[str, _ArmedSchedule] = {}  # workflow_id -> armed occurrence
        self._tokens = itertools.count(1)
        self._background: Set[asyncio.Task] = set()

    # =========================================================================
    # STARTUP / SHUTDOWN
    # =========================================================================

    async def initialize(self) -> Dict[str, int]:
        """Load active triggers and re-arm schedules.

        A schedule whose stored next_run already passed fires once right away,
        then resumes its normal cadence.
        """
        catch_up: List[tuple] = []
        async with self._lock:
            for trigger in await self.trigger_store.list_active_webhooks():
                self._webhooks[normalize_path(trigger.path)] = trigger

            now = self._clock()
            for schedule in await self.trigger_store.list_active_schedules():
                try:
                    cron = cron_scheduler.build_cron_trigger(schedule.cron_expression, schedule.timezone)
                except TriggerError as e:
                    logger.error("Skipping stored schedule with invalid cron",
                                 workflow_id=schedule.workflow_id, error=str(e))
                    continue

                if schedule.next_run is not None and schedule.next_run <= now:
                    token = self._track(schedule, cron, schedule.next_run)
                    catch_up.append((schedule.workflow_id, token))
                    logger.info("Schedule missed while offline, firing catch-up",
                                workflow_id=schedule.workflow_id,
                                missed=schedule.next_run.isoformat())
                    continue

                next_run = schedule.next_run or cron_scheduler.next_fire_time(cron, now)
                schedule.next_run = next_run
                self._arm(schedule, cron, next_run)

            counts = {"webhooks": len(self._webhooks), "schedules": len(self._armed)}

        for workflow_id, token in catch_up:
            self._spawn(self._on_schedule_fire(workflow_id, token))

        logger.info("Trigger manager initialized", **counts, catch_up=len(catch_up))
        return counts

    async def shutdown(self) -> None:
        """Cancel armed jobs. Registrations stay active in the store."""
        async with self._lock:
            for workflow_id in list(self._armed):
                cron_scheduler.cancel_job(self.scheduler, schedule_job_id(workflow_id))
            self._armed.clear()
            self._webhooks.clear()

        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        logger.info("Trigger manager shutdown")

    async def wait_for_pending_fires(self) -> None:
        """Wait for catch-up fires spawned by initialize()."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    async def register_webhook(self, workflow_id: str, path: str, method: str = "POST",
                               auth_type: str = "none",
                               auth_config: Optional[Dict[str, Any]] = None) -> WebhookTrigger:
        """Register or update a webhook path for a workflow.

        Raises:
            TriggerConflictError: path already owned by another workflow
            TriggerError: empty path, unsupported method or auth type
        """
        async with self._lock:
            spec = self._validate_webhook(path, method, auth_type, auth_config)
            await self._check_webhook_conflict(workflow_id, spec["path"])
            return await self._register_webhook_locked(workflow_id, **spec)

    async def unregister_webhook(self, path: str) -> bool:
        """Deactivate a webhook path. Idempotent."""
        async with self._lock:
            return await self._unregister_webhook_locked(normalize_path(path))

    async def execute_webhook(self, path: str, method: str, headers: Mapping[str, str],
                              body: Any = None, query: Optional[Mapping[str, Any]] = None) -> WebhookResult:
        """Dispatch an inbound HTTP call to the owning workflow.

        Unknown paths, wrong methods and failed auth are reported in the result,
        never raised.
        """
        path = normalize_path(path)
        method = (method or "").upper()
        trigger = self._webhooks.get(path)

        if trigger is None:
            logger.debug("No webhook registered for path", path=path)
            return WebhookResult(triggered=False, status_code=404,
                                 error=f"No webhook registered for path: /{path}")

        if trigger.method != method:
            logger.info("Webhook method not allowed", path=path, method=method, expected=trigger.method)
            return WebhookResult(triggered=False, status_code=405, workflow_id=trigger.workflow_id,
                                 error=f"Method {method} not allowed, expected {trigger.method}")

        normalized_headers = {str(k).lower(): str(v) for k, v in (headers or {}).items()}
        if not self._check_auth(trigger, normalized_headers):
            logger.warning("Webhook authentication failed", path=path, auth_type=trigger.auth_type)
            return WebhookResult(triggered=False, status_code=401, workflow_id=trigger.workflow_id,
                                 error="Webhook authentication failed")

        payload = {
            "body": body,
            "headers": dict(headers or {}),
            "query": dict(query or {}),
            "method": method,
        }

        try:
            result = await self.coordinator.run(trigger.workflow_id, payload, RunMode.WEBHOOK)
        except WorkflowNotFoundError as e:
            logger.error("Webhook workflow missing", path=path, workflow_id=trigger.workflow_id)
            return WebhookResult(triggered=False, status_code=404,
                                 workflow_id=trigger.workflow_id, error=str(e))
        except GraphInvalidError as e:
            logger.error("Webhook workflow invalid", path=path, workflow_id=trigger.workflow_id,
                         error=str(e))
            return WebhookResult(triggered=False, status_code=422,
                                 workflow_id=trigger.workflow_id, error=str(e))

        logger.info("Webhook run finished", path=path, workflow_id=trigger.workflow_id,
                    run_id=result.run_id, success=result.success)
        return WebhookResult(
            triggered=True,
            status_code=200,
            workflow_id=trigger.workflow_id,
            run_id=result.run_id,
            success=result.success,
            output=result.output,
            error=result.error,
        )

    def _validate_webhook(self, path: str, method: str, auth_type: str,
                          auth_config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        path = normalize_path(path)
        if not path:
            raise TriggerError("Webhook path is required")
        method = (method or "POST").upper()
        if method not in WEBHOOK_METHODS:
            raise TriggerError(f"Unsupported webhook method: {method}")
        auth_type = (auth_type or "none").lower()
        if auth_type not in WEBHOOK_AUTH_TYPES:
            raise TriggerError(f"Unsupported webhook authentication: {auth_type}")
        return {"path": path, "method": method, "auth_type": auth_type,
                "auth_config": dict(auth_config or {})}

    async def _check_webhook_conflict(self, workflow_id: str, path: str) -> None:
        indexed = self._webhooks.get(path)
        if indexed is not None and indexed.workflow_id != workflow_id:
            raise TriggerConflictError(path, indexed.workflow_id)
        stored = await self.trigger_store.get_webhook_by_path(path)
        if stored is not None and stored.active and stored.workflow_id != workflow_id:
            raise TriggerConflictError(path, stored.workflow_id)

    async def _register_webhook_locked(self, workflow_id: str, path: str, method: str,
                                       auth_type: str, auth_config: Dict[str, Any]) -> WebhookTrigger:
        existing = await self.trigger_store.get_webhook_by_path(path)
        trigger = WebhookTrigger(
            workflow_id=workflow_id,
            path=path,
            method=method,
            auth_type=auth_type,
            auth_config=auth_config,
            active=True,
        )
        if existing is not None:
            trigger.id = existing.id
            trigger.created_at = existing.created_at

        await self.trigger_store.save_webhook(trigger)
        self._webhooks[path] = trigger
        logger.info("Webhook registered", workflow_id=workflow_id, path=path, method=method,
                    auth_type=auth_type)
        return trigger

    async def _unregister_webhook_locked(self, path: str) -> bool:
        removed = self._webhooks.pop(path, None) is not None
        stored = await self.trigger_store.get_webhook_by_path(path)
        if stored is not None and stored.active:
            stored.active = False
            stored.updated_at = utcnow()
            await self.trigger_store.save_webhook(stored)
            removed = True
        if removed:
            logger.info("Webhook unregistered", path=path)
        return removed

    @staticmethod
    def _check_auth(trigger: WebhookTrigger, headers: Dict[str, str]) -> bool:
        """Validate credentials for basic / bearer / header auth.

        Header names are expected lower-cased.
        """
        config = trigger.auth_config or {}
        auth_type = trigger.auth_type

        if auth_type == "none":
            return True

        if auth_type == "bearer":
            expected = config.get("token")
            supplied = headers.get("authorization", "")
            if not expected or not supplied.lower().startswith("bearer "):
                return False
            return hmac.compare_digest(supplied[7:].strip(), str(expected))

        if auth_type == "basic":
            supplied = headers.get("authorization", "")
            if not supplied.lower().startswith("basic "):
                return False
            try:
                decoded = base64.b64decode(supplied[6:].strip()).decode("utf-8")
            except (ValueError, UnicodeDecodeError):
                return False
            username, _, password = decoded.partition(":")
            return (hmac.compare_digest(username, str(config.get("username", "")))
                    and hmac.compare_digest(password, str(config.get("password", ""))))

        if auth_type == "header":
            name = str(config.get("name", "")).lower()
            expected = config.get("value")
            if not name or expected is None:
                return False
            return hmac.compare_digest(headers.get(name, ""), str(expected))

        return False

    # =========================================================================
    # SCHEDULES
    # =========================================================================

    async def register_schedule(self, workflow_id: str, cron_expression: str,
                                timezone: Optional[str] = None) -> ScheduleTrigger:
        """Register (or replace) the workflow's schedule and arm its next occurrence.

        Raises:
            InvalidCronError: expression or timezone rejected
        """
        async with self._lock:
            timezone = timezone or self.default_timezone
            cron = cron_scheduler.build_cron_trigger(cron_expression, timezone)
            return await self._register_schedule_locked(workflow_id, cron_expression, timezone, cron)

    async def unregister_schedule(self, workflow_id: str) -> bool:
        """Cancel the armed occurrence and mark the schedule inactive. Idempotent."""
        async with self._lock:
            return await self._unregister_schedule_locked(workflow_id)

    async def _register_schedule_locked(self, workflow_id: str, cron_expression: str,
                                        timezone: str, cron: CronTrigger) -> ScheduleTrigger:
        next_run = cron_scheduler.next_fire_time(cron, self._clock())
        existing = await self.trigger_store.get_schedule_for_workflow(workflow_id)

        schedule = ScheduleTrigger(
            workflow_id=workflow_id,
            cron_expression=cron_expression,
            timezone=timezone,
            active=True,
            next_run=next_run,
        )
        if existing is not None:
            schedule.id = existing.id
            schedule.created_at = existing.created_at
            schedule.last_run = existing.last_run

        await self.trigger_store.save_schedule(schedule)
        self._arm(schedule, cron, next_run)
        logger.info("Schedule registered", workflow_id=workflow_id, cron=cron_expression,
                    timezone=timezone, next_run=next_run.isoformat() if next_run else None)
        return schedule

    async def _unregister_schedule_locked(self, workflow_id: str) -> bool:
        removed = self._disarm(workflow_id)
        stored = await self.trigger_store.get_schedule_for_workflow(workflow_id)
        if stored is not None and stored.active:
            stored.active = False
            stored.next_run = None
            stored.updated_at = utcnow()
            await self.trigger_store.save_schedule(stored)
            removed = True
        if removed:
            logger.info("Schedule unregistered", workflow_id=workflow_id)
        return removed

    def _track(self, schedule: ScheduleTrigger, cron: CronTrigger, fire_at: datetime) -> int:
        token = next(self._tokens)
        self._armed[schedule.workflow_id] = _ArmedSchedule(
            schedule=schedule, cron=cron, fire_at=fire_at, token=token,
        )
        return token

    def _arm(self, schedule: ScheduleTrigger, cron: CronTrigger, fire_at: Optional[datetime]) -> None:
        if fire_at is None:
            self._disarm(schedule.workflow_id)
            logger.warning("Schedule has no future occurrence", workflow_id=schedule.workflow_id)
            return
        token = self._track(schedule, cron, fire_at)
        cron_scheduler.arm_job(
            self.scheduler,
            schedule_job_id(schedule.workflow_id),
            fire_at,
            self._on_schedule_fire,
            args=[schedule.workflow_id, token],
        )

    def _disarm(self, workflow_id: str) -> bool:
        armed = self._armed.pop(workflow_id, None)
        cron_scheduler.cancel_job(self.scheduler, schedule_job_id(workflow_id))
        return armed is not None

    async def _on_schedule_fire(self, workflow_id: str, token: int) -> Optional[RunResult]:
        """Scheduler callback for one armed occurrence.

        Re-arms first, then runs. A token mismatch means the schedule was
        replaced or unregistered after this occurrence was armed.
        """
        async with self._lock:
            armed = self._armed.get(workflow_id)
            if armed is None or armed.token != token:
                logger.info("Dropping stale schedule fire", workflow_id=workflow_id)
                return None

            fire_time = armed.fire_at
            schedule = armed.schedule
            next_run = cron_scheduler.next_fire_time(armed.cron, fire_time)
            now = self._clock()
            if next_run is not None and next_run <= now:
                # Missed occurrences are not replayed
                next_run = cron_scheduler.next_fire_time(armed.cron, now)

            schedule.last_run = fire_time
            schedule.next_run = next_run
            schedule.updated_at = utcnow()
            self._arm(schedule, armed.cron, next_run)

            try:
                await self.trigger_store.save_schedule(schedule)
            except Exception as e:
                logger.error("Failed to persist schedule state", workflow_id=workflow_id, error=str(e))

        payload = {
            "trigger": "schedule",
            "scheduledTime": fire_time.isoformat(),
            "scheduleId": schedule.id,
        }
        logger.info("Schedule fired", workflow_id=workflow_id, scheduled_time=payload["scheduledTime"],
                    next_run=next_run.isoformat() if next_run else None)

        try:
            result = await self.coordinator.run(workflow_id, payload, RunMode.SCHEDULE)
        except Exception as e:
            logger.error("Scheduled run failed to start", workflow_id=workflow_id, error=str(e))
            return None

        logger.info("Scheduled run finished", workflow_id=workflow_id, run_id=result.run_id,
                    success=result.success, error=result.error)
        return result

    # =========================================================================
    # WORKFLOW INTEGRATION
    # =========================================================================

    async def refresh_triggers(self, workflow_id: str) -> Dict[str, Any]:
        """Rebuild a workflow's registrations from its trigger nodes.

        Everything is validated before the current triggers are touched, so a
        conflicting path or bad cron leaves the old registrations in place.
        """
        async with self._lock:
            graph = await self.workflow_store.get_workflow(workflow_id)
            webhook_specs: Dict[str, Dict[str, Any]] = {}
            schedule_spec: Optional[Dict[str, Any]] = None

            if graph is not None and graph.active:
                for node in graph.nodes_of_type(WEBHOOK_TRIGGER_TYPE):
                    if node.disabled:
                        continue
                    params = trigger_parameters(node.type, node.parameters)
                    spec = self._validate_webhook(**params)
                    await self._check_webhook_conflict(workflow_id, spec["path"])
                    if spec["path"] in webhook_specs:
                        logger.warning("Duplicate webhook path in workflow, last node wins",
                                       workflow_id=workflow_id, path=spec["path"], node_id=node.id)
                    webhook_specs[spec["path"]] = spec

                schedule_nodes = [n for n in graph.nodes_of_type(SCHEDULE_TRIGGER_TYPE) if not n.disabled]
                if len(schedule_nodes) > 1:
                    logger.warning("Multiple schedule nodes, using the first",
                                   workflow_id=workflow_id, node_id=schedule_nodes[0].id)
                if schedule_nodes:
                    params = trigger_parameters(SCHEDULE_TRIGGER_TYPE, schedule_nodes[0].parameters)
                    cron_expression = params["cron_expression"] or DEFAULT_CRON_EXPRESSION
                    timezone = params["timezone"] or self.default_timezone
                    schedule_spec = {
                        "cron_expression": cron_expression,
                        "timezone": timezone,
                        "cron": cron_scheduler.build_cron_trigger(cron_expression, timezone),
                    }

            await self._deactivate_locked(workflow_id)

            webhooks = [
                await self._register_webhook_locked(workflow_id, **spec)
                for spec in webhook_specs.values()
            ]
            schedule = None
            if schedule_spec is not None:
                schedule = await self._register_schedule_locked(workflow_id, **schedule_spec)

        logger.info("Triggers refreshed", workflow_id=workflow_id,
                    webhooks=len(webhooks), schedule=schedule is not None)
        return {
            "workflow_id": workflow_id,
            "webhooks": [w.to_dict() for w in webhooks],
            "schedule": schedule.to_dict() if schedule else None,
        }

    async def deactivate_workflow_triggers(self, workflow_id: str) -> int:
        """Deactivate every trigger of a workflow. Returns how many were active."""
        async with self._lock:
            return await self._deactivate_locked(workflow_id)

    async def _deactivate_locked(self, workflow_id: str) -> int:
        count = 0
        paths = {p for p, t in self._webhooks.items() if t.workflow_id == workflow_id}
        for trigger in await self.trigger_store.list_webhooks_for_workflow(workflow_id):
            if trigger.active:
                paths.add(normalize_path(trigger.path))
        for path in sorted(paths):
            if await self._unregister_webhook_locked(path):
                count += 1
        if await self._unregister_schedule_locked(workflow_id):
            count += 1
        return count

    async def execute_manual(self, workflow_id: str, input_data: Any = None) -> RunResult:
        """Start a run on demand. Graph and lookup errors propagate."""
        logger.info("Manual trigger", workflow_id=workflow_id)
        return await self.coordinator.run(
            workflow_id, input_data if input_data is not None else {}, RunMode.MANUAL,
        )

    # =========================================================================
    # SNAPSHOTS
    # =========================================================================

    def get_active_webhooks(self) -> List[Dict[str, Any]]:
        return [self._webhooks[path].to_dict() for path in sorted(self._webhooks)]

    def get_scheduled_jobs(self) -> List[Dict[str, Any]]:
        jobs = []
        for workflow_id in sorted(self._armed):
            armed = self._armed[workflow_id]
            jobs.append({
                "workflow_id": workflow_id,
                "schedule_id": armed.schedule.id,
                "cron_expression": armed.schedule.cron_expression,
                "timezone": armed.schedule.timezone,
                "next_run": armed.fire_at.isoformat(),
                "last_run": armed.schedule.last_run.isoformat() if armed.schedule.last_run else None,
            })
        return jobs

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task


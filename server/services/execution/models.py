"""Execution engine state models.

Run and per-node state are owned by the ExecutionCoordinator and mirrored to the
ExecutionLedger. All models round-trip through plain dicts so both the SQL and
in-memory ledgers can store them as JSON.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class RunStatus(str, Enum):
    """Run lifecycle.

    State transitions:
        WAITING -> RUNNING -> COMPLETED
                           -> ERROR
                           -> CANCELLED
    """
    WAITING = "waiting"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.ERROR, RunStatus.CANCELLED)


class NodeStatus(str, Enum):
    """Per-node execution states."""
    WAITING = "waiting"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class RunMode(str, Enum):
    """What started the run."""
    MANUAL = "manual"
    WEBHOOK = "webhook"
    SCHEDULE = "schedule"


@dataclass
class NodeState:
    """Tracks execution state for a single node within a run."""
    node_id: str
    node_type: str
    status: NodeStatus = NodeStatus.WAITING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    input: Any = None
    output: Any = None
    error: Optional[str] = None
    retry_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "node_type": self.node_type,
            "status": self.status.value,
            "start_time": to_iso(self.start_time),
            "end_time": to_iso(self.end_time),
            "input": self.input,
            "output": self.output,
            "error": self.error,
            "retry_count": self.retry_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeState":
        return cls(
            node_id=data["node_id"],
            node_type=data.get("node_type", "unknown"),
            status=NodeStatus(data.get("status", NodeStatus.WAITING.value)),
            start_time=parse_datetime(data.get("start_time")),
            end_time=parse_datetime(data.get("end_time")),
            input=data.get("input"),
            output=data.get("output"),
            error=data.get("error"),
            retry_count=data.get("retry_count", 0),
        )


@dataclass
class Run:
    """One execution instance of a workflow.

    workflow_id identifies the graph, id identifies this run.
    """
    id: str
    workflow_id: str
    mode: RunMode = RunMode.MANUAL
    status: RunStatus = RunStatus.WAITING
    start_time: datetime = field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    input_data: Any = None
    output_data: Any = None
    error: Optional[str] = None
    failed_node_id: Optional[str] = None
    execution_time_ms: Optional[int] = None
    node_states: Dict[str, NodeState] = field(default_factory=dict)

    @classmethod
    def create(cls, workflow_id: str, node_types: Dict[str, str],
               mode: RunMode = RunMode.MANUAL, input_data: Any = None) -> "Run":
        """Factory: new run with every node in WAITING."""
        run = cls(
            id=str(uuid.uuid4()),
            workflow_id=workflow_id,
            mode=mode,
            input_data=input_data,
        )
        for node_id, node_type in node_types.items():
            run.node_states[node_id] = NodeState(node_id=node_id, node_type=node_type)
        return run

    @property
    def is_finished(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "mode": self.mode.value,
            "status": self.status.value,
            "start_time": to_iso(self.start_time),
            "end_time": to_iso(self.end_time),
            "input_data": self.input_data,
            "output_data": self.output_data,
            "error": self.error,
            "failed_node_id": self.failed_node_id,
            "execution_time_ms": self.execution_time_ms,
            "node_states": {k: v.to_dict() for k, v in self.node_states.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Run":
        return cls(
            id=data["id"],
            workflow_id=data["workflow_id"],
            mode=RunMode(data.get("mode", RunMode.MANUAL.value)),
            status=RunStatus(data.get("status", RunStatus.WAITING.value)),
            start_time=parse_datetime(data.get("start_time")) or utcnow(),
            end_time=parse_datetime(data.get("end_time")),
            input_data=data.get("input_data"),
            output_data=data.get("output_data"),
            error=data.get("error"),
            failed_node_id=data.get("failed_node_id"),
            execution_time_ms=data.get("execution_time_ms"),
            node_states={
                k: NodeState.from_dict(v) for k, v in (data.get("node_states") or {}).items()
            },
        )


@dataclass
class RunResult:
    """Terminal outcome of ExecutionCoordinator.run()."""
    success: bool
    run_id: str
    status: RunStatus
    output: Any = None
    error: Optional[str] = None
    failed_node_id: Optional[str] = None

    @classmethod
    def from_run(cls, run: Run) -> "RunResult":
        return cls(
            success=run.status == RunStatus.COMPLETED,
            run_id=run.id,
            status=run.status,
            output=run.output_data,
            error=run.error,
            failed_node_id=run.failed_node_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "run_id": self.run_id,
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
            "failed_node_id": self.failed_node_id,
        }

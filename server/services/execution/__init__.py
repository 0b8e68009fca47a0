"""Execution engine package.

Workflow execution with:
- Fail-closed graph resolution (DFS topological sort)
- Join/fan-out over an explicit worklist with bounded concurrency
- Fixed-delay retry and continue-on-fail per node
- Pluggable ledger (SQLModel or in-memory)
- Run/node transition events on an EventBus
"""

from .errors import (
    EngineError,
    GraphInvalidError,
    CycleError,
    DanglingEdgeError,
    WorkflowNotFoundError,
    NodeError,
    HandlerNotFoundError,
    NodeNotConfiguredError,
    HandlerExecutionError,
    LedgerWriteError,
    TriggerError,
    TriggerConflictError,
    InvalidCronError,
)
from .models import (
    RunStatus,
    NodeStatus,
    RunMode,
    NodeState,
    Run,
    RunResult,
)
from .resolver import ExecutionPlan, GraphResolver
from .events import EventBus, ExecutionEvent
from .ledger import ExecutionLedger, WorkflowStore, NullLedger
from .executor import ExecutionCoordinator

__all__ = [
    # Errors
    "EngineError",
    "GraphInvalidError",
    "CycleError",
    "DanglingEdgeError",
    "WorkflowNotFoundError",
    "NodeError",
    "HandlerNotFoundError",
    "NodeNotConfiguredError",
    "HandlerExecutionError",
    "LedgerWriteError",
    "TriggerError",
    "TriggerConflictError",
    "InvalidCronError",
    # Models
    "RunStatus",
    "NodeStatus",
    "RunMode",
    "NodeState",
    "Run",
    "RunResult",
    # Resolver
    "ExecutionPlan",
    "GraphResolver",
    # Events
    "EventBus",
    "ExecutionEvent",
    # Storage contracts
    "ExecutionLedger",
    "WorkflowStore",
    "NullLedger",
    # Coordinator
    "ExecutionCoordinator",
]

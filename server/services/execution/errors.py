"""Execution engine exception hierarchy."""

from typing import List, Optional


class EngineError(Exception):
    """Base exception for all engine errors."""


# =============================================================================
# GRAPH VALIDATION (fatal, raised before any node executes)
# =============================================================================

class GraphInvalidError(EngineError):
    """Workflow graph cannot be turned into an execution plan."""


class CycleError(GraphInvalidError):
    """Graph contains a directed cycle."""

    def __init__(self, cycle: List[str]):
        self.cycle = cycle
        super().__init__(f"Workflow graph contains a cycle: {' -> '.join(cycle)}")


class DanglingEdgeError(GraphInvalidError):
    """Edge references a node id that is not part of the graph."""

    def __init__(self, edge_id: str, node_id: str):
        self.edge_id = edge_id
        self.node_id = node_id
        super().__init__(f"Edge {edge_id} references unknown node: {node_id}")


class WorkflowNotFoundError(EngineError):
    """Workflow id is unknown to the workflow store."""

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}")


# =============================================================================
# NODE EXECUTION
# =============================================================================

class NodeError(EngineError):
    """Base for errors attributed to a single node."""

    retryable = False

    def __init__(self, node_id: str, message: str):
        self.node_id = node_id
        super().__init__(message)


class HandlerNotFoundError(NodeError):
    """No handler registered for a node type."""

    def __init__(self, node_type: str, node_id: str = ""):
        self.node_type = node_type
        super().__init__(node_id, f"Unknown node type: {node_type}")


class NodeNotConfiguredError(NodeError):
    """Node is missing parameters its handler requires."""

    def __init__(self, node_id: str, missing: List[str]):
        self.missing = missing
        super().__init__(node_id, f"Node {node_id} is missing required parameters: {', '.join(missing)}")


class HandlerExecutionError(NodeError):
    """Wraps an exception raised by a node handler."""

    retryable = True

    def __init__(self, node_id: str, cause: BaseException):
        self.cause = cause
        message = str(cause) or type(cause).__name__
        super().__init__(node_id, message)


# =============================================================================
# PERSISTENCE
# =============================================================================

class LedgerWriteError(EngineError):
    """Run state could not be persisted. Logged, never fatal to the run."""

    def __init__(self, run_id: str, operation: str, cause: Optional[BaseException] = None):
        self.run_id = run_id
        self.operation = operation
        self.cause = cause
        super().__init__(f"Ledger {operation} failed for run {run_id}: {cause}")


# =============================================================================
# TRIGGERS
# =============================================================================

class TriggerError(EngineError):
    """Base exception for trigger registration errors."""


class TriggerConflictError(TriggerError):
    """Webhook path is already owned by another workflow."""

    def __init__(self, path: str, owner_workflow_id: str):
        self.path = path
        self.owner_workflow_id = owner_workflow_id
        super().__init__(f"Webhook path '{path}' is already in use by workflow {owner_workflow_id}")


class InvalidCronError(TriggerError, ValueError):
    """Cron expression or timezone could not be parsed."""

    def __init__(self, expression: str, reason: str = ""):
        self.expression = expression
        detail = f": {reason}" if reason else ""
        super().__init__(f"Invalid cron expression '{expression}'{detail}")

"""Execution coordinator - drives one workflow run.

Implements:
- Graph resolution before any side effect (cycles and dangling edges fail closed)
- Join semantics: a node dispatches only after every incoming edge delivered
- Continuous scheduling with asyncio.wait (FIRST_COMPLETED pattern) over an
  explicit worklist, bounded by a per-run semaphore
- Fixed-delay retry and continue-on-fail policy per node
- A node missing required parameters abandons only its own downstream branch
- Cooperative cancellation checked between dispatches
"""

import asyncio
import copy
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Set, Tuple

from core.logging import bind_run_context, clear_run_context, get_logger, log_execution_time
from models.graph import Edge, Node
from services.node_registry import NodeHandlerRegistry, PortOutputs
from .errors import (
    HandlerExecutionError,
    HandlerNotFoundError,
    LedgerWriteError,
    NodeError,
    NodeNotConfiguredError,
    WorkflowNotFoundError,
)
from .events import (
    EventBus,
    ExecutionEvent,
    NODE_COMPLETED,
    NODE_FAILED,
    NODE_RETRY,
    NODE_STARTED,
    RUN_FINISHED,
    RUN_STARTED,
)
from .ledger import ExecutionLedger, NullLedger, WorkflowStore
from .models import NodeStatus, Run, RunMode, RunResult, RunStatus, utcnow
from .resolver import ExecutionPlan, GraphResolver

logger = get_logger(__name__)


def source_address(edge: Edge) -> str:
    """Key under which an edge's value reaches a node with several inputs."""
    return f"{edge.source}:{edge.source_port}"


@dataclass
class _NodeOutcome:
    node_id: str
    output: Any = None
    error: Optional[NodeError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class _RunContext:
    """Mutable bookkeeping for a single in-flight run."""
    run: Run
    plan: ExecutionPlan
    semaphore: asyncio.Semaphore
    # target node -> [(source address, value)] in delivery order
    deliveries: Dict[str, List[Tuple[str, Any]]] = field(default_factory=dict)
    delivered_edges: Dict[str, Set[str]] = field(default_factory=dict)
    dispatched: Set[str] = field(default_factory=set)
    outputs: Dict[str, Any] = field(default_factory=dict)
    fatal: Optional[NodeError] = None
    # first unconfigured node; only its downstream branch is abandoned
    branch_error: Optional[NodeError] = None
    cancelled: bool = False

    @property
    def stopped(self) -> bool:
        return self.fatal is not None or self.cancelled

    def is_ready(self, node_id: str) -> bool:
        incoming = self.plan.incoming.get(node_id, [])
        return len(self.delivered_edges.get(node_id, ())) == len(incoming)

    def input_for(self, node_id: str, start_input: Any) -> Any:
        """Start nodes get the run input; one edge passes its value as-is;
        several edges give a dict keyed by source address (node:port), so
        every upstream stays distinct. Last write wins only when the same
        source port feeds the node twice."""
        incoming = self.plan.incoming.get(node_id, [])
        if not incoming:
            return start_input
        received = self.deliveries.get(node_id, [])
        if len(incoming) == 1:
            return received[-1][1] if received else None
        merged: Dict[str, Any] = {}
        for source, value in received:
            merged[source] = value
        return merged


class ExecutionCoordinator:
    """Runs workflows against a handler registry and an execution ledger.

    Features:
    - One Run record per call, finalized exactly once
    - Parallel execution of independent branches (fork/join)
    - Ledger failures logged, never fatal
    - Every run/node transition published on the EventBus
    """

    def __init__(
        self,
        workflow_store: WorkflowStore,
        registry: NodeHandlerRegistry,
        ledger: Optional[ExecutionLedger] = None,
        event_bus: Optional[EventBus] = None,
        resolver: Optional[GraphResolver] = None,
        max_parallel_nodes: int = 8,
        default_max_retries: int = 3,
        default_retry_delay_ms: int = 1000,
    ):
        self.workflow_store = workflow_store
        self.registry = registry
        self.ledger = ledger or NullLedger()
        self.event_bus = event_bus or EventBus()
        self.resolver = resolver or GraphResolver()
        self.max_parallel_nodes = max_parallel_nodes
        self.default_max_retries = default_max_retries
        self.default_retry_delay_ms = default_retry_delay_ms

        self._active_runs: Dict[str, Run] = {}
        self._cancel_requested: Set[str] = set()

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    async def run(self, workflow_id: str, input_data: Any = None,
                  mode: RunMode = RunMode.MANUAL) -> RunResult:
        """Execute a workflow to completion.

        Raises:
            WorkflowNotFoundError: workflow id unknown to the store
            GraphInvalidError: cycle, dangling edge or no start nodes
        """
        mode = RunMode(mode)
        graph = await self.workflow_store.get_workflow(workflow_id)
        if graph is None:
            raise WorkflowNotFoundError(workflow_id)

        plan = self.resolver.resolve(graph)

        run = Run.create(
            workflow_id=workflow_id,
            node_types={node_id: plan.nodes[node_id].type for node_id in plan.order},
            mode=mode,
            input_data=input_data,
        )
        await self._persist("create_run", run)

        self._active_runs[run.id] = run
        bind_run_context(run.id, workflow_id, mode.value)
        rc = _RunContext(run=run, plan=plan,
                         semaphore=asyncio.Semaphore(self.max_parallel_nodes))
        start_time = time.time()

        run.status = RunStatus.RUNNING
        logger.info("Starting workflow run", run_id=run.id, workflow_id=workflow_id,
                    mode=mode.value, node_count=len(plan.order))
        self._publish(run, RUN_STARTED, status=run.status.value)
        await self._persist("update_run", run)

        try:
            try:
                await self._drive(rc, input_data)
            except asyncio.CancelledError:
                rc.cancelled = True
                await self._finalize(rc, start_time)
                raise
            await self._finalize(rc, start_time)
        finally:
            self._active_runs.pop(run.id, None)
            self._cancel_requested.discard(run.id)
            clear_run_context()

        return RunResult.from_run(run)

    def cancel(self, run_id: str) -> bool:
        """Request cancellation. In-flight handlers finish; nothing new dispatches."""
        run = self._active_runs.get(run_id)
        if run is None or run.is_finished:
            return False
        self._cancel_requested.add(run_id)
        logger.info("Run cancellation requested", run_id=run_id)
        return True

    def is_running(self, workflow_id: str) -> bool:
        return any(
            r.workflow_id == workflow_id and not r.is_finished
            for r in self._active_runs.values()
        )

    def get_active_runs(self) -> List[str]:
        return list(self._active_runs)

    async def get_run(self, run_id: str) -> Optional[Run]:
        run = self._active_runs.get(run_id)
        if run is not None:
            return run
        return await self.ledger.get_run(run_id)

    # =========================================================================
    # CONTINUOUS SCHEDULING
    # =========================================================================

    async def _drive(self, rc: _RunContext, start_input: Any) -> None:
        """Worklist loop. Dispatches ready nodes, then reacts to each completion."""
        plan = rc.plan
        worklist: Deque[str] = deque(plan.start_nodes)
        pending: Dict[asyncio.Task, str] = {}

        try:
            while True:
                if not rc.cancelled and rc.run.id in self._cancel_requested:
                    rc.cancelled = True
                    logger.info("Run cancelled, no further dispatch", run_id=rc.run.id,
                                in_flight=len(pending))

                while worklist and not rc.stopped:
                    node_id = worklist.popleft()
                    if node_id in rc.dispatched:
                        continue
                    rc.dispatched.add(node_id)

                    # each node gets its own copy; siblings may share an upstream value
                    node_input = copy.deepcopy(rc.input_for(node_id, start_input))
                    task = asyncio.create_task(
                        self._execute_node(rc, plan.nodes[node_id], node_input),
                        name=f"node_{node_id}",
                    )
                    pending[task] = node_id

                if not pending:
                    break

                done, _ = await asyncio.wait(pending.keys(), return_when=asyncio.FIRST_COMPLETED)

                for task in sorted(done, key=lambda t: plan.position(pending[t])):
                    pending.pop(task)
                    newly_ready = self._handle_outcome(rc, task.result())
                    if not rc.stopped:
                        worklist.extend(newly_ready)

                await self._persist("update_run", rc.run)
        except asyncio.CancelledError:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.wait(pending.keys())
            raise

    def _handle_outcome(self, rc: _RunContext, outcome: _NodeOutcome) -> List[str]:
        """Record a node outcome and deliver along its edges.

        Returns targets whose joins are now satisfied, in plan order.
        """
        node = rc.plan.nodes[outcome.node_id]

        if outcome.ok:
            emitted = outcome.output
        elif node.continue_on_fail:
            logger.warning("Node failed, continuing", run_id=rc.run.id,
                           node_id=node.id, error=str(outcome.error))
            emitted = None
        elif isinstance(outcome.error, NodeNotConfiguredError):
            if rc.branch_error is None:
                rc.branch_error = outcome.error
            logger.error("Node not configured, abandoning its branch", run_id=rc.run.id,
                         node_id=node.id, error=str(outcome.error))
            return []
        else:
            if rc.fatal is None:
                rc.fatal = outcome.error
                logger.error("Node failed, stopping run", run_id=rc.run.id,
                             node_id=node.id, error=str(outcome.error))
            return []

        rc.outputs[node.id] = emitted

        ready: List[str] = []
        for edge in rc.plan.outgoing.get(node.id, []):
            if isinstance(emitted, PortOutputs):
                value = emitted.get(edge.source_port)
            else:
                value = emitted
            rc.deliveries.setdefault(edge.target, []).append((source_address(edge), value))
            rc.delivered_edges.setdefault(edge.target, set()).add(edge.id)
            if (edge.target not in rc.dispatched and edge.target not in ready
                    and rc.is_ready(edge.target)):
                ready.append(edge.target)

        ready.sort(key=rc.plan.position)
        return ready

    # =========================================================================
    # NODE EXECUTION
    # =========================================================================

    async def _execute_node(self, rc: _RunContext, node: Node, node_input: Any) -> _NodeOutcome:
        run = rc.run
        state = run.node_states[node.id]

        async with rc.semaphore:
            state.status = NodeStatus.RUNNING
            state.start_time = utcnow()
            state.input = copy.deepcopy(node_input)
            self._publish(run, NODE_STARTED, node_id=node.id, status=state.status.value)

            if node.disabled:
                logger.debug("Node disabled, passing input through", run_id=run.id, node_id=node.id)
                return self._complete_node(run, node, node_input)

            try:
                output = await self._invoke_with_retry(rc, node, node_input)
            except NodeError as e:
                return self._fail_node(run, node, e)

            return self._complete_node(run, node, output)

    async def _invoke_with_retry(self, rc: _RunContext, node: Node, node_input: Any) -> Any:
        """Invoke the node's handler, retrying with a fixed delay when configured."""
        run = rc.run
        state = run.node_states[node.id]

        try:
            registration = self.registry.get_registration(node.type)
        except HandlerNotFoundError:
            raise HandlerNotFoundError(node.type, node.id)

        missing = self.registry.missing_params(node.type, node.parameters)
        if missing:
            raise NodeNotConfiguredError(node.id, missing)

        max_retries = node.max_retries if node.max_retries is not None else self.default_max_retries
        retry_delay_ms = node.retry_delay if node.retry_delay is not None else self.default_retry_delay_ms
        attempts = 1 + (max_retries if node.retry_on_fail else 0)

        for attempt in range(attempts):
            ctx = self.registry.build_context(node, node_input, run.id, run.workflow_id, run.mode.value)
            try:
                return await registration.handler.execute(ctx)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                error = HandlerExecutionError(node.id, exc)
                if attempt + 1 >= attempts:
                    raise error

                state.retry_count += 1
                logger.info("Retrying node after failure", run_id=run.id, node_id=node.id,
                            attempt=attempt + 1, max_retries=max_retries,
                            delay_ms=retry_delay_ms, error=str(error))
                self._publish(run, NODE_RETRY, node_id=node.id, status=state.status.value,
                              data={"retry_count": state.retry_count, "error": str(error)})
                await asyncio.sleep(retry_delay_ms / 1000)

    def _complete_node(self, run: Run, node: Node, output: Any) -> _NodeOutcome:
        state = run.node_states[node.id]
        state.status = NodeStatus.COMPLETED
        state.end_time = utcnow()
        state.output = copy.deepcopy(output)
        logger.info("Node completed", run_id=run.id, node_id=node.id, node_type=node.type,
                    retry_count=state.retry_count)
        self._publish(run, NODE_COMPLETED, node_id=node.id, status=state.status.value)
        return _NodeOutcome(node_id=node.id, output=output)

    def _fail_node(self, run: Run, node: Node, error: NodeError) -> _NodeOutcome:
        state = run.node_states[node.id]
        state.status = NodeStatus.ERROR
        state.end_time = utcnow()
        state.error = str(error)
        logger.error("Node failed", run_id=run.id, node_id=node.id, node_type=node.type,
                     error=str(error), retry_count=state.retry_count)
        self._publish(run, NODE_FAILED, node_id=node.id, status=state.status.value,
                      data={"error": str(error), "retryable": error.retryable})
        return _NodeOutcome(node_id=node.id, error=error)

    # =========================================================================
    # FINALIZATION
    # =========================================================================

    async def _finalize(self, rc: _RunContext, start_time: float) -> None:
        run = rc.run
        if run.is_finished:
            return

        end_time = time.time()
        run.end_time = utcnow()
        run.execution_time_ms = int((end_time - start_time) * 1000)
        run.output_data = self._collect_output(rc)

        if rc.cancelled:
            run.status = RunStatus.CANCELLED
            run.error = "Run cancelled"
        elif rc.fatal is not None or rc.branch_error is not None:
            failure = rc.fatal or rc.branch_error
            run.status = RunStatus.ERROR
            run.error = str(failure)
            run.failed_node_id = failure.node_id
        else:
            run.status = RunStatus.COMPLETED

        log_execution_time(logger, "workflow_run", start_time, end_time,
                           run_id=run.id, workflow_id=run.workflow_id, status=run.status.value)
        self._publish(run, RUN_FINISHED, status=run.status.value,
                      data={"error": run.error, "failed_node_id": run.failed_node_id})
        await self._persist("update_run", run)

    @staticmethod
    def _collect_output(rc: _RunContext) -> Any:
        """Output of the single terminal node, or node id -> output for several."""
        terminals = rc.plan.terminal_nodes()
        if len(terminals) == 1:
            return rc.outputs.get(terminals[0])
        return {node_id: rc.outputs[node_id] for node_id in terminals if node_id in rc.outputs}

    # =========================================================================
    # LEDGER / EVENTS
    # =========================================================================

    async def _persist(self, operation: str, run: Run) -> None:
        try:
            await getattr(self.ledger, operation)(run)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = LedgerWriteError(run.id, operation, exc)
            logger.error("Ledger write failed", run_id=run.id, operation=operation,
                         error=str(error))

    def _publish(self, run: Run, event_type: str, node_id: Optional[str] = None,
                 status: Optional[str] = None, data: Optional[Dict[str, Any]] = None) -> None:
        self.event_bus.publish(ExecutionEvent(
            type=event_type,
            run_id=run.id,
            workflow_id=run.workflow_id,
            node_id=node_id,
            status=status,
            data=data or {},
        ))

"""Execution scheduler: the state machine that walks a lead through a workflow.

A call to step() or resume() keeps evaluating nodes until the execution
completes, fails, or suspends on a DELAY node. Each transition is persisted
with an optimistic write; if another worker got there first the walk is
abandoned and the stored state wins.
"""

from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Optional

import structlog

from outflow.core.config import DEFAULT_CONFIG_PATH, Settings
from outflow.core.db import DEFAULT_DB_PATH, utcnow
from outflow.core.errors import ConcurrentUpdateError, GraphIntegrityError
from outflow.workflows.definitions import get_workflow_version
from outflow.workflows.executors import EmailSender, ExecutorContext, Fail, Suspend, execute_node
from outflow.workflows.graph import Edge, Node, NodeType, WorkflowDefinition
from outflow.workflows.resumer import DelayResumptionService
from outflow.workflows.state import ExecutionState, ExecutionStatus, HistoryStatus
from outflow.workflows.store import find_execution, get_execution, save_execution

log = structlog.get_logger()

FailureHook = Callable[[ExecutionState, str], Awaitable[None]]

CANCEL_ATTEMPTS = 3


class Scheduler:
    """Drives executions stored in the execution state store."""

    def __init__(
        self,
        db_path: Path = DEFAULT_DB_PATH,
        sender: Optional[EmailSender] = None,
        wakeups: Optional[DelayResumptionService] = None,
        settings: Optional[Settings] = None,
        config_path: Path = DEFAULT_CONFIG_PATH,
        clock: Callable[[], datetime] = utcnow,
        on_failure: Optional[FailureHook] = None,
    ):
        settings = settings or Settings()
        self.db_path = db_path
        self.sender = sender
        self.wakeups = wakeups
        self.config_path = config_path
        self.clock = clock
        self.on_failure = on_failure
        self.max_steps = settings.engine.max_steps_per_run

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    async def step(self, workflow_id: str, lead_id: str, now: Optional[datetime] = None) -> ExecutionState:
        """Advance a PENDING/RUNNING execution as far as it can go.

        Terminal and WAITING executions are returned unchanged, so duplicate
        deliveries are harmless. Raises NotFoundError for unknown executions.
        """
        now = now or self.clock()
        state = get_execution(self.db_path, workflow_id, lead_id)

        if state.is_terminal or state.status == ExecutionStatus.WAITING:
            log.info("step_skipped", workflow_id=workflow_id, lead_id=lead_id, status=state.status.value)
            return state

        state.status = ExecutionStatus.RUNNING

        definition = get_workflow_version(self.db_path, workflow_id, state.workflow_version)
        if definition is None:
            error = GraphIntegrityError(
                f"Workflow '{workflow_id}' version {state.workflow_version} no longer exists"
            )
            return await self._fail(state, state.current_node_id, "UNKNOWN", error, now)

        return await self._walk(state, definition, now)

    async def resume(
        self,
        workflow_id: str,
        lead_id: str,
        run_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[ExecutionState]:
        """Handle a wake-up for an execution suspended on a DELAY node.

        A no-op unless the execution is still WAITING, belongs to ``run_id``
        (when given), and its wake time has been reached.
        """
        now = now or self.clock()
        state = find_execution(self.db_path, workflow_id, lead_id)

        if state is None:
            log.warning("wakeup_for_missing_execution", workflow_id=workflow_id, lead_id=lead_id)
            return None
        if run_id is not None and state.run_id != run_id:
            log.info("wakeup_stale_run", workflow_id=workflow_id, lead_id=lead_id, run_id=run_id)
            return state
        if state.status != ExecutionStatus.WAITING:
            log.info("wakeup_ignored", workflow_id=workflow_id, lead_id=lead_id, status=state.status.value)
            return state
        if state.next_wake_at is not None and now < state.next_wake_at:
            log.info("wakeup_too_early", workflow_id=workflow_id, lead_id=lead_id,
                     next_wake_at=state.next_wake_at.isoformat())
            return state

        definition = get_workflow_version(self.db_path, workflow_id, state.workflow_version)
        if definition is None:
            error = GraphIntegrityError(
                f"Workflow '{workflow_id}' version {state.workflow_version} no longer exists"
            )
            return await self._fail(state, state.current_node_id, "UNKNOWN", error, now)

        delay_node = definition.get_node(state.current_node_id)
        if delay_node is None:
            error = GraphIntegrityError(f"Node '{state.current_node_id}' not found in workflow")
            return await self._fail(state, state.current_node_id, "UNKNOWN", error, now)

        try:
            edge = self._next_edge(definition, delay_node, None)
            if edge is None:
                raise GraphIntegrityError(f"DELAY node '{delay_node.id}' has no outgoing edge")
        except GraphIntegrityError as e:
            return await self._fail(state, delay_node.id, delay_node.type.value, e, now)

        # The delay itself was recorded in history when the execution suspended
        state.status = ExecutionStatus.RUNNING
        state.next_wake_at = None
        state.current_node_id = edge.target
        if not self._persist(state, now):
            return find_execution(self.db_path, workflow_id, lead_id)

        log.info("execution_resumed", workflow_id=workflow_id, lead_id=lead_id, node_id=edge.target)
        return await self._walk(state, definition, now)

    def cancel(self, workflow_id: str, lead_id: str, now: Optional[datetime] = None) -> ExecutionState:
        """Cancel a non-terminal execution and its pending wake-ups.

        Terminal executions are returned unchanged. Raises NotFoundError.
        """
        now = now or self.clock()

        for attempt in range(CANCEL_ATTEMPTS):
            state = get_execution(self.db_path, workflow_id, lead_id)
            if state.is_terminal:
                return state

            state.status = ExecutionStatus.CANCELLED
            state.next_wake_at = None
            try:
                save_execution(self.db_path, state, state.revision, now)
                break
            except ConcurrentUpdateError:
                if attempt == CANCEL_ATTEMPTS - 1:
                    raise
                log.warning("cancel_retry", workflow_id=workflow_id, lead_id=lead_id, attempt=attempt + 1)

        if self.wakeups:
            self.wakeups.cancel(workflow_id, lead_id, state.run_id)

        log.info("execution_cancelled", workflow_id=workflow_id, lead_id=lead_id, run_id=state.run_id)
        return state

    # =========================================================================
    # STATE MACHINE
    # =========================================================================

    async def _walk(self, state: ExecutionState, definition: WorkflowDefinition,
                    now: datetime) -> ExecutionState:
        for _ in range(self.max_steps):
            node = definition.get_node(state.current_node_id)
            if node is None:
                error = GraphIntegrityError(f"Node '{state.current_node_id}' not found in workflow")
                return await self._fail(state, state.current_node_id, "UNKNOWN", error, now)

            ctx = ExecutorContext(
                workflow_id=state.workflow_id,
                lead_id=state.lead_id,
                now=now,
                sender=self.sender,
                config_path=self.config_path,
            )

            log.debug("executing_node", workflow_id=state.workflow_id, lead_id=state.lead_id,
                      node_id=node.id, node_type=node.type.value)
            try:
                outcome = await execute_node(node, dict(state.variables), ctx)
            except Exception as e:
                log.error("node_executor_error", workflow_id=state.workflow_id, lead_id=state.lead_id,
                          node_id=node.id, error=str(e))
                outcome = Fail(e)

            if isinstance(outcome, Fail):
                return await self._fail(state, node.id, node.type.value, outcome.error, now)

            if isinstance(outcome, Suspend):
                return self._suspend(state, node, outcome.wake_at, now)

            try:
                edge = self._next_edge(definition, node, outcome.handle)
            except GraphIntegrityError as e:
                return await self._fail(state, node.id, node.type.value, e, now)

            state.variables.update(outcome.updates)
            state.append_history(node.id, node.type.value, HistoryStatus.COMPLETED, now)

            if edge is None:
                state.status = ExecutionStatus.COMPLETED
                if not self._persist(state, now):
                    return find_execution(self.db_path, state.workflow_id, state.lead_id)
                log.info("execution_completed", workflow_id=state.workflow_id,
                         lead_id=state.lead_id, steps=len(state.history))
                return state

            state.current_node_id = edge.target
            if not self._persist(state, now):
                return find_execution(self.db_path, state.workflow_id, state.lead_id)

        error = GraphIntegrityError(
            f"Exceeded {self.max_steps} steps without suspending; the graph likely contains a cycle"
        )
        node = definition.get_node(state.current_node_id)
        node_type = node.type.value if node else "UNKNOWN"
        return await self._fail(state, state.current_node_id, node_type, error, now)

    def _next_edge(self, definition: WorkflowDefinition, node: Node,
                   handle: Optional[str]) -> Optional[Edge]:
        """The edge to follow out of ``node``; None means the walk is finished."""
        outgoing = definition.outgoing(node.id)

        if node.type == NodeType.CONDITION:
            matches = [edge for edge in outgoing if edge.handle == handle]
            if len(matches) != 1:
                raise GraphIntegrityError(
                    f"CONDITION node '{node.id}' has {len(matches)} '{handle}' branches"
                )
            edge = matches[0]
        else:
            if not outgoing:
                return None
            if len(outgoing) > 1:
                raise GraphIntegrityError(f"Node '{node.id}' has {len(outgoing)} outgoing edges")
            edge = outgoing[0]

        if definition.get_node(edge.target) is None:
            raise GraphIntegrityError(f"Edge '{edge.id}' points to missing node '{edge.target}'")
        return edge

    def _suspend(self, state: ExecutionState, node: Node, wake_at: datetime,
                 now: datetime) -> ExecutionState:
        state.status = ExecutionStatus.WAITING
        state.next_wake_at = wake_at
        state.append_history(node.id, node.type.value, HistoryStatus.COMPLETED, now)
        if not self._persist(state, now):
            return find_execution(self.db_path, state.workflow_id, state.lead_id)

        if self.wakeups:
            self.wakeups.schedule(state.workflow_id, state.lead_id, state.run_id, wake_at)

        log.info("execution_waiting", workflow_id=state.workflow_id, lead_id=state.lead_id,
                 node_id=node.id, wake_at=wake_at.isoformat())
        return state

    async def _fail(self, state: ExecutionState, node_id: str, node_type: str, error,
                    now: datetime) -> ExecutionState:
        reason = f"{type(error).__name__}: {error}" if isinstance(error, Exception) else str(error)

        state.status = ExecutionStatus.FAILED
        state.next_wake_at = None
        state.append_history(node_id, node_type, HistoryStatus.FAILED, now, error=reason)
        if not self._persist(state, now):
            return find_execution(self.db_path, state.workflow_id, state.lead_id)

        log.error("execution_failed", workflow_id=state.workflow_id, lead_id=state.lead_id,
                  node_id=node_id, error=reason)

        if self.on_failure:
            try:
                await self.on_failure(state, reason)
            except Exception as e:
                log.warning("failure_hook_error", error=str(e))
        return state

    def _persist(self, state: ExecutionState, now: datetime) -> bool:
        """Optimistic write of a transition. False means another writer won."""
        try:
            save_execution(self.db_path, state, state.revision, now)
            return True
        except ConcurrentUpdateError:
            log.warning("step_abandoned", workflow_id=state.workflow_id, lead_id=state.lead_id,
                        run_id=state.run_id, revision=state.revision)
            return False

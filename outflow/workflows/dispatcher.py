"""Starts workflow executions from external events."""

from datetime import datetime
from pathlib import Path
from typing import Optional

import structlog

from outflow.core.db import get_lead_by_id, lead_variables
from outflow.core.errors import NotFoundError, OutflowError
from outflow.workflows.definitions import get_workflow, list_active_workflows
from outflow.workflows.executors import trigger_matches
from outflow.workflows.graph import WorkflowDefinition
from outflow.workflows.scheduler import Scheduler
from outflow.workflows.state import ExecutionState
from outflow.workflows.store import create_or_restart
from outflow.workflows.triggers import TriggerEvent

log = structlog.get_logger()


class TriggerDispatcher:
    """Matches events against active workflows and hands new runs to the scheduler."""

    def __init__(self, db_path: Path, scheduler: Scheduler):
        self.db_path = db_path
        self.scheduler = scheduler

    async def dispatch(self, event: TriggerEvent) -> list[ExecutionState]:
        """Start (or restart) an execution in every workflow the event matches.

        A failure in one workflow is logged and does not stop the others.
        """
        started = []
        for definition in list_active_workflows(self.db_path):
            try:
                trigger = definition.trigger_node()
                if trigger is None or not trigger_matches(trigger, event):
                    continue

                variables = {**event.payload, "leadId": event.lead_id}
                state = await self._start(definition, event.lead_id, variables)
                started.append(state)
            except Exception as e:
                log.error("dispatch_failed", workflow_id=definition.id,
                          lead_id=event.lead_id, trigger=event.type.value, error=str(e))

        log.info("event_dispatched", trigger=event.type.value, lead_id=event.lead_id,
                 executions=len(started))
        return started

    async def schedule(self, event: TriggerEvent, fire_at: datetime) -> list[ExecutionState]:
        """Dispatch ``event`` at or after ``fire_at``.

        A fire time that has already passed dispatches immediately; otherwise the
        event is stored durably and the resumption worker fires it later.
        """
        if fire_at <= self.scheduler.clock():
            return await self.dispatch(event)

        if self.scheduler.wakeups is None:
            raise OutflowError("Scheduling a trigger needs the delay resumption service")

        self.scheduler.wakeups.schedule_trigger(event, fire_at)
        return []

    async def trigger_manual(
        self,
        workflow_id: str,
        lead_id: str,
        variables: Optional[dict] = None,
    ) -> ExecutionState:
        """Start a workflow for a lead regardless of its trigger type.

        Raises NotFoundError for a missing or inactive workflow or unknown lead.
        """
        definition = get_workflow(self.db_path, workflow_id)
        if definition is None or not definition.is_active:
            raise NotFoundError(f"Workflow '{workflow_id}' not found or inactive")

        lead = get_lead_by_id(self.db_path, lead_id)
        if lead is None:
            raise NotFoundError(f"Lead '{lead_id}' not found")

        trigger = definition.trigger_node()
        if trigger is None:
            raise NotFoundError(f"Workflow '{workflow_id}' has no trigger node")

        seeded = {**lead_variables(lead), **(variables or {})}
        log.info("manual_trigger", workflow_id=workflow_id, lead_id=lead_id)
        return await self._start(definition, lead_id, seeded)

    async def _start(self, definition: WorkflowDefinition, lead_id: str,
                     variables: dict) -> ExecutionState:
        trigger = definition.trigger_node()
        state = create_or_restart(
            self.db_path,
            workflow_id=definition.id,
            lead_id=lead_id,
            workflow_version=definition.version,
            start_node_id=trigger.id,
            variables=variables,
            now=self.scheduler.clock(),
        )

        # Wake-ups of a superseded run must not fire
        if self.scheduler.wakeups:
            self.scheduler.wakeups.cancel(definition.id, lead_id)

        return await self.scheduler.step(definition.id, lead_id)

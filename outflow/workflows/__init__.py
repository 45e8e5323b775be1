"""Workflow engine: graph model, executors, scheduler, state store, triggers."""

from outflow.workflows.graph import NodeType, Node, Edge, WorkflowDefinition, parse_definition
from outflow.workflows.validator import check_definition, validate
from outflow.workflows.state import ExecutionState, ExecutionStatus, HistoryEntry, HistoryStatus
from outflow.workflows.store import (
    create_or_restart,
    find_execution,
    get_execution,
    list_executions,
    list_runs,
    save_execution,
)
from outflow.workflows.definitions import (
    get_workflow,
    get_workflow_version,
    list_active_workflows,
    load_definition_file,
    save_workflow,
    set_workflow_active,
)
from outflow.workflows.triggers import TriggerEvent, TriggerType
from outflow.workflows.resumer import DelayResumptionService
from outflow.workflows.scheduler import Scheduler
from outflow.workflows.dispatcher import TriggerDispatcher

"""Node executors: one per node type.

Each executor takes the node, the execution variables and an ExecutorContext,
and returns an outcome:

- Advance: move along the outgoing edge (``handle`` selects the CONDITION branch)
- Suspend: pause the walk until ``wake_at``
- Fail: stop the execution with ``error``, recorded as ``"Type: message"``

Executors never touch persistence; the scheduler applies the outcome.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from outflow.core.config import DEFAULT_CONFIG_PATH, get_template_by_name, lookup_variable, render_template
from outflow.core.errors import EmailSendError, NodeExecutionError
from outflow.workflows.conditions import ConditionError, evaluate_condition
from outflow.workflows.graph import Node, NodeType
from outflow.workflows.triggers import TriggerEvent

log = structlog.get_logger()


@dataclass(frozen=True)
class Advance:
    handle: Optional[str] = None
    updates: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Suspend:
    wake_at: datetime


@dataclass(frozen=True)
class Fail:
    error: Exception

    @property
    def reason(self) -> str:
        return f"{type(self.error).__name__}: {self.error}"


Outcome = Union[Advance, Suspend, Fail]


class EmailSender(Protocol):
    async def send(self, to: str, subject: str, body: str) -> dict: ...


@dataclass
class ExecutorContext:
    workflow_id: str
    lead_id: str
    now: datetime
    sender: Optional[EmailSender] = None
    config_path: Path = DEFAULT_CONFIG_PATH


# --- payload models -------------------------------------------------------

class TriggerData(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = "MANUAL"
    filters: dict[str, Any] = Field(default_factory=dict)


class DelayData(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    delay_value: Optional[float] = Field(default=None, alias="delayValue")
    delay_type: str = Field(default="days", alias="delayType")
    delay_ms: Optional[float] = Field(default=None, alias="delayMs")


class EmailData(BaseModel):
    model_config = ConfigDict(extra="allow")

    subject: Optional[str] = None
    body: Optional[str] = None
    template: Optional[str] = None
    to: Optional[str] = None


DELAY_UNITS = {
    "seconds": timedelta(seconds=1),
    "minutes": timedelta(minutes=1),
    "hours": timedelta(hours=1),
    "days": timedelta(days=1),
    "weeks": timedelta(weeks=1),
}


def delay_duration(data: dict) -> timedelta:
    """Duration of a DELAY node. Raises ValueError on bad configuration."""
    parsed = DelayData.model_validate(data)

    if parsed.delay_value is None:
        if parsed.delay_ms is None:
            raise ValueError("Delay has no delayValue")
        duration = timedelta(milliseconds=parsed.delay_ms)
    else:
        unit = DELAY_UNITS.get(parsed.delay_type.lower())
        if unit is None:
            raise ValueError(f"Unknown delay unit {parsed.delay_type!r}")
        duration = unit * parsed.delay_value

    if duration <= timedelta(0):
        raise ValueError(f"Delay must be positive, got {duration}")
    return duration


def trigger_matches(node: Node, event: TriggerEvent) -> bool:
    """Whether an incoming event should start an execution at this trigger."""
    data = TriggerData.model_validate(node.data)
    if data.type != event.type.value:
        return False

    fields = {"leadId": event.lead_id, **event.payload}
    for name, expected in data.filters.items():
        found, actual = lookup_variable(fields, name)
        if not found or actual != expected:
            return False
    return True


# --- executors ------------------------------------------------------------

def _node_failure(node: Node, message: str) -> Fail:
    return Fail(NodeExecutionError(message, node.id))


async def execute_trigger(node: Node, variables: dict, ctx: ExecutorContext) -> Outcome:
    # Matching already happened when the execution was created
    return Advance()


async def execute_delay(node: Node, variables: dict, ctx: ExecutorContext) -> Outcome:
    try:
        duration = delay_duration(node.data)
    except (ValueError, ValidationError) as e:
        return _node_failure(node, f"Invalid delay configuration: {e}")

    wake_at = ctx.now + duration
    log.info("delay_scheduled", node_id=node.id, lead_id=ctx.lead_id, wake_at=wake_at.isoformat())
    return Suspend(wake_at)


async def execute_condition(node: Node, variables: dict, ctx: ExecutorContext) -> Outcome:
    try:
        result = evaluate_condition(node.data, variables, now=ctx.now)
    except ConditionError as e:
        return _node_failure(node, f"Condition could not be evaluated: {e}")

    return Advance("true" if result else "false")


async def execute_email(node: Node, variables: dict, ctx: ExecutorContext) -> Outcome:
    try:
        data = EmailData.model_validate(node.data)
    except ValidationError as e:
        return _node_failure(node, f"Invalid email configuration: {e}")

    subject, body = data.subject, data.body
    if data.template:
        template = get_template_by_name(ctx.config_path, data.template)
        if template is None:
            return _node_failure(node, f"Email template '{data.template}' not found")
        subject = subject or template.subject
        body = body or template.body

    if not body:
        return _node_failure(node, "Email node has no body")

    to = render_template(data.to, variables) if data.to else variables.get("email")
    if not to:
        return _node_failure(node, "No recipient: set 'to' on the node or an 'email' variable")

    if ctx.sender is None:
        return _node_failure(node, "No email sender configured")

    rendered_subject = render_template(subject or "", variables)
    rendered_body = render_template(body, variables)

    try:
        result = await ctx.sender.send(to=to, subject=rendered_subject, body=rendered_body)
    except EmailSendError as e:
        return Fail(e)

    log.info("workflow_email_sent", node_id=node.id, lead_id=ctx.lead_id, to=to)
    result = result or {}
    return Advance(updates={
        "lastEmailMessageId": result.get("message_id"),
        "lastEmailThreadId": result.get("thread_id"),
    })


Executor = Callable[[Node, dict, ExecutorContext], Awaitable[Outcome]]

EXECUTORS: dict[NodeType, Executor] = {
    NodeType.TRIGGER: execute_trigger,
    NodeType.DELAY: execute_delay,
    NodeType.CONDITION: execute_condition,
    NodeType.ACTION_EMAIL: execute_email,
}


async def execute_node(node: Node, variables: dict, ctx: ExecutorContext) -> Outcome:
    """Run the executor for the node's type."""
    executor = EXECUTORS[node.type]
    return await executor(node, variables, ctx)

"""Trigger events that can start workflow executions."""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class TriggerType(str, Enum):
    LEAD_CREATED = "LEAD_CREATED"
    LEAD_UPDATED = "LEAD_UPDATED"
    EMAIL_RECEIVED = "EMAIL_RECEIVED"
    EMAIL_OPENED = "EMAIL_OPENED"
    EMAIL_CLICKED = "EMAIL_CLICKED"
    MANUAL = "MANUAL"


class TriggerEvent(BaseModel):
    """An external event. ``payload`` seeds the execution variables."""
    type: TriggerType
    lead_id: str
    payload: dict[str, Any] = Field(default_factory=dict)


def lead_created(lead: dict) -> TriggerEvent:
    return TriggerEvent(type=TriggerType.LEAD_CREATED, lead_id=lead["leadId"], payload=dict(lead))


def lead_updated(lead: dict, changed_fields: list[str]) -> TriggerEvent:
    return TriggerEvent(
        type=TriggerType.LEAD_UPDATED,
        lead_id=lead["leadId"],
        payload={**lead, "changedFields": list(changed_fields)},
    )


def _email_event(trigger_type: TriggerType, email: dict, **extra: Any) -> Optional[TriggerEvent]:
    # Emails not linked to a lead cannot drive a workflow
    lead_id = email.get("leadId")
    if not lead_id:
        return None
    return TriggerEvent(
        type=trigger_type,
        lead_id=lead_id,
        payload={"emailId": email.get("id"), "emailData": email, **extra},
    )


def email_received(email: dict) -> Optional[TriggerEvent]:
    return _email_event(TriggerType.EMAIL_RECEIVED, email)


def email_opened(email: dict) -> Optional[TriggerEvent]:
    return _email_event(TriggerType.EMAIL_OPENED, email)


def email_clicked(email: dict, link_url: str) -> Optional[TriggerEvent]:
    return _email_event(TriggerType.EMAIL_CLICKED, email, linkUrl=link_url)

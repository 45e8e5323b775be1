"""Tests for trigger events and the dispatcher."""

import json
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from outflow.core.db import get_connection, get_lead_by_id, init_db, insert_lead, lead_variables
from outflow.core.errors import NotFoundError
from outflow.workflows.definitions import save_workflow, set_workflow_active
from outflow.workflows.dispatcher import TriggerDispatcher
from outflow.workflows.graph import parse_definition
from outflow.workflows.resumer import DelayResumptionService
from outflow.workflows.scheduler import Scheduler
from outflow.workflows.state import ExecutionStatus
from outflow.workflows.store import get_execution, list_runs
from outflow.workflows.triggers import (
    TriggerEvent,
    TriggerType,
    email_clicked,
    email_opened,
    lead_created,
    lead_updated,
)

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def _workflow(workflow_id, trigger_data, delay=False):
    nodes = [
        {"id": "t", "type": "TRIGGER", "data": trigger_data},
        {"id": "e", "type": "ACTION_EMAIL", "data": {"subject": "Hi {{lead.first_name}}", "body": "Hello"}},
    ]
    edges = [{"id": "a", "source": "t", "target": "e"}]
    if delay:
        nodes.append({"id": "d", "type": "DELAY", "data": {"delayValue": 1, "delayType": "days"}})
        nodes.append({"id": "e2", "type": "ACTION_EMAIL", "data": {"body": "Again"}})
        edges += [{"id": "b", "source": "e", "target": "d"}, {"id": "c", "source": "d", "target": "e2"}]
    return parse_definition({"id": workflow_id, "nodes": nodes, "edges": edges})


def _engine(db_path):
    sender = AsyncMock()
    sender.send.return_value = {"message_id": "m"}
    wakeups = DelayResumptionService(db_path, clock=lambda: T0)
    scheduler = Scheduler(db_path, sender=sender, wakeups=wakeups, clock=lambda: T0)
    return TriggerDispatcher(db_path, scheduler), sender


def _lead(db_path, **custom):
    lead_id = insert_lead(db_path, "ada@acme.co", "Ada", company="Acme", custom_fields=custom or None)
    return lead_variables(get_lead_by_id(db_path, lead_id))


def test_trigger_event_builders():
    lead = {"leadId": "l1", "email": "a@b.co"}

    assert lead_created(lead).type == TriggerType.LEAD_CREATED
    assert lead_updated(lead, ["status"]).payload["changedFields"] == ["status"]

    clicked = email_clicked({"id": "em1", "leadId": "l1"}, "https://acme.co")
    assert clicked.lead_id == "l1"
    assert clicked.payload["linkUrl"] == "https://acme.co"
    assert clicked.payload["emailId"] == "em1"

    # Emails without a lead cannot start anything
    assert email_opened({"id": "em2"}) is None


@pytest.mark.asyncio
async def test_dispatch_starts_matching_workflows():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        init_db(db_path)
        save_workflow(db_path, _workflow("on-create", {"type": "LEAD_CREATED"}))
        save_workflow(db_path, _workflow("on-open", {"type": "EMAIL_OPENED"}))
        dispatcher, sender = _engine(db_path)
        lead = _lead(db_path)

        states = await dispatcher.dispatch(lead_created(lead))

        assert [s.workflow_id for s in states] == ["on-create"]
        assert states[0].status == ExecutionStatus.COMPLETED
        assert states[0].variables["leadId"] == lead["leadId"]
        sender.send.assert_awaited_once_with(to="ada@acme.co", subject="Hi Ada", body="Hello")


@pytest.mark.asyncio
async def test_dispatch_applies_trigger_filters():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        init_db(db_path)
        save_workflow(db_path, _workflow("acme-only", {"type": "LEAD_CREATED", "filters": {"company": "Acme"}}))
        save_workflow(db_path, _workflow("globex-only", {"type": "LEAD_CREATED", "filters": {"company": "Globex"}}))
        dispatcher, _ = _engine(db_path)

        states = await dispatcher.dispatch(lead_created(_lead(db_path)))

        assert [s.workflow_id for s in states] == ["acme-only"]


@pytest.mark.asyncio
async def test_dispatch_skips_inactive_workflows():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        init_db(db_path)
        save_workflow(db_path, _workflow("paused", {"type": "LEAD_CREATED"}))
        set_workflow_active(db_path, "paused", False)
        dispatcher, sender = _engine(db_path)

        assert await dispatcher.dispatch(lead_created(_lead(db_path))) == []
        sender.send.assert_not_awaited()


@pytest.mark.asyncio
async def test_retrigger_restarts_and_cancels_old_wakeup():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        init_db(db_path)
        save_workflow(db_path, _workflow("drip", {"type": "LEAD_CREATED"}, delay=True))
        dispatcher, _ = _engine(db_path)
        lead = _lead(db_path)

        first = (await dispatcher.dispatch(lead_created(lead)))[0]
        second = (await dispatcher.dispatch(lead_created(lead)))[0]

        assert first.status == ExecutionStatus.WAITING
        assert second.status == ExecutionStatus.WAITING
        assert second.run_id != first.run_id

        pending = dispatcher.scheduler.wakeups.pending("drip", lead["leadId"])
        assert [row["run_id"] for row in pending] == [second.run_id]
        assert list_runs(db_path, "drip", lead["leadId"])[0]["runId"] == first.run_id


@pytest.mark.asyncio
async def test_one_broken_workflow_does_not_block_others():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        init_db(db_path)
        save_workflow(db_path, _workflow("a-first", {"type": "LEAD_CREATED"}))
        save_workflow(db_path, _workflow("b-second", {"type": "LEAD_CREATED"}))
        dispatcher, _ = _engine(db_path)
        lead = _lead(db_path)

        original_step = dispatcher.scheduler.step

        async def flaky_step(workflow_id, lead_id, now=None):
            if workflow_id == "a-first":
                raise RuntimeError("boom")
            return await original_step(workflow_id, lead_id, now)

        dispatcher.scheduler.step = flaky_step

        states = await dispatcher.dispatch(lead_created(lead))

        assert [s.workflow_id for s in states] == ["b-second"]


@pytest.mark.asyncio
async def test_malformed_trigger_data_does_not_block_others():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        init_db(db_path)
        save_workflow(db_path, _workflow("a-broken", {"type": "LEAD_CREATED"}))
        save_workflow(db_path, _workflow("b-good", {"type": "LEAD_CREATED"}))

        # Stored before trigger data was validated on write
        broken = _workflow("a-broken", {"type": "LEAD_CREATED", "filters": "vip"})
        conn = get_connection(db_path)
        conn.execute(
            "UPDATE workflow_versions SET nodes = ? WHERE workflow_id = 'a-broken'",
            (json.dumps(broken.structure()["nodes"]),)
        )
        conn.close()

        dispatcher, sender = _engine(db_path)
        states = await dispatcher.dispatch(lead_created(_lead(db_path)))

        assert [s.workflow_id for s in states] == ["b-good"]
        assert states[0].status == ExecutionStatus.COMPLETED
        sender.send.assert_awaited_once()


@pytest.mark.asyncio
async def test_trigger_manual_seeds_lead_variables():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        init_db(db_path)
        save_workflow(db_path, _workflow("manual", {"type": "MANUAL"}))
        dispatcher, _ = _engine(db_path)
        lead = _lead(db_path, score=42)

        state = await dispatcher.trigger_manual("manual", lead["leadId"])

        assert state.status == ExecutionStatus.COMPLETED
        assert state.variables["score"] == 42
        assert state.variables["company"] == "Acme"
        assert get_execution(db_path, "manual", lead["leadId"]).run_id == state.run_id


@pytest.mark.asyncio
async def test_trigger_manual_not_found():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        init_db(db_path)
        save_workflow(db_path, _workflow("paused", {"type": "MANUAL"}))
        set_workflow_active(db_path, "paused", False)
        dispatcher, _ = _engine(db_path)
        lead = _lead(db_path)

        with pytest.raises(NotFoundError):
            await dispatcher.trigger_manual("missing", lead["leadId"])
        with pytest.raises(NotFoundError):
            await dispatcher.trigger_manual("paused", lead["leadId"])

        save_workflow(db_path, _workflow("live", {"type": "MANUAL"}))
        with pytest.raises(NotFoundError):
            await dispatcher.trigger_manual("live", "no-such-lead")


@pytest.mark.asyncio
async def test_scheduled_trigger_fires_at_its_time():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        init_db(db_path)
        save_workflow(db_path, _workflow("nudge", {"type": "MANUAL"}))
        dispatcher, sender = _engine(db_path)
        lead = _lead(db_path)
        wakeups = dispatcher.scheduler.wakeups

        event = TriggerEvent(type=TriggerType.MANUAL, lead_id=lead["leadId"], payload=lead)
        assert await dispatcher.schedule(event, T0 + timedelta(hours=3)) == []
        assert [row["lead_id"] for row in wakeups.pending_triggers()] == [lead["leadId"]]

        early = await wakeups.run_due_triggers(dispatcher, now=T0 + timedelta(hours=2))
        assert early == {"fired": 0, "executions": 0, "errors": []}
        sender.send.assert_not_awaited()

        result = await wakeups.run_due_triggers(dispatcher, now=T0 + timedelta(hours=3))

        assert result == {"fired": 1, "executions": 1, "errors": []}
        assert get_execution(db_path, "nudge", lead["leadId"]).status == ExecutionStatus.COMPLETED
        assert wakeups.pending_triggers() == []
        sender.send.assert_awaited_once_with(to="ada@acme.co", subject="Hi Ada", body="Hello")


@pytest.mark.asyncio
async def test_scheduled_trigger_in_the_past_dispatches_now():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        init_db(db_path)
        save_workflow(db_path, _workflow("on-create", {"type": "LEAD_CREATED"}))
        dispatcher, _ = _engine(db_path)

        states = await dispatcher.schedule(lead_created(_lead(db_path)), T0 - timedelta(minutes=1))

        assert [s.workflow_id for s in states] == ["on-create"]
        assert dispatcher.scheduler.wakeups.pending_triggers() == []

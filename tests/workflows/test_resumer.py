"""Tests for the delay resumption service."""

import asyncio
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from outflow.core.db import get_connection, init_db
from outflow.workflows.definitions import save_workflow
from outflow.workflows.graph import parse_definition
from outflow.workflows.resumer import DelayResumptionService
from outflow.workflows.scheduler import Scheduler
from outflow.workflows.state import ExecutionStatus
from outflow.workflows.store import create_or_restart, get_execution
from outflow.workflows.triggers import TriggerEvent, TriggerType

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

DRIP = {
    "id": "drip",
    "nodes": [
        {"id": "t", "type": "TRIGGER", "data": {"type": "LEAD_CREATED"}},
        {"id": "d", "type": "DELAY", "data": {"delayValue": 2, "delayType": "hours"}},
        {"id": "e", "type": "ACTION_EMAIL", "data": {"subject": "Hi", "body": "Hello"}},
    ],
    "edges": [
        {"id": "a", "source": "t", "target": "d"},
        {"id": "b", "source": "d", "target": "e"},
    ],
}


def _wakeup_statuses(db_path):
    conn = get_connection(db_path)
    rows = conn.execute("SELECT status FROM scheduled_wakeups ORDER BY id").fetchall()
    conn.close()
    return [row["status"] for row in rows]


def test_schedule_and_claim_due():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        init_db(db_path)
        service = DelayResumptionService(db_path)

        service.schedule("wf", "lead-1", "run-1", T0)
        service.schedule("wf", "lead-2", "run-2", T0 + timedelta(hours=1))

        claimed = service.claim_due(now=T0 + timedelta(minutes=30))

        assert [row["lead_id"] for row in claimed] == ["lead-1"]
        # Already claimed wake-ups are not handed out twice
        assert service.claim_due(now=T0 + timedelta(minutes=30)) == []
        assert _wakeup_statuses(db_path) == ["claimed", "pending"]


def test_cancel_only_touches_pending():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        init_db(db_path)
        service = DelayResumptionService(db_path)

        service.schedule("wf", "lead-1", "run-1", T0)
        service.schedule("wf", "lead-1", "run-2", T0)

        assert service.cancel("wf", "lead-1", "run-1") == 1
        assert [row["run_id"] for row in service.pending("wf", "lead-1")] == ["run-2"]
        assert service.cancel("wf", "lead-1") == 1
        assert service.pending("wf", "lead-1") == []


@pytest.mark.asyncio
async def test_run_due_resumes_waiting_execution():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        init_db(db_path)
        saved = save_workflow(db_path, parse_definition(DRIP))

        service = DelayResumptionService(db_path, clock=lambda: T0)
        sender = AsyncMock()
        sender.send.return_value = {"message_id": "m"}
        scheduler = Scheduler(db_path, sender=sender, wakeups=service, clock=lambda: T0)

        create_or_restart(db_path, "drip", "lead-1", saved.version, "t",
                          {"email": "ada@acme.co"}, now=T0)
        await scheduler.step("drip", "lead-1")

        # Nothing is delivered early
        early = await service.run_due(scheduler, now=T0 + timedelta(hours=1))
        assert early == {"delivered": 0, "errors": []}

        result = await service.run_due(scheduler, now=T0 + timedelta(hours=2))

        assert result == {"delivered": 1, "errors": []}
        assert get_execution(db_path, "drip", "lead-1").status == ExecutionStatus.COMPLETED
        assert _wakeup_statuses(db_path) == ["delivered"]
        sender.send.assert_awaited_once()


@pytest.mark.asyncio
async def test_failed_delivery_is_released_for_retry():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        init_db(db_path)
        service = DelayResumptionService(db_path)
        service.schedule("wf", "lead-1", "run-1", T0)

        scheduler = AsyncMock()
        scheduler.resume.side_effect = RuntimeError("database is locked")

        result = await service.run_due(scheduler, now=T0)

        assert result["delivered"] == 0
        assert len(result["errors"]) == 1
        assert _wakeup_statuses(db_path) == ["pending"]


def test_reconcile_restores_missing_wakeups():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        init_db(db_path)
        service = DelayResumptionService(db_path)

        state = create_or_restart(db_path, "wf", "lead-1", 1, "d", {}, now=T0)
        conn = get_connection(db_path)
        conn.execute(
            "UPDATE execution_states SET status = 'WAITING', next_wake_at = ? WHERE lead_id = 'lead-1'",
            ((T0 + timedelta(days=1)).isoformat(timespec="microseconds"),)
        )
        conn.close()

        assert service.reconcile() == 1
        assert service.reconcile() == 0

        pending = service.pending("wf", "lead-1")
        assert pending[0]["run_id"] == state.run_id


@pytest.mark.asyncio
async def test_run_forever_stops_on_event():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        init_db(db_path)
        service = DelayResumptionService(db_path, poll_interval=0.01)
        scheduler = AsyncMock()

        stop = asyncio.Event()
        task = asyncio.create_task(service.run_forever(scheduler, stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

        assert task.done()


def _trigger_statuses(db_path):
    conn = get_connection(db_path)
    rows = conn.execute("SELECT status FROM scheduled_triggers ORDER BY id").fetchall()
    conn.close()
    return [row["status"] for row in rows]


def test_scheduled_triggers_are_claimed_once():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        init_db(db_path)
        service = DelayResumptionService(db_path)

        service.schedule_trigger(TriggerEvent(type=TriggerType.MANUAL, lead_id="lead-1"), T0)
        service.schedule_trigger(TriggerEvent(type=TriggerType.MANUAL, lead_id="lead-2"), T0 + timedelta(days=1))

        claimed = service.claim_due_triggers(now=T0)

        assert [row["lead_id"] for row in claimed] == ["lead-1"]
        assert service.claim_due_triggers(now=T0) == []
        assert [row["lead_id"] for row in service.pending_triggers()] == ["lead-2"]


@pytest.mark.asyncio
async def test_failed_trigger_dispatch_is_released_for_retry():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        init_db(db_path)
        service = DelayResumptionService(db_path)
        service.schedule_trigger(
            TriggerEvent(type=TriggerType.LEAD_UPDATED, lead_id="lead-1", payload={"changedFields": ["status"]}),
            T0,
        )

        dispatcher = AsyncMock()
        dispatcher.dispatch.side_effect = RuntimeError("database is locked")

        result = await service.run_due_triggers(dispatcher, now=T0)

        assert result["fired"] == 0
        assert len(result["errors"]) == 1
        assert _trigger_statuses(db_path) == ["pending"]

        dispatcher.dispatch.side_effect = None
        dispatcher.dispatch.return_value = []
        result = await service.run_due_triggers(dispatcher, now=T0)

        assert result["fired"] == 1
        event = dispatcher.dispatch.await_args.args[0]
        assert event.type == TriggerType.LEAD_UPDATED
        assert event.payload == {"changedFields": ["status"]}
        assert _trigger_statuses(db_path) == ["fired"]


@pytest.mark.asyncio
async def test_run_forever_fires_scheduled_triggers():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        init_db(db_path)
        service = DelayResumptionService(db_path, poll_interval=0.01, clock=lambda: T0)
        service.schedule_trigger(TriggerEvent(type=TriggerType.MANUAL, lead_id="lead-1"), T0)

        dispatcher = AsyncMock()
        dispatcher.dispatch.return_value = []
        stop = asyncio.Event()
        task = asyncio.create_task(service.run_forever(AsyncMock(), stop, dispatcher=dispatcher))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

        dispatcher.dispatch.assert_awaited_once()
        assert _trigger_statuses(db_path) == ["fired"]

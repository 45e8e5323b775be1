"""Tests for the execution state store."""

import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from outflow.core.db import init_db
from outflow.core.errors import ConcurrentUpdateError, NotFoundError
from outflow.workflows.state import ExecutionStatus, HistoryStatus
from outflow.workflows.store import (
    create_or_restart,
    find_execution,
    get_execution,
    list_executions,
    list_executions_by_status,
    list_runs,
    save_execution,
)

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def test_create_execution():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        init_db(db_path)

        state = create_or_restart(db_path, "wf", "lead-1", 1, "t", {"leadId": "lead-1"}, now=T0)

        assert state.status == ExecutionStatus.RUNNING
        assert state.revision == 1
        assert state.history == []

        loaded = get_execution(db_path, "wf", "lead-1")
        assert loaded.run_id == state.run_id
        assert loaded.current_node_id == "t"
        assert loaded.variables == {"leadId": "lead-1"}
        assert loaded.created_at == T0


def test_get_missing_execution():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        init_db(db_path)

        assert find_execution(db_path, "wf", "nobody") is None
        with pytest.raises(NotFoundError):
            get_execution(db_path, "wf", "nobody")


def test_save_round_trips_record():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        init_db(db_path)

        state = create_or_restart(db_path, "wf", "lead-1", 2, "t", {"score": 42}, now=T0)
        state.append_history("t", "TRIGGER", HistoryStatus.COMPLETED, T0)
        state.append_history("d", "DELAY", HistoryStatus.COMPLETED, T0)
        state.current_node_id = "d"
        state.status = ExecutionStatus.WAITING
        state.next_wake_at = T0 + timedelta(days=3)
        save_execution(db_path, state, state.revision, now=T0)

        record = get_execution(db_path, "wf", "lead-1").to_record()

        assert record == {
            "workflowId": "wf",
            "leadId": "lead-1",
            "workflowVersion": 2,
            "currentNode": "d",
            "status": "WAITING",
            "state": {
                "variables": {"score": 42},
                "history": [
                    {"nodeId": "t", "type": "TRIGGER", "status": "COMPLETED",
                     "timestamp": "2024-03-01T09:00:00.000000+00:00"},
                    {"nodeId": "d", "type": "DELAY", "status": "COMPLETED",
                     "timestamp": "2024-03-01T09:00:00.000000+00:00"},
                ],
            },
            "nextWakeAt": "2024-03-04T09:00:00.000000+00:00",
        }


def test_stale_revision_is_rejected():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        init_db(db_path)

        create_or_restart(db_path, "wf", "lead-1", 1, "t", {}, now=T0)
        first = get_execution(db_path, "wf", "lead-1")
        second = get_execution(db_path, "wf", "lead-1")

        first.current_node_id = "a"
        save_execution(db_path, first, first.revision)

        second.current_node_id = "b"
        with pytest.raises(ConcurrentUpdateError):
            save_execution(db_path, second, second.revision)

        assert get_execution(db_path, "wf", "lead-1").current_node_id == "a"


def test_restart_archives_previous_run():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        init_db(db_path)

        old = create_or_restart(db_path, "wf", "lead-1", 1, "t", {}, now=T0)
        old.status = ExecutionStatus.COMPLETED
        save_execution(db_path, old, old.revision, now=T0)

        new = create_or_restart(db_path, "wf", "lead-1", 2, "t", {"again": True},
                                now=T0 + timedelta(hours=1))

        assert new.run_id != old.run_id
        assert new.status == ExecutionStatus.RUNNING
        assert new.workflow_version == 2

        runs = list_runs(db_path, "wf", "lead-1")
        assert len(runs) == 1
        assert runs[0]["runId"] == old.run_id
        assert runs[0]["status"] == "COMPLETED"

        # A writer holding the old run cannot touch the new one
        old.status = ExecutionStatus.FAILED
        with pytest.raises(ConcurrentUpdateError):
            save_execution(db_path, old, old.revision)


def test_list_executions_newest_first():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        init_db(db_path)

        create_or_restart(db_path, "wf", "lead-1", 1, "t", {}, now=T0)
        create_or_restart(db_path, "wf", "lead-2", 1, "t", {}, now=T0 + timedelta(minutes=1))
        create_or_restart(db_path, "other", "lead-3", 1, "t", {}, now=T0)

        states = list_executions(db_path, "wf")

        assert [s.lead_id for s in states] == ["lead-2", "lead-1"]
        assert len(list_executions_by_status(db_path, ExecutionStatus.RUNNING)) == 3

"""Execution state store.

One row per (workflow_id, lead_id). Every write after creation is an
optimistic update: it only applies if the row still has the revision the
writer read, otherwise ConcurrentUpdateError is raised and the caller drops
its transition.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Optional
from uuid import uuid4

import structlog

from outflow.core.db import get_connection, to_iso, utcnow
from outflow.core.errors import ConcurrentUpdateError, NotFoundError
from outflow.workflows.state import ExecutionState, ExecutionStatus

log = structlog.get_logger()


def _dump_state(state: ExecutionState) -> str:
    return json.dumps(state.state_payload(), default=str)


def find_execution(db_path: Path, workflow_id: str, lead_id: str) -> Optional[ExecutionState]:
    """Get the execution for a (workflow, lead) pair, or None."""
    conn = get_connection(db_path)
    cursor = conn.execute(
        "SELECT * FROM execution_states WHERE workflow_id = ? AND lead_id = ?",
        (workflow_id, lead_id)
    )
    row = cursor.fetchone()
    conn.close()
    return ExecutionState.from_row(row) if row else None


def get_execution(db_path: Path, workflow_id: str, lead_id: str) -> ExecutionState:
    """Get the execution for a (workflow, lead) pair. Raises NotFoundError."""
    state = find_execution(db_path, workflow_id, lead_id)
    if state is None:
        raise NotFoundError(f"No execution for workflow '{workflow_id}' and lead '{lead_id}'")
    return state


def list_executions(db_path: Path, workflow_id: str) -> list[ExecutionState]:
    """All executions of a workflow, most recently updated first."""
    conn = get_connection(db_path)
    cursor = conn.execute(
        """
        SELECT * FROM execution_states
        WHERE workflow_id = ?
        ORDER BY updated_at DESC, rowid DESC
        """,
        (workflow_id,)
    )
    rows = cursor.fetchall()
    conn.close()
    return [ExecutionState.from_row(row) for row in rows]


def list_executions_by_status(db_path: Path, status: ExecutionStatus) -> list[ExecutionState]:
    conn = get_connection(db_path)
    cursor = conn.execute(
        "SELECT * FROM execution_states WHERE status = ?",
        (status.value,)
    )
    rows = cursor.fetchall()
    conn.close()
    return [ExecutionState.from_row(row) for row in rows]


def create_or_restart(
    db_path: Path,
    workflow_id: str,
    lead_id: str,
    workflow_version: int,
    start_node_id: str,
    variables: dict,
    now: Optional[datetime] = None,
) -> ExecutionState:
    """Start a new run for (workflow, lead), archiving any previous run.

    The new run gets a fresh run_id, empty history and status RUNNING.
    """
    now = now or utcnow()
    state = ExecutionState(
        workflow_id=workflow_id,
        lead_id=lead_id,
        run_id=str(uuid4()),
        workflow_version=workflow_version,
        current_node_id=start_node_id,
        status=ExecutionStatus.RUNNING,
        variables=dict(variables),
        created_at=now,
        updated_at=now,
    )

    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE")
        cursor = conn.execute(
            "SELECT * FROM execution_states WHERE workflow_id = ? AND lead_id = ?",
            (workflow_id, lead_id)
        )
        row = cursor.fetchone()

        if row is None:
            state.revision = 1
            conn.execute(
                """
                INSERT INTO execution_states
                (workflow_id, lead_id, run_id, workflow_version, current_node, status,
                 state, next_wake_at, revision, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, NULL, ?, ?, ?)
                """,
                (workflow_id, lead_id, state.run_id, workflow_version, start_node_id,
                 state.status.value, _dump_state(state), state.revision, to_iso(now), to_iso(now))
            )
        else:
            previous = ExecutionState.from_row(row)
            conn.execute(
                """
                INSERT OR IGNORE INTO execution_runs (run_id, workflow_id, lead_id, record, archived_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (previous.run_id, workflow_id, lead_id,
                 json.dumps(previous.to_record(), default=str), to_iso(now))
            )
            state.revision = previous.revision + 1
            conn.execute(
                """
                UPDATE execution_states
                SET run_id = ?, workflow_version = ?, current_node = ?, status = ?, state = ?,
                    next_wake_at = NULL, revision = ?, created_at = ?, updated_at = ?
                WHERE workflow_id = ? AND lead_id = ?
                """,
                (state.run_id, workflow_version, start_node_id, state.status.value,
                 _dump_state(state), state.revision, to_iso(now), to_iso(now),
                 workflow_id, lead_id)
            )
            log.info("execution_restarted", workflow_id=workflow_id, lead_id=lead_id,
                     previous_run_id=previous.run_id, previous_status=previous.status.value)

        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise
    finally:
        conn.close()

    log.info("execution_created", workflow_id=workflow_id, lead_id=lead_id, run_id=state.run_id)
    return state


def save_execution(
    db_path: Path,
    state: ExecutionState,
    expected_revision: int,
    now: Optional[datetime] = None,
) -> ExecutionState:
    """Persist a transition if nobody else wrote since expected_revision.

    On success the state's revision and updated_at are advanced in place.
    """
    now = now or utcnow()
    new_revision = expected_revision + 1

    conn = get_connection(db_path)
    try:
        cursor = conn.execute(
            """
            UPDATE execution_states
            SET current_node = ?, status = ?, state = ?, next_wake_at = ?,
                revision = ?, updated_at = ?
            WHERE workflow_id = ? AND lead_id = ? AND run_id = ? AND revision = ?
            """,
            (state.current_node_id, state.status.value, _dump_state(state),
             to_iso(state.next_wake_at) if state.next_wake_at else None,
             new_revision, to_iso(now),
             state.workflow_id, state.lead_id, state.run_id, expected_revision)
        )
        updated = cursor.rowcount
    finally:
        conn.close()

    if updated == 0:
        raise ConcurrentUpdateError(state.workflow_id, state.lead_id, expected_revision)

    state.revision = new_revision
    state.updated_at = now
    return state


def list_runs(db_path: Path, workflow_id: str, lead_id: str) -> list[dict]:
    """Archived runs of a (workflow, lead) pair, oldest first."""
    conn = get_connection(db_path)
    cursor = conn.execute(
        """
        SELECT run_id, record, archived_at FROM execution_runs
        WHERE workflow_id = ? AND lead_id = ?
        ORDER BY archived_at, rowid
        """,
        (workflow_id, lead_id)
    )
    rows = cursor.fetchall()
    conn.close()
    return [
        {"runId": row["run_id"], "archivedAt": row["archived_at"], **json.loads(row["record"])}
        for row in rows
    ]

"""Workflow definition storage.

Each structural edit is stored as a new immutable version so running
executions keep walking the graph they started on.
"""

import json
from pathlib import Path
from typing import Optional

import structlog
import yaml

from outflow.core.db import get_connection, utcnow_iso
from outflow.core.errors import NotFoundError
from outflow.workflows.graph import WorkflowDefinition, parse_definition
from outflow.workflows.validator import validate

log = structlog.get_logger()


def load_definition_file(path: Path) -> WorkflowDefinition:
    """Read a definition from a YAML or JSON file."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    return parse_definition(data)


def _build(workflow_row, version_row) -> WorkflowDefinition:
    return WorkflowDefinition(
        id=workflow_row["id"],
        name=workflow_row["name"] or "",
        nodes=json.loads(version_row["nodes"]),
        edges=json.loads(version_row["edges"]),
        is_active=bool(workflow_row["is_active"]),
        version=version_row["version"],
    )


def save_workflow(db_path: Path, definition: WorkflowDefinition) -> WorkflowDefinition:
    """Validate and store a definition.

    Raises GraphValidationError; nothing is written for an invalid graph.
    The version is bumped only when nodes or edges changed.
    """
    validate(definition)
    structure = definition.structure()
    nodes_json = json.dumps(structure["nodes"], sort_keys=True)
    edges_json = json.dumps(structure["edges"], sort_keys=True)
    now = utcnow_iso()

    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE")
        workflow = conn.execute(
            "SELECT * FROM workflows WHERE id = ?", (definition.id,)
        ).fetchone()

        if workflow is None:
            version = 1
            conn.execute(
                "INSERT INTO workflows (id, name, is_active, version, updated_at) VALUES (?, ?, ?, ?, ?)",
                (definition.id, definition.name, int(definition.is_active), version, now)
            )
        else:
            version = workflow["version"]
            latest = conn.execute(
                "SELECT nodes, edges FROM workflow_versions WHERE workflow_id = ? AND version = ?",
                (definition.id, version)
            ).fetchone()
            if latest is None or latest["nodes"] != nodes_json or latest["edges"] != edges_json:
                version += 1
            conn.execute(
                "UPDATE workflows SET name = ?, is_active = ?, version = ?, updated_at = ? WHERE id = ?",
                (definition.name, int(definition.is_active), version, now, definition.id)
            )

        conn.execute(
            """
            INSERT OR IGNORE INTO workflow_versions (workflow_id, version, nodes, edges, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (definition.id, version, nodes_json, edges_json, now)
        )
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise
    finally:
        conn.close()

    log.info("workflow_saved", workflow_id=definition.id, version=version)
    return definition.model_copy(update={"version": version})


def get_workflow_version(db_path: Path, workflow_id: str, version: int) -> Optional[WorkflowDefinition]:
    """A specific snapshot, or None if it does not exist."""
    conn = get_connection(db_path)
    workflow = conn.execute("SELECT * FROM workflows WHERE id = ?", (workflow_id,)).fetchone()
    snapshot = conn.execute(
        "SELECT * FROM workflow_versions WHERE workflow_id = ? AND version = ?",
        (workflow_id, version)
    ).fetchone()
    conn.close()
    if workflow is None or snapshot is None:
        return None
    return _build(workflow, snapshot)


def get_workflow(db_path: Path, workflow_id: str) -> Optional[WorkflowDefinition]:
    """The latest version of a workflow, or None."""
    conn = get_connection(db_path)
    workflow = conn.execute("SELECT * FROM workflows WHERE id = ?", (workflow_id,)).fetchone()
    conn.close()
    if workflow is None:
        return None
    return get_workflow_version(db_path, workflow_id, workflow["version"])


def list_active_workflows(db_path: Path) -> list[WorkflowDefinition]:
    """Latest versions of all active workflows."""
    conn = get_connection(db_path)
    rows = conn.execute(
        """
        SELECT w.*, v.nodes, v.edges FROM workflows w
        JOIN workflow_versions v ON v.workflow_id = w.id AND v.version = w.version
        WHERE w.is_active = 1
        ORDER BY w.id
        """
    ).fetchall()
    conn.close()
    return [_build(row, row) for row in rows]


def set_workflow_active(db_path: Path, workflow_id: str, active: bool) -> None:
    """Activate or deactivate a workflow. Running executions are unaffected."""
    conn = get_connection(db_path)
    cursor = conn.execute(
        "UPDATE workflows SET is_active = ?, updated_at = ? WHERE id = ?",
        (int(active), utcnow_iso(), workflow_id)
    )
    updated = cursor.rowcount
    conn.close()
    if updated == 0:
        raise NotFoundError(f"Workflow '{workflow_id}' not found")
    log.info("workflow_activation_changed", workflow_id=workflow_id, active=active)

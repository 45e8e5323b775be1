"""SQLite database operations."""

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from uuid import uuid4

DEFAULT_DB_PATH = Path("data/outflow.db")


def get_connection(db_path: Path = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Get a database connection with row factory."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    # Autocommit mode; transactions are opened explicitly where needed
    conn = sqlite3.connect(db_path, timeout=30, isolation_level=None)
    conn.row_factory = sqlite3.Row
    return conn


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Serialize a timestamp in a fixed UTC format so stored values sort as text."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def utcnow_iso() -> str:
    return to_iso(utcnow())


def init_db(db_path: Path = DEFAULT_DB_PATH) -> None:
    """Initialize database with schema."""
    conn = get_connection(db_path)

    conn.executescript("""
        CREATE TABLE IF NOT EXISTS leads (
            id TEXT PRIMARY KEY,
            email TEXT UNIQUE NOT NULL,
            first_name TEXT NOT NULL,
            last_name TEXT,
            company TEXT,
            title TEXT,
            linkedin_url TEXT,
            custom_fields TEXT,
            status TEXT DEFAULT 'new',
            created_at TIMESTAMP NOT NULL
        );

        -- Latest version pointer per workflow
        CREATE TABLE IF NOT EXISTS workflows (
            id TEXT PRIMARY KEY,
            name TEXT,
            is_active INTEGER NOT NULL DEFAULT 1,
            version INTEGER NOT NULL,
            updated_at TIMESTAMP NOT NULL
        );

        -- Immutable graph snapshots, one per version
        CREATE TABLE IF NOT EXISTS workflow_versions (
            workflow_id TEXT NOT NULL REFERENCES workflows(id),
            version INTEGER NOT NULL,
            nodes TEXT NOT NULL,
            edges TEXT NOT NULL,
            created_at TIMESTAMP NOT NULL,
            PRIMARY KEY (workflow_id, version)
        );

        CREATE TABLE IF NOT EXISTS execution_states (
            workflow_id TEXT NOT NULL,
            lead_id TEXT NOT NULL,
            run_id TEXT NOT NULL,
            workflow_version INTEGER NOT NULL,
            current_node TEXT NOT NULL,
            status TEXT NOT NULL,
            state TEXT NOT NULL,
            next_wake_at TIMESTAMP,
            revision INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL,
            PRIMARY KEY (workflow_id, lead_id)
        );

        -- Finished or superseded runs, never updated
        CREATE TABLE IF NOT EXISTS execution_runs (
            run_id TEXT PRIMARY KEY,
            workflow_id TEXT NOT NULL,
            lead_id TEXT NOT NULL,
            record TEXT NOT NULL,
            archived_at TIMESTAMP NOT NULL
        );

        CREATE TABLE IF NOT EXISTS scheduled_wakeups (
            id INTEGER PRIMARY KEY,
            workflow_id TEXT NOT NULL,
            lead_id TEXT NOT NULL,
            run_id TEXT NOT NULL,
            wake_at TIMESTAMP NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            created_at TIMESTAMP NOT NULL
        );

        -- Trigger events held until their fire time
        CREATE TABLE IF NOT EXISTS scheduled_triggers (
            id INTEGER PRIMARY KEY,
            trigger_type TEXT NOT NULL,
            lead_id TEXT NOT NULL,
            payload TEXT NOT NULL,
            fire_at TIMESTAMP NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            created_at TIMESTAMP NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_leads_status ON leads(status);
        CREATE INDEX IF NOT EXISTS idx_execution_states_status ON execution_states(status);
        CREATE INDEX IF NOT EXISTS idx_execution_runs_key ON execution_runs(workflow_id, lead_id);
        CREATE INDEX IF NOT EXISTS idx_wakeups_due ON scheduled_wakeups(status, wake_at);
        CREATE INDEX IF NOT EXISTS idx_triggers_due ON scheduled_triggers(status, fire_at);
    """)

    conn.close()


def insert_lead(
    db_path: Path,
    email: str,
    first_name: str,
    last_name: Optional[str] = None,
    company: Optional[str] = None,
    title: Optional[str] = None,
    linkedin_url: Optional[str] = None,
    custom_fields: Optional[dict] = None,
) -> Optional[str]:
    """Insert a lead. Returns lead_id or None if duplicate."""
    lead_id = str(uuid4())
    conn = get_connection(db_path)
    try:
        conn.execute(
            """
            INSERT INTO leads
            (id, email, first_name, last_name, company, title, linkedin_url, custom_fields, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (lead_id, email, first_name, last_name, company, title, linkedin_url,
             json.dumps(custom_fields, default=str) if custom_fields else None, utcnow_iso())
        )
        return lead_id
    except sqlite3.IntegrityError:
        return None
    finally:
        conn.close()


def get_lead_by_id(db_path: Path, lead_id: str) -> Optional[sqlite3.Row]:
    """Get a lead by ID."""
    conn = get_connection(db_path)
    cursor = conn.execute("SELECT * FROM leads WHERE id = ?", (lead_id,))
    row = cursor.fetchone()
    conn.close()
    return row


def get_lead_by_email(db_path: Path, email: str) -> Optional[sqlite3.Row]:
    """Get a lead by email."""
    conn = get_connection(db_path)
    cursor = conn.execute("SELECT * FROM leads WHERE email = ?", (email,))
    row = cursor.fetchone()
    conn.close()
    return row


def get_leads_by_status(db_path: Path, status: str) -> list[sqlite3.Row]:
    """Get all leads with a given status."""
    conn = get_connection(db_path)
    cursor = conn.execute("SELECT * FROM leads WHERE status = ?", (status,))
    rows = cursor.fetchall()
    conn.close()
    return rows


def lead_variables(lead: sqlite3.Row) -> dict:
    """Flatten a lead row into execution variables."""
    variables = {
        "leadId": lead["id"],
        "email": lead["email"],
        "first_name": lead["first_name"],
        "last_name": lead["last_name"],
        "company": lead["company"],
        "title": lead["title"],
        "linkedin_url": lead["linkedin_url"],
        "status": lead["status"],
    }
    if lead["custom_fields"]:
        variables.update(json.loads(lead["custom_fields"]))
    return variables


def get_pipeline_stats(db_path: Path) -> dict:
    """Count executions by status, plus leads, due wake-ups and scheduled triggers."""
    conn = get_connection(db_path)

    stats = {}

    cursor = conn.execute(
        "SELECT status, COUNT(*) as count FROM execution_states GROUP BY status"
    )
    for row in cursor.fetchall():
        stats[row["status"]] = row["count"]

    stats["leads"] = conn.execute("SELECT COUNT(*) FROM leads").fetchone()[0]
    stats["wakeups_due"] = conn.execute(
        "SELECT COUNT(*) FROM scheduled_wakeups WHERE status = 'pending' AND wake_at <= ?",
        (utcnow_iso(),)
    ).fetchone()[0]
    stats["triggers_scheduled"] = conn.execute(
        "SELECT COUNT(*) FROM scheduled_triggers WHERE status = 'pending'"
    ).fetchone()[0]

    conn.close()
    return stats

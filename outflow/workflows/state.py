"""Execution state for one lead walking one workflow."""

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from outflow.core.db import parse_iso, to_iso


class ExecutionStatus(str, Enum):
    """Execution lifecycle.

    PENDING -> RUNNING -> (WAITING <-> RUNNING)* -> COMPLETED | FAILED | CANCELLED
    """
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    WAITING = "WAITING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}


class HistoryStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class HistoryEntry:
    node_id: str
    node_type: str
    status: HistoryStatus
    timestamp: datetime
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        entry = {
            "nodeId": self.node_id,
            "type": self.node_type,
            "status": self.status.value,
            "timestamp": to_iso(self.timestamp),
        }
        if self.error is not None:
            entry["error"] = self.error
        return entry

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HistoryEntry":
        return cls(
            node_id=data["nodeId"],
            node_type=data["type"],
            status=HistoryStatus(data.get("status", HistoryStatus.COMPLETED.value)),
            timestamp=parse_iso(data["timestamp"]),
            error=data.get("error"),
        )


@dataclass
class ExecutionState:
    """One row per (workflow_id, lead_id); the latest run for that pair."""
    workflow_id: str
    lead_id: str
    run_id: str
    workflow_version: int
    current_node_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    variables: dict[str, Any] = field(default_factory=dict)
    history: list[HistoryEntry] = field(default_factory=list)
    next_wake_at: Optional[datetime] = None
    revision: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def append_history(
        self,
        node_id: str,
        node_type: str,
        status: HistoryStatus,
        timestamp: datetime,
        error: Optional[str] = None,
    ) -> HistoryEntry:
        """Append an entry, keeping timestamps non-decreasing."""
        if self.history and timestamp < self.history[-1].timestamp:
            timestamp = self.history[-1].timestamp
        entry = HistoryEntry(node_id, node_type, status, timestamp, error)
        self.history.append(entry)
        return entry

    def state_payload(self) -> dict[str, Any]:
        return {
            "variables": self.variables,
            "history": [entry.to_dict() for entry in self.history],
        }

    def to_record(self) -> dict[str, Any]:
        """The persisted execution record shared with the UI/API layer."""
        record = {
            "workflowId": self.workflow_id,
            "leadId": self.lead_id,
            "workflowVersion": self.workflow_version,
            "currentNode": self.current_node_id,
            "status": self.status.value,
            "state": self.state_payload(),
        }
        if self.next_wake_at is not None:
            record["nextWakeAt"] = to_iso(self.next_wake_at)
        return record

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ExecutionState":
        payload = json.loads(row["state"])
        return cls(
            workflow_id=row["workflow_id"],
            lead_id=row["lead_id"],
            run_id=row["run_id"],
            workflow_version=row["workflow_version"],
            current_node_id=row["current_node"],
            status=ExecutionStatus(row["status"]),
            variables=payload.get("variables", {}),
            history=[HistoryEntry.from_dict(entry) for entry in payload.get("history", [])],
            next_wake_at=parse_iso(row["next_wake_at"]),
            revision=row["revision"],
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
        )

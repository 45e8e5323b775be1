"""Durable timers: wake-ups for executions suspended on a DELAY node, and
trigger events scheduled to fire later.

Both live in SQLite so they survive restarts. A worker polls for due rows,
claims each one atomically (so two workers never deliver the same row) and
hands it to the scheduler or the dispatcher. Delivery can be late, never early.
"""

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional

import structlog

from outflow.core.db import DEFAULT_DB_PATH, get_connection, to_iso, utcnow
from outflow.workflows.state import ExecutionStatus
from outflow.workflows.store import list_executions_by_status
from outflow.workflows.triggers import TriggerEvent

if TYPE_CHECKING:
    from outflow.workflows.dispatcher import TriggerDispatcher
    from outflow.workflows.scheduler import Scheduler

log = structlog.get_logger()


class DelayResumptionService:
    """Schedules and redelivers wake-ups and scheduled trigger events."""

    def __init__(
        self,
        db_path: Path = DEFAULT_DB_PATH,
        batch_size: int = 100,
        poll_interval: float = 60,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db_path = db_path
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self.clock = clock

    def schedule(self, workflow_id: str, lead_id: str, run_id: str, wake_at: datetime) -> int:
        """Record a wake-up. Returns its id."""
        conn = get_connection(self.db_path)
        cursor = conn.execute(
            """
            INSERT INTO scheduled_wakeups (workflow_id, lead_id, run_id, wake_at, status, created_at)
            VALUES (?, ?, ?, ?, 'pending', ?)
            """,
            (workflow_id, lead_id, run_id, to_iso(wake_at), to_iso(self.clock()))
        )
        wakeup_id = cursor.lastrowid
        conn.close()
        log.info("wakeup_scheduled", workflow_id=workflow_id, lead_id=lead_id,
                 run_id=run_id, wake_at=to_iso(wake_at))
        return wakeup_id

    def cancel(self, workflow_id: str, lead_id: str, run_id: Optional[str] = None) -> int:
        """Cancel pending wake-ups for an execution (optionally one run only)."""
        query = """
            UPDATE scheduled_wakeups SET status = 'cancelled'
            WHERE workflow_id = ? AND lead_id = ? AND status = 'pending'
        """
        params: tuple = (workflow_id, lead_id)
        if run_id is not None:
            query += " AND run_id = ?"
            params += (run_id,)

        conn = get_connection(self.db_path)
        cancelled = conn.execute(query, params).rowcount
        conn.close()
        if cancelled:
            log.info("wakeups_cancelled", workflow_id=workflow_id, lead_id=lead_id, count=cancelled)
        return cancelled

    def pending(self, workflow_id: str, lead_id: str) -> list:
        """Pending wake-ups for an execution, earliest first."""
        conn = get_connection(self.db_path)
        rows = conn.execute(
            """
            SELECT * FROM scheduled_wakeups
            WHERE workflow_id = ? AND lead_id = ? AND status = 'pending'
            ORDER BY wake_at
            """,
            (workflow_id, lead_id)
        ).fetchall()
        conn.close()
        return rows

    def claim_due(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> list:
        """Claim pending wake-ups whose time has come."""
        return self._claim("scheduled_wakeups", "wake_at", now, limit)

    def _claim(self, table: str, time_column: str, now: Optional[datetime],
               limit: Optional[int]) -> list:
        now = now or self.clock()
        limit = limit or self.batch_size

        conn = get_connection(self.db_path)
        try:
            candidates = conn.execute(
                f"""
                SELECT * FROM {table}
                WHERE status = 'pending' AND {time_column} <= ?
                ORDER BY {time_column}
                LIMIT ?
                """,
                (to_iso(now), limit)
            ).fetchall()

            claimed = []
            for row in candidates:
                # Another worker may have claimed it since the select
                cursor = conn.execute(
                    f"UPDATE {table} SET status = 'claimed' WHERE id = ? AND status = 'pending'",
                    (row["id"],)
                )
                if cursor.rowcount == 1:
                    claimed.append(row)
        finally:
            conn.close()

        return claimed

    def _set_status(self, wakeup_id: int, status: str, table: str = "scheduled_wakeups") -> None:
        conn = get_connection(self.db_path)
        conn.execute(f"UPDATE {table} SET status = ? WHERE id = ?", (status, wakeup_id))
        conn.close()

    async def run_due(self, scheduler: "Scheduler", now: Optional[datetime] = None) -> dict:
        """Deliver every due wake-up to the scheduler.

        Returns summary dict.
        """
        now = now or self.clock()
        results = {"delivered": 0, "errors": []}

        for wakeup in self.claim_due(now):
            try:
                await scheduler.resume(
                    wakeup["workflow_id"],
                    wakeup["lead_id"],
                    run_id=wakeup["run_id"],
                    now=now,
                )
                self._set_status(wakeup["id"], "delivered")
                results["delivered"] += 1

            except Exception as e:
                # Release for the next poll
                log.error("wakeup_delivery_failed", workflow_id=wakeup["workflow_id"],
                          lead_id=wakeup["lead_id"], error=str(e))
                self._set_status(wakeup["id"], "pending")
                results["errors"].append(f"{wakeup['workflow_id']}/{wakeup['lead_id']}: {e}")

        if results["delivered"] or results["errors"]:
            log.info("wakeups_processed", delivered=results["delivered"], errors=len(results["errors"]))
        return results

    # Scheduled triggers

    def schedule_trigger(self, event: TriggerEvent, fire_at: datetime) -> int:
        """Hold a trigger event until ``fire_at``. Returns its id."""
        conn = get_connection(self.db_path)
        cursor = conn.execute(
            """
            INSERT INTO scheduled_triggers (trigger_type, lead_id, payload, fire_at, status, created_at)
            VALUES (?, ?, ?, ?, 'pending', ?)
            """,
            (event.type.value, event.lead_id, json.dumps(event.payload, default=str),
             to_iso(fire_at), to_iso(self.clock()))
        )
        trigger_id = cursor.lastrowid
        conn.close()
        log.info("trigger_scheduled", trigger=event.type.value, lead_id=event.lead_id,
                 fire_at=to_iso(fire_at))
        return trigger_id

    def pending_triggers(self, lead_id: Optional[str] = None) -> list:
        """Scheduled triggers not yet fired, earliest first."""
        query = "SELECT * FROM scheduled_triggers WHERE status = 'pending'"
        params: tuple = ()
        if lead_id is not None:
            query += " AND lead_id = ?"
            params = (lead_id,)

        conn = get_connection(self.db_path)
        rows = conn.execute(query + " ORDER BY fire_at", params).fetchall()
        conn.close()
        return rows

    def claim_due_triggers(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> list:
        """Claim pending trigger events whose fire time has come."""
        return self._claim("scheduled_triggers", "fire_at", now, limit)

    async def run_due_triggers(self, dispatcher: "TriggerDispatcher", now: Optional[datetime] = None) -> dict:
        """Dispatch every due trigger event.

        Returns summary dict.
        """
        now = now or self.clock()
        results = {"fired": 0, "executions": 0, "errors": []}

        for row in self.claim_due_triggers(now):
            try:
                event = TriggerEvent(
                    type=row["trigger_type"],
                    lead_id=row["lead_id"],
                    payload=json.loads(row["payload"]),
                )
                started = await dispatcher.dispatch(event)
                self._set_status(row["id"], "fired", table="scheduled_triggers")
                results["fired"] += 1
                results["executions"] += len(started)

            except Exception as e:
                # Release for the next poll
                log.error("scheduled_trigger_failed", trigger=row["trigger_type"],
                          lead_id=row["lead_id"], error=str(e))
                self._set_status(row["id"], "pending", table="scheduled_triggers")
                results["errors"].append(f"{row['trigger_type']}/{row['lead_id']}: {e}")

        if results["fired"] or results["errors"]:
            log.info("scheduled_triggers_processed", fired=results["fired"],
                     executions=results["executions"], errors=len(results["errors"]))
        return results

    def reconcile(self) -> int:
        """Re-create wake-ups for WAITING executions that have none.

        Covers a crash between saving the WAITING state and scheduling.
        """
        restored = 0
        for state in list_executions_by_status(self.db_path, ExecutionStatus.WAITING):
            if state.next_wake_at is None:
                continue
            has_wakeup = any(
                row["run_id"] == state.run_id
                for row in self.pending(state.workflow_id, state.lead_id)
            )
            if not has_wakeup:
                self.schedule(state.workflow_id, state.lead_id, state.run_id, state.next_wake_at)
                restored += 1

        if restored:
            log.warning("wakeups_restored", count=restored)
        return restored

    async def run_forever(
        self,
        scheduler: "Scheduler",
        stop: Optional[asyncio.Event] = None,
        dispatcher: Optional["TriggerDispatcher"] = None,
    ) -> None:
        """Poll for due wake-ups (and scheduled triggers, given a dispatcher) until ``stop`` is set."""
        stop = stop or asyncio.Event()
        self.reconcile()
        log.info("resumer_started", poll_interval=self.poll_interval)

        while not stop.is_set():
            try:
                await self.run_due(scheduler)
                if dispatcher is not None:
                    await self.run_due_triggers(dispatcher)
            except Exception as e:
                log.error("resumer_iteration_failed", error=str(e))

            try:
                await asyncio.wait_for(stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

        log.info("resumer_stopped")

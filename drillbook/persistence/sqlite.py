"""SQLite implementation of the run repository."""

from __future__ import annotations

import asyncio
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from ..constants import RunStatus, StepStatus
from ..contracts import PlaybookDefinition
from .inmemory import is_due
from .models import AuditEvent, Run, StepRun

_ACTIVE_STATUSES = (
    RunStatus.PENDING.value,
    RunStatus.INITIALIZING.value,
    RunStatus.RUNNING.value,
)


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


class SQLiteRunRepository:
    """Persist runs using SQLite.

    Records are stored as JSON documents next to the columns needed for
    filtering and for the conditional updates.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS playbooks (
                id TEXT PRIMARY KEY,
                org_id TEXT NOT NULL,
                name TEXT NOT NULL,
                body TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                id TEXT PRIMARY KEY,
                org_id TEXT NOT NULL,
                playbook_id TEXT NOT NULL,
                status TEXT NOT NULL,
                version INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                body TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_runs (
                id TEXT PRIMARY KEY,
                org_id TEXT NOT NULL,
                run_id TEXT NOT NULL,
                ordinal INTEGER NOT NULL,
                status TEXT NOT NULL,
                body TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_events (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL,
                org_id TEXT NOT NULL,
                run_id TEXT NOT NULL,
                step_run_id TEXT,
                event_type TEXT NOT NULL,
                actor_id TEXT NOT NULL,
                body TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_step_runs_run ON step_runs (run_id)"
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_audit_events_run ON audit_events (run_id)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()
        return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    def _insert_run(self, run: Run, step_runs: list[StepRun]) -> None:
        with self._conn:
            self._conn.execute(
                "INSERT INTO runs (id, org_id, playbook_id, status, version, created_at, body) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    run.id,
                    run.org_id,
                    run.playbook_id,
                    run.status.value,
                    run.version,
                    _ts(run.created_at),
                    run.model_dump_json(),
                ),
            )
            self._conn.executemany(
                "INSERT INTO step_runs (id, org_id, run_id, ordinal, status, body) VALUES (?, ?, ?, ?, ?, ?)",
                [
                    (
                        s.id,
                        s.org_id,
                        s.run_id,
                        s.ordinal,
                        s.status.value,
                        s.model_dump_json(),
                    )
                    for s in step_runs
                ],
            )

    # ------------------------------------------------------------------
    # Repository API
    async def save_playbook(self, playbook: PlaybookDefinition) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO playbooks (id, org_id, name, body) VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET name = excluded.name, body = excluded.body
            """,
            playbook.id,
            playbook.org_id,
            playbook.name,
            playbook.model_dump_json(),
        )

    async def get_playbook(
        self, org_id: str, playbook_id: str
    ) -> PlaybookDefinition | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT body FROM playbooks WHERE id = ? AND org_id = ?",
            playbook_id,
            org_id,
        )
        if not row:
            return None
        return PlaybookDefinition.model_validate_json(row["body"])

    async def list_playbooks(self, org_id: str) -> list[PlaybookDefinition]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT body FROM playbooks WHERE org_id = ? ORDER BY name",
            org_id,
        )
        return [PlaybookDefinition.model_validate_json(r["body"]) for r in rows]

    async def create_run(self, run: Run, step_runs: list[StepRun]) -> None:
        await asyncio.to_thread(self._insert_run, run, step_runs)

    async def get_run(self, org_id: str, run_id: str) -> Run | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT body FROM runs WHERE id = ? AND org_id = ?",
            run_id,
            org_id,
        )
        if not row:
            return None
        return Run.model_validate_json(row["body"])

    async def list_runs(
        self, org_id: str, statuses: Iterable[RunStatus] | None = None
    ) -> list[Run]:
        query = "SELECT body FROM runs WHERE org_id = ?"
        params: list[Any] = [org_id]
        if statuses is not None:
            values = [RunStatus(s).value for s in statuses]
            if not values:
                return []
            query += f" AND status IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        query += " ORDER BY created_at DESC"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [Run.model_validate_json(r["body"]) for r in rows]

    async def list_due_runs(self, now: datetime) -> list[Run]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT body FROM runs WHERE status IN (?, ?, ?) ORDER BY created_at",
            *_ACTIVE_STATUSES,
        )
        runs = [Run.model_validate_json(r["body"]) for r in rows]
        return [r for r in runs if is_due(r, now)]

    async def update_run(
        self, run: Run, expected_status: RunStatus, expected_version: int
    ) -> bool:
        candidate = run.model_copy(update={"version": expected_version + 1})
        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE runs SET status = ?, version = ?, body = ?
            WHERE id = ? AND org_id = ? AND status = ? AND version = ?
            """,
            candidate.status.value,
            candidate.version,
            candidate.model_dump_json(),
            run.id,
            run.org_id,
            RunStatus(expected_status).value,
            expected_version,
        )
        if updated != 1:
            return False
        run.version = candidate.version
        return True

    async def list_step_runs(self, org_id: str, run_id: str) -> list[StepRun]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT body FROM step_runs WHERE run_id = ? AND org_id = ? ORDER BY ordinal",
            run_id,
            org_id,
        )
        return [StepRun.model_validate_json(r["body"]) for r in rows]

    async def get_step_run(self, org_id: str, step_run_id: str) -> StepRun | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT body FROM step_runs WHERE id = ? AND org_id = ?",
            step_run_id,
            org_id,
        )
        if not row:
            return None
        return StepRun.model_validate_json(row["body"])

    async def update_step_run(
        self, step_run: StepRun, expected_status: StepStatus
    ) -> bool:
        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE step_runs SET status = ?, body = ?
            WHERE id = ? AND org_id = ? AND status = ?
            """,
            step_run.status.value,
            step_run.model_dump_json(),
            step_run.id,
            step_run.org_id,
            StepStatus(expected_status).value,
        )
        return updated == 1

    async def append_audit_event(self, event: AuditEvent) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO audit_events (id, org_id, run_id, step_run_id, event_type, actor_id, body)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            event.id,
            event.org_id,
            event.run_id,
            event.step_run_id,
            event.event_type,
            event.actor_id,
            event.model_dump_json(),
        )

    async def list_audit_events(
        self,
        org_id: str,
        run_id: str | None = None,
        step_run_id: str | None = None,
        event_type: str | None = None,
        actor_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[AuditEvent]:
        query = "SELECT body FROM audit_events WHERE org_id = ?"
        params: list[Any] = [org_id]
        for column, value in (
            ("run_id", run_id),
            ("step_run_id", step_run_id),
            ("event_type", event_type),
            ("actor_id", actor_id),
        ):
            if value is not None:
                query += f" AND {column} = ?"
                params.append(value)
        query += " ORDER BY seq LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [AuditEvent.model_validate_json(r["body"]) for r in rows]

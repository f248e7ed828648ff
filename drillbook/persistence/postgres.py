"""PostgreSQL implementation of the run repository."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

import asyncpg

from ..constants import RunStatus, StepStatus
from ..contracts import PlaybookDefinition
from .inmemory import is_due
from .models import AuditEvent, Run, StepRun


def _affected(status: str) -> int:
    """Row count from an asyncpg command tag such as ``UPDATE 1``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, IndexError):
        return 0


class PostgresRunRepository:
    """Persist runs using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS playbooks (
                id TEXT PRIMARY KEY,
                org_id TEXT NOT NULL,
                name TEXT NOT NULL,
                body JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                id TEXT PRIMARY KEY,
                org_id TEXT NOT NULL,
                playbook_id TEXT NOT NULL,
                status TEXT NOT NULL,
                version INTEGER NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                body JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_runs (
                id TEXT PRIMARY KEY,
                org_id TEXT NOT NULL,
                run_id TEXT NOT NULL,
                ordinal INTEGER NOT NULL,
                status TEXT NOT NULL,
                body JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_events (
                seq BIGSERIAL PRIMARY KEY,
                id TEXT NOT NULL,
                org_id TEXT NOT NULL,
                run_id TEXT NOT NULL,
                step_run_id TEXT,
                event_type TEXT NOT NULL,
                actor_id TEXT NOT NULL,
                body JSONB NOT NULL
            )
            """
        )

    # ------------------------------------------------------------------
    async def save_playbook(self, playbook: PlaybookDefinition) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO playbooks (id, org_id, name, body) VALUES ($1, $2, $3, $4::jsonb)
                ON CONFLICT (id) DO UPDATE SET name = EXCLUDED.name, body = EXCLUDED.body
                """,
                playbook.id,
                playbook.org_id,
                playbook.name,
                playbook.model_dump_json(),
            )
        finally:
            await conn.close()

    async def get_playbook(
        self, org_id: str, playbook_id: str
    ) -> PlaybookDefinition | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT body::text AS body FROM playbooks WHERE id = $1 AND org_id = $2",
                playbook_id,
                org_id,
            )
        finally:
            await conn.close()
        if not row:
            return None
        return PlaybookDefinition.model_validate_json(row["body"])

    async def list_playbooks(self, org_id: str) -> list[PlaybookDefinition]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT body::text AS body FROM playbooks WHERE org_id = $1 ORDER BY name",
                org_id,
            )
        finally:
            await conn.close()
        return [PlaybookDefinition.model_validate_json(r["body"]) for r in rows]

    async def create_run(self, run: Run, step_runs: list[StepRun]) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO runs (id, org_id, playbook_id, status, version, created_at, body)
                    VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb)
                    """,
                    run.id,
                    run.org_id,
                    run.playbook_id,
                    run.status.value,
                    run.version,
                    run.created_at,
                    run.model_dump_json(),
                )
                await conn.executemany(
                    """
                    INSERT INTO step_runs (id, org_id, run_id, ordinal, status, body)
                    VALUES ($1, $2, $3, $4, $5, $6::jsonb)
                    """,
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
        finally:
            await conn.close()

    async def get_run(self, org_id: str, run_id: str) -> Run | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT body::text AS body FROM runs WHERE id = $1 AND org_id = $2",
                run_id,
                org_id,
            )
        finally:
            await conn.close()
        if not row:
            return None
        return Run.model_validate_json(row["body"])

    async def list_runs(
        self, org_id: str, statuses: Iterable[RunStatus] | None = None
    ) -> list[Run]:
        conn = await self._connect()
        try:
            if statuses is None:
                rows = await conn.fetch(
                    "SELECT body::text AS body FROM runs WHERE org_id = $1 ORDER BY created_at DESC",
                    org_id,
                )
            else:
                rows = await conn.fetch(
                    "SELECT body::text AS body FROM runs WHERE org_id = $1 AND status = ANY($2::text[]) ORDER BY created_at DESC",
                    org_id,
                    [RunStatus(s).value for s in statuses],
                )
        finally:
            await conn.close()
        return [Run.model_validate_json(r["body"]) for r in rows]

    async def list_due_runs(self, now: datetime) -> list[Run]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT body::text AS body FROM runs WHERE status = ANY($1::text[]) ORDER BY created_at",
                [
                    RunStatus.PENDING.value,
                    RunStatus.INITIALIZING.value,
                    RunStatus.RUNNING.value,
                ],
            )
        finally:
            await conn.close()
        runs = [Run.model_validate_json(r["body"]) for r in rows]
        return [r for r in runs if is_due(r, now)]

    async def update_run(
        self, run: Run, expected_status: RunStatus, expected_version: int
    ) -> bool:
        candidate = run.model_copy(update={"version": expected_version + 1})
        conn = await self._connect()
        try:
            status = await conn.execute(
                """
                UPDATE runs SET status = $1, version = $2, body = $3::jsonb
                WHERE id = $4 AND org_id = $5 AND status = $6 AND version = $7
                """,
                candidate.status.value,
                candidate.version,
                candidate.model_dump_json(),
                run.id,
                run.org_id,
                RunStatus(expected_status).value,
                expected_version,
            )
        finally:
            await conn.close()
        if _affected(status) != 1:
            return False
        run.version = candidate.version
        return True

    async def list_step_runs(self, org_id: str, run_id: str) -> list[StepRun]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT body::text AS body FROM step_runs WHERE run_id = $1 AND org_id = $2 ORDER BY ordinal",
                run_id,
                org_id,
            )
        finally:
            await conn.close()
        return [StepRun.model_validate_json(r["body"]) for r in rows]

    async def get_step_run(self, org_id: str, step_run_id: str) -> StepRun | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT body::text AS body FROM step_runs WHERE id = $1 AND org_id = $2",
                step_run_id,
                org_id,
            )
        finally:
            await conn.close()
        if not row:
            return None
        return StepRun.model_validate_json(row["body"])

    async def update_step_run(
        self, step_run: StepRun, expected_status: StepStatus
    ) -> bool:
        conn = await self._connect()
        try:
            status = await conn.execute(
                """
                UPDATE step_runs SET status = $1, body = $2::jsonb
                WHERE id = $3 AND org_id = $4 AND status = $5
                """,
                step_run.status.value,
                step_run.model_dump_json(),
                step_run.id,
                step_run.org_id,
                StepStatus(expected_status).value,
            )
        finally:
            await conn.close()
        return _affected(status) == 1

    async def append_audit_event(self, event: AuditEvent) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO audit_events (id, org_id, run_id, step_run_id, event_type, actor_id, body)
                VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb)
                """,
                event.id,
                event.org_id,
                event.run_id,
                event.step_run_id,
                event.event_type,
                event.actor_id,
                event.model_dump_json(),
            )
        finally:
            await conn.close()

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
        query = "SELECT body::text AS body FROM audit_events WHERE org_id = $1"
        params: list[Any] = [org_id]
        for column, value in (
            ("run_id", run_id),
            ("step_run_id", step_run_id),
            ("event_type", event_type),
            ("actor_id", actor_id),
        ):
            if value is not None:
                params.append(value)
                query += f" AND {column} = ${len(params)}"
        params.extend([limit, offset])
        query += f" ORDER BY seq LIMIT ${len(params) - 1} OFFSET ${len(params)}"
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return [AuditEvent.model_validate_json(r["body"]) for r in rows]

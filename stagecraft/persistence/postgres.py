"""PostgreSQL implementation of the run repository."""

from __future__ import annotations

import json

import asyncpg

from .models import RunInstance, StageRecord
from .repository import RunRepository


def _json(value):
    if value is None or isinstance(value, dict):
        return value
    return json.loads(value)


class PostgresRunRepository(RunRepository):
    """Persist run state using PostgreSQL."""

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
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                definition JSONB NOT NULL,
                status TEXT NOT NULL,
                attempt INTEGER NOT NULL DEFAULT 0,
                started_at TIMESTAMPTZ,
                finished_at TIMESTAMPTZ,
                error JSONB
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS stage_history (
                id SERIAL PRIMARY KEY,
                run_id TEXT NOT NULL,
                stage_name TEXT NOT NULL,
                attempt INTEGER NOT NULL,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                status TEXT,
                output JSONB,
                UNIQUE (run_id, stage_name, attempt)
            )
            """
        )

    # ------------------------------------------------------------------
    async def create_run(self, run_id: str, name: str, definition: dict) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO runs (run_id, name, definition, status)
                VALUES ($1, $2, $3, 'initializing')
                ON CONFLICT (run_id) DO NOTHING
                """,
                run_id,
                name,
                json.dumps(definition),
            )
        finally:
            await conn.close()

    async def start_attempt(self, run_id: str) -> int:
        conn = await self._connect()
        try:
            attempt = await conn.fetchval(
                """
                UPDATE runs
                SET attempt = attempt + 1, status = 'running', started_at = now(),
                    finished_at = NULL, error = NULL
                WHERE run_id = $1
                RETURNING attempt
                """,
                run_id,
            )
        finally:
            await conn.close()
        if attempt is None:
            raise KeyError(run_id)
        return attempt

    async def mark_stage_started(
        self, run_id: str, stage_name: str, attempt: int = 1
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO stage_history (run_id, stage_name, attempt, started_at, status)
                VALUES ($1, $2, $3, now(), 'running')
                ON CONFLICT (run_id, stage_name, attempt) DO NOTHING
                """,
                run_id,
                stage_name,
                attempt,
            )
        finally:
            await conn.close()

    async def mark_stage_completed(
        self,
        run_id: str,
        stage_name: str,
        status: str,
        output: dict | None = None,
        attempt: int = 1,
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO stage_history (run_id, stage_name, attempt, completed_at, status, output)
                VALUES ($1, $2, $3, now(), $4, $5)
                ON CONFLICT (run_id, stage_name, attempt) DO UPDATE
                SET completed_at = EXCLUDED.completed_at,
                    status = EXCLUDED.status,
                    output = EXCLUDED.output
                WHERE stage_history.completed_at IS NULL
                """,
                run_id,
                stage_name,
                attempt,
                status,
                json.dumps(output or {}),
            )
        finally:
            await conn.close()

    async def mark_run_completed(
        self, run_id: str, status: str, error: dict | None = None
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE runs SET status = $1, error = $2, finished_at = now() WHERE run_id = $3",
                status,
                json.dumps(error) if error is not None else None,
                run_id,
            )
        finally:
            await conn.close()

    @staticmethod
    def _to_instance(row, stages: list[StageRecord]) -> RunInstance:
        return RunInstance(
            run_id=row["run_id"],
            name=row["name"],
            definition=_json(row["definition"]),
            status=row["status"],
            attempt=row["attempt"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            error=_json(row["error"]),
            stages=stages,
        )

    async def get_run(self, run_id: str) -> RunInstance | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT * FROM runs WHERE run_id = $1", run_id)
            if not row:
                return None
            stage_rows = await conn.fetch(
                "SELECT * FROM stage_history WHERE run_id = $1 ORDER BY id",
                run_id,
            )
        finally:
            await conn.close()
        stages = [
            StageRecord(
                id=r["id"],
                run_id=r["run_id"],
                stage_name=r["stage_name"],
                attempt=r["attempt"],
                started_at=r["started_at"],
                completed_at=r["completed_at"],
                status=r["status"],
                output=_json(r["output"]),
            )
            for r in stage_rows
        ]
        return self._to_instance(row, stages)

    async def list_runs(self) -> list[RunInstance]:
        conn = await self._connect()
        try:
            rows = await conn.fetch("SELECT * FROM runs")
        finally:
            await conn.close()
        return [self._to_instance(r, []) for r in rows]

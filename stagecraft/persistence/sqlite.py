"""SQLite implementation of the run repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .models import RunInstance, StageRecord
from .repository import RunRepository


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteRunRepository(RunRepository):
    """Persist run state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        # the connection is shared by worker threads from asyncio.to_thread
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                definition TEXT NOT NULL,
                status TEXT NOT NULL,
                attempt INTEGER NOT NULL DEFAULT 0,
                started_at TEXT,
                finished_at TEXT,
                error TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS stage_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                stage_name TEXT NOT NULL,
                attempt INTEGER NOT NULL,
                started_at TEXT,
                completed_at TEXT,
                status TEXT,
                output TEXT,
                UNIQUE (run_id, stage_name, attempt)
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _start_attempt(self, run_id: str) -> int:
        self._execute(
            """
            UPDATE runs
            SET attempt = attempt + 1, status = 'running', started_at = ?,
                finished_at = NULL, error = NULL
            WHERE run_id = ?
            """,
            _now(),
            run_id,
        )
        row = self._fetchone("SELECT attempt FROM runs WHERE run_id = ?", run_id)
        if row is None:
            raise KeyError(run_id)
        return row["attempt"]

    def _complete_stage(
        self, run_id: str, stage_name: str, status: str, output: str, attempt: int
    ) -> None:
        # skipped stages are completed without ever having started
        self._execute(
            """
            INSERT OR IGNORE INTO stage_history (run_id, stage_name, attempt)
            VALUES (?, ?, ?)
            """,
            run_id,
            stage_name,
            attempt,
        )
        self._execute(
            """
            UPDATE stage_history
            SET completed_at = ?, status = ?, output = ?
            WHERE run_id = ? AND stage_name = ? AND attempt = ?
              AND completed_at IS NULL
            """,
            _now(),
            status,
            output,
            run_id,
            stage_name,
            attempt,
        )

    # ------------------------------------------------------------------
    # Repository API
    async def create_run(self, run_id: str, name: str, definition: dict) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR IGNORE INTO runs (run_id, name, definition, status) VALUES (?, ?, ?, ?)",
            run_id,
            name,
            json.dumps(definition),
            "initializing",
        )

    async def start_attempt(self, run_id: str) -> int:
        return await asyncio.to_thread(self._start_attempt, run_id)

    async def mark_stage_started(
        self, run_id: str, stage_name: str, attempt: int = 1
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT OR IGNORE INTO stage_history
                (run_id, stage_name, attempt, started_at, status)
            VALUES (?, ?, ?, ?, 'running')
            """,
            run_id,
            stage_name,
            attempt,
            _now(),
        )

    async def mark_stage_completed(
        self,
        run_id: str,
        stage_name: str,
        status: str,
        output: dict | None = None,
        attempt: int = 1,
    ) -> None:
        await asyncio.to_thread(
            self._complete_stage,
            run_id,
            stage_name,
            status,
            json.dumps(output or {}),
            attempt,
        )

    async def mark_run_completed(
        self, run_id: str, status: str, error: dict | None = None
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE runs SET status = ?, error = ?, finished_at = ? WHERE run_id = ?",
            status,
            json.dumps(error) if error is not None else None,
            _now(),
            run_id,
        )

    def _to_instance(self, row: sqlite3.Row, stages: list[StageRecord]) -> RunInstance:
        return RunInstance(
            run_id=row["run_id"],
            name=row["name"],
            definition=json.loads(row["definition"]),
            status=row["status"],
            attempt=row["attempt"],
            started_at=_ts(row["started_at"]),
            finished_at=_ts(row["finished_at"]),
            error=json.loads(row["error"]) if row["error"] else None,
            stages=stages,
        )

    async def get_run(self, run_id: str) -> RunInstance | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM runs WHERE run_id = ?",
            run_id,
        )
        if not row:
            return None
        stage_rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM stage_history WHERE run_id = ? ORDER BY id",
            run_id,
        )
        stages = [
            StageRecord(
                id=r["id"],
                run_id=r["run_id"],
                stage_name=r["stage_name"],
                attempt=r["attempt"],
                started_at=_ts(r["started_at"]),
                completed_at=_ts(r["completed_at"]),
                status=r["status"],
                output=json.loads(r["output"]) if r["output"] else None,
            )
            for r in stage_rows
        ]
        return self._to_instance(row, stages)

    async def list_runs(self) -> list[RunInstance]:
        rows = await asyncio.to_thread(self._fetchall, "SELECT * FROM runs")
        return [self._to_instance(row, []) for row in rows]

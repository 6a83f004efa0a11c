"""In-memory implementation of the run repository."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict

from .models import RunInstance, StageRecord
from .repository import RunRepository


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryRunRepository(RunRepository):
    """Store run state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, RunInstance] = {}
        self._stage_id = 0

    # ------------------------------------------------------------------
    async def create_run(self, run_id: str, name: str, definition: dict) -> None:
        if run_id in self._runs:
            return
        self._runs[run_id] = RunInstance(
            run_id=run_id, name=name, definition=definition, stages=[]
        )

    async def start_attempt(self, run_id: str) -> int:
        run = self._runs[run_id]
        run.attempt += 1
        run.status = "running"
        run.started_at = _now()
        run.finished_at = None
        run.error = None
        return run.attempt

    def _find(self, run: RunInstance, stage_name: str, attempt: int) -> StageRecord | None:
        for stage in run.stages:
            if stage.stage_name == stage_name and stage.attempt == attempt:
                return stage
        return None

    async def mark_stage_started(
        self, run_id: str, stage_name: str, attempt: int = 1
    ) -> None:
        run = self._runs.get(run_id)
        if not run:
            return
        # ignore duplicate starts for the same attempt
        if self._find(run, stage_name, attempt) is not None:
            return
        self._stage_id += 1
        run.stages.append(
            StageRecord(
                id=self._stage_id,
                run_id=run_id,
                stage_name=stage_name,
                attempt=attempt,
                started_at=_now(),
                status="running",
            )
        )

    async def mark_stage_completed(
        self,
        run_id: str,
        stage_name: str,
        status: str,
        output: dict | None = None,
        attempt: int = 1,
    ) -> None:
        run = self._runs.get(run_id)
        if not run:
            return
        record = self._find(run, stage_name, attempt)
        if record is None:
            self._stage_id += 1
            record = StageRecord(
                id=self._stage_id, run_id=run_id, stage_name=stage_name, attempt=attempt
            )
            run.stages.append(record)
        elif record.completed_at is not None:
            return
        record.completed_at = _now()
        record.status = status
        record.output = output or {}

    async def mark_run_completed(
        self, run_id: str, status: str, error: dict | None = None
    ) -> None:
        run = self._runs.get(run_id)
        if run:
            run.status = status
            run.error = error
            run.finished_at = _now()

    async def get_run(self, run_id: str) -> RunInstance | None:
        return self._runs.get(run_id)

    async def list_runs(self) -> list[RunInstance]:
        return list(self._runs.values())

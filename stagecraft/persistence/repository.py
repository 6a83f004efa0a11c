"""Repository abstraction for run state persistence."""

from __future__ import annotations

from typing import Protocol

from .models import RunInstance


class RunRepository(Protocol):
    """Protocol for run state persistence backends."""

    async def create_run(self, run_id: str, name: str, definition: dict) -> None:
        """Persist a new run. Does nothing if ``run_id`` already exists."""

    async def start_attempt(self, run_id: str) -> int:
        """Open the next attempt of ``run_id`` and return its number."""

    async def mark_stage_started(
        self, run_id: str, stage_name: str, attempt: int = 1
    ) -> None:
        """Record start of a stage."""

    async def mark_stage_completed(
        self,
        run_id: str,
        stage_name: str,
        status: str,
        output: dict | None = None,
        attempt: int = 1,
    ) -> None:
        """Record the terminal status of a stage."""

    async def mark_run_completed(
        self, run_id: str, status: str, error: dict | None = None
    ) -> None:
        """Mark the run attempt as finished."""

    async def get_run(self, run_id: str) -> RunInstance | None:
        """Retrieve the run by id."""

    async def list_runs(self) -> list[RunInstance]:
        """Return all persisted runs."""

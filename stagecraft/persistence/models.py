"""Data models for persisted run state."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class StageRecord(BaseModel):
    """Record of one stage within one attempt of a run."""

    id: Optional[int] = None
    run_id: str
    stage_name: str
    attempt: int = 1
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    status: Optional[str] = None
    output: Optional[dict[str, Any]] = None


class RunInstance(BaseModel):
    """Persisted run data. Credentials are never part of it."""

    run_id: str
    name: str = "pipeline"
    definition: dict[str, Any] = Field(default_factory=dict)
    status: str = "initializing"
    attempt: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[dict[str, Any]] = None
    stages: list[StageRecord] = Field(default_factory=list)

    def latest_stages(self) -> Dict[str, StageRecord]:
        """Most recent record per stage name."""
        latest: Dict[str, StageRecord] = {}
        for record in self.stages:
            current = latest.get(record.stage_name)
            if current is None or record.attempt >= current.attempt:
                latest[record.stage_name] = record
        return latest

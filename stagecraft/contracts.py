"""Core data contracts for stagecraft pipelines."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator

from .constants import DEFAULT_ROLLOUT_STEPS, DEFAULT_SCOPE, TOTAL_TRAFFIC


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StageKind(str, Enum):
    RECONCILE = "reconcile"
    ROLLOUT = "rollout"


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.SKIPPED)


class RunStatus(str, Enum):
    INITIALIZING = "initializing"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Credential(BaseModel):
    """Short-lived access token obtained through a federated exchange.

    Instances are immutable and only ever live in memory. The raw assertion and
    token are wrapped in :class:`~pydantic.SecretStr` so they never leak into
    logs or reprs.
    """

    model_config = ConfigDict(frozen=True)

    scope: str
    token: SecretStr
    assertion: SecretStr = Field(repr=False)
    issuer: Optional[str] = None
    subject: Optional[str] = None
    issued_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime

    def remaining(self, now: Optional[datetime] = None) -> float:
        """Seconds left before the token expires."""
        now = now or utcnow()
        return (self.expires_at - now).total_seconds()

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.remaining(now) <= 0

    def authorization_header(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token.get_secret_value()}"}


class ResourceDescriptor(BaseModel):
    """Desired state of one provisioned resource."""

    kind: str
    name: str
    properties: Dict[str, Any] = Field(default_factory=dict)
    immutable_fields: List[str] = Field(default_factory=list)

    @property
    def key(self) -> str:
        return f"{self.kind}/{self.name}"


class ResourceState(BaseModel):
    """Observed state of a resource as reported by the provisioning backend."""

    resource_id: str
    properties: Dict[str, Any] = Field(default_factory=dict)
    etag: Optional[str] = None


class DiffAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    NOOP = "noop"


class FieldChange(BaseModel):
    path: str
    old: Any = None
    new: Any = None


class ResourceDiff(BaseModel):
    """Delta between observed and desired resource state."""

    action: DiffAction
    changes: List[FieldChange] = Field(default_factory=list)
    desired: Dict[str, Any] = Field(default_factory=dict)
    etag: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return self.action == DiffAction.NOOP

    def changed_fields(self) -> Dict[str, Any]:
        """Top-level desired fields touched by at least one change."""
        roots = {change.path.split(".", 1)[0] for change in self.changes}
        return {key: self.desired[key] for key in self.desired if key in roots}


class ReconcileResult(BaseModel):
    changed: bool
    resource_id: str
    action: DiffAction = DiffAction.NOOP


class RolloutSpec(BaseModel):
    """Traffic allocation requested by a rollout stage."""

    endpoint: str
    traffic: Dict[str, int]
    steps: int = DEFAULT_ROLLOUT_STEPS
    deployments: List[str] = Field(default_factory=list)
    endpoint_kind: str = "online-endpoint"
    interval: float = Field(default=0.0, ge=0, description="Seconds to wait between steps")


class StageDefinition(BaseModel):
    """A stage as declared by the run definition."""

    name: str
    kind: StageKind = StageKind.RECONCILE
    depends_on: List[str] = Field(default_factory=list)
    resource: Optional[ResourceDescriptor] = None
    rollout: Optional[RolloutSpec] = None

    @field_validator("name")
    @classmethod
    def _ensure_name(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("stage name must be a non-empty string")
        return v

    @model_validator(mode="after")
    def _check_desired_state(self) -> "StageDefinition":
        if self.kind == StageKind.RECONCILE and self.resource is None:
            raise ValueError(f"reconcile stage {self.name} requires a resource")
        if self.kind == StageKind.ROLLOUT and self.rollout is None:
            raise ValueError(f"rollout stage {self.name} requires a rollout section")
        return self

    @property
    def desired_state(self) -> Union[ResourceDescriptor, RolloutSpec]:
        return self.resource if self.kind == StageKind.RECONCILE else self.rollout


class Stage(BaseModel):
    """Mutable per-run record of a stage, owned by the executor."""

    definition: StageDefinition
    status: StageStatus = StageStatus.PENDING
    resource_id: Optional[str] = None
    changed: Optional[bool] = None
    error: Optional[Dict[str, Any]] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def name(self) -> str:
        return self.definition.name


class Run(BaseModel):
    """One execution of a set of stages."""

    run_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = "pipeline"
    scope: str = DEFAULT_SCOPE
    attempt: int = 1
    stages: Dict[str, Stage] = Field(default_factory=dict)
    status: RunStatus = RunStatus.INITIALIZING
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    error: Optional[Dict[str, Any]] = None

    def stages_with(self, *statuses: StageStatus) -> List[str]:
        return [name for name, stage in self.stages.items() if stage.status in statuses]

    def settle(self) -> RunStatus:
        """Derive the terminal run status from the stage records."""
        failed = self.stages_with(StageStatus.FAILED)
        unfinished = [s for s in self.stages.values() if not s.status.terminal]
        if self.error is not None or failed or unfinished:
            self.status = RunStatus.FAILED
        else:
            self.status = RunStatus.SUCCEEDED
        self.finished_at = utcnow()
        return self.status


class DeploymentTarget(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    endpoint: str
    weight: int = Field(ge=0, le=TOTAL_TRAFFIC)


class WeightSnapshot(BaseModel):
    """One complete traffic assignment for an endpoint."""

    model_config = ConfigDict(frozen=True)

    endpoint: str
    weights: Dict[str, int]
    index: int = 0

    @field_validator("weights")
    @classmethod
    def _sums_to_total(cls, v: Dict[str, int]) -> Dict[str, int]:
        if any(w < 0 or w > TOTAL_TRAFFIC for w in v.values()):
            raise ValueError(f"weights must be within 0..{TOTAL_TRAFFIC}: {v}")
        if sum(v.values()) != TOTAL_TRAFFIC:
            raise ValueError(f"weights must sum to {TOTAL_TRAFFIC}: {v}")
        return dict(sorted(v.items()))

    @property
    def targets(self) -> List[DeploymentTarget]:
        return [
            DeploymentTarget(name=name, endpoint=self.endpoint, weight=weight)
            for name, weight in self.weights.items()
        ]


class StageReport(BaseModel):
    name: str
    kind: StageKind
    status: StageStatus
    resource_id: Optional[str] = None
    changed: Optional[bool] = None
    error: Optional[Dict[str, Any]] = None


class RunReport(BaseModel):
    """Final, user-visible outcome of a run."""

    run_id: str
    name: str
    attempt: int
    status: RunStatus
    started_at: datetime
    finished_at: Optional[datetime] = None
    error: Optional[Dict[str, Any]] = None
    stages: List[StageReport] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCEEDED

    def stage(self, name: str) -> StageReport:
        for report in self.stages:
            if report.name == name:
                return report
        raise KeyError(name)

    @classmethod
    def from_run(cls, run: Run) -> "RunReport":
        return cls(
            run_id=run.run_id,
            name=run.name,
            attempt=run.attempt,
            status=run.status,
            started_at=run.started_at,
            finished_at=run.finished_at,
            error=run.error,
            stages=[
                StageReport(
                    name=stage.name,
                    kind=stage.definition.kind,
                    status=stage.status,
                    resource_id=stage.resource_id,
                    changed=stage.changed,
                    error=stage.error,
                )
                for stage in run.stages.values()
            ],
        )

"""Error taxonomy for stagecraft pipelines."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional


class AuthReason(str, Enum):
    ISSUER_UNREACHABLE = "issuer-unreachable"
    ASSERTION_REJECTED = "assertion-rejected"
    SCOPE_DENIED = "scope-denied"
    TOKEN_EXPIRED = "token-expired"


class ReconcileReason(str, Enum):
    CONFLICT = "conflict"
    QUOTA_EXCEEDED = "quota-exceeded"
    BACKEND_UNREACHABLE = "backend-unreachable"
    INVALID_DESIRED_STATE = "invalid-desired-state"


class WeightReason(str, Enum):
    INVALID_SUM = "invalid-sum"
    INVALID_WEIGHT = "invalid-weight"
    UNKNOWN_TARGET = "unknown-target"
    INVALID_STEP_COUNT = "invalid-step-count"
    ROLLOUT_IN_PROGRESS = "rollout-in-progress"


class StagecraftError(Exception):
    """Base class for all stagecraft errors."""

    reason: Optional[Enum] = None

    def __init__(self, message: str, reason: Optional[Enum] = None) -> None:
        super().__init__(message)
        self.message = message
        if reason is not None:
            self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": type(self).__name__,
            "reason": self.reason.value if self.reason is not None else None,
            "message": self.message,
        }


class AuthError(StagecraftError):
    """Credential acquisition failed. Fatal for the whole run."""

    def __init__(self, reason: AuthReason, message: str = "") -> None:
        super().__init__(message or reason.value, AuthReason(reason))


class CycleError(StagecraftError):
    """Declared stage dependencies do not form a DAG."""

    def __init__(self, cycle: List[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(f"dependency cycle detected: {' -> '.join(self.cycle)}")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["cycle"] = self.cycle
        return data


class DefinitionError(StagecraftError):
    """A run definition could not be parsed into stages."""


class ReconcileError(StagecraftError):
    """Bringing a resource to its desired state failed."""

    def __init__(self, reason: ReconcileReason, message: str = "") -> None:
        super().__init__(message or reason.value, ReconcileReason(reason))

    @property
    def retryable(self) -> bool:
        return self.reason in (
            ReconcileReason.CONFLICT,
            ReconcileReason.BACKEND_UNREACHABLE,
        )


class WeightError(StagecraftError):
    """A rollout request was rejected."""

    def __init__(self, reason: WeightReason, message: str = "") -> None:
        super().__init__(message or reason.value, WeightReason(reason))


__all__ = [
    "AuthError",
    "AuthReason",
    "CycleError",
    "DefinitionError",
    "ReconcileError",
    "ReconcileReason",
    "StagecraftError",
    "WeightError",
    "WeightReason",
]

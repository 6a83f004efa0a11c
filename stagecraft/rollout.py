"""Gradual traffic shifting across deployments behind one endpoint."""

from __future__ import annotations

import logging
import math
import uuid
from fractions import Fraction
from typing import Dict, List, Mapping, Optional, Tuple

from .constants import TOTAL_TRAFFIC
from .contracts import Credential, ReconcileResult, ResourceDescriptor, WeightSnapshot
from .errors import WeightError, WeightReason
from .reconcile import ResourceReconciler

logger = logging.getLogger(__name__)


class RolloutPlan:
    """Ordered, immutable snapshots moving one endpoint to its target weights.

    The plan only carries a cursor and the last snapshot known to be live at
    the backend; the snapshots themselves never change.
    """

    def __init__(
        self,
        endpoint: str,
        initial: Optional[WeightSnapshot],
        snapshots: Tuple[WeightSnapshot, ...],
    ) -> None:
        self.plan_id = str(uuid.uuid4())
        self.endpoint = endpoint
        self.initial = initial
        self.snapshots = snapshots
        self.last_committed: Optional[WeightSnapshot] = initial
        self.committed: List[WeightSnapshot] = []
        self.finished = False
        self.aborted = False
        self._cursor = 0

    @property
    def target(self) -> WeightSnapshot:
        return self.snapshots[-1]

    @property
    def remaining(self) -> int:
        return len(self.snapshots) - self._cursor

    def _next(self) -> Optional[WeightSnapshot]:
        if self._cursor >= len(self.snapshots):
            return None
        snapshot = self.snapshots[self._cursor]
        self._cursor += 1
        return snapshot

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return (
            f"RolloutPlan(endpoint={self.endpoint!r}, steps={len(self.snapshots)}, "
            f"remaining={self.remaining})"
        )


def interpolate(
    current: Mapping[str, int], target: Mapping[str, int], step: int, step_count: int
) -> Dict[str, int]:
    """Weights ``step`` of ``step_count`` of the way from ``current`` to ``target``.

    Each weight is interpolated linearly and rounded half up. The rounding
    remainder is then settled one unit at a time against whichever weight is
    currently largest, the lowest name winning exact ties. A single-unit
    remainder lands entirely on the largest weight; a larger one spreads over
    the next-largest weights so no weight drops below zero.
    """
    names = sorted(set(current) | set(target))
    weights: Dict[str, int] = {}
    for name in names:
        start = current.get(name, 0)
        end = target.get(name, 0)
        exact = start + Fraction(end - start) * step / step_count
        weights[name] = math.floor(exact + Fraction(1, 2))
    remainder = TOTAL_TRAFFIC - sum(weights.values())
    unit = 1 if remainder > 0 else -1
    while remainder:
        largest = max(names, key=lambda name: weights[name])
        weights[largest] += unit
        remainder -= unit
    return weights


def _validate_weights(label: str, weights: Mapping[str, int]) -> None:
    for name, weight in weights.items():
        if isinstance(weight, bool) or not isinstance(weight, int):
            raise WeightError(
                WeightReason.INVALID_WEIGHT, f"{label} weight for {name} is not an integer"
            )
        if not 0 <= weight <= TOTAL_TRAFFIC:
            raise WeightError(
                WeightReason.INVALID_WEIGHT,
                f"{label} weight for {name} must be within 0..{TOTAL_TRAFFIC}",
            )


class RolloutController:
    """Plans and drives rollouts, at most one in flight per endpoint."""

    def __init__(
        self,
        reconciler: ResourceReconciler,
        endpoint_kind: str = "online-endpoint",
    ) -> None:
        self.reconciler = reconciler
        self.endpoint_kind = endpoint_kind
        self._in_flight: Dict[str, RolloutPlan] = {}

    def in_flight(self, endpoint: str) -> Optional[RolloutPlan]:
        return self._in_flight.get(endpoint)

    def plan(
        self,
        endpoint: str,
        current: Mapping[str, int],
        target: Mapping[str, int],
        step_count: int,
    ) -> RolloutPlan:
        """Create a plan from ``current`` to ``target`` weights.

        Targets missing from ``target`` drain to zero. An endpoint that serves
        no traffic yet gets a single snapshot straight to ``target``.

        Raises:
            WeightError: When another plan for ``endpoint`` is still in flight,
                weights are malformed or do not sum to 100, ``target`` names a
                deployment absent from ``current``, or ``step_count`` < 1.
        """
        if endpoint in self._in_flight:
            raise WeightError(
                WeightReason.ROLLOUT_IN_PROGRESS,
                f"endpoint {endpoint} already has a rollout in flight",
            )
        if step_count < 1:
            raise WeightError(
                WeightReason.INVALID_STEP_COUNT,
                f"step count must be at least 1, got {step_count}",
            )
        _validate_weights("current", current)
        _validate_weights("target", target)

        unknown = sorted(set(target) - set(current))
        if unknown:
            raise WeightError(
                WeightReason.UNKNOWN_TARGET,
                f"endpoint {endpoint} has no deployment(s) {', '.join(unknown)}",
            )
        if sum(target.values()) != TOTAL_TRAFFIC:
            raise WeightError(
                WeightReason.INVALID_SUM,
                f"target weights sum to {sum(target.values())}, expected {TOTAL_TRAFFIC}",
            )

        live = sum(current.values())
        if live == 0:
            initial = None
            full_target = {name: target.get(name, 0) for name in current}
            snapshots = (WeightSnapshot(endpoint=endpoint, weights=full_target, index=1),)
        elif live != TOTAL_TRAFFIC:
            raise WeightError(
                WeightReason.INVALID_SUM,
                f"current weights on {endpoint} sum to {live}, expected {TOTAL_TRAFFIC}",
            )
        else:
            initial = WeightSnapshot(endpoint=endpoint, weights=dict(current), index=0)
            snapshots = tuple(
                WeightSnapshot(
                    endpoint=endpoint,
                    weights=interpolate(current, target, step, step_count),
                    index=step,
                )
                for step in range(1, step_count + 1)
            )

        plan = RolloutPlan(endpoint, initial, snapshots)
        self._in_flight[endpoint] = plan
        logger.info(
            f"Planned rollout on {endpoint} in {len(snapshots)} step(s): "
            f"{dict(current)} -> {plan.target.weights}"
        )
        return plan

    def advance(self, plan: RolloutPlan) -> Optional[WeightSnapshot]:
        """Return the next snapshot, or ``None`` once the plan is exhausted."""
        if plan.finished:
            return None
        snapshot = plan._next()
        if snapshot is None:
            plan.finished = True
            self._release(plan)
        return snapshot

    def _descriptor(self, snapshot: WeightSnapshot) -> ResourceDescriptor:
        return ResourceDescriptor(
            kind=self.endpoint_kind,
            name=snapshot.endpoint,
            properties={"traffic": dict(snapshot.weights)},
        )

    async def commit(
        self,
        plan: RolloutPlan,
        snapshot: WeightSnapshot,
        credential: Credential,
        timeout: Optional[float] = None,
    ) -> ReconcileResult:
        """Push ``snapshot`` to the endpoint as a single traffic update."""
        if plan.finished or self._in_flight.get(plan.endpoint) is not plan:
            raise ValueError(f"rollout plan {plan.plan_id} is no longer active")
        result = await self.reconciler.reconcile(
            self._descriptor(snapshot), credential, timeout=timeout
        )
        plan.last_committed = snapshot
        plan.committed.append(snapshot)
        logger.info(
            f"Committed traffic step {snapshot.index}/{len(plan.snapshots)} "
            f"on {plan.endpoint}: {snapshot.weights}"
        )
        return result

    async def abort(
        self,
        plan: RolloutPlan,
        credential: Credential,
        timeout: Optional[float] = None,
    ) -> Optional[WeightSnapshot]:
        """Revert the endpoint to the last committed snapshot and drop the plan.

        Returns the snapshot reverted to, or ``None`` when nothing was ever
        live on the endpoint.
        """
        plan.aborted = True
        plan.finished = True
        try:
            restore = plan.last_committed
            if restore is None:
                logger.warning(f"Aborted rollout on {plan.endpoint}; no traffic to restore")
                return None
            logger.warning(
                f"Aborting rollout on {plan.endpoint}; restoring {restore.weights}"
            )
            await self.reconciler.reconcile(
                self._descriptor(restore), credential, timeout=timeout
            )
            return restore
        finally:
            self._release(plan)

    def release(self, plan: RolloutPlan) -> None:
        """Drop ``plan`` from the in-flight table without touching the endpoint."""
        plan.finished = True
        self._release(plan)

    def _release(self, plan: RolloutPlan) -> None:
        if self._in_flight.get(plan.endpoint) is plan:
            del self._in_flight[plan.endpoint]

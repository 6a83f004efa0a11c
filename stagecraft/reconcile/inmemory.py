"""In-memory provisioning backend for testing and dry runs."""

from __future__ import annotations

import asyncio
import itertools
from collections import defaultdict, deque
from typing import Any, Deque, Dict, List, Optional, Tuple

from ..contracts import (
    Credential,
    DiffAction,
    ResourceDescriptor,
    ResourceDiff,
    ResourceState,
)
from ..errors import ReconcileError, ReconcileReason
from .base import ProvisioningBackend
from .diff import deep_merge


class InMemoryProvisioningBackend(ProvisioningBackend):
    """Keeps resources in a local dictionary keyed by ``kind/name``.

    Besides storing state it can simulate the failure modes of a real backend:
    queued errors per resource and operation, added latency, and external
    drift. Every call is appended to :attr:`calls` for assertions.
    """

    def __init__(self) -> None:
        self._resources: Dict[str, ResourceState] = {}
        self._failures: Dict[Tuple[str, str], Deque[ReconcileError]] = defaultdict(deque)
        self._latency: Dict[str, float] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()
        self.calls: List[Tuple[str, str]] = []

    # ------------------------------------------------------------------
    # Simulation helpers
    def fail(
        self,
        key: str,
        reason: ReconcileReason,
        times: int = 1,
        operation: str = "apply",
    ) -> None:
        """Make the next ``times`` calls of ``operation`` on ``key`` fail."""
        for _ in range(times):
            self._failures[(key, operation)].append(
                ReconcileError(reason, f"injected {reason.value} on {key}")
            )

    def slow(self, key: str, seconds: float) -> None:
        self._latency[key] = seconds

    def drift(self, key: str, **properties: Any) -> None:
        """Modify a resource out of band, as another actor would."""
        current = self._resources[key]
        self._resources[key] = ResourceState(
            resource_id=current.resource_id,
            properties=deep_merge(current.properties, properties),
            etag=self._next_etag(),
        )

    def seed(self, key: str, properties: Dict[str, Any]) -> ResourceState:
        state = ResourceState(
            resource_id=self._new_id(key), properties=properties, etag=self._next_etag()
        )
        self._resources[key] = state
        return state

    def state(self, key: str) -> Optional[ResourceState]:
        return self._resources.get(key)

    def count(self, operation: str, key: Optional[str] = None) -> int:
        return sum(
            1 for op, k in self.calls if op == operation and (key is None or k == key)
        )

    # ------------------------------------------------------------------
    def _new_id(self, key: str) -> str:
        return f"/resources/{key}/{next(self._ids)}"

    def _next_etag(self) -> str:
        return f'W/"{next(self._ids)}"'

    async def _simulate(self, key: str, operation: str) -> None:
        self.calls.append((operation, key))
        latency = self._latency.get(key)
        if latency:
            await asyncio.sleep(latency)
        queued = self._failures.get((key, operation))
        if queued:
            raise queued.popleft()

    async def get_state(
        self, descriptor: ResourceDescriptor, credential: Credential
    ) -> Optional[ResourceState]:
        await self._simulate(descriptor.key, "get")
        state = self._resources.get(descriptor.key)
        return state.model_copy(deep=True) if state is not None else None

    async def apply_diff(
        self, descriptor: ResourceDescriptor, diff: ResourceDiff, credential: Credential
    ) -> str:
        key = descriptor.key
        await self._simulate(key, "apply")
        async with self._lock:
            current = self._resources.get(key)
            if diff.action == DiffAction.CREATE:
                if current is not None:
                    raise ReconcileError(
                        ReconcileReason.CONFLICT, f"{key} was created concurrently"
                    )
            elif current is None or current.etag != diff.etag:
                raise ReconcileError(
                    ReconcileReason.CONFLICT, f"{key} changed since it was observed"
                )

            if diff.action == DiffAction.UPDATE:
                updated = ResourceState(
                    resource_id=current.resource_id,
                    properties=deep_merge(current.properties, diff.changed_fields()),
                    etag=self._next_etag(),
                )
            elif diff.action in (DiffAction.CREATE, DiffAction.REPLACE):
                updated = ResourceState(
                    resource_id=self._new_id(key),
                    properties=dict(diff.desired),
                    etag=self._next_etag(),
                )
            else:
                return current.resource_id
            self._resources[key] = updated
            return updated.resource_id

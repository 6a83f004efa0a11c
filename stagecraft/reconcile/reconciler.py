"""Idempotent reconciliation of desired resource state."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Optional, TypeVar

from ..contracts import Credential, ReconcileResult, ResourceDescriptor, ResourceState
from ..errors import AuthError, AuthReason, ReconcileError, ReconcileReason
from .base import ProvisioningBackend
from .diff import compute_diff, has_path

logger = logging.getLogger(__name__)

T = TypeVar("T")


def validate_descriptor(descriptor: ResourceDescriptor) -> None:
    """Reject descriptors the backend could never converge on."""
    if not descriptor.kind.strip() or not descriptor.name.strip():
        raise ReconcileError(
            ReconcileReason.INVALID_DESIRED_STATE,
            "resource kind and name must be non-empty",
        )
    for field in descriptor.immutable_fields:
        if not has_path(descriptor.properties, field):
            raise ReconcileError(
                ReconcileReason.INVALID_DESIRED_STATE,
                f"{descriptor.key} declares immutable field {field} "
                "that is not part of its properties",
            )


class ResourceReconciler:
    """Brings resources to their desired state through a provisioning backend.

    Each call observes the resource, computes the diff against the descriptor
    and applies only that diff. Calling :meth:`reconcile` again without
    intervening drift is a no-op that reports ``changed=False``.
    """

    def __init__(
        self, backend: ProvisioningBackend, default_timeout: Optional[float] = None
    ) -> None:
        self.backend = backend
        self.default_timeout = default_timeout

    async def observe(
        self,
        descriptor: ResourceDescriptor,
        credential: Credential,
        timeout: Optional[float] = None,
    ) -> Optional[ResourceState]:
        """Return the backend's current view of ``descriptor``."""
        _check_credential(credential)
        return await self._with_deadline(
            self.backend.get_state(descriptor, credential), descriptor, timeout
        )

    async def reconcile(
        self,
        descriptor: ResourceDescriptor,
        credential: Credential,
        timeout: Optional[float] = None,
    ) -> ReconcileResult:
        """Converge ``descriptor`` and report whether anything changed.

        Raises:
            ReconcileError: When the backend refuses or cannot be reached, or
                the call exceeds its deadline (``backend-unreachable``).
            AuthError: When ``credential`` has already expired.
        """
        _check_credential(credential)
        validate_descriptor(descriptor)
        return await self._with_deadline(
            self._reconcile(descriptor, credential), descriptor, timeout
        )

    async def _reconcile(
        self, descriptor: ResourceDescriptor, credential: Credential
    ) -> ReconcileResult:
        observed = await self.backend.get_state(descriptor, credential)
        diff = compute_diff(descriptor, observed)
        if diff.is_empty:
            logger.debug(f"{descriptor.key} already matches desired state")
            return ReconcileResult(changed=False, resource_id=observed.resource_id)

        logger.info(
            f"Applying {diff.action.value} to {descriptor.key}: "
            f"{', '.join(change.path for change in diff.changes)}"
        )
        resource_id = await self.backend.apply_diff(descriptor, diff, credential)
        return ReconcileResult(changed=True, resource_id=resource_id, action=diff.action)

    async def _with_deadline(
        self,
        call: Awaitable[T],
        descriptor: ResourceDescriptor,
        timeout: Optional[float],
    ) -> T:
        deadline = timeout if timeout is not None else self.default_timeout
        try:
            return await asyncio.wait_for(call, deadline)
        except asyncio.TimeoutError as exc:
            raise ReconcileError(
                ReconcileReason.BACKEND_UNREACHABLE,
                f"{descriptor.key} did not respond within {deadline}s",
            ) from exc


def _check_credential(credential: Credential) -> None:
    if credential.is_expired():
        raise AuthError(
            AuthReason.TOKEN_EXPIRED,
            f"credential for scope={credential.scope} expired at {credential.expires_at}",
        )

"""Base interface for provisioning backends."""

from __future__ import annotations

import abc
from typing import Optional

from ..contracts import Credential, ResourceDescriptor, ResourceDiff, ResourceState


class ProvisioningBackend(metaclass=abc.ABCMeta):
    """Creates, reads and updates concrete cloud resources."""

    async def connect(self) -> None:
        """Open connection to the backend (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the backend (no-op by default)."""
        pass

    @abc.abstractmethod
    async def get_state(
        self, descriptor: ResourceDescriptor, credential: Credential
    ) -> Optional[ResourceState]:
        """Return the current state of the resource, or ``None`` if absent."""
        raise NotImplementedError

    @abc.abstractmethod
    async def apply_diff(
        self, descriptor: ResourceDescriptor, diff: ResourceDiff, credential: Credential
    ) -> str:
        """Apply ``diff`` to the resource and return its resource id."""
        raise NotImplementedError

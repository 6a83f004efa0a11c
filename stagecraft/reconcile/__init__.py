"""Resource reconciliation and provisioning backend factory."""

from __future__ import annotations

import os
from typing import Optional

from ..config import StagecraftConfig, load_config
from .base import ProvisioningBackend
from .diff import compute_diff, deep_merge
from .inmemory import InMemoryProvisioningBackend
from .reconciler import ResourceReconciler, validate_descriptor


def get_backend(
    backend: Optional[str] = None, config: Optional[StagecraftConfig] = None
) -> ProvisioningBackend:
    """Factory function to get the configured provisioning backend."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("STAGECRAFT_BACKEND")
        or config.backend.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryProvisioningBackend()
    elif backend == "http":
        from .http import HttpProvisioningBackend

        http_conf = config.backend.http
        return HttpProvisioningBackend(
            base_url=http_conf.base_url, timeout=http_conf.timeout
        )
    else:
        raise ValueError(f"Unsupported provisioning backend: {backend}")


__all__ = [
    "InMemoryProvisioningBackend",
    "ProvisioningBackend",
    "ResourceReconciler",
    "compute_diff",
    "deep_merge",
    "get_backend",
    "validate_descriptor",
]

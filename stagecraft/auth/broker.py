"""Credential broker caching short-lived federated tokens for one run."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from ..constants import DEFAULT_REFRESH_MARGIN
from ..contracts import Credential, utcnow
from .assertion import AssertionSource, inspect_assertion
from .exchange import IdentityProvider

logger = logging.getLogger(__name__)


class CredentialBroker:
    """Exchanges identity assertions for scoped access tokens.

    Tokens are cached per scope in memory only. :meth:`acquire` hands back the
    cached credential while it stays valid for the caller's requested window
    and transparently re-runs the exchange otherwise. Errors from the
    assertion source or identity provider propagate as
    :class:`~stagecraft.errors.AuthError` without retries.
    """

    def __init__(
        self,
        provider: IdentityProvider,
        assertion_source: AssertionSource,
        refresh_margin: float = DEFAULT_REFRESH_MARGIN,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.provider = provider
        self.assertion_source = assertion_source
        self.refresh_margin = refresh_margin
        self._clock = clock
        self._cache: Dict[str, Credential] = {}
        self._lock = asyncio.Lock()

    async def acquire(self, scope: str, min_validity: float = 0.0) -> Credential:
        """Return a credential for ``scope`` valid for at least ``min_validity`` seconds."""
        async with self._lock:
            now = self._clock()
            cached = self._cache.get(scope)
            if cached is not None and cached.remaining(now) > self.refresh_margin + min_validity:
                logger.debug(f"Reusing cached credential for scope={scope}")
                return cached

            if cached is not None:
                logger.info(
                    f"Refreshing credential for scope={scope} "
                    f"({cached.remaining(now):.0f}s left, {min_validity:.0f}s needed)"
                )
            else:
                logger.info(f"Acquiring credential for scope={scope}")

            credential = await self._exchange(scope, now)
            if credential.remaining(now) <= min_validity:
                logger.warning(
                    f"Credential for scope={scope} expires in "
                    f"{credential.remaining(now):.0f}s, shorter than the "
                    f"{min_validity:.0f}s requested"
                )
            self._cache[scope] = credential
            return credential

    async def _exchange(self, scope: str, now: datetime) -> Credential:
        assertion = await self.assertion_source.read()
        claims = inspect_assertion(assertion, now)
        grant = await self.provider.exchange(assertion, scope)
        return Credential(
            scope=scope,
            token=grant.access_token,
            assertion=assertion,
            issuer=claims.get("iss"),
            subject=claims.get("sub"),
            issued_at=now,
            expires_at=grant.expires_at,
        )

    def cached(self, scope: str) -> Optional[Credential]:
        return self._cache.get(scope)

    def clear(self) -> None:
        """Drop every cached credential."""
        self._cache.clear()

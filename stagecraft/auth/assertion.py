"""Sources of workload identity assertions provided by the execution environment."""

from __future__ import annotations

import abc
import asyncio
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import jwt
import requests

from ..errors import AuthError, AuthReason

logger = logging.getLogger(__name__)


class AssertionSource(metaclass=abc.ABCMeta):
    """Yields the identity assertion presented to the identity provider."""

    @abc.abstractmethod
    async def read(self) -> str:
        """Return the current assertion. Called on every exchange."""
        raise NotImplementedError


class FileAssertionSource(AssertionSource):
    """Projected token file, re-read on every exchange to pick up rotation."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    async def read(self) -> str:
        try:
            content = await asyncio.to_thread(self.path.read_text)
        except OSError as exc:
            raise AuthError(
                AuthReason.ASSERTION_REJECTED,
                f"identity assertion file {self.path} is not readable: {exc}",
            ) from exc
        assertion = content.strip()
        if not assertion:
            raise AuthError(
                AuthReason.ASSERTION_REJECTED,
                f"identity assertion file {self.path} is empty",
            )
        return assertion


class EnvAssertionSource(AssertionSource):
    def __init__(self, variable: str) -> None:
        self.variable = variable

    async def read(self) -> str:
        assertion = os.getenv(self.variable, "").strip()
        if not assertion:
            raise AuthError(
                AuthReason.ASSERTION_REJECTED,
                f"environment variable {self.variable} holds no identity assertion",
            )
        return assertion


class GitHubActionsAssertionSource(AssertionSource):
    """Requests an OIDC token from the CI runner for ``audience``."""

    def __init__(
        self,
        request_url: str,
        request_token: str,
        audience: str = "api://AzureADTokenExchange",
        timeout: float = 10,
    ) -> None:
        self.request_url = request_url
        self.request_token = request_token
        self.audience = audience
        self.timeout = timeout

    @classmethod
    def from_env(cls, audience: Optional[str] = None) -> "GitHubActionsAssertionSource":
        request_url = os.getenv("ACTIONS_ID_TOKEN_REQUEST_URL", "")
        request_token = os.getenv("ACTIONS_ID_TOKEN_REQUEST_TOKEN", "")
        if not request_url or not request_token:
            raise AuthError(
                AuthReason.ASSERTION_REJECTED,
                "OIDC token request variables are not set; "
                "is the job granted id-token: write?",
            )
        if audience:
            return cls(request_url, request_token, audience=audience)
        return cls(request_url, request_token)

    def _fetch(self) -> requests.Response:
        return requests.get(
            self.request_url,
            params={"audience": self.audience},
            headers={"Authorization": f"Bearer {self.request_token}"},
            timeout=self.timeout,
        )

    async def read(self) -> str:
        try:
            resp = await asyncio.to_thread(self._fetch)
        except requests.RequestException as exc:
            raise AuthError(
                AuthReason.ISSUER_UNREACHABLE,
                f"could not reach OIDC token endpoint: {exc}",
            ) from exc
        if resp.status_code >= 500:
            raise AuthError(
                AuthReason.ISSUER_UNREACHABLE,
                f"OIDC token endpoint returned {resp.status_code}",
            )
        if resp.status_code >= 400:
            raise AuthError(
                AuthReason.ASSERTION_REJECTED,
                f"OIDC token request refused with {resp.status_code}",
            )
        try:
            body = resp.json()
        except ValueError as exc:
            raise AuthError(
                AuthReason.ISSUER_UNREACHABLE,
                f"OIDC token endpoint returned a non-JSON body: {exc}",
            ) from exc
        value = body.get("value") if isinstance(body, dict) else None
        if not value:
            raise AuthError(
                AuthReason.ASSERTION_REJECTED, "OIDC token response had no value"
            )
        return value


def inspect_assertion(
    assertion: str, now: Optional[datetime] = None
) -> Mapping[str, Any]:
    """Return the unverified claims of ``assertion``.

    Signature verification is the identity provider's job; this only reads the
    issuer, subject and expiry so an expired assertion is rejected without a
    round trip. Opaque (non-JWT) assertions yield no claims.
    """
    try:
        claims: Dict[str, Any] = jwt.decode(
            assertion, options={"verify_signature": False}
        )
    except jwt.exceptions.DecodeError:
        logger.debug("Identity assertion is not a JWT; skipping claim inspection")
        return {}

    exp = claims.get("exp")
    if exp is not None:
        now = now or datetime.now(timezone.utc)
        if datetime.fromtimestamp(int(exp), tz=timezone.utc) <= now:
            raise AuthError(
                AuthReason.ASSERTION_REJECTED,
                f"identity assertion from {claims.get('iss')} has expired",
            )
    return claims

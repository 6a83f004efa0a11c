"""Identity provider boundary: assertion-for-token exchange."""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

import jwt
import requests
from pydantic import BaseModel, SecretStr

from ..constants import CLIENT_ASSERTION_TYPE
from ..errors import AuthError, AuthReason

logger = logging.getLogger(__name__)

_SCOPE_ERRORS = {"invalid_scope", "invalid_resource", "access_denied"}


class TokenGrant(BaseModel):
    access_token: SecretStr
    expires_at: datetime


class IdentityProvider(Protocol):
    """Exchanges an identity assertion for an access token scoped to ``scope``."""

    async def exchange(self, assertion: str, scope: str) -> TokenGrant:
        """Return a grant or raise :class:`~stagecraft.errors.AuthError`."""


class ExchangeConfig:
    def __init__(self, token_url: str, client_id: str, timeout: float = 10) -> None:
        self.token_url = token_url
        self.client_id = client_id
        self.timeout = timeout

    @classmethod
    def from_env(cls) -> "ExchangeConfig":
        return cls(
            token_url=os.getenv("STAGECRAFT_TOKEN_URL", ""),
            client_id=os.getenv("STAGECRAFT_CLIENT_ID", ""),
            timeout=float(os.getenv("STAGECRAFT_TOKEN_TIMEOUT", "10")),
        )


class OAuthTokenExchange:
    """OAuth 2.0 client-credentials grant with a JWT-bearer client assertion."""

    def __init__(self, config: Optional[ExchangeConfig] = None) -> None:
        self.config = config or ExchangeConfig.from_env()

    def _post(self, assertion: str, scope: str) -> requests.Response:
        return requests.post(
            self.config.token_url,
            data={
                "grant_type": "client_credentials",
                "client_id": self.config.client_id,
                "client_assertion_type": CLIENT_ASSERTION_TYPE,
                "client_assertion": assertion,
                "scope": scope,
            },
            timeout=self.config.timeout,
        )

    async def exchange(self, assertion: str, scope: str) -> TokenGrant:
        try:
            resp = await asyncio.to_thread(self._post, assertion, scope)
        except requests.RequestException as exc:
            raise AuthError(
                AuthReason.ISSUER_UNREACHABLE,
                f"token endpoint {self.config.token_url} unreachable: {exc}",
            ) from exc

        if resp.status_code >= 400:
            raise _error_from_response(resp, scope)

        try:
            body = resp.json()
        except ValueError as exc:
            raise AuthError(
                AuthReason.ISSUER_UNREACHABLE, f"token response is not JSON: {exc}"
            ) from exc
        if not isinstance(body, dict):
            raise AuthError(
                AuthReason.ISSUER_UNREACHABLE, "token response is not a JSON object"
            )
        token = body.get("access_token")
        if not token:
            raise AuthError(
                AuthReason.ISSUER_UNREACHABLE, "token response carried no access_token"
            )
        return TokenGrant(access_token=token, expires_at=_expiry(body, token))


def _error_from_response(resp: requests.Response, scope: str) -> AuthError:
    if resp.status_code >= 500:
        return AuthError(
            AuthReason.ISSUER_UNREACHABLE,
            f"token endpoint returned {resp.status_code}",
        )
    try:
        body = resp.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    error = body.get("error", "")
    description = body.get("error_description", "") or error or str(resp.status_code)
    if resp.status_code == 403 or error in _SCOPE_ERRORS:
        return AuthError(
            AuthReason.SCOPE_DENIED, f"scope {scope} denied: {description}"
        )
    return AuthError(
        AuthReason.ASSERTION_REJECTED, f"assertion rejected: {description}"
    )


def _expiry(body: dict, token: str) -> datetime:
    now = datetime.now(timezone.utc)
    try:
        if body.get("expires_in") is not None:
            return now + timedelta(seconds=int(body["expires_in"]))
        if body.get("expires_on") is not None:
            return datetime.fromtimestamp(int(body["expires_on"]), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError) as exc:
        raise AuthError(
            AuthReason.ISSUER_UNREACHABLE, f"token response has a malformed expiry: {exc}"
        ) from exc
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.exceptions.DecodeError:
        claims = {}
    if "exp" in claims:
        return datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)
    raise AuthError(
        AuthReason.ISSUER_UNREACHABLE, "token response carried no expiry"
    )

"""Shared fakes and fixtures for the stagecraft test suite."""

from datetime import datetime, timedelta, timezone

import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from stagecraft.auth import AssertionSource, CredentialBroker, TokenGrant
from stagecraft.constants import DEFAULT_SCOPE
from stagecraft.contracts import Credential
from stagecraft.executor import PipelineExecutor
from stagecraft.persistence import InMemoryRunRepository
from stagecraft.reconcile import InMemoryProvisioningBackend

_SIGNING_KEY = rsa.generate_private_key(public_exponent=65537, key_size=2048)
_PRIVATE_PEM = _SIGNING_KEY.private_bytes(
    serialization.Encoding.PEM,
    serialization.PrivateFormat.PKCS8,
    serialization.NoEncryption(),
)


def _assertion(lifetime: int = 600, **claims) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "iss": "https://token.actions.githubusercontent.com",
        "sub": "repo:acme/ml-platform:ref:refs/heads/main",
        "aud": "api://AzureADTokenExchange",
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=lifetime)).timestamp()),
    }
    payload.update(claims)
    return jwt.encode(payload, _PRIVATE_PEM, algorithm="RS256", headers={"kid": "test"})


class StaticAssertionSource(AssertionSource):
    def __init__(self, assertion: str) -> None:
        self.assertion = assertion
        self.reads = 0

    async def read(self) -> str:
        self.reads += 1
        return self.assertion


class FakeIdentityProvider:
    """Issues opaque tokens with a fixed lifetime, or raises ``error``."""

    def __init__(self, lifetime: float = 3600) -> None:
        self.lifetime = lifetime
        self.error = None
        self.calls = []

    async def exchange(self, assertion: str, scope: str) -> TokenGrant:
        self.calls.append((assertion, scope))
        if self.error is not None:
            raise self.error
        return TokenGrant(
            access_token=f"token-{len(self.calls)}",
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=self.lifetime),
        )


@pytest.fixture
def make_assertion():
    return _assertion


@pytest.fixture
def make_credential():
    def factory(lifetime: float = 3600, scope: str = DEFAULT_SCOPE) -> Credential:
        return Credential(
            scope=scope,
            token="access-token",
            assertion="assertion",
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=lifetime),
        )

    return factory


@pytest.fixture
def credential(make_credential) -> Credential:
    return make_credential()


@pytest.fixture
def provider() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def assertion_source() -> StaticAssertionSource:
    return StaticAssertionSource(_assertion())


@pytest.fixture
def broker(provider, assertion_source) -> CredentialBroker:
    return CredentialBroker(provider, assertion_source)


@pytest.fixture
def backend() -> InMemoryProvisioningBackend:
    return InMemoryProvisioningBackend()


@pytest.fixture
def repository() -> InMemoryRunRepository:
    return InMemoryRunRepository()


@pytest.fixture
def executor(broker, backend, repository) -> PipelineExecutor:
    return PipelineExecutor(broker, backend, repository=repository, call_timeout=5)

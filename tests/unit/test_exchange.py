"""Tests for the OAuth federated token exchange."""

import time

import jwt
import pytest
import requests

from stagecraft.auth import ExchangeConfig, OAuthTokenExchange
from stagecraft.constants import CLIENT_ASSERTION_TYPE
from stagecraft.errors import AuthError, AuthReason

SCOPE = "https://management.azure.com/.default"


class Resp:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = body

    def json(self):
        if self._body is None:
            raise ValueError("no json body")
        return self._body


def _exchange():
    return OAuthTokenExchange(
        ExchangeConfig(token_url="https://login.example/token", client_id="client-123")
    )


@pytest.mark.asyncio
async def test_exchange_posts_client_assertion(monkeypatch):
    captured = {}

    def fake_post(url, data=None, timeout=None):
        captured.update(url=url, data=data)
        return Resp(body={"access_token": "at", "expires_in": 3599})

    monkeypatch.setattr(requests, "post", fake_post)
    before = time.time()
    grant = await _exchange().exchange("signed-assertion", SCOPE)

    assert grant.access_token.get_secret_value() == "at"
    assert grant.expires_at.timestamp() >= before + 3598
    assert captured["url"] == "https://login.example/token"
    assert captured["data"]["grant_type"] == "client_credentials"
    assert captured["data"]["client_id"] == "client-123"
    assert captured["data"]["client_assertion_type"] == CLIENT_ASSERTION_TYPE
    assert captured["data"]["client_assertion"] == "signed-assertion"
    assert captured["data"]["scope"] == SCOPE


@pytest.mark.asyncio
async def test_expiry_falls_back_to_token_claim(monkeypatch):
    exp = int(time.time()) + 1200
    token = jwt.encode({"exp": exp}, "k" * 32, algorithm="HS256")
    monkeypatch.setattr(requests, "post", lambda *a, **kw: Resp(body={"access_token": token}))

    grant = await _exchange().exchange("assertion", SCOPE)
    assert int(grant.expires_at.timestamp()) == exp


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,body,reason",
    [
        (400, {"error": "invalid_grant"}, AuthReason.ASSERTION_REJECTED),
        (401, {"error": "invalid_client"}, AuthReason.ASSERTION_REJECTED),
        (400, {"error": "invalid_scope"}, AuthReason.SCOPE_DENIED),
        (403, None, AuthReason.SCOPE_DENIED),
        (503, None, AuthReason.ISSUER_UNREACHABLE),
        (200, {"token_type": "Bearer"}, AuthReason.ISSUER_UNREACHABLE),
    ],
)
async def test_error_mapping(monkeypatch, status, body, reason):
    monkeypatch.setattr(requests, "post", lambda *a, **kw: Resp(status, body))
    with pytest.raises(AuthError) as exc_info:
        await _exchange().exchange("assertion", SCOPE)
    assert exc_info.value.reason == reason


@pytest.mark.asyncio
async def test_connection_failure_is_issuer_unreachable(monkeypatch):
    def boom(*args, **kwargs):
        raise requests.Timeout("timed out")

    monkeypatch.setattr(requests, "post", boom)
    with pytest.raises(AuthError) as exc_info:
        await _exchange().exchange("assertion", SCOPE)
    assert exc_info.value.reason == AuthReason.ISSUER_UNREACHABLE


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("STAGECRAFT_TOKEN_URL", "https://idp/token")
    monkeypatch.setenv("STAGECRAFT_CLIENT_ID", "abc")
    monkeypatch.setenv("STAGECRAFT_TOKEN_TIMEOUT", "3")
    config = ExchangeConfig.from_env()
    assert (config.token_url, config.client_id, config.timeout) == ("https://idp/token", "abc", 3.0)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        None,
        ["access_token"],
        {"access_token": "at", "expires_in": "soon"},
    ],
)
async def test_malformed_success_body_is_issuer_unreachable(monkeypatch, body):
    monkeypatch.setattr(requests, "post", lambda *a, **kw: Resp(200, body))
    with pytest.raises(AuthError) as exc_info:
        await _exchange().exchange("assertion", SCOPE)
    assert exc_info.value.reason == AuthReason.ISSUER_UNREACHABLE


@pytest.mark.asyncio
async def test_non_object_error_body_is_still_mapped(monkeypatch):
    monkeypatch.setattr(requests, "post", lambda *a, **kw: Resp(400, ["invalid_grant"]))
    with pytest.raises(AuthError) as exc_info:
        await _exchange().exchange("assertion", SCOPE)
    assert exc_info.value.reason == AuthReason.ASSERTION_REJECTED

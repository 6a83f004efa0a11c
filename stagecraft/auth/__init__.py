"""Federated credential acquisition."""

from __future__ import annotations

from typing import Optional

from ..config import StagecraftConfig, load_config
from .assertion import (
    AssertionSource,
    EnvAssertionSource,
    FileAssertionSource,
    GitHubActionsAssertionSource,
    inspect_assertion,
)
from .broker import CredentialBroker
from .exchange import ExchangeConfig, IdentityProvider, OAuthTokenExchange, TokenGrant


def get_assertion_source(config: Optional[StagecraftConfig] = None) -> AssertionSource:
    """Build the assertion source selected in ``auth.assertion``."""

    config = config or load_config()
    assertion = config.auth.assertion
    if assertion.source == "github":
        return GitHubActionsAssertionSource.from_env(audience=assertion.audience)
    if assertion.source == "env":
        return EnvAssertionSource(assertion.env_var)
    if not assertion.path:
        raise ValueError("auth.assertion.path is required for the file assertion source")
    return FileAssertionSource(assertion.path)


def get_broker(config: Optional[StagecraftConfig] = None) -> CredentialBroker:
    """Factory function to build a credential broker from configuration."""

    config = config or load_config()
    provider = OAuthTokenExchange(
        ExchangeConfig(
            token_url=config.auth.token_url,
            client_id=config.auth.client_id,
            timeout=config.auth.timeout,
        )
    )
    return CredentialBroker(
        provider,
        get_assertion_source(config),
        refresh_margin=config.auth.refresh_margin,
    )


__all__ = [
    "AssertionSource",
    "CredentialBroker",
    "EnvAssertionSource",
    "ExchangeConfig",
    "FileAssertionSource",
    "GitHubActionsAssertionSource",
    "IdentityProvider",
    "OAuthTokenExchange",
    "TokenGrant",
    "get_assertion_source",
    "get_broker",
    "inspect_assertion",
]

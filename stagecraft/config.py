from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_CALL_TIMEOUT,
    DEFAULT_REFRESH_MARGIN,
    DEFAULT_ROLLOUT_STEPS,
    DEFAULT_SCOPE,
)
from .utils.retry import RetryPolicy


class AssertionConfig(BaseModel):
    """Where the workload identity assertion comes from."""

    source: Literal["file", "env", "github"] = "file"
    path: Optional[str] = None
    env_var: str = "STAGECRAFT_ID_TOKEN"
    audience: str = "api://AzureADTokenExchange"


class AuthConfig(BaseModel):
    """Federated credential exchange settings."""

    token_url: str = ""
    client_id: str = ""
    scope: str = DEFAULT_SCOPE
    timeout: float = 10.0
    refresh_margin: float = DEFAULT_REFRESH_MARGIN
    assertion: AssertionConfig = AssertionConfig()


class HttpBackendConfig(BaseModel):
    base_url: str = "http://localhost:8080"
    timeout: float = 30.0


class BackendConfig(BaseModel):
    """Provisioning backend settings."""

    backend: Literal["inmemory", "http"] = "inmemory"
    http: HttpBackendConfig = HttpBackendConfig()


class ExecutionConfig(BaseModel):
    """Pipeline executor settings."""

    call_timeout: float = DEFAULT_CALL_TIMEOUT
    rollout_steps: int = DEFAULT_ROLLOUT_STEPS
    retry: RetryPolicy = RetryPolicy()


class StagecraftConfig(BaseModel):
    """Top-level configuration model."""

    auth: AuthConfig = AuthConfig()
    backend: BackendConfig = BackendConfig()
    execution: ExecutionConfig = ExecutionConfig()
    database_url: Optional[str] = None


def load_config(path: Optional[str] = None) -> StagecraftConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to STAGECRAFT_CONFIG env
            variable or 'stagecraft.yaml' in the current directory.
    """

    config_path = path or os.getenv("STAGECRAFT_CONFIG", "stagecraft.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = StagecraftConfig(**data)
    else:
        config = StagecraftConfig()

    env_db_url = os.getenv("STAGECRAFT_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_backend = os.getenv("STAGECRAFT_BACKEND")
    if env_backend:
        config.backend.backend = env_backend.lower()
    env_token_url = os.getenv("STAGECRAFT_TOKEN_URL")
    if env_token_url:
        config.auth.token_url = env_token_url
    env_client_id = os.getenv("STAGECRAFT_CLIENT_ID")
    if env_client_id:
        config.auth.client_id = env_client_id
    return config

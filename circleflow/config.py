from __future__ import annotations

import os
from typing import Optional

import yaml
from pydantic import BaseModel

from .constants import DEFAULT_CLIENT_TIMEOUT, DEFAULT_N8N_BASE_URL, DEFAULT_N8N_TIMEOUT


class N8nConfig(BaseModel):
    """Connection settings for the external n8n automation runner."""

    base_url: str = DEFAULT_N8N_BASE_URL
    timeout: float = DEFAULT_N8N_TIMEOUT
    webhook_secret: Optional[str] = None


class ClientConfig(BaseModel):
    """Settings for the HTTP client adapter."""

    base_url: str = "http://localhost:8000"
    timeout: float = DEFAULT_CLIENT_TIMEOUT


class ApiConfig(BaseModel):
    """Settings for the HTTP API server."""

    title: str = "The Circle Workflow API"
    host: str = "127.0.0.1"
    port: int = 8000


class CircleflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    n8n: N8nConfig = N8nConfig()
    client: ClientConfig = ClientConfig()
    api: ApiConfig = ApiConfig()
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> CircleflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to CIRCLEFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("CIRCLEFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = CircleflowConfig(**data)
    else:
        config = CircleflowConfig()

    env_db_url = os.getenv("CIRCLEFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    if os.getenv("N8N_BASE_URL"):
        config.n8n.base_url = os.environ["N8N_BASE_URL"]
    if os.getenv("N8N_WEBHOOK_SECRET"):
        config.n8n.webhook_secret = os.environ["N8N_WEBHOOK_SECRET"]
    return config

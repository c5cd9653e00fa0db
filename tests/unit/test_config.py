"""Tests for configuration loading."""

from circleflow.config import load_config
from circleflow.persistence import SQLiteRepository, get_repository


def _clear_env(monkeypatch):
    for name in ("CIRCLEFLOW_DATABASE_URL", "DATABASE_URL", "N8N_BASE_URL", "N8N_WEBHOOK_SECRET"):
        monkeypatch.delenv(name, raising=False)


def test_load_config_from_file(tmp_path, monkeypatch):
    _clear_env(monkeypatch)
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
database_url: sqlite://circle.db
n8n:
  base_url: http://n8n.internal:5678
  timeout: 12
client:
  timeout: 7
log_level: DEBUG
"""
    )
    monkeypatch.setenv("CIRCLEFLOW_CONFIG", str(config_path))

    config = load_config()
    assert config.database_url == "sqlite://circle.db"
    assert config.n8n.base_url == "http://n8n.internal:5678"
    assert config.n8n.timeout == 12
    assert config.client.timeout == 7
    assert config.api.port == 8000
    assert config.log_level == "DEBUG"


def test_defaults_without_file(tmp_path, monkeypatch):
    _clear_env(monkeypatch)
    config = load_config(str(tmp_path / "missing.yaml"))
    assert config.database_url is None
    assert config.n8n.timeout == 30
    assert config.client.timeout == 20
    assert config.n8n.webhook_secret is None


def test_env_overrides(tmp_path, monkeypatch):
    _clear_env(monkeypatch)
    monkeypatch.setenv("DATABASE_URL", f"sqlite://{tmp_path / 'env.db'}")
    monkeypatch.setenv("N8N_BASE_URL", "http://n8n.env")
    monkeypatch.setenv("N8N_WEBHOOK_SECRET", "shh")

    config = load_config(str(tmp_path / "missing.yaml"))
    assert config.n8n.base_url == "http://n8n.env"
    assert config.n8n.webhook_secret == "shh"

    repo = get_repository(config=config)
    assert isinstance(repo, SQLiteRepository)

"""Load configuration from YAML and environment variables. No hardcoded secrets."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Default config lives next to this module
_DEFAULT_CONFIG_PATH = Path(__file__).parent / "default.yaml"


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


class RedisSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="REDIS_", extra="ignore", populate_by_name=True)
    url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")
    socket_timeout: float = 5.0


class ModelSettings(BaseSettings):
    """Fallback model used when neither the request nor Redis names one."""

    model_config = SettingsConfigDict(env_prefix="MODEL_", extra="ignore", populate_by_name=True)
    name: str = "qwen-long"
    base_url: Optional[str] = Field(default=None, alias="OPENAI_BASE_URL")
    api_key: str = Field(default="", alias="OPENAI_API_KEY")
    temperature: Optional[float] = 0.7
    max_tokens: Optional[int] = 4000


class RelaySettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="RELAY_", extra="ignore")
    max_pending_chunks: int = 16
    connect_timeout: float = 10.0
    read_timeout: float = 120.0


class SecuritySettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="SECURITY_", extra="ignore", populate_by_name=True)
    encryption_key: str = Field(default="", alias="ENCRYPTION_KEY")


class WebSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="WEB_", extra="ignore")
    host: str = "0.0.0.0"
    port: int = 8080


class LoggingSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="LOG_", extra="ignore")
    level: str = "INFO"
    use_json: bool = True


class Config(BaseSettings):
    """Application config: YAML + env. Secrets from env only."""

    model_config = SettingsConfigDict(env_nested_delimiter="__", extra="ignore")

    redis: RedisSettings = Field(default_factory=RedisSettings)
    model: ModelSettings = Field(default_factory=ModelSettings)
    relay: RelaySettings = Field(default_factory=RelaySettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    web: WebSettings = Field(default_factory=WebSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> "Config":
        path = Path(config_path) if config_path else _DEFAULT_CONFIG_PATH
        yaml_data = _load_yaml(path)
        env_prefix = os.getenv("REQRELAY_ENV_PREFIX", "")
        if env_prefix:
            yaml_data = _deep_merge(yaml_data, _load_yaml(Path(f"config/{env_prefix}.yaml")))
        redis_url = os.getenv("REDIS_URL")
        if redis_url:
            yaml_data.setdefault("redis", {})["url"] = redis_url
        api_key = os.getenv("OPENAI_API_KEY")
        if api_key:
            yaml_data.setdefault("model", {})["api_key"] = api_key
        base_url = os.getenv("OPENAI_BASE_URL")
        if base_url:
            yaml_data.setdefault("model", {})["base_url"] = base_url
        encryption_key = os.getenv("ENCRYPTION_KEY")
        if encryption_key:
            yaml_data.setdefault("security", {})["encryption_key"] = encryption_key
        port = os.getenv("PORT")
        if port:
            yaml_data.setdefault("web", {})["port"] = int(port)
        log_level = os.getenv("LOG_LEVEL")
        if log_level:
            yaml_data.setdefault("logging", {})["level"] = log_level
        return cls(**yaml_data)


def get_config(config_path: str | Path | None = None) -> Config:
    return Config.load(config_path)

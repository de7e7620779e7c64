"""Model configurations in Redis. The Redis handle is created at startup and passed in."""

from __future__ import annotations

import logging
from typing import Optional

import redis
from pydantic import ValidationError

from reqrelay.core.schemas import ModelConfig

logger = logging.getLogger(__name__)

REDIS_PREFIX = "ai:config:"
DEFAULT_CONFIG_KEY = "ai:config:default"
# Config id that would collide with the default pointer key
RESERVED_CONFIG_ID = DEFAULT_CONFIG_KEY[len(REDIS_PREFIX) :]


def create_redis_client(redis_url: str, socket_timeout: float = 5.0) -> redis.Redis:
    """Process-wide handle. Close it at shutdown."""
    return redis.from_url(redis_url, decode_responses=True, socket_timeout=socket_timeout)


class ModelConfigStore:
    """ai:config:<id> holds the JSON config (encrypted API key); ai:config:default holds the default id."""

    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    @staticmethod
    def _key(config_id: str) -> str:
        return f"{REDIS_PREFIX}{config_id}"

    def save(self, config: ModelConfig) -> None:
        if not config.id:
            raise ValueError("model config id is required")
        if config.id == RESERVED_CONFIG_ID:
            raise ValueError(f"model config id '{RESERVED_CONFIG_ID}' is reserved")
        pipe = self._client.pipeline()
        pipe.set(self._key(config.id), config.model_dump_json(by_alias=True))
        if config.is_default:
            pipe.set(DEFAULT_CONFIG_KEY, config.id)
        pipe.execute()
        logger.info("model config saved", extra={"config_id": config.id, "model": config.model})

    def get(self, config_id: str) -> Optional[ModelConfig]:
        if config_id == RESERVED_CONFIG_ID:
            return None
        raw = self._client.get(self._key(config_id))
        if not raw:
            return None
        try:
            return ModelConfig.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("invalid model config in Redis", extra={"config_id": config_id, "error": str(e)})
            return None

    def ids(self) -> list[str]:
        keys = self._client.keys(REDIS_PREFIX + "*")
        return sorted(k[len(REDIS_PREFIX) :] for k in keys if k != DEFAULT_CONFIG_KEY)

    def list_configs(self) -> list[ModelConfig]:
        default_id = self.get_default_id()
        out = []
        for config_id in self.ids():
            cfg = self.get(config_id)
            if cfg is None:
                continue
            out.append(cfg.model_copy(update={"is_default": cfg.id == default_id}))
        return out

    def get_default_id(self) -> Optional[str]:
        return self._client.get(DEFAULT_CONFIG_KEY) or None

    def get_default(self) -> Optional[ModelConfig]:
        default_id = self.get_default_id()
        if not default_id:
            return None
        cfg = self.get(default_id)
        return cfg.model_copy(update={"is_default": True}) if cfg else None

    def set_default(self, config_id: str) -> bool:
        if config_id == RESERVED_CONFIG_ID:
            return False
        if self._client.get(self._key(config_id)) is None:
            return False
        self._client.set(DEFAULT_CONFIG_KEY, config_id)
        return True

    def delete(self, config_id: str) -> bool:
        """Delete a config. When it was the default, the lowest remaining id becomes default."""
        if config_id == RESERVED_CONFIG_ID:
            return False
        was_default = self.get_default_id() == config_id
        remaining = [i for i in self.ids() if i != config_id]
        pipe = self._client.pipeline()
        pipe.delete(self._key(config_id))
        if was_default:
            pipe.delete(DEFAULT_CONFIG_KEY)
            if remaining:
                pipe.set(DEFAULT_CONFIG_KEY, remaining[0])
        removed = bool(pipe.execute()[0])
        if was_default and remaining:
            logger.info("default model config re-elected", extra={"config_id": remaining[0]})
        return removed

"""Provider Gateway: turns a ModelConfig into a streaming provider.

Streaming contract: see reqrelay.models.streaming. DashScope/Qwen configs get the
raw SSE client; everything else goes through the OpenAI-compatible client."""

from __future__ import annotations

import logging
from typing import Optional

from reqrelay.config.loader import ModelSettings
from reqrelay.core.crypto import ApiKeyCipher, EncryptionError
from reqrelay.core.errors import InvalidInput
from reqrelay.core.schemas import ModelConfig
from reqrelay.models.dashscope import DashScopeProvider, is_dashscope_config
from reqrelay.models.openai_compat import OpenAICompatProvider
from reqrelay.models.streaming import ModelProvider

logger = logging.getLogger(__name__)


def is_gemini_model(model: str) -> bool:
    return "gemini" in (model or "").lower()


class ProviderGateway:
    """Builds one provider per request. API keys are decrypted here and nowhere else."""

    def __init__(
        self,
        cipher: ApiKeyCipher | None = None,
        *,
        connect_timeout: float = 10.0,
        read_timeout: float = 120.0,
    ) -> None:
        self._cipher = cipher
        self._connect_timeout = connect_timeout
        self._read_timeout = read_timeout

    def _api_key(self, config: ModelConfig, key_encrypted: bool) -> str:
        if not self._cipher or not key_encrypted:
            return config.api_key
        try:
            return self._cipher.decrypt(config.api_key)
        except EncryptionError as e:
            raise InvalidInput(f"API key for model config '{config.id or config.model}' could not be decrypted") from e

    def provider_for(self, config: ModelConfig, *, key_encrypted: bool = True) -> ModelProvider:
        if not config.model or not config.base_url:
            raise InvalidInput("model config needs model and base URL")
        if is_gemini_model(config.model):
            raise InvalidInput("Gemini models are not supported for streaming generation")
        api_key = self._api_key(config, key_encrypted)
        kwargs = dict(
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            connect_timeout=self._connect_timeout,
            read_timeout=self._read_timeout,
        )
        if is_dashscope_config(config.base_url, config.model):
            logger.debug("using DashScope provider", extra={"model": config.model})
            return DashScopeProvider(config.base_url, api_key, config.model, **kwargs)
        logger.debug("using OpenAI-compatible provider", extra={"model": config.model})
        return OpenAICompatProvider(config.base_url, api_key, config.model, **kwargs)


def config_from_settings(settings: ModelSettings) -> Optional[ModelConfig]:
    """Fallback ModelConfig from env/YAML settings; None when no base URL is set.

    The key from settings is plain text: pass key_encrypted=False to provider_for.
    """
    if not settings.base_url:
        return None
    return ModelConfig(
        id="settings",
        name="settings",
        model=settings.name,
        base_url=settings.base_url,
        api_key=settings.api_key,
        temperature=settings.temperature,
        max_tokens=settings.max_tokens,
    )

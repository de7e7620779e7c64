"""HTTP Request Source: validates browser requests, picks a model config and streams the relay back."""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Optional

import redis
from flask import (
    Blueprint,
    Flask,
    Response,
    current_app,
    jsonify,
    request,
    stream_with_context,
)
from pydantic import ValidationError

from reqrelay.config.loader import Config
from reqrelay.core.config_store import ModelConfigStore
from reqrelay.core.crypto import ApiKeyCipher, cipher_from_key
from reqrelay.core.errors import (
    ConsumerGone,
    InvalidInput,
    RelayError,
    StreamInterrupted,
    UpstreamUnavailable,
)
from reqrelay.core.relay import StreamingRelay
from reqrelay.core.schemas import GenerationRequest, ModelConfig
from reqrelay.models.gateway import ProviderGateway, config_from_settings
from reqrelay.web.streaming import SSE_DONE, iter_sync, sse_content, sse_error

logger = logging.getLogger(__name__)

EXTENSION_KEY = "reqrelay"

_STATUS_BY_KIND = {
    InvalidInput.kind: 400,
    UpstreamUnavailable.kind: 502,
    StreamInterrupted.kind: 502,
    ConsumerGone.kind: 499,
}

_STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "X-Accel-Buffering": "no",
    "X-Content-Type-Options": "nosniff",
}

bp = Blueprint("relay", __name__)


class _NoModelConfig(Exception):
    pass


def _state() -> dict[str, Any]:
    return current_app.extensions[EXTENSION_KEY]


def _error(message: str, status: int, kind: Optional[str] = None):
    body: dict[str, Any] = {"error": message}
    if kind:
        body["kind"] = kind
    return jsonify(body), status


def _relay_error_response(err: RelayError):
    return _error(str(err), _STATUS_BY_KIND.get(err.kind, 500), err.kind)


def _parse_model_config(raw: Any) -> ModelConfig:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise InvalidInput("config is not valid JSON") from e
    if not isinstance(raw, dict):
        raise InvalidInput("config must be an object")
    try:
        return ModelConfig.model_validate(raw)
    except ValidationError as e:
        raise InvalidInput(f"invalid model config: {e.errors()[0].get('msg', '')}") from e


def _resolve_model_config(raw_config: Any, config_id: Optional[str]) -> tuple[ModelConfig, bool]:
    """Request config, then stored id, then stored default, then settings.

    Returns the config and whether its API key is encrypted.
    """
    if raw_config:
        return _parse_model_config(raw_config), True
    store: Optional[ModelConfigStore] = _state()["store"]
    if store is not None:
        try:
            if config_id:
                cfg = store.get(config_id)
                if cfg is None:
                    raise _NoModelConfig(f"model config '{config_id}' not found")
                return cfg, True
            cfg = store.get_default()
            if cfg is not None:
                return cfg, True
        except redis.RedisError as e:
            logger.warning("could not read model config from Redis", extra={"error": str(e)})
    config: Config = _state()["config"]
    fallback = config_from_settings(config.model)
    if fallback is not None:
        return fallback, False
    raise _NoModelConfig("no default model config; configure a model first")


def _open_relay(gen_request: GenerationRequest, raw_config: Any, config_id: Optional[str]):
    """Start the relay and pull the first chunk so pre-stream failures map to a status code.

    Returns (first_chunk or None, chunk iterator).
    """
    StreamingRelay.validate(gen_request)
    model_config, key_encrypted = _resolve_model_config(raw_config, config_id)
    gateway: ProviderGateway = _state()["gateway"]
    config: Config = _state()["config"]
    provider = gateway.provider_for(model_config, key_encrypted=key_encrypted)
    relay = StreamingRelay(provider, max_pending=config.relay.max_pending_chunks)
    logger.info(
        "generation requested",
        extra={"model": model_config.model, "file_count": len(gen_request.file_ids)},
    )
    chunks = iter_sync(relay.stream(gen_request))
    first = next(chunks, None)
    return first, chunks


def _start(gen_request: GenerationRequest, raw_config: Any, config_id: Optional[str]):
    try:
        return _open_relay(gen_request, raw_config, config_id), None
    except RelayError as e:
        return None, _relay_error_response(e)
    except _NoModelConfig as e:
        return None, _error(str(e), 404)


@bp.route("/api/ai/file", methods=["POST"])
def generate_from_files():
    """Form: fileIds (repeated), systemPrompt, userPrompt, optional config JSON. Responds with SSE frames."""
    file_ids = [f for f in request.form.getlist("fileIds") if f]
    system_prompt = request.form.get("systemPrompt") or ""
    user_prompt = request.form.get("userPrompt") or ""
    if not file_ids or not system_prompt or not user_prompt:
        return _error("fileIds, systemPrompt and userPrompt are required", 400, InvalidInput.kind)
    gen_request = GenerationRequest(file_ids=file_ids, role=system_prompt, template=user_prompt)
    started, failure = _start(gen_request, request.form.get("config"), None)
    if failure is not None:
        return failure
    first, chunks = started

    def body():
        try:
            if first is not None:
                yield sse_content(first)
                for chunk in chunks:
                    yield sse_content(chunk)
            yield SSE_DONE
        except RelayError as e:
            logger.warning(
                "stream ended with error", extra={"kind": e.kind, "delivered": e.delivered}
            )
            yield sse_error(str(e), e.kind)
        finally:
            chunks.close()

    return Response(
        stream_with_context(body()), mimetype="text/event-stream", headers=_STREAM_HEADERS
    )


@bp.route("/api/generate", methods=["POST"])
def generate():
    """JSON: fileIds, role, template, variables, configId or config. Responds with raw text chunks."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return _error("JSON body required", 400, InvalidInput.kind)
    try:
        gen_request = GenerationRequest(
            file_ids=data.get("fileIds") or [],
            role=data.get("role") or "",
            template=data.get("template") or "",
            variables=data.get("variables") or {},
        )
    except ValidationError as e:
        return _error(f"invalid request: {e.errors()[0].get('msg', '')}", 400, InvalidInput.kind)
    started, failure = _start(gen_request, data.get("config"), data.get("configId"))
    if failure is not None:
        return failure
    first, chunks = started

    def body():
        try:
            if first is not None:
                yield first
                yield from chunks
        except RelayError as e:
            # Plain text has no error framing; the response just ends early
            logger.warning(
                "stream ended with error", extra={"kind": e.kind, "delivered": e.delivered}
            )
        finally:
            chunks.close()

    return Response(
        stream_with_context(body()),
        content_type="text/plain; charset=utf-8",
        headers=_STREAM_HEADERS,
    )


def _store() -> ModelConfigStore:
    store = _state()["store"]
    if store is None:
        raise redis.ConnectionError("model config store is not configured")
    return store


@bp.route("/api/ai-config", methods=["GET"])
def list_model_configs():
    store = _store()
    configs = store.list_configs()
    return jsonify(
        {"configs": [c.masked() for c in configs], "defaultId": store.get_default_id()}
    )


@bp.route("/api/ai-config", methods=["POST"])
def save_model_config():
    """Body is a model config with a plain-text apiKey; it is stored encrypted."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return _error("JSON body required", 400)
    try:
        cfg = ModelConfig.model_validate(data)
    except ValidationError as e:
        return _error(f"invalid model config: {e.errors()[0].get('msg', '')}", 400)
    cipher: Optional[ApiKeyCipher] = _state()["cipher"]
    update: dict[str, Any] = {}
    if not cfg.id:
        update["id"] = uuid.uuid4().hex
    if cipher is not None and cfg.api_key:
        update["api_key"] = cipher.encrypt(cfg.api_key)
    if update:
        cfg = cfg.model_copy(update=update)
    try:
        _store().save(cfg)
    except ValueError as e:
        return _error(str(e), 400)
    return jsonify({"ok": True, "config": cfg.masked()})


@bp.route("/api/ai-config/default", methods=["GET"])
def get_default_model_config():
    cfg = _store().get_default()
    if cfg is None:
        return _error("no default model config", 404)
    return jsonify({"config": cfg.masked()})


@bp.route("/api/ai-config/<config_id>", methods=["DELETE"])
def delete_model_config(config_id: str):
    if not _store().delete(config_id):
        return _error("model config not found", 404)
    return jsonify({"ok": True})


@bp.route("/api/ai-config/<config_id>/default", methods=["POST"])
def set_default_model_config(config_id: str):
    if not _store().set_default(config_id):
        return _error("model config not found", 404)
    return jsonify({"ok": True, "defaultId": config_id})


@bp.route("/api/health")
def api_health():
    """Liveness for monitoring and load balancers. No upstream or Redis calls."""
    return jsonify({"ok": True})


def _handle_redis_error(e: redis.RedisError):
    logger.warning("Redis unavailable", extra={"error": str(e)})
    return _error("model config store unavailable", 503)


def create_app(
    config: Config,
    *,
    store: Optional[ModelConfigStore] = None,
    gateway: Optional[ProviderGateway] = None,
    cipher: Optional[ApiKeyCipher] = None,
) -> Flask:
    """Build the app around explicitly passed handles; the caller owns their lifecycle."""
    app = Flask(__name__)
    if cipher is None:
        cipher = cipher_from_key(config.security.encryption_key)
    if gateway is None:
        gateway = ProviderGateway(
            cipher,
            connect_timeout=config.relay.connect_timeout,
            read_timeout=config.relay.read_timeout,
        )
    app.extensions[EXTENSION_KEY] = {
        "config": config,
        "store": store,
        "gateway": gateway,
        "cipher": cipher,
    }
    app.register_blueprint(bp)
    app.register_error_handler(redis.RedisError, _handle_redis_error)
    return app

"""Tests for provider clients and the Provider Gateway (mocked HTTP)."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from reqrelay.config.loader import ModelSettings
from reqrelay.core.crypto import ApiKeyCipher
from reqrelay.core.errors import InvalidInput
from reqrelay.core.schemas import ModelConfig
from reqrelay.models.dashscope import DashScopeProvider
from reqrelay.models.gateway import ProviderGateway, config_from_settings, is_gemini_model
from reqrelay.models.openai_compat import OpenAICompatProvider
from reqrelay.models.streaming import ModelProvider, build_messages


class FakeStream:
    """Stands in for openai.AsyncStream: async iterable with async close()."""

    def __init__(self, contents):
        self._contents = contents
        self.closed = False

    def __aiter__(self):
        return self._gen()

    async def _gen(self):
        for c in self._contents:
            chunk = MagicMock()
            chunk.choices = [MagicMock(delta=MagicMock(content=c))]
            yield chunk

    async def close(self):
        self.closed = True


def test_build_messages_order():
    msgs = build_messages("You are an analyst.", "Summarize", ["a", "b"])
    assert msgs == [
        {"role": "system", "content": "You are an analyst."},
        {"role": "system", "content": "fileid://a,fileid://b"},
        {"role": "user", "content": "Summarize"},
    ]


def test_build_messages_without_role_or_files():
    assert build_messages("", "Hi") == [{"role": "user", "content": "Hi"}]


def test_providers_satisfy_protocol():
    assert isinstance(OpenAICompatProvider("http://x/v1", "k", "m"), ModelProvider)
    assert isinstance(DashScopeProvider("http://x/v1", "k", "qwen-long"), ModelProvider)


@pytest.mark.asyncio
async def test_openai_provider_streams_deltas():
    stream = FakeStream(["Hel", None, "lo"])
    with patch("reqrelay.models.openai_compat.AsyncOpenAI") as mock_cls:
        mock_client = AsyncMock()
        mock_cls.return_value = mock_client
        mock_client.chat.completions.create = AsyncMock(return_value=stream)
        provider = OpenAICompatProvider("http://test/v1", "x", "gpt-4o", temperature=0.2, max_tokens=100)
        it = await provider.open_stream("role", "prompt", file_ids=["f1"])
        out = [t async for t in it]
    assert out == ["Hel", "lo"]
    assert stream.closed is True
    mock_client.close.assert_awaited()
    kwargs = mock_client.chat.completions.create.call_args.kwargs
    assert kwargs["stream"] is True
    assert kwargs["model"] == "gpt-4o"
    assert kwargs["temperature"] == 0.2
    assert kwargs["max_tokens"] == 100
    assert kwargs["messages"][1]["content"] == "fileid://f1"
    assert mock_cls.call_args.kwargs["max_retries"] == 0


@pytest.mark.asyncio
async def test_openai_provider_open_failure_closes_client():
    with patch("reqrelay.models.openai_compat.AsyncOpenAI") as mock_cls:
        mock_client = AsyncMock()
        mock_cls.return_value = mock_client
        mock_client.chat.completions.create = AsyncMock(side_effect=ConnectionError("down"))
        provider = OpenAICompatProvider("http://test/v1", "x", "gpt-4o")
        with pytest.raises(ConnectionError, match="down"):
            await provider.open_stream("role", "prompt")
    mock_client.close.assert_awaited_once()


def _sse_transport(body: bytes, status: int = 200, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(status, content=body, headers={"content-type": "text/event-stream"})

    return httpx.MockTransport(handler)


def _patch_async_client(transport):
    real_client = httpx.AsyncClient

    def factory(*args, **kwargs):
        kwargs["transport"] = transport
        return real_client(*args, **kwargs)

    return patch("reqrelay.models.dashscope.httpx.AsyncClient", side_effect=factory)


@pytest.mark.asyncio
async def test_dashscope_provider_parses_sse():
    body = (
        b'data: {"choices":[{"delta":{"role":"assistant"}}]}\n\n'
        b'data: {"choices":[{"delta":{"content":"Hel"}}]}\n\n'
        b": keepalive\n\n"
        b'data: {"choices":[{"delta":{"content":"lo"}}]}\r\n\r\n'
        b"data: [DONE]\n\n"
        b'data: {"choices":[{"delta":{"content":"after done"}}]}\n\n'
    )
    seen = []
    with _patch_async_client(_sse_transport(body, seen=seen)):
        provider = DashScopeProvider(
            "https://dashscope.aliyuncs.com/compatible-mode/v1", "sk-test", "qwen-long"
        )
        it = await provider.open_stream("role", "prompt", file_ids=["f1"])
        out = [t async for t in it]
    assert out == ["Hel", "lo"]
    req = seen[0]
    assert str(req.url) == "https://dashscope.aliyuncs.com/compatible-mode/v1/chat/completions"
    assert req.headers["Authorization"] == "Bearer sk-test"


@pytest.mark.asyncio
async def test_dashscope_provider_error_status_raises_on_open():
    with _patch_async_client(_sse_transport(b'{"error":"bad key"}', status=401)):
        provider = DashScopeProvider("https://dashscope.example/v1", "bad", "qwen-long")
        with pytest.raises(httpx.HTTPStatusError):
            await provider.open_stream("role", "prompt")


@pytest.mark.asyncio
async def test_dashscope_provider_error_frame_raises_mid_stream():
    body = (
        b'data: {"choices":[{"delta":{"content":"part"}}]}\n\n'
        b'data: {"error":{"message":"quota exceeded"}}\n\n'
    )
    with _patch_async_client(_sse_transport(body)):
        provider = DashScopeProvider("https://dashscope.example/v1", "k", "qwen-long")
        it = await provider.open_stream("role", "prompt")
        out = []
        with pytest.raises(Exception, match="quota exceeded"):
            async for t in it:
                out.append(t)
    assert out == ["part"]


@pytest.mark.asyncio
async def test_dashscope_provider_skips_malformed_frames_and_reads_tail():
    body = b"data: {oops\n\n" b'data: {"choices":[{"delta":{"content":"tail"}}]}'
    with _patch_async_client(_sse_transport(body)):
        provider = DashScopeProvider("https://dashscope.example/v1", "k", "qwen-long")
        it = await provider.open_stream("role", "prompt")
        out = [t async for t in it]
    assert out == ["tail"]


@pytest.mark.asyncio
async def test_dashscope_provider_frame_split_inside_crlf_is_delivered():
    release = asyncio.Event()

    async def body():
        yield b'data: {"choices":[{"delta":{"content":"A"}}]}\r\n\r'
        yield b"\n"
        await release.wait()
        yield b"data: [DONE]\r\n\r\n"

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body(), headers={"content-type": "text/event-stream"})

    with _patch_async_client(httpx.MockTransport(handler)):
        provider = DashScopeProvider("https://dashscope.example/v1", "k", "qwen-long")
        it = await provider.open_stream("role", "prompt")
        # The frame is complete before the provider sends anything else
        first = await asyncio.wait_for(it.__anext__(), 1.0)
        release.set()
        rest = [t async for t in it]
    assert first == "A"
    assert rest == []


def test_is_gemini_model():
    assert is_gemini_model("gemini-1.5-pro") is True
    assert is_gemini_model("qwen-long") is False


def test_gateway_picks_dashscope_for_qwen():
    gw = ProviderGateway()
    cfg = ModelConfig(model="qwen-long", base_url="https://dashscope.aliyuncs.com/compatible-mode/v1")
    assert isinstance(gw.provider_for(cfg), DashScopeProvider)


def test_gateway_picks_openai_compat_otherwise():
    gw = ProviderGateway()
    cfg = ModelConfig(model="gpt-4o", base_url="https://api.openai.com/v1")
    provider = gw.provider_for(cfg)
    assert isinstance(provider, OpenAICompatProvider)
    assert provider.model_name == "gpt-4o"


def test_gateway_rejects_gemini():
    gw = ProviderGateway()
    with pytest.raises(InvalidInput):
        gw.provider_for(ModelConfig(model="gemini-pro", base_url="https://g/v1"))


def test_gateway_decrypts_api_key():
    cipher = ApiKeyCipher.from_passphrase("k")
    gw = ProviderGateway(cipher)
    cfg = ModelConfig(model="gpt-4o", base_url="https://api/v1", api_key=cipher.encrypt("sk-real"))
    provider = gw.provider_for(cfg)
    assert provider._api_key == "sk-real"


def test_gateway_plain_key_when_not_encrypted():
    gw = ProviderGateway(ApiKeyCipher.from_passphrase("k"))
    cfg = ModelConfig(model="gpt-4o", base_url="https://api/v1", api_key="sk-plain")
    provider = gw.provider_for(cfg, key_encrypted=False)
    assert provider._api_key == "sk-plain"


def test_gateway_undecryptable_key_is_invalid_input():
    gw = ProviderGateway(ApiKeyCipher.from_passphrase("k"))
    cfg = ModelConfig(model="gpt-4o", base_url="https://api/v1", api_key="garbage")
    with pytest.raises(InvalidInput):
        gw.provider_for(cfg)


def test_config_from_settings():
    assert config_from_settings(ModelSettings()) is None
    cfg = config_from_settings(ModelSettings(OPENAI_BASE_URL="https://x/v1", OPENAI_API_KEY="sk"))
    assert cfg is not None
    assert cfg.base_url == "https://x/v1"
    assert cfg.model == "qwen-long"

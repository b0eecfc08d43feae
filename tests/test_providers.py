"""Tests for the model provider layer."""

from types import SimpleNamespace

import pytest

from toolbridge.mcp.naming import FunctionDeclaration
from toolbridge.providers.base import (
    FunctionCall,
    GeminiProvider,
    ProviderError,
    ProviderFactory,
    StreamItem,
)
from toolbridge.validation.config import Config


def part(text=None, function_call=None, thought=None):
    return SimpleNamespace(text=text, function_call=function_call, thought=thought)


def chunk(*parts):
    return SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=list(parts)))])


class FakeModels:
    """Stands in for ``client.aio.models``."""

    def __init__(self, chunks, fail=None):
        self.chunks = chunks
        self.fail = fail
        self.kwargs = None
        self.closed = False

    async def generate_content_stream(self, **kwargs):
        self.kwargs = kwargs
        if self.fail is not None:
            raise self.fail
        return self._stream()

    async def _stream(self):
        try:
            for c in self.chunks:
                if isinstance(c, BaseException):
                    raise c
                yield c
        finally:
            self.closed = True


def provider_with(models):
    provider = GeminiProvider(model="gemini-test", api_key="key")
    provider._client = SimpleNamespace(aio=SimpleNamespace(models=models))
    return provider


class TestParseChunk:
    """Splitting Gemini chunks into stream items."""

    def test_text_and_calls_in_order(self):
        fc = SimpleNamespace(name="mcp0__read", args={"path": "/a"})
        items = list(GeminiProvider._parse_chunk(chunk(part(text="Hi"), part(function_call=fc), part(text="!"))))

        assert items == [
            StreamItem(text="Hi"),
            StreamItem(function_calls=[FunctionCall(name="mcp0__read", args={"path": "/a"})]),
            StreamItem(text="!"),
        ]

    def test_thought_parts_skipped(self):
        items = list(GeminiProvider._parse_chunk(chunk(part(text="thinking...", thought=True), part(text="answer"))))

        assert items == [StreamItem(text="answer")]

    def test_empty_chunks(self):
        assert list(GeminiProvider._parse_chunk(SimpleNamespace(candidates=None))) == []
        assert list(GeminiProvider._parse_chunk(SimpleNamespace(candidates=[SimpleNamespace(content=None)]))) == []

    def test_call_without_args(self):
        fc = SimpleNamespace(name="mcp0__ping", args=None)

        (item,) = GeminiProvider._parse_chunk(chunk(part(function_call=fc)))

        assert item.function_calls == [FunctionCall(name="mcp0__ping", args={})]


class TestGeminiProvider:
    """Streaming through a stand-in client."""

    @pytest.mark.asyncio
    async def test_stream(self):
        models = FakeModels([chunk(part(text="Hel")), chunk(part(text="lo"))])
        provider = provider_with(models)
        declarations = [FunctionDeclaration("mcp0__read", "Read a file", {"type": "object"})]

        stream = await provider.generate_stream([{"role": "user", "parts": [{"text": "hi"}]}], declarations, "sys")
        items = [item async for item in stream]

        assert [i.text for i in items] == ["Hel", "lo"]
        assert models.kwargs["model"] == "gemini-test"
        config = models.kwargs["config"]
        assert "sys" in str(config.system_instruction)
        assert config.tools[0].function_declarations[0].name == "mcp0__read"
        assert models.closed

    @pytest.mark.asyncio
    async def test_no_declarations_sends_no_tools(self):
        models = FakeModels([])
        provider = provider_with(models)

        stream = await provider.generate_stream([], None, None)
        assert [item async for item in stream] == []

        assert not models.kwargs["config"].tools

    @pytest.mark.asyncio
    async def test_request_failure(self):
        provider = provider_with(FakeModels([], fail=RuntimeError("403 forbidden")))

        with pytest.raises(ProviderError, match="403 forbidden"):
            await provider.generate_stream([])

    @pytest.mark.asyncio
    async def test_stream_failure(self):
        models = FakeModels([chunk(part(text="a")), RuntimeError("reset")])
        stream = await provider_with(models).generate_stream([])

        received = []
        with pytest.raises(ProviderError, match="reset"):
            async for item in stream:
                received.append(item)
        assert [i.text for i in received] == ["a"]

    @pytest.mark.asyncio
    async def test_closing_stream_closes_sdk_stream(self):
        models = FakeModels([chunk(part(text=str(i))) for i in range(10)])
        stream = await provider_with(models).generate_stream([])

        await stream.__anext__()
        await stream.aclose()

        assert models.closed

    @pytest.mark.asyncio
    async def test_missing_api_key(self):
        with pytest.raises(ProviderError, match="GEMINI_API_KEY"):
            await GeminiProvider(model="gemini-test").generate_stream([])


class TestProviderFactory:
    """Provider creation from configuration."""

    def test_create_google(self, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEY", "env-key")

        provider = ProviderFactory.create(Config())

        assert isinstance(provider, GeminiProvider)
        assert provider.api_key == "env-key"
        assert provider.provider_name == "google"

    def test_model_timeout_passed_through(self):
        config = Config(local_config={"model": {"api_key": "k", "timeout": 45}})

        provider = ProviderFactory.create(config)

        assert provider.timeout == 45

    def test_timeout_reaches_client(self, monkeypatch):
        from google import genai

        created = {}

        def fake_client(**kwargs):
            created.update(kwargs)
            return SimpleNamespace()

        monkeypatch.setattr(genai, "Client", fake_client)

        GeminiProvider(model="gemini-test", api_key="k", timeout=2.5)._get_client()

        assert created["api_key"] == "k"
        assert created["http_options"].timeout == 2500

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown provider"):
            ProviderFactory.create(Config(local_config={"model": {"provider": "nope"}}))

    def test_available_providers(self):
        assert "google" in ProviderFactory.available_providers()

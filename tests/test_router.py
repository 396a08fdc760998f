import asyncio
import json
import time

import httpx
import pytest

from cmdforge.config_loader import CmdForgeConfig
from cmdforge.providers import InvalidResponseError, Provider, TransportError
from cmdforge.router import (
    ConfigurationError,
    GenerationCancelledError,
    GenerationTimeoutError,
    Router,
)
from cmdforge.settings import SettingsStore


@pytest.fixture(autouse=True)
def _no_env_keys(monkeypatch):
    for p in Provider:
        if p.info.api_key_env:
            monkeypatch.delenv(p.info.api_key_env, raising=False)


def _router(handler, keys: dict[str, str] | None = None, config: CmdForgeConfig | None = None) -> Router:
    settings = SettingsStore(path=None)
    for provider, key in (keys or {}).items():
        settings.set_credential(provider, key)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return Router(settings, config or CmdForgeConfig(), client=client)


def _chat_reply(content: str) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})


def test_generate_sends_bearer_and_parses():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return _chat_reply("```python\nimport os\n```")

    router = _router(handler, {"deepseek": "sk-1"})
    code = asyncio.run(router.generate("prompt text", Provider.DEEPSEEK))

    assert code.code == "import os"
    assert seen[0].headers["Authorization"] == "Bearer sk-1"
    assert json.loads(seen[0].content)["messages"][1]["content"] == "prompt text"


def test_missing_key_fails_before_network():
    calls = []

    def handler(request):
        calls.append(request)
        return _chat_reply("x")

    router = _router(handler)
    with pytest.raises(ConfigurationError):
        asyncio.run(router.generate("p", Provider.OPENAI))
    assert calls == []


def test_blank_key_counts_as_missing():
    router = _router(lambda r: _chat_reply("x"), {"groq": "   "})
    assert not router.is_connected(Provider.GROQ)
    with pytest.raises(ConfigurationError):
        asyncio.run(router.generate("p", Provider.GROQ))


def test_env_key_is_used(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "from-env")
    router = _router(lambda r: _chat_reply("x"))
    assert router.is_connected("openai")


def test_non_success_status_raises_transport_error():
    router = _router(lambda r: httpx.Response(401, text='{"error":"bad key"}'), {"claude": "k"})

    with pytest.raises(TransportError) as exc:
        asyncio.run(router.generate("p", Provider.CLAUDE))
    assert exc.value.status == 401
    assert "bad key" in exc.value.body
    assert str(exc.value).startswith("HTTP error 401")


def test_malformed_reply_raises_invalid_response():
    router = _router(lambda r: httpx.Response(200, json={"choices": []}), {"openai": "k"})
    with pytest.raises(InvalidResponseError):
        asyncio.run(router.generate("p", Provider.OPENAI))


def test_connection_failure_is_transport_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    router = _router(handler)
    with pytest.raises(TransportError) as exc:
        asyncio.run(router.generate("p", Provider.OLLAMA))
    assert exc.value.status is None


def test_timeout_maps_to_generation_timeout():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    router = _router(handler, {"deepseek": "k"})
    with pytest.raises(GenerationTimeoutError):
        asyncio.run(router.generate("p", Provider.DEEPSEEK))


def test_ollama_uses_configured_host_without_auth():
    seen: list[httpx.Request] = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"response": "print('hi')"})

    config = CmdForgeConfig(ollama={"host": "http://gpu-box:11434/"})
    router = _router(handler, config=config)
    code = asyncio.run(router.generate("p", Provider.OLLAMA, model="qwen2.5:7b"))

    assert code.code == "print('hi')"
    assert str(seen[0].url) == "http://gpu-box:11434/api/generate"
    assert "authorization" not in seen[0].headers
    assert json.loads(seen[0].content)["model"] == "qwen2.5:7b"


def test_cancel_abandons_request():
    async def scenario():
        release = asyncio.Event()

        async def handler(request):
            await release.wait()
            return _chat_reply("late")

        router = _router(handler, {"deepseek": "k"})
        cancel = asyncio.Event()
        cancel.set()
        try:
            await router.generate("p", Provider.DEEPSEEK, cancel=cancel)
        finally:
            release.set()

    with pytest.raises(GenerationCancelledError):
        asyncio.run(scenario())


def test_local_model_catalog():
    def handler(request):
        assert request.url.path == "/api/tags"
        return httpx.Response(200, json={"models": [{"name": "llama3.2:3b"}, {"name": "qwen2.5:7b"}, {}]})

    router = _router(handler)
    assert asyncio.run(router.available_models(Provider.OLLAMA)) == ["llama3.2:3b", "qwen2.5:7b"]


def test_local_model_catalog_is_empty_on_failure():
    def handler(request):
        raise httpx.ConnectError("down", request=request)

    router = _router(handler)
    assert asyncio.run(router.list_local_models()) == []


def test_remote_model_catalogs():
    router = _router(lambda r: _chat_reply("x"))
    assert "openai/gpt-oss-120b" in asyncio.run(router.available_models("groq"))
    assert asyncio.run(router.available_models("claude")) == ["claude-3-sonnet-20240229"]


def test_deadline_covers_whole_request():
    async def trickle(request):
        # Slow upstream that no per-phase httpx timeout catches
        await asyncio.sleep(5)
        return _chat_reply("print(1)")

    config = CmdForgeConfig(generation={"timeout_seconds": 0.2})
    router = _router(trickle, {"deepseek": "k"}, config=config)

    started = time.monotonic()
    with pytest.raises(GenerationTimeoutError, match="Request timed out"):
        asyncio.run(router.generate("p", Provider.DEEPSEEK))
    assert time.monotonic() - started < 3

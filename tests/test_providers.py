import json

import pytest

from cmdforge.providers import (
    ANTHROPIC_VERSION,
    InvalidResponseError,
    OllamaAdapter,
    Provider,
    build_request,
    parse_response,
    strip_code_fences,
)


def test_chat_completions_request_shape():
    wire = build_request("do something", Provider.DEEPSEEK, api_key="sk-test")

    assert wire.method == "POST"
    assert wire.url == "https://api.deepseek.com/v1/chat/completions"
    assert wire.headers["Authorization"] == "Bearer sk-test"
    assert wire.headers["Content-Type"] == "application/json"
    body = wire.json_body
    assert body["model"] == "deepseek-chat"
    assert body["temperature"] == 0.1
    assert body["max_tokens"] == 1000
    assert [m["role"] for m in body["messages"]] == ["system", "user"]
    assert body["messages"][1]["content"] == "do something"


def test_groq_uses_model_override():
    wire = build_request("x", Provider.GROQ, model="llama-3.3-70b-versatile", api_key="k")
    assert wire.url == "https://api.groq.com/openai/v1/chat/completions"
    assert wire.json_body["model"] == "llama-3.3-70b-versatile"


def test_anthropic_request_shape():
    wire = build_request("hi", Provider.CLAUDE, api_key="ak")

    assert wire.url == "https://api.anthropic.com/v1/messages"
    assert wire.headers["x-api-key"] == "ak"
    assert wire.headers["anthropic-version"] == ANTHROPIC_VERSION
    assert "Authorization" not in wire.headers
    assert wire.json_body["messages"] == [{"role": "user", "content": "hi"}]
    assert wire.json_body["max_tokens"] == 1000


def test_ollama_request_shape():
    wire = build_request("hi", Provider.OLLAMA)

    assert wire.url == "http://localhost:11434/api/generate"
    assert "Authorization" not in wire.headers
    assert wire.json_body["stream"] is False
    assert wire.json_body["prompt"] == "hi"
    assert wire.json_body["options"] == {"temperature": 0.1, "top_p": 0.9, "max_tokens": 1000}


def test_ollama_adapter_honours_host_override():
    adapter = OllamaAdapter(base_url="http://gpu-box:11434/api/generate")
    wire = adapter.build_request("hi", Provider.OLLAMA)
    assert wire.url == "http://gpu-box:11434/api/generate"


def test_parse_chat_completions_strips_fences():
    body = json.dumps({
        "choices": [{"message": {"content": "```python\nimport os\nprint(os.getcwd())\n```"}}]
    })
    code = parse_response(body, Provider.OPENAI)

    assert code.code == "import os\nprint(os.getcwd())"
    assert code.description == "Generated code"


def test_parse_anthropic_and_ollama():
    claude = parse_response({"content": [{"type": "text", "text": "print(1)"}]}, Provider.CLAUDE)
    local = parse_response('{"response": "  print(2)  \\n"}', Provider.OLLAMA)

    assert claude.code == "print(1)"
    assert local.code == "print(2)"


@pytest.mark.parametrize(
    "provider, body",
    [
        (Provider.DEEPSEEK, {"choices": []}),
        (Provider.GROQ, {"error": "rate limited"}),
        (Provider.CLAUDE, {"content": [{"type": "text"}]}),
        (Provider.OLLAMA, {"done": True}),
        (Provider.OPENAI, "not json at all"),
        (Provider.OPENAI, "[1, 2, 3]"),
    ],
)
def test_missing_content_raises(provider, body):
    with pytest.raises(InvalidResponseError):
        parse_response(body, provider)


def test_strip_code_fences_leaves_plain_code_alone():
    assert strip_code_fences("  x = 1\n") == "x = 1"
    assert strip_code_fences("```\nx = 1\n```") == "x = 1"


def test_provider_parse():
    assert Provider.parse(" Claude ") is Provider.CLAUDE
    assert Provider.parse(Provider.GROQ) is Provider.GROQ
    with pytest.raises(ValueError):
        Provider.parse("bard")


def test_only_local_provider_skips_credentials():
    assert [p for p in Provider if not p.info.requires_api_key] == [Provider.OLLAMA]


def test_closing_fence_glued_to_last_line():
    assert strip_code_fences("```python\nprint(1)```") == "print(1)"


def test_code_on_opening_fence_line_is_kept():
    text = "```import os\nprint(os.getcwd())\n```"
    assert strip_code_fences(text) == "import os\nprint(os.getcwd())"


def test_strip_code_fences_is_idempotent():
    once = strip_code_fences("```py\nx = 1\n```\n")
    assert once == "x = 1"
    assert strip_code_fences(once) == once

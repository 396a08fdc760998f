"""
CMDFORGE Providers — Wire Formats per Backend

Each backend speaks its own dialect. An adapter knows how to build
the outgoing request for its family and how to dig the generated
text back out of the reply. Everything downstream only ever sees
a GeneratedCode.

Adding a provider = one Provider member + one PROVIDER_INFO entry
+ one registration in _ADAPTERS.
"""

from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from cmdforge.models import GeneratedCode


TEMPERATURE = 0.1
TOP_P = 0.9
MAX_TOKENS = 1000
ANTHROPIC_VERSION = "2023-06-01"

SYSTEM_INSTRUCTION = (
    "You are a Python Code Generator. Your ONLY purpose is to output executable Python code. "
    "Do NOT output any explanations, markdown, conversational text, or apologies. "
    "If a request is unclear, generate code that prints an error message. "
    "Return ONLY valid Python code."
)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class TransportError(Exception):
    """Non-success HTTP status, connection failure, or unusable body."""

    def __init__(self, message: str, status: int | None = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body


class InvalidResponseError(TransportError):
    """Reply parsed, but the expected field was missing or malformed."""
    pass


# ---------------------------------------------------------------------------
# Provider catalogue
# ---------------------------------------------------------------------------

class Provider(str, Enum):
    DEEPSEEK = "deepseek"
    OPENAI = "openai"
    CLAUDE = "claude"
    GROQ = "groq"
    OLLAMA = "ollama"

    @classmethod
    def parse(cls, value: str | Provider) -> Provider:
        if isinstance(value, Provider):
            return value
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(
                f"Unknown provider: {value}. Known: {[p.value for p in cls]}"
            ) from None

    @property
    def info(self) -> ProviderInfo:
        return PROVIDER_INFO[self]


@dataclass(frozen=True)
class ProviderInfo:
    display_name: str
    base_url: str
    default_model: str
    requires_api_key: bool
    api_key_url: str = ""
    api_key_env: str = ""
    local: bool = False


PROVIDER_INFO: dict[Provider, ProviderInfo] = {
    Provider.DEEPSEEK: ProviderInfo(
        display_name="DeepSeek",
        base_url="https://api.deepseek.com/v1/chat/completions",
        default_model="deepseek-chat",
        requires_api_key=True,
        api_key_url="https://platform.deepseek.com",
        api_key_env="DEEPSEEK_API_KEY",
    ),
    Provider.OPENAI: ProviderInfo(
        display_name="OpenAI",
        base_url="https://api.openai.com/v1/chat/completions",
        default_model="gpt-4",
        requires_api_key=True,
        api_key_url="https://platform.openai.com",
        api_key_env="OPENAI_API_KEY",
    ),
    Provider.CLAUDE: ProviderInfo(
        display_name="Anthropic Claude",
        base_url="https://api.anthropic.com/v1/messages",
        default_model="claude-3-sonnet-20240229",
        requires_api_key=True,
        api_key_url="https://console.anthropic.com",
        api_key_env="ANTHROPIC_API_KEY",
    ),
    Provider.GROQ: ProviderInfo(
        display_name="Groq",
        base_url="https://api.groq.com/openai/v1/chat/completions",
        default_model="llama3-70b-8192",
        requires_api_key=True,
        api_key_url="https://console.groq.com",
        api_key_env="GROQ_API_KEY",
    ),
    Provider.OLLAMA: ProviderInfo(
        display_name="Ollama (Local)",
        base_url="http://localhost:11434/api/generate",
        default_model="llama3.2:3b",
        requires_api_key=False,
        local=True,
    ),
}

GROQ_MODELS = [
    "openai/gpt-oss-120b",
    "llama-3.3-70b-versatile",
    "llama3-70b-8192",
    "llama3-8b-8192",
    "mixtral-8x7b-32768",
    "gemma2-9b-it",
]


# ---------------------------------------------------------------------------
# Response cleanup
# ---------------------------------------------------------------------------

_FENCE_ONLY_LINE = re.compile(r"^\s*```[ \t]*[\w+.#-]*\s*$")


def strip_code_fences(text: str) -> str:
    """Trim the text and remove ``` fence markers.

    A line holding nothing but a fence (optionally with a language tag)
    is dropped. Anything else sharing a line with a fence is kept, e.g.
    ```print(1)``` becomes print(1).
    """
    content = text.strip()
    if "```" not in content:
        return content

    kept = []
    for line in content.split("\n"):
        if _FENCE_ONLY_LINE.match(line):
            continue
        kept.append(line.replace("```", ""))
    return "\n".join(kept).strip()


def _decode(body: str | bytes | dict[str, Any]) -> dict[str, Any]:
    if isinstance(body, dict):
        return body
    try:
        parsed = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InvalidResponseError(f"Invalid response from API: {e}", body=str(body)[:500])
    if not isinstance(parsed, dict):
        raise InvalidResponseError("Invalid response from API: expected a JSON object", body=str(body)[:500])
    return parsed


def _dig(payload: Any, *path: str | int) -> Any:
    """Follow a key/index path, returning None as soon as a step is missing."""
    node = payload
    for step in path:
        if isinstance(step, int):
            if not isinstance(node, list) or len(node) <= step:
                return None
        elif not isinstance(node, dict) or step not in node:
            return None
        node = node[step]
    return node


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------

class WireRequest(BaseModel):
    """An HTTP request ready to hand to the transport."""
    method: str = "POST"
    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    json_body: dict[str, Any] = Field(default_factory=dict)


class ProviderAdapter(ABC):
    """
    One adapter per wire family.

    Subclasses define:
      - build_request() — headers and JSON body for the family
      - content_path — where the generated text sits in the reply
    """

    content_path: tuple[str | int, ...] = ()

    @abstractmethod
    def build_request(
        self,
        prompt: str,
        provider: Provider,
        model: str | None = None,
        api_key: str = "",
    ) -> WireRequest:
        ...

    def parse_response(self, body: str | bytes | dict[str, Any], provider: Provider) -> GeneratedCode:
        payload = _decode(body)
        content = _dig(payload, *self.content_path)
        if not isinstance(content, str):
            path = ".".join(str(p) if isinstance(p, str) else f"[{p}]" for p in self.content_path)
            raise InvalidResponseError(
                f"Invalid response from {provider.info.display_name}: missing '{path}'",
                body=json.dumps(payload)[:500],
            )
        return GeneratedCode(code=strip_code_fences(content))

    def requires_credential(self, provider: Provider) -> bool:
        return provider.info.requires_api_key

    def default_model(self, provider: Provider) -> str:
        return provider.info.default_model

    def base_url(self, provider: Provider) -> str:
        return provider.info.base_url

    @staticmethod
    def _base_headers() -> dict[str, str]:
        return {"Accept": "application/json", "Content-Type": "application/json"}


class ChatCompletionsAdapter(ProviderAdapter):
    """OpenAI-compatible chat endpoints (DeepSeek, OpenAI, Groq)."""

    content_path = ("choices", 0, "message", "content")

    def build_request(self, prompt, provider, model=None, api_key=""):
        headers = self._base_headers()
        headers["Authorization"] = f"Bearer {api_key}"
        return WireRequest(
            url=self.base_url(provider),
            headers=headers,
            json_body={
                "model": model or self.default_model(provider),
                "messages": [
                    {"role": "system", "content": SYSTEM_INSTRUCTION},
                    {"role": "user", "content": prompt},
                ],
                "temperature": TEMPERATURE,
                "max_tokens": MAX_TOKENS,
            },
        )


class AnthropicAdapter(ProviderAdapter):
    """Anthropic messages API: key header + version header, content blocks."""

    content_path = ("content", 0, "text")

    def build_request(self, prompt, provider, model=None, api_key=""):
        headers = self._base_headers()
        headers["x-api-key"] = api_key
        headers["anthropic-version"] = ANTHROPIC_VERSION
        return WireRequest(
            url=self.base_url(provider),
            headers=headers,
            json_body={
                "model": model or self.default_model(provider),
                "max_tokens": MAX_TOKENS,
                "messages": [{"role": "user", "content": prompt}],
            },
        )


class OllamaAdapter(ProviderAdapter):
    """Local single-shot generate endpoint. No auth, flat reply."""

    content_path = ("response",)

    def __init__(self, base_url: str | None = None):
        self._base_url = base_url

    def base_url(self, provider: Provider) -> str:
        return self._base_url or provider.info.base_url

    def build_request(self, prompt, provider, model=None, api_key=""):
        return WireRequest(
            url=self.base_url(provider),
            headers=self._base_headers(),
            json_body={
                "model": model or self.default_model(provider),
                "prompt": prompt,
                "stream": False,
                "options": {
                    "temperature": TEMPERATURE,
                    "top_p": TOP_P,
                    "max_tokens": MAX_TOKENS,
                },
            },
        )


_CHAT = ChatCompletionsAdapter()

_ADAPTERS: dict[Provider, ProviderAdapter] = {
    Provider.DEEPSEEK: _CHAT,
    Provider.OPENAI: _CHAT,
    Provider.GROQ: _CHAT,
    Provider.CLAUDE: AnthropicAdapter(),
    Provider.OLLAMA: OllamaAdapter(),
}


def get_adapter(provider: Provider | str) -> ProviderAdapter:
    """Single dispatch point from provider identity to its adapter."""
    return _ADAPTERS[Provider.parse(provider)]


def build_request(
    prompt: str,
    provider: Provider | str,
    model: str | None = None,
    api_key: str = "",
) -> WireRequest:
    provider = Provider.parse(provider)
    return get_adapter(provider).build_request(prompt, provider, model, api_key)


def parse_response(body: str | bytes | dict[str, Any], provider: Provider | str) -> GeneratedCode:
    provider = Provider.parse(provider)
    return get_adapter(provider).parse_response(body, provider)

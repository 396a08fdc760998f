"""
CMDFORGE Router — Provider-Agnostic Generation Gateway

Takes a composed prompt, picks the adapter for the selected provider,
does the HTTP round-trip and hands back a GeneratedCode. Callers never
see a provider's wire format.

Nothing here retries. Every failure is surfaced to the caller as one
of the errors below (or TransportError / InvalidResponseError from
cmdforge.providers).
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, TypeVar

import httpx
from loguru import logger

from cmdforge.config_loader import CmdForgeConfig
from cmdforge.models import GeneratedCode
from cmdforge.providers import (
    GROQ_MODELS,
    OllamaAdapter,
    Provider,
    ProviderAdapter,
    TransportError,
    WireRequest,
    get_adapter,
)
from cmdforge.settings import SettingsStore

T = TypeVar("T")

CATALOG_TIMEOUT_SECONDS = 5.0


class ConfigurationError(Exception):
    """A required credential is missing. Raised before any network call."""
    pass


class GenerationTimeoutError(Exception):
    pass


class GenerationCancelledError(Exception):
    pass


class Router:
    """
    Provider-agnostic generation gateway.

    The controller calls `router.generate(prompt, provider)`.
    The router resolves adapter + credential, sends, and parses.
    """

    def __init__(
        self,
        settings: SettingsStore,
        config: CmdForgeConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings
        self.config = config or CmdForgeConfig()
        self.timeout = self.config.generation.timeout_seconds
        self._client = client
        self._local_adapter = OllamaAdapter(base_url=self.config.ollama.generate_url)

    def adapter_for(self, provider: Provider | str) -> ProviderAdapter:
        provider = Provider.parse(provider)
        if provider is Provider.OLLAMA:
            return self._local_adapter
        return get_adapter(provider)

    def is_connected(self, provider: Provider | str) -> bool:
        """Local providers are always connected; others need a non-blank key."""
        provider = Provider.parse(provider)
        if not self.adapter_for(provider).requires_credential(provider):
            return True
        return bool(self.settings.get_credential(provider).strip())

    async def generate(
        self,
        prompt: str,
        provider: Provider | str,
        model: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> GeneratedCode:
        """Send one generation request and return the canonical artifact.

        Raises:
            ConfigurationError: The provider needs an API key and none is set.
            TransportError: Non-2xx status or connection failure.
            InvalidResponseError: The reply lacked the expected field.
            GenerationTimeoutError: The request exceeded the deadline.
            GenerationCancelledError: `cancel` was set before a reply arrived.
        """
        provider = Provider.parse(provider)
        adapter = self.adapter_for(provider)

        api_key = ""
        if adapter.requires_credential(provider):
            api_key = self.settings.get_credential(provider)
            if not api_key.strip():
                raise ConfigurationError(
                    f"No API key provided for {provider.info.display_name}. "
                    f"Set one with `cmdforge set-key {provider.value} <key>` "
                    f"or the {provider.info.api_key_env} environment variable."
                )

        wire = adapter.build_request(prompt, provider, model, api_key)
        start = time.monotonic()
        logger.debug(
            f"[ROUTER] {provider.value} → {wire.json_body.get('model')} "
            f"({len(prompt)} prompt chars)"
        )

        response = await self._cancellable(self._send(wire), cancel)
        elapsed_ms = int((time.monotonic() - start) * 1000)

        if not response.is_success:
            body = response.text
            logger.error(f"[ROUTER] {provider.value} HTTP {response.status_code} after {elapsed_ms}ms")
            raise TransportError(
                f"HTTP error {response.status_code}: {body}",
                status=response.status_code,
                body=body,
            )

        code = adapter.parse_response(response.text, provider)
        logger.debug(f"[ROUTER] {provider.value} complete — {len(code.code)} chars, {elapsed_ms}ms")
        return code

    async def list_local_models(self) -> list[str]:
        """Names of models installed in the local backend. Empty on any failure."""
        url = self.config.ollama.tags_url
        try:
            async with self._session() as client:
                response = await client.get(url, timeout=CATALOG_TIMEOUT_SECONDS)
            if not response.is_success:
                return []
            models = response.json().get("models") or []
            return [m["name"] for m in models if isinstance(m, dict) and isinstance(m.get("name"), str)]
        except Exception as e:
            logger.debug(f"[ROUTER] Local model catalog unavailable: {e}")
            return []

    async def available_models(self, provider: Provider | str) -> list[str]:
        provider = Provider.parse(provider)
        if provider is Provider.OLLAMA:
            return await self.list_local_models()
        if provider is Provider.GROQ:
            return list(GROQ_MODELS)
        return [self.adapter_for(provider).default_model(provider)]

    # -- internals ----------------------------------------------------------

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                yield client

    async def _send(self, wire: WireRequest) -> httpx.Response:
        try:
            async with self._session() as client:
                # httpx times each phase separately; the deadline covers the whole exchange
                return await asyncio.wait_for(
                    client.request(
                        wire.method,
                        wire.url,
                        headers=wire.headers,
                        json=wire.json_body,
                        timeout=self.timeout,
                    ),
                    self.timeout,
                )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            logger.error(f"[ROUTER] Timed out after {self.timeout:g}s: {wire.url}")
            raise GenerationTimeoutError("Request timed out. Please try again.") from e
        except httpx.HTTPError as e:
            logger.error(f"[ROUTER] Transport failure: {e}")
            raise TransportError(f"Request to {wire.url} failed: {e}") from e

    @staticmethod
    async def _cancellable(awaitable: Awaitable[T], cancel: asyncio.Event | None) -> T:
        """Await `awaitable`, abandoning it if `cancel` is set first."""
        if cancel is None:
            return await awaitable

        work = asyncio.ensure_future(awaitable)
        stop = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait({work, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            pending: list[Any] = [t for t in (work, stop) if not t.done()]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        if work in done:
            return work.result()
        raise GenerationCancelledError("Request cancelled.")

"""Provider adapters for the AI governance core.

Every vendor sits behind the same two calls: stream_chat() yields
StreamChunk envelopes, complete_chat() returns the full text. Two wire
formats cover the built-in providers:

- OpenAI-compatible chat completions (OpenAI, DeepSeek, Gemini's
  OpenAI-compatible endpoint, and local runners such as vLLM or Ollama)
- Anthropic Messages API

Each adapter checks its own credential before any network call and raises
ConfigurationError when it is missing. HTTP failures raise AdapterError.
"""

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Tuple

import httpx

from ai_governance.config import GatewayConfig, ProviderConfig
from ai_governance.models import ChatMessage, DispatchConfig, StreamChunk

_logger = logging.getLogger("ai_governance")

DEFAULT_MAX_TOKENS = 2048
ANTHROPIC_VERSION = "2023-06-01"


class ConfigurationError(Exception):
    """Raised when a provider's credential or endpoint is not configured."""

    def __init__(self, provider: str, detail: str) -> None:
        self.provider = provider
        self.detail = detail
        super().__init__(detail)


class AdapterError(Exception):
    """Raised when a vendor API call fails."""

    def __init__(self, provider: str, detail: str, status_code: Optional[int] = None) -> None:
        self.provider = provider
        self.detail = detail
        self.status_code = status_code
        super().__init__(detail)


class ProviderAdapter(Protocol):
    """Uniform interface implemented by every vendor adapter."""

    name: str

    def stream_chat(
        self, messages: List[ChatMessage], config: DispatchConfig
    ) -> AsyncIterator[StreamChunk]:
        """Yield content chunks, then a final done chunk."""

    async def complete_chat(self, messages: List[ChatMessage], config: DispatchConfig) -> str:
        """Return the complete assistant reply."""


class _HTTPAdapter:
    """Shared plumbing: credential checks, client construction, status mapping."""

    def __init__(
        self,
        provider: ProviderConfig,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._provider = provider
        self._timeout = timeout
        self._transport = transport

    @property
    def name(self) -> str:
        return self._provider.name

    def _require_credential(self) -> None:
        provider = self._provider
        if provider.api_key_env and not provider.api_key:
            raise ConfigurationError(
                provider.name,
                "Provider '{}' is not configured: set {}.".format(
                    provider.name, provider.api_key_env
                ),
            )
        if not provider.resolved_base_url:
            raise ConfigurationError(
                provider.name,
                "Provider '{}' has no endpoint: set {}.".format(
                    provider.name, provider.base_url_env or "base_url"
                ),
            )

    def _url(self, path: str) -> str:
        return "{}{}".format(self._provider.resolved_base_url.rstrip("/"), path)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    def _raise_for_status(self, resp: httpx.Response) -> None:
        if resp.status_code == 429:
            raise AdapterError(self.name, "Provider rate limit exceeded", 429)
        if resp.status_code >= 400:
            raise AdapterError(
                self.name,
                "Provider returned HTTP {}".format(resp.status_code),
                resp.status_code,
            )

    async def _post_json(self, path: str, body: Dict[str, Any], headers: Dict[str, str]) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                resp = await client.post(self._url(path), json=body, headers=headers)
        except httpx.TimeoutException as exc:
            raise AdapterError(self.name, "Provider request timed out: {}".format(exc)) from exc
        except httpx.TransportError as exc:
            raise AdapterError(self.name, "Cannot reach provider: {}".format(exc)) from exc
        self._raise_for_status(resp)
        return resp.json()

    async def _stream_events(
        self, path: str, body: Dict[str, Any], headers: Dict[str, str]
    ) -> AsyncIterator[Dict[str, Any]]:
        """Yield the JSON payload of every SSE ``data:`` line."""
        try:
            async with self._client() as client:
                async with client.stream("POST", self._url(path), json=body, headers=headers) as resp:
                    self._raise_for_status(resp)
                    async for line in resp.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        data = line[len("data:"):].strip()
                        if data == "[DONE]":
                            break
                        try:
                            parsed = json.loads(data)
                        except json.JSONDecodeError:
                            _logger.debug("Skipping malformed SSE line from %s", self.name)
                            continue
                        if isinstance(parsed, dict):
                            yield parsed
        except httpx.TimeoutException as exc:
            raise AdapterError(self.name, "Provider request timed out: {}".format(exc)) from exc
        except httpx.TransportError as exc:
            raise AdapterError(self.name, "Cannot reach provider: {}".format(exc)) from exc


class OpenAICompatibleAdapter(_HTTPAdapter):
    """Adapter for any endpoint speaking the OpenAI chat completions API."""

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        api_key = self._provider.api_key
        if api_key:
            headers["Authorization"] = "Bearer {}".format(api_key)
        return headers

    @staticmethod
    def _convert_messages(messages: List[ChatMessage]) -> List[Dict[str, Any]]:
        converted = []
        for m in messages:
            if isinstance(m.content, str):
                converted.append({"role": m.role, "content": m.content})
                continue
            parts: List[Dict[str, Any]] = []
            for part in m.content:
                if part.type == "text":
                    parts.append({"type": "text", "text": part.text or ""})
                elif part.source is not None:
                    parts.append(
                        {
                            "type": "image_url",
                            "image_url": {
                                "url": "data:{};base64,{}".format(
                                    part.source.media_type, part.source.data
                                )
                            },
                        }
                    )
            converted.append({"role": m.role, "content": parts})
        return converted

    def _payload(self, messages: List[ChatMessage], config: DispatchConfig, stream: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": config.model,
            "messages": self._convert_messages(messages),
            "max_tokens": config.max_tokens or DEFAULT_MAX_TOKENS,
        }
        if config.temperature is not None:
            payload["temperature"] = config.temperature
        if stream:
            payload["stream"] = True
        return payload

    async def complete_chat(self, messages: List[ChatMessage], config: DispatchConfig) -> str:
        self._require_credential()
        data = await self._post_json(
            "/chat/completions", self._payload(messages, config, stream=False), self._headers()
        )
        choices = data.get("choices") or [{}]
        message = choices[0].get("message") or {}
        return message.get("content") or ""

    async def stream_chat(
        self, messages: List[ChatMessage], config: DispatchConfig
    ) -> AsyncIterator[StreamChunk]:
        self._require_credential()
        events = self._stream_events(
            "/chat/completions", self._payload(messages, config, stream=True), self._headers()
        )
        try:
            async for event in events:
                if "error" in event:
                    error = event["error"]
                    message = error.get("message") if isinstance(error, dict) else str(error)
                    yield StreamChunk(error=message or "Provider stream error")
                    return
                for choice in event.get("choices") or []:
                    content = (choice.get("delta") or {}).get("content")
                    if content:
                        yield StreamChunk(content=content)
        finally:
            await events.aclose()
        yield StreamChunk(done=True)


class AnthropicAdapter(_HTTPAdapter):
    """Adapter for the Anthropic Messages API."""

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self._provider.api_key or "",
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

    @staticmethod
    def _convert_messages(messages: List[ChatMessage]) -> Tuple[str, List[Dict[str, Any]]]:
        """Split out system prompts; Anthropic takes them as a top-level field."""
        system_parts: List[str] = []
        converted: List[Dict[str, Any]] = []
        for m in messages:
            if m.role == "system":
                system_parts.append(m.text())
                continue
            if isinstance(m.content, str):
                converted.append({"role": m.role, "content": m.content})
                continue
            blocks: List[Dict[str, Any]] = []
            for part in m.content:
                if part.type == "text":
                    blocks.append({"type": "text", "text": part.text or ""})
                elif part.source is not None:
                    blocks.append(
                        {
                            "type": "image",
                            "source": {
                                "type": "base64",
                                "media_type": part.source.media_type,
                                "data": part.source.data,
                            },
                        }
                    )
            converted.append({"role": m.role, "content": blocks})
        return "\n".join(system_parts).strip(), converted

    def _payload(self, messages: List[ChatMessage], config: DispatchConfig, stream: bool) -> Dict[str, Any]:
        system, converted = self._convert_messages(messages)
        payload: Dict[str, Any] = {
            "model": config.model,
            "messages": converted,
            "max_tokens": config.max_tokens or DEFAULT_MAX_TOKENS,
        }
        if system:
            payload["system"] = system
        if config.temperature is not None:
            payload["temperature"] = config.temperature
        if stream:
            payload["stream"] = True
        return payload

    async def complete_chat(self, messages: List[ChatMessage], config: DispatchConfig) -> str:
        self._require_credential()
        data = await self._post_json(
            "/v1/messages", self._payload(messages, config, stream=False), self._headers()
        )
        blocks = data.get("content") or []
        return "".join(
            block.get("text", "")
            for block in blocks
            if isinstance(block, dict) and block.get("type") == "text"
        )

    async def stream_chat(
        self, messages: List[ChatMessage], config: DispatchConfig
    ) -> AsyncIterator[StreamChunk]:
        self._require_credential()
        events = self._stream_events(
            "/v1/messages", self._payload(messages, config, stream=True), self._headers()
        )
        try:
            async for event in events:
                event_type = event.get("type")
                if event_type == "content_block_delta":
                    delta = event.get("delta") or {}
                    if delta.get("type") == "text_delta" and delta.get("text"):
                        yield StreamChunk(content=delta["text"])
                elif event_type == "error":
                    error = event.get("error") or {}
                    yield StreamChunk(error=error.get("message") or "Provider stream error")
                    return
                elif event_type == "message_stop":
                    break
        finally:
            await events.aclose()
        yield StreamChunk(done=True)


_ADAPTER_CLASSES = {
    "openai": OpenAICompatibleAdapter,
    "anthropic": AnthropicAdapter,
}


def build_adapters(
    config: GatewayConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, ProviderAdapter]:
    """Build the provider-tag -> adapter lookup table from configuration."""
    adapters: Dict[str, ProviderAdapter] = {}
    for name, provider in config.providers.items():
        adapter_cls = _ADAPTER_CLASSES[provider.adapter]
        adapters[name] = adapter_cls(provider, transport=transport)
    return adapters

"""Shared test fixtures for the AI governance core tests."""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

import pytest

from ai_governance.audit import PolicyAuditLog
from ai_governance.config import GatewayConfig, load_config
from ai_governance.gateway import Gateway
from ai_governance.models import ChatMessage, DispatchConfig, StreamChunk
from ai_governance.policy import PolicyEngine, RuntimeMode, RuntimeState
from ai_governance.provider import AdapterError
from ai_governance.registry import ModelRegistry
from ai_governance.tracker import OperationTracker


def _make_config(tmp_path: Path, overrides: Optional[Dict] = None) -> str:
    """Write a minimal test config and return its path."""
    config = {
        "providers": {
            "test-provider": {
                "adapter": "openai",
                "base_url": "https://api.example.com/v1",
                "api_key_env": "TEST_API_KEY",
                "default_model": "test-model",
            }
        },
        "model_aliases": {"legacy-chat": "gpt-4o"},
        "model_rates": {"test-model": {"input": 2.0, "output": 4.0}},
        "audit_capacity": 50,
        "ops_capacity": 40,
        "log_file": str(tmp_path / "test.log"),
    }
    if overrides:
        config.update(overrides)

    path = tmp_path / "test_config.json"
    path.write_text(json.dumps(config))
    return str(path)


def make_registry(*available_providers: str) -> ModelRegistry:
    """Default catalog where only the given provider tags have credentials."""
    return ModelRegistry(
        has_credential=lambda provider: provider in available_providers,
        aliases={"synergy-default": "synseekr-qwen2.5-7b"},
    )


class FakeAdapter:
    """In-memory adapter that replays scripted chunks.

    ``fail_after`` raises AdapterError once that many content chunks have
    been yielded; ``error_chunk`` ends the stream with a vendor error chunk.
    """

    def __init__(
        self,
        name: str,
        chunks: Optional[List[str]] = None,
        fail_after: Optional[int] = None,
        error_chunk: Optional[str] = None,
        reply: str = "complete reply",
        exc: Optional[Exception] = None,
    ) -> None:
        self.name = name
        self.chunks = list(chunks) if chunks is not None else ["Hello", ", ", "world"]
        self.fail_after = fail_after
        self.error_chunk = error_chunk
        self.reply = reply
        self.exc = exc
        self.calls: List[DispatchConfig] = []
        self.messages: List[List[ChatMessage]] = []
        self.cancelled = False

    def _failure(self) -> Exception:
        return self.exc or AdapterError(self.name, "upstream exploded")

    async def stream_chat(self, messages: List[ChatMessage], config: DispatchConfig):
        self.calls.append(config)
        self.messages.append(messages)
        emitted = 0
        try:
            for text in self.chunks:
                if self.fail_after is not None and emitted == self.fail_after:
                    raise self._failure()
                yield StreamChunk(content=text)
                emitted += 1
            if self.fail_after is not None:
                raise self._failure()
            if self.error_chunk is not None:
                yield StreamChunk(error=self.error_chunk)
                return
            yield StreamChunk(done=True)
        except GeneratorExit:
            self.cancelled = True
            raise

    async def complete_chat(self, messages: List[ChatMessage], config: DispatchConfig) -> str:
        self.calls.append(config)
        self.messages.append(messages)
        if self.exc is not None:
            raise self.exc
        return self.reply


@dataclass
class GatewayHarness:
    gateway: Gateway
    registry: ModelRegistry
    state: RuntimeState
    audit: PolicyAuditLog
    tracker: OperationTracker
    adapters: Dict[str, FakeAdapter]


@pytest.fixture()
def test_config_path(tmp_path: Path) -> str:
    """Return the path to a temporary test config file."""
    return _make_config(tmp_path)


@pytest.fixture()
def test_config(test_config_path: str) -> GatewayConfig:
    """Return a loaded test GatewayConfig."""
    return load_config(test_config_path)


@pytest.fixture()
def registry_factory() -> Callable[..., ModelRegistry]:
    return make_registry


@pytest.fixture()
def fake_adapter() -> Callable[..., FakeAdapter]:
    return FakeAdapter


@pytest.fixture()
def make_harness() -> Callable[..., GatewayHarness]:
    """Factory for a gateway wired to fake adapters.

    By default anthropic and synseekr have credentials and both have a
    fake adapter registered.
    """

    def _build(
        available: Iterable[str] = ("anthropic", "synseekr"),
        adapters: Optional[Dict[str, FakeAdapter]] = None,
        mode: RuntimeMode = RuntimeMode.ONLINE,
    ) -> GatewayHarness:
        available = tuple(available)
        registry = make_registry(*available)
        if adapters is None:
            adapters = {name: FakeAdapter(name) for name in available}
        state = RuntimeState(registry, mode=mode)
        audit = PolicyAuditLog(registry)
        tracker = OperationTracker()
        gateway = Gateway(PolicyEngine(registry), audit, tracker, adapters, state)
        return GatewayHarness(gateway, registry, state, audit, tracker, adapters)

    return _build


@pytest.fixture()
def user_messages() -> List[ChatMessage]:
    return [
        ChatMessage(role="system", content="You are a careful legal assistant."),
        ChatMessage(role="user", content="Summarize the deposition."),
    ]

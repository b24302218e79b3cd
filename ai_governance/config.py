"""Configuration loader for the AI governance core.

Reads a JSON config file containing provider definitions, legacy model
aliases, per-model cost rates, and buffer sizes. API keys and local runner
URLs are resolved from environment variables at access time, so credential
presence always reflects the current environment.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

ADAPTER_KINDS = ("openai", "anthropic")
RUNTIME_MODES = ("online", "restricted_offline")


@dataclass
class ProviderConfig:
    """Configuration for a single provider tag (anthropic, openai, ...)."""

    name: str
    adapter: str
    base_url: str
    api_key_env: Optional[str] = None
    base_url_env: Optional[str] = None
    default_model: str = ""

    @property
    def api_key(self) -> Optional[str]:
        """Resolve the API key from the environment variable."""
        if not self.api_key_env:
            return None
        return os.getenv(self.api_key_env)

    @property
    def resolved_base_url(self) -> str:
        """Base URL, overridden by ``base_url_env`` when that is set."""
        if self.base_url_env:
            override = os.getenv(self.base_url_env)
            if override:
                return override
        return self.base_url

    @property
    def has_credential(self) -> bool:
        """True when the provider can be reached with the current environment.

        External APIs need their key. Local runners have no key and are
        considered configured once their server URL variable is set.
        """
        if self.api_key_env:
            return bool(self.api_key)
        if self.base_url_env:
            return bool(os.getenv(self.base_url_env))
        return bool(self.base_url)


@dataclass
class ModelRate:
    """USD cost per million tokens."""

    input: float
    output: float


@dataclass
class GatewayConfig:
    """Top-level configuration."""

    providers: Dict[str, ProviderConfig] = field(default_factory=dict)
    model_aliases: Dict[str, str] = field(default_factory=dict)
    model_rates: Dict[str, ModelRate] = field(default_factory=dict)
    catalog_file: Optional[str] = None
    default_mode: str = "online"
    default_model: str = "claude-sonnet-4-5"
    audit_capacity: int = 500
    ops_capacity: int = 500
    log_file: Optional[str] = None

    def has_credential(self, provider_key: str) -> bool:
        """Credential lookup used by the model registry."""
        provider = self.providers.get(provider_key)
        return provider is not None and provider.has_credential


DEFAULT_PROVIDERS: Dict[str, Dict[str, Any]] = {
    "anthropic": {
        "adapter": "anthropic",
        "base_url": "https://api.anthropic.com",
        "base_url_env": "AI_INTEGRATIONS_ANTHROPIC_BASE_URL",
        "api_key_env": "AI_INTEGRATIONS_ANTHROPIC_API_KEY",
        "default_model": "claude-sonnet-4-5",
    },
    "openai": {
        "adapter": "openai",
        "base_url": "https://api.openai.com/v1",
        "base_url_env": "AI_INTEGRATIONS_OPENAI_BASE_URL",
        "api_key_env": "AI_INTEGRATIONS_OPENAI_API_KEY",
        "default_model": "gpt-4o",
    },
    "gemini": {
        "adapter": "openai",
        "base_url": "https://generativelanguage.googleapis.com/v1beta/openai",
        "api_key_env": "AI_INTEGRATIONS_GEMINI_API_KEY",
        "default_model": "gemini-2.5-flash",
    },
    "deepseek": {
        "adapter": "openai",
        "base_url": "https://api.deepseek.com/v1",
        "api_key_env": "DEEPSEEK_API_KEY",
        "default_model": "deepseek-chat",
    },
    "synseekr": {
        "adapter": "openai",
        "base_url": "",
        "base_url_env": "SYNSEEKR_URL",
        "default_model": "synseekr-qwen2.5-7b",
    },
    "private": {
        "adapter": "openai",
        "base_url": "",
        "base_url_env": "PRIVATE_AI_SERVER_URL",
        "default_model": "synergy-private",
    },
}

DEFAULT_MODEL_ALIASES: Dict[str, str] = {
    "synergy-default": "synseekr-qwen2.5-7b",
    "synergy-legal": "synseekr-qwen2.5-7b",
    "synergy-research": "synseekr-qwen2.5-7b",
    "synseekr-default": "synseekr-qwen2.5-7b",
}

DEFAULT_MODEL_RATES: Dict[str, Dict[str, float]] = {
    "claude-sonnet-4-5": {"input": 3.0, "output": 15.0},
    "claude-3-5-sonnet-20241022": {"input": 3.0, "output": 15.0},
    "claude-3-opus-20240229": {"input": 15.0, "output": 75.0},
    "claude-3-haiku-20240307": {"input": 0.25, "output": 1.25},
    "gpt-5.2": {"input": 5.0, "output": 15.0},
    "gpt-4o": {"input": 2.5, "output": 10.0},
    "gpt-4o-mini": {"input": 0.15, "output": 0.6},
    "gemini-2.5-flash": {"input": 0.075, "output": 0.30},
    "gemini-2.5-pro": {"input": 1.25, "output": 5.0},
    "gemini-3-flash-preview": {"input": 0.1, "output": 0.4},
}


def default_config() -> GatewayConfig:
    """Return the built-in configuration used when no file is supplied."""
    return _build_config({})


def load_config(path: Union[str, Path]) -> GatewayConfig:
    """Load configuration from a JSON file.

    Sections missing from the file fall back to the built-in defaults;
    providers and rates declared in the file are merged over the defaults.

    Args:
        path: Path to the JSON config file.

    Returns:
        A fully resolved GatewayConfig instance.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ValueError: If the config file contains invalid data.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = json.load(f)

    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a JSON object at the top level")

    return _build_config(raw)


def _build_config(raw: Dict[str, Any]) -> GatewayConfig:
    providers_raw: Dict[str, Dict[str, Any]] = dict(DEFAULT_PROVIDERS)
    providers_raw.update(raw.get("providers", {}))

    providers: Dict[str, ProviderConfig] = {}
    for name, prov in providers_raw.items():
        adapter = prov.get("adapter", "openai")
        if adapter not in ADAPTER_KINDS:
            raise ValueError(
                "Provider '{}' has unknown adapter '{}' (expected one of {})".format(
                    name, adapter, ", ".join(ADAPTER_KINDS)
                )
            )
        providers[name] = ProviderConfig(
            name=name,
            adapter=adapter,
            base_url=prov.get("base_url", ""),
            api_key_env=prov.get("api_key_env"),
            base_url_env=prov.get("base_url_env"),
            default_model=prov.get("default_model", ""),
        )

    aliases = dict(DEFAULT_MODEL_ALIASES)
    aliases.update(raw.get("model_aliases", {}))

    rates_raw: Dict[str, Dict[str, float]] = dict(DEFAULT_MODEL_RATES)
    rates_raw.update(raw.get("model_rates", {}))
    rates: Dict[str, ModelRate] = {}
    for model_id, rate in rates_raw.items():
        try:
            model_rate = ModelRate(input=float(rate["input"]), output=float(rate["output"]))
        except (KeyError, TypeError) as exc:
            raise ValueError(
                "Rate for model '{}' must define input and output".format(model_id)
            ) from exc
        if model_rate.input <= 0 or model_rate.output <= 0:
            raise ValueError("Rates for model '{}' must be positive".format(model_id))
        rates[model_id] = model_rate

    default_mode = raw.get("default_mode", "online")
    if default_mode not in RUNTIME_MODES:
        raise ValueError("default_mode must be one of {}".format(", ".join(RUNTIME_MODES)))

    audit_capacity = int(raw.get("audit_capacity", 500))
    ops_capacity = int(raw.get("ops_capacity", 500))
    if audit_capacity <= 0 or ops_capacity <= 0:
        raise ValueError("Buffer capacities must be positive")

    return GatewayConfig(
        providers=providers,
        model_aliases=aliases,
        model_rates=rates,
        catalog_file=raw.get("catalog_file"),
        default_mode=default_mode,
        default_model=raw.get("default_model", "claude-sonnet-4-5"),
        audit_capacity=audit_capacity,
        ops_capacity=ops_capacity,
        log_file=raw.get("log_file"),
    )

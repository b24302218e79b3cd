"""Model registry: the static catalog of models the core can route to.

Each entry declares capabilities, the data-handling policy that governs what
payload sensitivity may reach it, and whether it needs the internet.
Availability is derived from credential presence when the registry is built
and only changes on an explicit refresh().
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

import yaml

_logger = logging.getLogger("ai_governance")


class ProviderType(str, Enum):
    """How a model is hosted."""

    EXTERNAL_API = "external_api"
    LOCAL_RUNNER = "local_runner"
    EMBEDDED_LOCAL = "embedded_local"


LOCAL_PROVIDER_TYPES = frozenset({ProviderType.LOCAL_RUNNER, ProviderType.EMBEDDED_LOCAL})


class DataPolicy(str, Enum):
    """The most sensitive payload a model may receive."""

    LOCAL_ONLY = "local_only"
    SANITIZED_OK = "sanitized_ok"
    UNRESTRICTED = "unrestricted"


class Capability(str, Enum):
    """What a catalog model can be used for."""

    CHAT = "chat"
    VISION = "vision"
    EMBEDDINGS = "embeddings"
    RERANK = "rerank"
    TRANSCRIPTION = "transcription"
    CODE = "code"
    NER = "ner"
    PII_DETECTION = "pii_detection"
    DOCUMENT_ANALYSIS = "document_analysis"
    RAG = "rag"


@dataclass(frozen=True)
class ModelCatalogEntry:
    """A single model known to the registry."""

    model_id: str
    display_name: str
    provider: str
    provider_type: ProviderType
    capabilities: FrozenSet[Capability]
    data_policy: DataPolicy
    requires_internet: bool
    max_context: int
    max_tokens: int
    cost_hint: str = "medium"
    latency_hint: str = "medium"
    available: bool = False

    def __post_init__(self) -> None:
        if self.provider_type in LOCAL_PROVIDER_TYPES:
            if self.requires_internet or self.data_policy != DataPolicy.LOCAL_ONLY:
                raise ValueError(
                    "Local model '{}' must not require internet and must be "
                    "local_only".format(self.model_id)
                )
        if self.max_context < 0 or self.max_tokens < 0:
            raise ValueError("Model '{}' has negative limits".format(self.model_id))
        if Capability.CHAT in self.capabilities and (
            self.max_context <= 0 or self.max_tokens <= 0
        ):
            raise ValueError(
                "Chat model '{}' needs positive max_context and max_tokens".format(
                    self.model_id
                )
            )

    @property
    def is_local(self) -> bool:
        return self.provider_type in LOCAL_PROVIDER_TYPES

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for API responses (capabilities sorted for stable output)."""
        return {
            "model_id": self.model_id,
            "display_name": self.display_name,
            "provider": self.provider,
            "provider_type": self.provider_type.value,
            "capabilities": sorted(c.value for c in self.capabilities),
            "data_policy": self.data_policy.value,
            "requires_internet": self.requires_internet,
            "max_context": self.max_context,
            "max_tokens": self.max_tokens,
            "cost_hint": self.cost_hint,
            "latency_hint": self.latency_hint,
            "available": self.available,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelCatalogEntry":
        """Create an entry from a catalog mapping (YAML-parsed)."""
        try:
            return cls(
                model_id=data["model_id"],
                display_name=data.get("display_name", data["model_id"]),
                provider=data["provider"],
                provider_type=ProviderType(data["provider_type"]),
                capabilities=frozenset(Capability(c) for c in data.get("capabilities", [])),
                data_policy=DataPolicy(data["data_policy"]),
                requires_internet=bool(data["requires_internet"]),
                max_context=int(data.get("max_context", 0)),
                max_tokens=int(data.get("max_tokens", 0)),
                cost_hint=data.get("cost_hint", "medium"),
                latency_hint=data.get("latency_hint", "medium"),
            )
        except KeyError as exc:
            raise ValueError("Catalog entry is missing field {}".format(exc)) from exc


def _entry(
    model_id: str,
    display_name: str,
    provider: str,
    provider_type: ProviderType,
    capabilities: Iterable[Capability],
    max_context: int,
    max_tokens: int,
    cost_hint: str,
    latency_hint: str,
) -> ModelCatalogEntry:
    local = provider_type in LOCAL_PROVIDER_TYPES
    return ModelCatalogEntry(
        model_id=model_id,
        display_name=display_name,
        provider=provider,
        provider_type=provider_type,
        capabilities=frozenset(capabilities),
        data_policy=DataPolicy.LOCAL_ONLY if local else DataPolicy.SANITIZED_OK,
        requires_internet=not local,
        max_context=max_context,
        max_tokens=max_tokens,
        cost_hint=cost_hint,
        latency_hint=latency_hint,
    )


_EXT = ProviderType.EXTERNAL_API
_EMB = ProviderType.EMBEDDED_LOCAL
_RUN = ProviderType.LOCAL_RUNNER
_C = Capability

# Declaration order matters: preferred_local_fallback() walks it front to back.
DEFAULT_CATALOG: List[ModelCatalogEntry] = [
    _entry("claude-sonnet-4-5", "Claude Sonnet 4.5", "anthropic", _EXT,
           [_C.CHAT, _C.VISION, _C.CODE], 200000, 8192, "medium", "medium"),
    _entry("claude-3-5-sonnet-20241022", "Claude 3.5 Sonnet", "anthropic", _EXT,
           [_C.CHAT, _C.VISION, _C.CODE], 200000, 8192, "medium", "medium"),
    _entry("claude-3-opus-20240229", "Claude 3 Opus", "anthropic", _EXT,
           [_C.CHAT, _C.VISION, _C.CODE], 200000, 4096, "high", "slow"),
    _entry("claude-3-haiku-20240307", "Claude 3 Haiku", "anthropic", _EXT,
           [_C.CHAT, _C.VISION], 200000, 4096, "low", "fast"),
    _entry("gpt-5.2", "GPT-5.2", "openai", _EXT,
           [_C.CHAT, _C.VISION, _C.CODE], 128000, 16384, "high", "medium"),
    _entry("gpt-4o", "GPT-4o", "openai", _EXT,
           [_C.CHAT, _C.VISION, _C.CODE], 128000, 4096, "medium", "fast"),
    _entry("gpt-4o-mini", "GPT-4o Mini", "openai", _EXT,
           [_C.CHAT, _C.VISION], 128000, 4096, "low", "fast"),
    _entry("gemini-2.5-flash", "Gemini 2.5 Flash", "gemini", _EXT,
           [_C.CHAT, _C.VISION], 1000000, 8192, "low", "fast"),
    _entry("gemini-2.5-pro", "Gemini 2.5 Pro", "gemini", _EXT,
           [_C.CHAT, _C.VISION], 1000000, 8192, "medium", "medium"),
    _entry("gemini-3-flash-preview", "Gemini 3 Flash", "gemini", _EXT,
           [_C.CHAT, _C.VISION], 1000000, 8192, "low", "fast"),
    _entry("deepseek-chat", "DeepSeek Chat", "deepseek", _EXT,
           [_C.CHAT, _C.CODE], 64000, 4096, "low", "medium"),
    _entry("synseekr-qwen2.5-7b", "SynSeekr Qwen2.5 7B", "synseekr", _EMB,
           [_C.CHAT, _C.RAG, _C.DOCUMENT_ANALYSIS, _C.CODE], 32768, 8192, "free", "medium"),
    _entry("synseekr-bge-m3", "SynSeekr BGE-M3 Embeddings", "synseekr", _EMB,
           [_C.EMBEDDINGS, _C.RERANK], 8192, 0, "free", "fast"),
    _entry("synseekr-whisper", "SynSeekr Whisper (Audio)", "synseekr", _EMB,
           [_C.TRANSCRIPTION], 0, 0, "free", "slow"),
    _entry("synseekr-gliner", "SynSeekr GLiNER (NER)", "synseekr", _EMB,
           [_C.NER], 0, 0, "free", "fast"),
    _entry("synseekr-presidio", "SynSeekr Presidio (PII)", "synseekr", _EMB,
           [_C.PII_DETECTION], 0, 0, "free", "fast"),
    _entry("synergy-private", "Synergy Private LLM", "private", _RUN,
           [_C.CHAT], 32768, 4096, "free", "medium"),
]


def load_catalog(path: str) -> List[ModelCatalogEntry]:
    """Load a model catalog from a YAML file.

    The file holds a top-level ``models`` list; each item uses the field
    names of ModelCatalogEntry. Availability is never read from the file.

    Raises:
        FileNotFoundError: If the catalog file does not exist.
        ValueError: If the YAML is invalid or an entry is malformed.
    """
    catalog_path = Path(path)
    if not catalog_path.exists():
        raise FileNotFoundError("Catalog file not found: {}".format(path))

    with open(catalog_path, "r") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or not isinstance(raw.get("models"), list):
        raise ValueError("Catalog file must contain a 'models' list")

    entries = [ModelCatalogEntry.from_dict(item) for item in raw["models"]]
    seen = set()
    for entry in entries:
        if entry.model_id in seen:
            raise ValueError("Duplicate model_id in catalog: {}".format(entry.model_id))
        seen.add(entry.model_id)
    return entries


class ModelRegistry:
    """Lookup and filtering over the model catalog."""

    def __init__(
        self,
        specs: Optional[Iterable[ModelCatalogEntry]] = None,
        has_credential: Optional[Callable[[str], bool]] = None,
        aliases: Optional[Dict[str, str]] = None,
    ) -> None:
        self._specs = list(specs if specs is not None else DEFAULT_CATALOG)
        self._has_credential = has_credential or (lambda provider: False)
        self._aliases = dict(aliases or {})
        self._entries: List[ModelCatalogEntry] = []
        self._by_id: Dict[str, ModelCatalogEntry] = {}
        self.refresh()

    def refresh(self) -> None:
        """Re-derive availability from the credential lookup."""
        entries = [
            replace(spec, available=bool(self._has_credential(spec.provider)))
            for spec in self._specs
        ]
        self._entries = entries
        self._by_id = {e.model_id: e for e in entries}
        _logger.info(
            "Model registry built: %d models, %d available",
            len(entries),
            sum(1 for e in entries if e.available),
        )

    def resolve_model_id(self, model_id: str) -> str:
        return self._aliases.get(model_id, model_id)

    def lookup(self, model_id: str) -> Optional[ModelCatalogEntry]:
        return self._by_id.get(self.resolve_model_id(model_id))

    def list(
        self,
        requires_internet: Optional[bool] = None,
        provider_type: Optional[ProviderType] = None,
        available_only: bool = False,
        capability: Optional[Capability] = None,
    ) -> List[ModelCatalogEntry]:
        """Filter the catalog, preserving declaration order."""
        result = []
        for entry in self._entries:
            if requires_internet is not None and entry.requires_internet != requires_internet:
                continue
            if provider_type is not None and entry.provider_type != provider_type:
                continue
            if available_only and not entry.available:
                continue
            if capability is not None and not entry.supports(capability):
                continue
            result.append(entry)
        return result

    def available_models(self) -> List[ModelCatalogEntry]:
        return self.list(available_only=True)

    def local_models(self) -> List[ModelCatalogEntry]:
        return self.list(requires_internet=False, available_only=True)

    def external_models(self) -> List[ModelCatalogEntry]:
        return self.list(requires_internet=True, available_only=True)

    def preferred_local_fallback(
        self,
        local_only: bool = False,
        capability: Capability = Capability.CHAT,
    ) -> Optional[ModelCatalogEntry]:
        """Pick the substitute model used when the requested one cannot serve.

        The first available local model with ``capability`` (chat by
        default) in declaration order wins. Without one, ``local_only``
        callers get None; everyone else gets the first available model with
        the capability. Chat lookups finally settle for any available model.
        """
        available = self.available_models()
        for entry in available:
            if entry.is_local and entry.supports(capability):
                return entry
        if local_only:
            return None
        for entry in available:
            if entry.supports(capability):
                return entry
        if capability != Capability.CHAT:
            return None
        return available[0] if available else None


def build_registry(config: Any) -> ModelRegistry:
    """Build a registry from a GatewayConfig (catalog file, aliases, credentials)."""
    specs = load_catalog(config.catalog_file) if config.catalog_file else None
    return ModelRegistry(
        specs=specs,
        has_credential=config.has_credential,
        aliases=config.model_aliases,
    )

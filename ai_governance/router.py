"""Routing: resolve a policy decision's effective provider to an adapter.

The router looks up the provider tag in the adapter table and returns the
adapter together with the dispatch config the gateway should send. When the
policy engine substituted a model, the config is rewritten here so the
caller's request never sees the substitution.
"""

from dataclasses import dataclass
from typing import Mapping

from ai_governance.models import DispatchConfig
from ai_governance.policy import PolicyDecision
from ai_governance.provider import ProviderAdapter


@dataclass
class RouteResult:
    """Resolved route for an allowed decision."""

    adapter: ProviderAdapter
    config: DispatchConfig


class RoutingError(Exception):
    """Raised when a provider tag has no registered adapter."""

    def __init__(self, provider: str, reason: str) -> None:
        self.provider = provider
        self.reason = reason
        super().__init__("Routing error for provider '{}': {}".format(provider, reason))


def effective_config(config: DispatchConfig, decision: PolicyDecision) -> DispatchConfig:
    """Return ``config`` pointed at the decision's effective model and provider."""
    if (
        config.model == decision.effective_model_id
        and config.provider == decision.effective_provider
    ):
        return config
    return config.model_copy(
        update={
            "model": decision.effective_model_id,
            "provider": decision.effective_provider,
        }
    )


def resolve_route(
    adapters: Mapping[str, ProviderAdapter],
    decision: PolicyDecision,
    config: DispatchConfig,
) -> RouteResult:
    """Resolve an allowed decision to an adapter and effective dispatch config.

    Args:
        adapters: Provider tag -> adapter lookup table.
        decision: An allowed policy decision.
        config: The caller's dispatch config.

    Returns:
        A RouteResult with the adapter and the (possibly substituted) config.

    Raises:
        RoutingError: If no adapter is registered for the effective provider.
    """
    adapter = adapters.get(decision.effective_provider)
    if adapter is None:
        available = ", ".join(sorted(adapters.keys())) or "(none)"
        raise RoutingError(
            decision.effective_provider,
            "No adapter registered. Available providers: {}".format(available),
        )
    return RouteResult(adapter=adapter, config=effective_config(config, decision))

"""Model router: selects a transport per request role.

Roles map onto optional model overrides from ``[routing]``:

1. ``plan``, ``verify`` and ``summary`` use their override model when set
2. Every other role (and roles without an override) uses the default model
3. All routed providers share the configured endpoint and credentials
"""

from __future__ import annotations

from anvil.config import Config
from anvil.models.base import ModelNotAvailableError, ModelProvider
from anvil.models.openai_provider import OpenAICompatibleProvider

DEFAULT_ROLE = "default"
ROUTED_ROLES = ("plan", "verify", "summary")


class ModelRouter:
    """Routes model requests to the appropriate provider based on role."""

    def __init__(self, providers: dict[str, ModelProvider] | None = None):
        self._providers: dict[str, ModelProvider] = providers or {}

    @classmethod
    def from_config(cls, config: Config) -> ModelRouter:
        """Create a router from configuration, instantiating all providers."""
        providers: dict[str, ModelProvider] = {
            DEFAULT_ROLE: OpenAICompatibleProvider(config.model, provider_name=DEFAULT_ROLE),
        }
        for role in ROUTED_ROLES:
            override = config.routing.model_for(role)
            if override and override != config.model.model:
                providers[role] = OpenAICompatibleProvider(
                    config.model,
                    provider_name=role,
                    model_override=override,
                )
        return cls(providers)

    def select(self, role: str = DEFAULT_ROLE) -> ModelProvider:
        """Return the provider for ``role``, falling back to the default one."""
        provider = self._providers.get(role) or self._providers.get(DEFAULT_ROLE)
        if provider is None:
            raise ModelNotAvailableError(f"No model configured for role: {role}")
        return provider

    async def health(self) -> dict[str, bool]:
        """Check health of all configured models."""
        results = {}
        for role, provider in self._providers.items():
            try:
                results[role] = await provider.health_check()
            except Exception:
                results[role] = False
        return results

    async def close(self) -> None:
        """Close all provider HTTP clients."""
        for provider in self._providers.values():
            await provider.close()

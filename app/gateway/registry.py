"""Provider Registry: the ordered fallback chain.

The position of a provider in the registry is its fallback priority:
cheap paid models first, then high-quality free models, then broad free
fallbacks. The registry is immutable once built.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator

from app.gateway.types import CostTier, ProviderDescriptor, ProviderKind

logger = logging.getLogger(__name__)


DEFAULT_PROVIDERS: tuple[ProviderDescriptor, ...] = (
    ProviderDescriptor(
        id="google/gemini-2.5-flash",
        cost_tier=CostTier.CHEAP_PAID,
        supports_structured_output=True,
    ),
    ProviderDescriptor(
        id="google/gemini-2.0-flash-exp:free",
        cost_tier=CostTier.FREE_HIGH_QUALITY,
        supports_structured_output=True,
    ),
    ProviderDescriptor(
        id="meta-llama/llama-3.3-70b-instruct:free",
        cost_tier=CostTier.FREE_FAST,
    ),
)


class ProviderRegistry:
    """Immutable, validated, ordered list of provider descriptors."""

    def __init__(self, providers: Iterable[ProviderDescriptor]):
        self._providers: tuple[ProviderDescriptor, ...] = tuple(providers)
        self._validate()
        self._by_id = {p.id: p for p in self._providers}

    def _validate(self) -> None:
        if not self._providers:
            raise ValueError("Provider registry must contain at least one provider")

        seen: set[str] = set()
        for provider in self._providers:
            if provider.id in seen:
                raise ValueError(f"Duplicate provider id in registry: {provider.id}")
            seen.add(provider.id)

        for prev, cur in zip(self._providers, self._providers[1:]):
            if cur.cost_tier.rank < prev.cost_tier.rank:
                raise ValueError(
                    f"Provider {cur.id} ({cur.cost_tier.value}) must not follow "
                    f"{prev.id} ({prev.cost_tier.value}): order is cheap-paid → free-high-quality → free-fast"
                )

    def __iter__(self) -> Iterator[ProviderDescriptor]:
        return iter(self._providers)

    def __len__(self) -> int:
        return len(self._providers)

    def __getitem__(self, index: int) -> ProviderDescriptor:
        return self._providers[index]

    @property
    def providers(self) -> tuple[ProviderDescriptor, ...]:
        return self._providers

    @property
    def kinds(self) -> set[ProviderKind]:
        return {p.kind for p in self._providers}

    def get(self, provider_id: str) -> ProviderDescriptor | None:
        return self._by_id.get(provider_id)

    def chain_for(self, provider_override: str | None = None) -> tuple[ProviderDescriptor, ...]:
        """Providers to walk for one invocation."""
        if provider_override is None:
            return self._providers
        provider = self.get(provider_override)
        if provider is None:
            raise KeyError(f"Unknown provider: {provider_override}")
        return (provider,)

    def to_list(self) -> list[dict]:
        return [
            {
                "id": p.id,
                "cost_tier": p.cost_tier.value,
                "supports_structured_output": p.supports_structured_output,
                "kind": p.kind.value,
                "model": p.model,
            }
            for p in self._providers
        ]

    @classmethod
    def from_config(cls, entries: list[dict] | None) -> ProviderRegistry:
        """Build from the GATEWAY_PROVIDERS setting, falling back to the defaults."""
        if not entries:
            return cls(DEFAULT_PROVIDERS)
        registry = cls(ProviderDescriptor.from_dict(entry) for entry in entries)
        logger.info("Loaded %d providers from configuration: %s", len(registry), [p.id for p in registry])
        return registry

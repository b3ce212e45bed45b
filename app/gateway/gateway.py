"""Inference Gateway: facade wiring the gateway components together.

Entry point for the HTTP layer and any other caller:
  1. Ingress guard: `allow_origin` (per-origin sliding window)
  2. Pre-flight: `check_quota` / reservation for the authenticated identity
  3. Invocation: sequential fallback across the provider registry
  4. Accounting: successful invocations count against the identity's quota
  5. Post-processing: `extract_structured` for JSON-bearing replies

Usage:
    gateway = build_gateway(settings)

    if not await gateway.allow_origin(client_ip):
        ...  # 429

    result = await gateway.invoke("Hello", InvocationOptions(), identity=user_id)
"""

from __future__ import annotations

import logging
from typing import Any

from app.core.config import Settings
from app.gateway.normalizer import extract_structured
from app.gateway.orchestrator import FallbackOrchestrator
from app.gateway.quota import (
    QuotaAccountant,
    SqlTierResolver,
    SqlUsageStore,
)
from app.gateway.rate_limiter import OriginRateLimiter, RedisRateLimiter, SlidingWindowRateLimiter
from app.gateway.registry import ProviderRegistry
from app.gateway.types import (
    ErrorKind,
    GatewayResult,
    InvocationOptions,
    ProviderKind,
    QuotaStatus,
)
from app.gateway.vendor_adapters import BaseVendorAdapter, get_adapter

logger = logging.getLogger(__name__)


class InferenceGateway:
    """Collaborator interface over registry, orchestrator, rate limiter and quota.

    Anonymous invocations (identity=None) skip quota accounting entirely.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        orchestrator: FallbackOrchestrator,
        rate_limiter: OriginRateLimiter,
        quota: QuotaAccountant,
        defaults: InvocationOptions | None = None,
    ):
        self.registry = registry
        self.orchestrator = orchestrator
        self.rate_limiter = rate_limiter
        self.quota = quota
        self.defaults = defaults or InvocationOptions()

    async def allow_origin(self, origin_key: str) -> bool:
        allowed = await self.rate_limiter.allow(origin_key)
        if not allowed:
            logger.info("Rate limited origin %s", origin_key, extra={"origin": origin_key})
        return allowed

    async def check_quota(self, identity: str) -> QuotaStatus:
        return await self.quota.check_limit(identity)

    async def invoke(
        self,
        prompt: str,
        options: InvocationOptions | None = None,
        identity: str | None = None,
    ) -> GatewayResult:
        """Run one invocation, charging the identity's quota only on success.

        An identity out of quota gets USER_QUOTA_EXCEEDED without any
        provider being contacted.
        """
        options = options or self.defaults

        if identity is None:
            return await self.orchestrator.invoke(prompt, options)

        reservation = await self.quota.reserve(identity)
        if reservation is None:
            status = await self.quota.check_limit(identity)
            return GatewayResult.failure(
                ErrorKind.USER_QUOTA_EXCEEDED,
                f"Monthly AI request limit reached ({status.used}/{status.limit}, plan {status.tier})",
            )

        try:
            result = await self.orchestrator.invoke(prompt, options)
            if result.success:
                await reservation.commit()
        finally:
            # no-op once committed
            await reservation.release()
        return result

    def extract_structured(self, raw_text: str) -> Any:
        return extract_structured(raw_text)

    async def usage_summary(self, identity: str) -> dict:
        return await self.quota.usage_summary(identity)

    def get_status(self) -> dict:
        """Get gateway status: chain, configured kinds and ingress limiter stats."""
        configured = set(self.orchestrator.adapters)
        return {
            "providers": [
                {**entry, "configured": ProviderKind(entry["kind"]) in configured}
                for entry in self.registry.to_list()
            ],
            "configured_kinds": sorted(kind.value for kind in configured),
            "rate_limiter": self.rate_limiter.get_stats(),
            "plan_limits": {tier: limit if limit is not None else "unlimited" for tier, limit in self.quota.plan_limits.items()},
            "period_key": self.quota.current_period_key(),
        }


def build_adapters(settings: Settings, kinds: set[ProviderKind]) -> dict[ProviderKind, BaseVendorAdapter]:
    """Create adapters for every kind in use that has an API key."""
    adapters: dict[ProviderKind, BaseVendorAdapter] = {}

    if ProviderKind.OPENROUTER in kinds and settings.openrouter_api_key:
        adapters[ProviderKind.OPENROUTER] = get_adapter(
            ProviderKind.OPENROUTER,
            settings.openrouter_api_key,
            api_url=settings.openrouter_api_url,
            referer=settings.openrouter_referer,
            title=settings.openrouter_title,
        )
    if ProviderKind.OPENAI_COMPATIBLE in kinds and settings.openai_compatible_api_key:
        adapters[ProviderKind.OPENAI_COMPATIBLE] = get_adapter(
            ProviderKind.OPENAI_COMPATIBLE,
            settings.openai_compatible_api_key,
            api_url=settings.openai_compatible_api_url,
        )
    if ProviderKind.GEMINI in kinds and settings.gemini_api_key:
        adapters[ProviderKind.GEMINI] = get_adapter(ProviderKind.GEMINI, settings.gemini_api_key)

    missing = kinds - set(adapters)
    if missing:
        logger.warning(
            "No API key for provider kinds %s; their providers will fail over",
            ", ".join(sorted(kind.value for kind in missing)),
        )
    return adapters


def build_rate_limiter(settings: Settings) -> OriginRateLimiter:
    if settings.rate_limit_backend == "redis":
        from redis.asyncio import Redis

        return RedisRateLimiter(
            Redis.from_url(settings.redis_url, decode_responses=True),
            max_requests=settings.rate_limit_requests,
            window_seconds=settings.rate_limit_window_seconds,
        )
    return SlidingWindowRateLimiter(
        max_requests=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
        max_origins=settings.rate_limit_max_origins,
        sweep_interval=settings.rate_limit_sweep_seconds,
    )


def build_gateway(settings: Settings) -> InferenceGateway:
    """Construct a gateway from application settings (Postgres-backed quota)."""
    from app.db.postgres import async_session_factory

    registry = ProviderRegistry.from_config(settings.gateway_providers)
    orchestrator = FallbackOrchestrator(
        registry,
        build_adapters(settings, registry.kinds),
        backoff_seconds=settings.gateway_backoff_seconds,
    )
    quota = QuotaAccountant(
        SqlUsageStore(async_session_factory),
        SqlTierResolver(async_session_factory, default_tier=settings.default_plan),
        settings.plan_limits,
        default_tier=settings.default_plan,
    )
    defaults = InvocationOptions(
        max_tokens=settings.gateway_max_tokens,
        temperature=settings.gateway_temperature,
        per_attempt_timeout=settings.gateway_attempt_timeout_seconds,
        deadline=settings.gateway_deadline_seconds,
    )

    logger.info(
        "Inference gateway ready: %d providers, kinds configured: %s",
        len(registry),
        ", ".join(sorted(kind.value for kind in orchestrator.adapters)) or "none",
    )
    return InferenceGateway(registry, orchestrator, build_rate_limiter(settings), quota, defaults=defaults)

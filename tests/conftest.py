import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.config import settings

# Override settings for tests
settings.jwt_secret_key = "test-secret-key-that-is-at-least-32-bytes-long"
settings.app_env = "development"
settings.allow_anonymous = False

from app.db.base import Base  # noqa: E402
from app.gateway.gateway import InferenceGateway  # noqa: E402
from app.gateway.orchestrator import FallbackOrchestrator  # noqa: E402
from app.gateway.quota import InMemoryUsageStore, QuotaAccountant, StaticTierResolver  # noqa: E402
from app.gateway.rate_limiter import SlidingWindowRateLimiter  # noqa: E402
from app.gateway.registry import ProviderRegistry  # noqa: E402
from app.gateway.types import CostTier, InvocationOptions, ProviderDescriptor, ProviderKind  # noqa: E402
from app.models import Subscription, UsageRecord  # noqa: E402, F401
from tests.fakes import ScriptedAdapter  # noqa: E402

TEST_PLAN_LIMITS = {"free": 20, "plus": 100, "pro": 500, "ultra": None}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def registry() -> ProviderRegistry:
    return ProviderRegistry(
        [
            ProviderDescriptor(id="p1", cost_tier=CostTier.CHEAP_PAID, supports_structured_output=True),
            ProviderDescriptor(id="p2", cost_tier=CostTier.FREE_HIGH_QUALITY),
            ProviderDescriptor(id="p3", cost_tier=CostTier.FREE_FAST),
        ]
    )


@pytest.fixture
def make_orchestrator(registry):
    def _make(script: dict[str, list], backoff_seconds: float = 0.0) -> tuple[FallbackOrchestrator, ScriptedAdapter]:
        adapter = ScriptedAdapter(script)
        orchestrator = FallbackOrchestrator(registry, {ProviderKind.OPENROUTER: adapter}, backoff_seconds=backoff_seconds)
        return orchestrator, adapter

    return _make


@pytest.fixture
def quota() -> QuotaAccountant:
    return QuotaAccountant(
        InMemoryUsageStore(),
        StaticTierResolver(default_tier="free", tiers={"vip": "ultra", "plus-user": "plus"}),
        TEST_PLAN_LIMITS,
        default_tier="free",
    )


@pytest.fixture
def make_gateway(registry, quota):
    def _make(script: dict[str, list], max_requests: int = 10) -> tuple[InferenceGateway, ScriptedAdapter]:
        adapter = ScriptedAdapter(script)
        orchestrator = FallbackOrchestrator(registry, {ProviderKind.OPENROUTER: adapter}, backoff_seconds=0.0)
        gateway = InferenceGateway(
            registry,
            orchestrator,
            SlidingWindowRateLimiter(max_requests=max_requests, window_seconds=60),
            quota,
            defaults=InvocationOptions(per_attempt_timeout=0.5),
        )
        return gateway, adapter

    return _make


@pytest.fixture
async def session_factory():
    """In-memory SQLite; StaticPool keeps one connection so tables persist."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()

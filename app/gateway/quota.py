"""Quota Accountant: per-identity monthly AI request limits.

Usage is counted per (identity, calendar month). The limit comes from the
identity's plan tier and may be unlimited (None).

    status = await accountant.check_limit(user_id)      # read-only pre-flight
    reservation = await accountant.reserve(user_id)     # pre-flight + hold a slot
    ...
    await reservation.commit()    # success → count it
    await reservation.release()   # failure → never consumes quota

`reserve` holds an in-process pending slot until commit/release, so
concurrent requests from one identity cannot jointly pass a check that
would overshoot the limit. Across several processes each one may still let
a single extra request through at the boundary.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.metrics import QUOTA_REJECTIONS
from app.gateway.types import QuotaStatus
from app.models.usage import Subscription, UsageRecord

logger = logging.getLogger(__name__)


def period_key_for(moment: datetime) -> str:
    """Calendar-month bucket, e.g. '2026-01'."""
    return f"{moment.year:04d}-{moment.month:02d}"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Usage stores
# ---------------------------------------------------------------------------


class UsageStore(Protocol):
    async def get(self, identity: str, period_key: str) -> int: ...

    async def increment(self, identity: str, period_key: str) -> int: ...


class InMemoryUsageStore:
    """Process-local usage counters (tests, single-instance demos)."""

    def __init__(self):
        self._counts: dict[tuple[str, str], int] = {}
        self._lock = asyncio.Lock()

    async def get(self, identity: str, period_key: str) -> int:
        return self._counts.get((identity, period_key), 0)

    async def increment(self, identity: str, period_key: str) -> int:
        async with self._lock:
            key = (identity, period_key)
            self._counts[key] = self._counts.get(key, 0) + 1
            return self._counts[key]


class SqlUsageStore:
    """Usage counters in the `usage_records` table.

    Increments are a single upsert, so concurrent increments never lose
    updates regardless of how many app instances share the database.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get(self, identity: str, period_key: str) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(UsageRecord.count).where(
                    UsageRecord.identity == identity,
                    UsageRecord.period_key == period_key,
                )
            )
            return result.scalar_one_or_none() or 0

    async def increment(self, identity: str, period_key: str) -> int:
        async with self.session_factory() as session:
            dialect = session.bind.dialect.name
            insert = sqlite_insert if dialect == "sqlite" else pg_insert
            stmt = (
                insert(UsageRecord)
                .values(identity=identity, period_key=period_key, count=1, updated_at=_utc_now())
                .on_conflict_do_update(
                    index_elements=[UsageRecord.identity, UsageRecord.period_key],
                    set_={"count": UsageRecord.count + 1, "updated_at": _utc_now()},
                )
                .returning(UsageRecord.count)
            )
            result = await session.execute(stmt)
            count = result.scalar_one()
            await session.commit()
            return count


# ---------------------------------------------------------------------------
# Tier resolvers
# ---------------------------------------------------------------------------


class TierResolver(Protocol):
    async def tier_for(self, identity: str) -> str: ...


class StaticTierResolver:
    """Fixed tier per identity, with a default for everyone else."""

    def __init__(self, default_tier: str = "free", tiers: dict[str, str] | None = None):
        self.default_tier = default_tier
        self.tiers = dict(tiers or {})

    async def tier_for(self, identity: str) -> str:
        return self.tiers.get(identity, self.default_tier)


class SqlTierResolver:
    """Tier from the `subscriptions` table; missing or inactive → default tier."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], default_tier: str = "free"):
        self.session_factory = session_factory
        self.default_tier = default_tier

    async def tier_for(self, identity: str) -> str:
        async with self.session_factory() as session:
            sub = await session.get(Subscription, identity)
        if sub is None or sub.status != "active":
            return self.default_tier
        return sub.plan_tier or self.default_tier


# ---------------------------------------------------------------------------
# Accountant
# ---------------------------------------------------------------------------


class QuotaReservation:
    """A pending quota slot. Exactly one of commit/release takes effect."""

    def __init__(self, accountant: QuotaAccountant, identity: str, status: QuotaStatus):
        self._accountant = accountant
        self.identity = identity
        self.status = status
        self._done = False

    async def commit(self) -> None:
        if self._done:
            return
        self._done = True
        try:
            await self._accountant.increment(self.identity)
        finally:
            self._accountant._release_pending(self.identity)

    async def release(self) -> None:
        if self._done:
            return
        self._done = True
        self._accountant._release_pending(self.identity)


class QuotaAccountant:
    def __init__(
        self,
        store: UsageStore,
        tier_resolver: TierResolver,
        plan_limits: dict[str, int | None],
        default_tier: str = "free",
        clock: Callable[[], datetime] = _utc_now,
    ):
        """
        Args:
            store: Usage counter persistence
            tier_resolver: Maps identity → plan tier name
            plan_limits: Tier name → monthly request limit (None = unlimited)
            default_tier: Tier used when a resolved tier is not in plan_limits
            clock: Wall clock (UTC) used to derive the period key
        """
        self.store = store
        self.tier_resolver = tier_resolver
        self.plan_limits = dict(plan_limits)
        self.default_tier = default_tier
        self._clock = clock
        self._pending: dict[str, int] = {}
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, identity: str) -> asyncio.Lock:
        lock = self._locks.get(identity)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[identity] = lock
        return lock

    def current_period_key(self) -> str:
        return period_key_for(self._clock())

    async def _resolve_limit(self, identity: str) -> tuple[str, int | None]:
        tier = await self.tier_resolver.tier_for(identity)
        if tier not in self.plan_limits:
            logger.warning("Unknown plan tier %r for %s; using %r", tier, identity, self.default_tier)
            tier = self.default_tier
        return tier, self.plan_limits.get(tier)

    async def _status(self, identity: str, pending: int = 0) -> QuotaStatus:
        period_key = self.current_period_key()
        tier, limit = await self._resolve_limit(identity)
        used = await self.store.get(identity, period_key)

        if limit is None:
            return QuotaStatus(allowed=True, used=used, limit=None, remaining=None, tier=tier, period_key=period_key)

        remaining = max(0, limit - used)
        return QuotaStatus(
            allowed=used + pending < limit,
            used=used,
            limit=limit,
            remaining=remaining,
            tier=tier,
            period_key=period_key,
        )

    async def check_limit(self, identity: str) -> QuotaStatus:
        """Read-only pre-flight check for the current period."""
        return await self._status(identity)

    async def increment(self, identity: str) -> int:
        """Count one successful request. Recorded for unlimited tiers too."""
        count = await self.store.increment(identity, self.current_period_key())
        logger.debug("Usage for %s is now %d", identity, count, extra={"identity": identity})
        return count

    async def reserve(self, identity: str) -> QuotaReservation | None:
        """Check and hold a slot atomically (per process).

        Returns None when the identity is out of quota; the returned status
        is then available via `check_limit`.
        """
        async with self._lock_for(identity):
            status = await self._status(identity, pending=self._pending.get(identity, 0))
            if not status.allowed:
                QUOTA_REJECTIONS.labels(tier=status.tier).inc()
                logger.info(
                    "Quota exhausted for %s (%d/%s, tier %s)",
                    identity,
                    status.used,
                    status.limit,
                    status.tier,
                    extra={"identity": identity},
                )
                return None
            self._pending[identity] = self._pending.get(identity, 0) + 1
        return QuotaReservation(self, identity, status)

    def _release_pending(self, identity: str) -> None:
        self._pending[identity] -= 1
        if self._pending[identity] <= 0:
            del self._pending[identity]

    async def usage_summary(self, identity: str) -> dict:
        status = await self.check_limit(identity)
        return {"identity": identity, "ai": status.to_dict(), "tier": status.tier}

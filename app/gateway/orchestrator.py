"""Fallback Orchestrator: sequential, cost-ordered provider walk.

For one invocation the registry is walked in order, one provider at a time:

  TRYING(0) ──fail──▶ TRYING(1) ──fail──▶ ... ──fail──▶ EXHAUSTED
      │                   │
   success             success
      ▼                   ▼
  SUCCEEDED           SUCCEEDED

Attempts never run in parallel: a cheap provider that answers must not be
raced by a paid one. Each attempt owns its own timeout; an optional outer
deadline clips every attempt to the remaining budget and stops the walk
once the budget is spent.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable
from datetime import datetime, timezone
from enum import Enum

from app.core.metrics import INVOCATIONS, PROVIDER_ATTEMPT_DURATION, PROVIDER_ATTEMPTS
from app.gateway.registry import ProviderRegistry
from app.gateway.types import (
    AttemptOutcome,
    ErrorKind,
    GatewayResult,
    InvocationAttempt,
    InvocationOptions,
    ProviderDescriptor,
    ProviderKind,
    ProviderReply,
    ProviderRequest,
)
from app.gateway.vendor_adapters import BaseVendorAdapter

logger = logging.getLogger(__name__)


class FallbackState(str, Enum):
    TRYING = "trying"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"


class FallbackMachine:
    """State machine over one fallback chain.

    The machine only moves forward: each recorded attempt either ends the
    walk (success, or failure of the last provider) or advances to the
    next provider. It never skips a provider without a recorded attempt.
    """

    def __init__(self, chain: Iterable[ProviderDescriptor]):
        self._chain: tuple[ProviderDescriptor, ...] = tuple(chain)
        self.index = 0
        self.attempts: list[InvocationAttempt] = []
        self.reply: ProviderReply | None = None
        self.deadline_hit = False
        self.state = FallbackState.TRYING if self._chain else FallbackState.EXHAUSTED

    @property
    def current(self) -> ProviderDescriptor:
        if self.state is not FallbackState.TRYING:
            raise RuntimeError(f"No current provider in state {self.state.value}")
        return self._chain[self.index]

    @property
    def has_next(self) -> bool:
        return self.index + 1 < len(self._chain)

    @property
    def last_attempt(self) -> InvocationAttempt | None:
        return self.attempts[-1] if self.attempts else None

    def record(self, attempt: InvocationAttempt, reply: ProviderReply | None = None) -> FallbackState:
        """Record the attempt for the current provider and transition."""
        if attempt.provider_id != self.current.id:
            raise ValueError(f"Attempt for {attempt.provider_id} recorded while trying {self.current.id}")

        self.attempts.append(attempt)
        if attempt.outcome is AttemptOutcome.SUCCESS:
            self.reply = reply
            self.state = FallbackState.SUCCEEDED
        elif self.has_next:
            self.index += 1
        else:
            self.state = FallbackState.EXHAUSTED
        return self.state

    def abort_deadline(self) -> None:
        """Stop the walk because the outer deadline is spent."""
        if self.state is FallbackState.TRYING:
            self.deadline_hit = True
            self.state = FallbackState.EXHAUSTED


class FallbackOrchestrator:
    """Walks the provider registry until one provider returns usable text.

    Usage:
        orchestrator = FallbackOrchestrator(registry, adapters)
        result = await orchestrator.invoke("Hello", InvocationOptions(max_tokens=500))
        if result.success:
            print(result.provider_id, result.content)
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        adapters: dict[ProviderKind, BaseVendorAdapter],
        backoff_seconds: float = 0.5,
    ):
        """
        Args:
            registry: Ordered fallback chain
            adapters: Configured adapter per provider kind; kinds without an
                adapter (no API key) fail their attempts and fall through
            backoff_seconds: Pause after a provider-side 429/402 before the
                next provider
        """
        self.registry = registry
        self.adapters = adapters
        self.backoff_seconds = backoff_seconds
        self._sleep = asyncio.sleep
        self._clock = time.monotonic

    async def invoke(self, prompt: str, options: InvocationOptions | None = None) -> GatewayResult:
        options = options or InvocationOptions()
        machine = FallbackMachine(self.registry.chain_for(options.provider_override))
        deadline_at = self._clock() + options.deadline if options.deadline is not None else None

        while machine.state is FallbackState.TRYING:
            provider = machine.current
            timeout = options.per_attempt_timeout

            if deadline_at is not None:
                remaining = deadline_at - self._clock()
                if remaining <= 0:
                    machine.abort_deadline()
                    break
                timeout = min(timeout, remaining)

            request = ProviderRequest(
                model=provider.model,
                prompt=prompt,
                system_prompt=options.system_prompt,
                max_tokens=options.max_tokens,
                temperature=options.temperature,
            )
            attempt, reply = await self._attempt(provider, request, timeout)
            machine.record(attempt, reply)

            if machine.state is FallbackState.TRYING and attempt.outcome.wants_backoff and self.backoff_seconds > 0:
                delay = self.backoff_seconds
                if deadline_at is not None:
                    delay = min(delay, max(deadline_at - self._clock(), 0.0))
                if delay > 0:
                    await self._sleep(delay)

        result = self._result(machine)
        INVOCATIONS.labels(result="success" if result.success else result.error_kind.value).inc()
        return result

    async def _attempt(
        self,
        provider: ProviderDescriptor,
        request: ProviderRequest,
        timeout: float,
    ) -> tuple[InvocationAttempt, ProviderReply]:
        """Run one bounded attempt against one provider."""
        started_at = datetime.now(timezone.utc)
        start = time.monotonic()
        adapter = self.adapters.get(provider.kind)

        if adapter is None:
            reply = ProviderReply(
                outcome=AttemptOutcome.PROVIDER_ERROR,
                detail=f"No API key configured for {provider.kind.value}",
            )
        else:
            try:
                # wait_for cancels the in-flight call on expiry; the adapter's
                # client context closes the connection on cancellation
                reply = await asyncio.wait_for(adapter.send(request, timeout=timeout), timeout=timeout)
            except asyncio.TimeoutError:
                reply = ProviderReply(outcome=AttemptOutcome.TIMEOUT, detail=f"Timeout after {timeout:.1f}s")
            except Exception as e:
                logger.exception("Adapter for %s raised unexpectedly", provider.id)
                reply = ProviderReply(outcome=AttemptOutcome.PROVIDER_ERROR, detail=f"{type(e).__name__}: {e}")

        if reply.outcome is AttemptOutcome.SUCCESS and not reply.content.strip():
            reply.outcome = AttemptOutcome.EMPTY_RESPONSE
            reply.detail = reply.detail or "Empty response"

        elapsed = time.monotonic() - start
        attempt = InvocationAttempt(
            provider_id=provider.id,
            started_at=started_at,
            duration_ms=int(elapsed * 1000),
            outcome=reply.outcome,
            status_code=reply.status_code,
            detail=reply.detail,
        )

        PROVIDER_ATTEMPTS.labels(provider=provider.id, outcome=reply.outcome.value).inc()
        PROVIDER_ATTEMPT_DURATION.labels(provider=provider.id).observe(elapsed)

        if reply.outcome is AttemptOutcome.SUCCESS:
            logger.info(
                "Provider %s answered in %dms",
                provider.id,
                attempt.duration_ms,
                extra={"provider_id": provider.id, "outcome": reply.outcome.value, "duration_ms": attempt.duration_ms},
            )
        else:
            logger.warning(
                "Provider %s failed: %s (%s)",
                provider.id,
                reply.outcome.value,
                reply.detail,
                extra={"provider_id": provider.id, "outcome": reply.outcome.value, "duration_ms": attempt.duration_ms},
            )

        return attempt, reply

    @staticmethod
    def _result(machine: FallbackMachine) -> GatewayResult:
        attempts = tuple(machine.attempts)

        if machine.state is FallbackState.SUCCEEDED:
            reply = machine.reply
            return GatewayResult.ok(
                content=reply.content,
                provider_id=machine.last_attempt.provider_id,
                attempts=attempts,
                model_version=reply.model_version,
                input_tokens=reply.input_tokens,
                output_tokens=reply.output_tokens,
            )

        last = machine.last_attempt
        last_desc = f"{last.provider_id}: {last.outcome.value}" if last else "no provider attempted"
        if last and last.detail:
            last_desc += f" ({last.detail})"

        if machine.deadline_hit:
            return GatewayResult.failure(
                ErrorKind.DEADLINE_EXCEEDED,
                f"Deadline exceeded after {len(attempts)} attempt(s). Last: {last_desc}",
                attempts=attempts,
            )
        return GatewayResult.failure(
            ErrorKind.ALL_PROVIDERS_EXHAUSTED,
            f"All providers failed. Last: {last_desc}",
            attempts=attempts,
        )

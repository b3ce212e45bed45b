"""Tests for the fallback orchestrator and its state machine."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from app.gateway.orchestrator import FallbackMachine, FallbackOrchestrator, FallbackState
from app.gateway.types import (
    AttemptOutcome,
    CostTier,
    ErrorKind,
    InvocationAttempt,
    InvocationOptions,
    ProviderDescriptor,
)
from tests.fakes import Hang, fail, ok


def _attempt(provider_id: str, outcome: AttemptOutcome) -> InvocationAttempt:
    return InvocationAttempt(
        provider_id=provider_id,
        started_at=datetime.now(timezone.utc),
        duration_ms=1,
        outcome=outcome,
    )


# ==========================================================================
# Test: FallbackMachine
# ==========================================================================


class TestFallbackMachine:
    @pytest.fixture
    def chain(self):
        return (
            ProviderDescriptor(id="a", cost_tier=CostTier.CHEAP_PAID),
            ProviderDescriptor(id="b", cost_tier=CostTier.FREE_FAST),
        )

    def test_starts_trying_first_provider(self, chain):
        machine = FallbackMachine(chain)
        assert machine.state is FallbackState.TRYING
        assert machine.current.id == "a"
        assert machine.has_next

    def test_failure_advances(self, chain):
        machine = FallbackMachine(chain)
        assert machine.record(_attempt("a", AttemptOutcome.TIMEOUT)) is FallbackState.TRYING
        assert machine.current.id == "b"
        assert not machine.has_next

    def test_success_terminates(self, chain):
        machine = FallbackMachine(chain)
        reply = ok("hi")
        assert machine.record(_attempt("a", AttemptOutcome.SUCCESS), reply) is FallbackState.SUCCEEDED
        assert machine.reply is reply
        with pytest.raises(RuntimeError):
            machine.current

    def test_last_failure_exhausts(self, chain):
        machine = FallbackMachine(chain)
        machine.record(_attempt("a", AttemptOutcome.TIMEOUT))
        assert machine.record(_attempt("b", AttemptOutcome.NETWORK_ERROR)) is FallbackState.EXHAUSTED
        assert [a.provider_id for a in machine.attempts] == ["a", "b"]

    def test_attempt_for_wrong_provider_rejected(self, chain):
        machine = FallbackMachine(chain)
        with pytest.raises(ValueError):
            machine.record(_attempt("b", AttemptOutcome.SUCCESS))

    def test_empty_chain_is_exhausted(self):
        machine = FallbackMachine(())
        assert machine.state is FallbackState.EXHAUSTED
        assert machine.last_attempt is None

    def test_abort_deadline(self, chain):
        machine = FallbackMachine(chain)
        machine.abort_deadline()
        assert machine.state is FallbackState.EXHAUSTED
        assert machine.deadline_hit


# ==========================================================================
# Test: FallbackOrchestrator
# ==========================================================================


class TestFallbackOrchestrator:
    @pytest.mark.asyncio
    async def test_first_success_stops_walk(self, make_orchestrator):
        orchestrator, adapter = make_orchestrator({"p1": [ok("cheap")], "p2": [ok("x")], "p3": [ok("y")]})

        result = await orchestrator.invoke("Hello")

        assert result.success
        assert result.content == "cheap"
        assert result.provider_id == "p1"
        assert adapter.calls == ["p1"]
        assert len(result.attempts) == 1

    @pytest.mark.asyncio
    async def test_timeout_then_empty_then_success(self, make_orchestrator):
        orchestrator, adapter = make_orchestrator(
            {"p1": [Hang(5.0)], "p2": [fail(AttemptOutcome.EMPTY_RESPONSE)], "p3": [ok("hello")]}
        )

        result = await orchestrator.invoke("Hello", InvocationOptions(per_attempt_timeout=0.05))

        assert result.success
        assert result.content == "hello"
        assert result.provider_id == "p3"
        assert [a.outcome for a in result.attempts] == [
            AttemptOutcome.TIMEOUT,
            AttemptOutcome.EMPTY_RESPONSE,
            AttemptOutcome.SUCCESS,
        ]
        assert adapter.calls == ["p1", "p2", "p3"]

    @pytest.mark.asyncio
    async def test_all_fail_exhausted(self, make_orchestrator):
        orchestrator, _ = make_orchestrator(
            {
                "p1": [fail(AttemptOutcome.PROVIDER_ERROR, 500, "HTTP 500: boom")],
                "p2": [fail(AttemptOutcome.EMPTY_RESPONSE)],
                "p3": [fail(AttemptOutcome.NETWORK_ERROR, detail="ConnectError: refused")],
            }
        )

        result = await orchestrator.invoke("Hello")

        assert not result.success
        assert result.error_kind is ErrorKind.ALL_PROVIDERS_EXHAUSTED
        assert result.content is None
        assert result.provider_id is None
        assert result.detail == "All providers failed. Last: p3: network_error (ConnectError: refused)"
        assert len(result.attempts) == 3

    @pytest.mark.asyncio
    async def test_blank_success_counts_as_empty(self, make_orchestrator):
        orchestrator, _ = make_orchestrator({"p1": [ok("   \n")], "p2": [ok("real")], "p3": [ok("y")]})

        result = await orchestrator.invoke("Hello")

        assert result.provider_id == "p2"
        assert result.attempts[0].outcome is AttemptOutcome.EMPTY_RESPONSE

    @pytest.mark.asyncio
    async def test_unexpected_adapter_exception_falls_through(self, make_orchestrator):
        orchestrator, _ = make_orchestrator({"p1": [RuntimeError("bug")], "p2": [ok("fine")], "p3": [ok("y")]})

        result = await orchestrator.invoke("Hello")

        assert result.provider_id == "p2"
        assert result.attempts[0].outcome is AttemptOutcome.PROVIDER_ERROR
        assert "RuntimeError" in result.attempts[0].detail

    @pytest.mark.asyncio
    async def test_missing_adapter_fails_over(self, registry):
        orchestrator = FallbackOrchestrator(registry, {}, backoff_seconds=0)

        result = await orchestrator.invoke("Hello")

        assert result.error_kind is ErrorKind.ALL_PROVIDERS_EXHAUSTED
        assert all(a.outcome is AttemptOutcome.PROVIDER_ERROR for a in result.attempts)
        assert "No API key configured for openrouter" in result.detail

    @pytest.mark.asyncio
    async def test_backoff_only_after_rate_limit_or_quota(self, make_orchestrator):
        orchestrator, _ = make_orchestrator(
            {
                "p1": [fail(AttemptOutcome.RATE_LIMITED, 429)],
                "p2": [fail(AttemptOutcome.PROVIDER_ERROR, 500)],
                "p3": [fail(AttemptOutcome.QUOTA_EXCEEDED, 402)],
            },
            backoff_seconds=0.5,
        )
        orchestrator._sleep = AsyncMock()

        result = await orchestrator.invoke("Hello")

        assert result.error_kind is ErrorKind.ALL_PROVIDERS_EXHAUSTED
        # after p1 only: p2 is a plain error and p3 has no successor
        orchestrator._sleep.assert_awaited_once_with(0.5)

    @pytest.mark.asyncio
    async def test_quota_exceeded_backs_off_before_next(self, make_orchestrator):
        orchestrator, _ = make_orchestrator(
            {"p1": [fail(AttemptOutcome.QUOTA_EXCEEDED, 402)], "p2": [ok("ok")], "p3": [ok("y")]},
            backoff_seconds=0.5,
        )
        orchestrator._sleep = AsyncMock()

        result = await orchestrator.invoke("Hello")

        assert result.provider_id == "p2"
        orchestrator._sleep.assert_awaited_once_with(0.5)

    @pytest.mark.asyncio
    async def test_no_backoff_when_disabled(self, make_orchestrator):
        orchestrator, _ = make_orchestrator(
            {"p1": [fail(AttemptOutcome.RATE_LIMITED, 429)], "p2": [ok("ok")], "p3": [ok("y")]},
            backoff_seconds=0,
        )
        orchestrator._sleep = AsyncMock()

        await orchestrator.invoke("Hello")

        orchestrator._sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_provider_override_tries_only_that_provider(self, make_orchestrator):
        orchestrator, adapter = make_orchestrator({"p1": [ok("a")], "p2": [fail(AttemptOutcome.TIMEOUT)], "p3": [ok("c")]})

        result = await orchestrator.invoke("Hello", InvocationOptions(provider_override="p2"))

        assert adapter.calls == ["p2"]
        assert result.error_kind is ErrorKind.ALL_PROVIDERS_EXHAUSTED

    @pytest.mark.asyncio
    async def test_unknown_override_raises(self, make_orchestrator):
        orchestrator, _ = make_orchestrator({"p1": [ok()], "p2": [ok()], "p3": [ok()]})

        with pytest.raises(KeyError):
            await orchestrator.invoke("Hello", InvocationOptions(provider_override="nope"))

    @pytest.mark.asyncio
    async def test_request_carries_options(self, make_orchestrator):
        orchestrator, adapter = make_orchestrator({"p1": [ok()], "p2": [ok()], "p3": [ok()]})

        await orchestrator.invoke("Hello", InvocationOptions(per_attempt_timeout=12.0))

        assert adapter.timeouts == [12.0]


class TestDeadline:
    """Outer deadline, driven by a fake clock the adapter advances."""

    @pytest.fixture
    def clock(self):
        class _Clock:
            now = 1000.0

            def __call__(self):
                return self.now

        return _Clock()

    @pytest.mark.asyncio
    async def test_deadline_stops_walk(self, make_orchestrator, clock):
        orchestrator, adapter = make_orchestrator({"p1": [ok()], "p2": [ok()], "p3": [ok()]})
        orchestrator._clock = clock
        original_send = adapter.send

        async def slow_failure(request, timeout=60.0):
            await original_send(request, timeout)
            clock.now += 10
            return fail(AttemptOutcome.TIMEOUT)

        adapter.send = slow_failure

        result = await orchestrator.invoke("Hello", InvocationOptions(deadline=5.0))

        assert result.error_kind is ErrorKind.DEADLINE_EXCEEDED
        assert adapter.calls == ["p1"]
        assert result.detail.startswith("Deadline exceeded after 1 attempt(s). Last: p1: timeout")

    @pytest.mark.asyncio
    async def test_attempt_timeout_clipped_to_remaining_budget(self, make_orchestrator, clock):
        orchestrator, adapter = make_orchestrator({"p1": [ok()], "p2": [ok("late but fine")], "p3": [ok()]})
        orchestrator._clock = clock
        original_send = adapter.send

        async def first_fails(request, timeout=60.0):
            reply = await original_send(request, timeout)
            if request.model == "p1":
                clock.now += 3
                return fail(AttemptOutcome.NETWORK_ERROR)
            return reply

        adapter.send = first_fails

        result = await orchestrator.invoke("Hello", InvocationOptions(deadline=5.0, per_attempt_timeout=60.0))

        assert result.provider_id == "p2"
        assert adapter.timeouts == [5.0, 2.0]

"""Core types and DTOs for the inference gateway."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class CostTier(str, Enum):
    """Provider cost/quality tier. Declaration order is the fallback order."""

    CHEAP_PAID = "cheap-paid"
    FREE_HIGH_QUALITY = "free-high-quality"
    FREE_FAST = "free-fast"

    @property
    def rank(self) -> int:
        return list(CostTier).index(self)


class ProviderKind(str, Enum):
    """Wire protocol used to reach a provider."""

    OPENROUTER = "openrouter"
    OPENAI_COMPATIBLE = "openai_compatible"
    GEMINI = "gemini"


class AttemptOutcome(str, Enum):
    """Classification of a single provider attempt."""

    SUCCESS = "success"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"  # provider-side 429
    QUOTA_EXCEEDED = "quota_exceeded"  # provider-side 402 / credits exhausted
    EMPTY_RESPONSE = "empty_response"  # 2xx without usable text
    NETWORK_ERROR = "network_error"  # transport failure
    PROVIDER_ERROR = "provider_error"  # other non-2xx, or provider not configured

    @property
    def wants_backoff(self) -> bool:
        """Provider asked us to slow down; pause briefly before the next provider."""
        return self in (AttemptOutcome.RATE_LIMITED, AttemptOutcome.QUOTA_EXCEEDED)


class ErrorKind(str, Enum):
    """Terminal error kinds surfaced to callers."""

    RATE_LIMITED = "rate_limited"
    USER_QUOTA_EXCEEDED = "user_quota_exceeded"
    ALL_PROVIDERS_EXHAUSTED = "all_providers_exhausted"
    DEADLINE_EXCEEDED = "deadline_exceeded"


# ---------------------------------------------------------------------------
# Provider descriptor
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProviderDescriptor:
    """Static description of one entry in the fallback chain."""

    id: str
    cost_tier: CostTier
    supports_structured_output: bool = False
    kind: ProviderKind = ProviderKind.OPENROUTER
    model: str = ""  # defaults to id (OpenRouter model slugs double as ids)

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Provider id must not be empty")
        if not self.model:
            object.__setattr__(self, "model", self.id)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProviderDescriptor:
        return cls(
            id=data["id"],
            cost_tier=CostTier(data["cost_tier"]),
            supports_structured_output=bool(data.get("supports_structured_output", False)),
            kind=ProviderKind(data.get("kind", ProviderKind.OPENROUTER.value)),
            model=data.get("model", ""),
        )


# ---------------------------------------------------------------------------
# Invocation input
# ---------------------------------------------------------------------------


@dataclass
class InvocationOptions:
    """Per-call options for `invoke`."""

    system_prompt: str = ""
    max_tokens: int = 2000
    temperature: float = 0.7
    per_attempt_timeout: float = 60.0  # seconds, scoped to one provider attempt
    deadline: float | None = None  # seconds across all attempts; None → unbounded
    provider_override: str | None = None  # try exactly this registered provider


@dataclass
class ProviderRequest:
    """What an adapter sends to one provider."""

    model: str
    prompt: str
    system_prompt: str = ""
    max_tokens: int = 2000
    temperature: float = 0.7

    def chat_messages(self) -> list[dict[str, str]]:
        messages: list[dict[str, str]] = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.append({"role": "user", "content": self.prompt})
        return messages


@dataclass
class ProviderReply:
    """What an adapter hands back: a classified outcome plus any text."""

    outcome: AttemptOutcome
    content: str = ""
    status_code: int = 0
    detail: str = ""
    model_version: str = ""
    input_tokens: int = 0
    output_tokens: int = 0


# ---------------------------------------------------------------------------
# Attempts & results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InvocationAttempt:
    """Trace of one provider attempt. Lives only as long as the result."""

    provider_id: str
    started_at: datetime
    duration_ms: int
    outcome: AttemptOutcome
    status_code: int = 0
    detail: str = ""

    def to_dict(self) -> dict:
        return {
            "provider_id": self.provider_id,
            "started_at": self.started_at.isoformat(),
            "duration_ms": self.duration_ms,
            "outcome": self.outcome.value,
            "status_code": self.status_code,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class GatewayResult:
    """Terminal output of an invocation.

    Either a success (content + provider_id) or a failure (error_kind +
    detail). Use `GatewayResult.ok` / `GatewayResult.failure`.
    """

    success: bool
    content: str | None = None
    provider_id: str | None = None
    error_kind: ErrorKind | None = None
    detail: str | None = None
    model_version: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    attempts: tuple[InvocationAttempt, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if self.success:
            if not self.content or not self.provider_id or self.error_kind is not None:
                raise ValueError("Successful result needs content and provider_id, and no error_kind")
        elif self.error_kind is None or self.content is not None or self.provider_id is not None:
            raise ValueError("Failed result needs error_kind, and no content or provider_id")

    @classmethod
    def ok(
        cls,
        content: str,
        provider_id: str,
        attempts: tuple[InvocationAttempt, ...] = (),
        model_version: str = "",
        input_tokens: int = 0,
        output_tokens: int = 0,
    ) -> GatewayResult:
        return cls(
            success=True,
            content=content,
            provider_id=provider_id,
            attempts=attempts,
            model_version=model_version,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

    @classmethod
    def failure(
        cls,
        error_kind: ErrorKind,
        detail: str,
        attempts: tuple[InvocationAttempt, ...] = (),
    ) -> GatewayResult:
        return cls(success=False, error_kind=error_kind, detail=detail, attempts=attempts)

    def to_dict(self) -> dict:
        """Serialize to JSON-compatible dict for the API."""
        if self.success:
            return {
                "success": True,
                "content": self.content,
                "provider_id": self.provider_id,
                "model_version": self.model_version,
                "input_tokens": self.input_tokens,
                "output_tokens": self.output_tokens,
            }
        return {
            "success": False,
            "error_kind": self.error_kind.value,
            "detail": self.detail,
        }


# ---------------------------------------------------------------------------
# Quota
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class QuotaStatus:
    """Snapshot of an identity's usage in the current period.

    `limit` and `remaining` are None for unlimited tiers.
    """

    allowed: bool
    used: int
    limit: int | None
    remaining: int | None
    tier: str = ""
    period_key: str = ""

    @property
    def unlimited(self) -> bool:
        return self.limit is None

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "used": self.used,
            "limit": "unlimited" if self.limit is None else self.limit,
            "remaining": "unlimited" if self.remaining is None else self.remaining,
            "tier": self.tier,
            "period_key": self.period_key,
        }

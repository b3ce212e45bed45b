"""Inference endpoints: generate, extract, usage and gateway status."""

import dataclasses
import logging

from fastapi import APIRouter, Depends, Request

from app.core.config import settings
from app.core.dependencies import get_gateway, get_identity, require_identity
from app.core.exceptions import (
    BadRequestError,
    ExtractionFailedError,
    QuotaExceededError,
    ServiceDegradedError,
)
from app.core.rate_limit import limiter
from app.gateway.gateway import InferenceGateway
from app.gateway.normalizer import ExtractionError
from app.gateway.types import ErrorKind, GatewayResult, InvocationOptions
from app.schemas.gateway import (
    AttemptResponse,
    ExtractRequest,
    ExtractResponse,
    GenerateRequest,
    GenerateResponse,
    UsageResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["gateway"])


def _options_for(body: GenerateRequest, defaults: InvocationOptions) -> InvocationOptions:
    overrides = {
        "system_prompt": body.system_prompt,
        "max_tokens": body.max_tokens,
        "temperature": body.temperature,
        "per_attempt_timeout": body.timeout_seconds,
        "deadline": body.deadline_seconds,
        "provider_override": body.provider,
    }
    return dataclasses.replace(defaults, **{k: v for k, v in overrides.items() if v is not None})


def _attempts(result: GatewayResult) -> list[AttemptResponse]:
    return [
        AttemptResponse(
            provider_id=a.provider_id,
            outcome=a.outcome.value,
            duration_ms=a.duration_ms,
            status_code=a.status_code,
            detail=a.detail,
        )
        for a in result.attempts
    ]


@router.post("/generate", response_model=GenerateResponse)
async def generate(
    body: GenerateRequest,
    identity: str | None = Depends(get_identity),
    gateway: InferenceGateway = Depends(get_gateway),
):
    if body.provider and gateway.registry.get(body.provider) is None:
        raise BadRequestError(f"Unknown provider: {body.provider}")

    result = await gateway.invoke(body.prompt, _options_for(body, gateway.defaults), identity=identity)

    if not result.success:
        if result.error_kind is ErrorKind.USER_QUOTA_EXCEEDED:
            status = await gateway.check_quota(identity)
            raise QuotaExceededError(
                "Monthly AI request limit reached. Upgrade your plan to continue.",
                extra={"used": status.used, "limit": status.limit, "tier": status.tier},
            )
        if body.allow_degraded:
            return GenerateResponse(
                content=settings.gateway_degraded_placeholder,
                degraded=True,
                attempts=_attempts(result),
            )
        raise ServiceDegradedError(
            result.detail,
            headers={"Retry-After": "30"},
            extra={"error_kind": result.error_kind.value, "attempts": [a.to_dict() for a in result.attempts]},
        )

    data = None
    if body.structured:
        try:
            data = gateway.extract_structured(result.content)
        except ExtractionError as e:
            # the model answered, so the request has already been counted
            logger.warning("Structured extraction failed for %s: %s", result.provider_id, e)
            raise ExtractionFailedError(str(e), extra={"provider_id": result.provider_id, "content": result.content})

    return GenerateResponse(
        content=result.content,
        provider_id=result.provider_id,
        model_version=result.model_version,
        input_tokens=result.input_tokens,
        output_tokens=result.output_tokens,
        data=data,
        attempts=_attempts(result),
    )


@router.post("/extract", response_model=ExtractResponse)
@limiter.limit("30/minute")
async def extract(
    request: Request,
    body: ExtractRequest,
    gateway: InferenceGateway = Depends(get_gateway),
):
    try:
        return ExtractResponse(data=gateway.extract_structured(body.text))
    except ExtractionError as e:
        raise ExtractionFailedError(str(e))


@router.get("/usage", response_model=UsageResponse)
async def usage(
    identity: str = Depends(require_identity),
    gateway: InferenceGateway = Depends(get_gateway),
):
    summary = await gateway.usage_summary(identity)
    status = summary["ai"]
    return UsageResponse(
        identity=summary["identity"],
        tier=summary["tier"],
        period_key=status["period_key"],
        used=status["used"],
        limit=status["limit"],
        remaining=status["remaining"],
        allowed=status["allowed"],
    )


@router.get("/gateway/status")
async def gateway_status(gateway: InferenceGateway = Depends(get_gateway)):
    return gateway.get_status()

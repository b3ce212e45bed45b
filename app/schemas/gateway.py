from typing import Any

from pydantic import BaseModel, Field


class GenerateRequest(BaseModel):
    prompt: str = Field(min_length=1, max_length=100_000)
    system_prompt: str = Field("", max_length=20_000)
    max_tokens: int | None = Field(None, ge=1, le=32_000)
    temperature: float | None = Field(None, ge=0.0, le=2.0)
    timeout_seconds: float | None = Field(None, gt=0, le=300)
    deadline_seconds: float | None = Field(None, gt=0, le=600)
    provider: str | None = Field(None, description="Try exactly this registered provider")
    structured: bool = False
    allow_degraded: bool = False


class AttemptResponse(BaseModel):
    provider_id: str
    outcome: str
    duration_ms: int
    status_code: int = 0
    detail: str = ""


class GenerateResponse(BaseModel):
    content: str
    provider_id: str | None = None
    model_version: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    data: Any = None  # parsed JSON when `structured` was requested
    degraded: bool = False
    attempts: list[AttemptResponse] = []


class ExtractRequest(BaseModel):
    text: str = Field(min_length=1, max_length=200_000)


class ExtractResponse(BaseModel):
    data: Any


class UsageResponse(BaseModel):
    identity: str
    tier: str
    period_key: str
    used: int
    limit: int | str  # "unlimited"
    remaining: int | str
    allowed: bool

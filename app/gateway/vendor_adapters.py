"""Vendor-Specific Adapters: protocol-level handling for each provider kind.

Each adapter turns a ProviderRequest into the provider's HTTP protocol,
sends it, and maps whatever comes back onto a ProviderReply with a single
AttemptOutcome. Provider quirks stay here; the orchestrator only ever sees
the classified outcome.

Classification shared by all adapters:
  - HTTP 402 / "payment required" body error → QUOTA_EXCEEDED
  - HTTP 429 / "rate limited" body error     → RATE_LIMITED
  - other non-2xx                            → PROVIDER_ERROR
  - 2xx without usable text                  → EMPTY_RESPONSE
  - httpx timeout                            → TIMEOUT
  - any other httpx transport failure        → NETWORK_ERROR

Provider-specific behaviors:
  - OpenRouter: OpenAI chat completions + attribution headers; may report
    upstream errors inside a 200 body ({"error": {"code": 429, ...}})
  - OpenAI-compatible: plain chat completions against a configurable URL
  - Gemini: generateContent; finishReason SAFETY / promptFeedback.blockReason
    means no answer text → EMPTY_RESPONSE
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx

from app.gateway.types import AttemptOutcome, ProviderKind, ProviderReply, ProviderRequest

logger = logging.getLogger(__name__)

# Longest provider error body kept in attempt details
_DETAIL_LIMIT = 200


def classify_status(status_code: int) -> AttemptOutcome | None:
    """Map an HTTP status to a failure outcome; None for 2xx."""
    if status_code == 402:
        return AttemptOutcome.QUOTA_EXCEEDED
    if status_code == 429:
        return AttemptOutcome.RATE_LIMITED
    if status_code >= 400 or status_code < 200:
        return AttemptOutcome.PROVIDER_ERROR
    return None


def _error_reply(resp: httpx.Response, outcome: AttemptOutcome) -> ProviderReply:
    return ProviderReply(
        outcome=outcome,
        status_code=resp.status_code,
        detail=f"HTTP {resp.status_code}: {resp.text[:_DETAIL_LIMIT]}",
    )


def _message_text(content: Any) -> str:
    """Chat completion content is a string, or a list of typed parts for some models."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(part.get("text", "") for part in content if isinstance(part, dict))
    return ""


class BaseVendorAdapter(ABC):
    """Base class for all provider adapters."""

    kind: ProviderKind

    def __init__(self, api_key: str, **kwargs):
        self.api_key = api_key

    @abstractmethod
    async def send(self, request: ProviderRequest, timeout: float = 60.0) -> ProviderReply:
        """Send a request to the provider and return a classified reply.

        Never raises for provider-side failures; those come back as outcomes.
        """
        ...

    async def _post(self, url: str, payload: dict, timeout: float, **kwargs) -> httpx.Response | ProviderReply:
        """POST with transport failures mapped to replies."""
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                return await client.post(url, json=payload, **kwargs)
        except httpx.TimeoutException:
            return ProviderReply(outcome=AttemptOutcome.TIMEOUT, detail=f"Timeout after {timeout}s")
        except httpx.TransportError as e:
            return ProviderReply(
                outcome=AttemptOutcome.NETWORK_ERROR,
                detail=f"{type(e).__name__}: {e}"[:_DETAIL_LIMIT],
            )


# ---------------------------------------------------------------------------
# OpenAI-compatible chat completions
# ---------------------------------------------------------------------------


class OpenAICompatibleAdapter(BaseVendorAdapter):
    """Chat completions adapter for any OpenAI-compatible endpoint."""

    kind = ProviderKind.OPENAI_COMPATIBLE
    api_url = "https://api.openai.com/v1/chat/completions"

    def __init__(self, api_key: str, api_url: str | None = None, **kwargs):
        super().__init__(api_key, **kwargs)
        if api_url:
            self.api_url = api_url

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def send(self, request: ProviderRequest, timeout: float = 60.0) -> ProviderReply:
        payload = {
            "model": request.model,
            "messages": request.chat_messages(),
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
        }

        resp = await self._post(self.api_url, payload, timeout, headers=self._headers())
        if isinstance(resp, ProviderReply):
            return resp

        failure = classify_status(resp.status_code)
        if failure is not None:
            return _error_reply(resp, failure)

        try:
            data = resp.json()
        except ValueError:
            return ProviderReply(
                outcome=AttemptOutcome.EMPTY_RESPONSE,
                status_code=resp.status_code,
                detail="Response body is not JSON",
            )
        return self._parse(data, request, resp.status_code)

    def _parse(self, data: Any, request: ProviderRequest, status_code: int) -> ProviderReply:
        if not isinstance(data, dict):
            return ProviderReply(
                outcome=AttemptOutcome.EMPTY_RESPONSE,
                status_code=status_code,
                detail="Unexpected response shape",
            )

        # Upstream failures reported inside a 2xx body
        error = data.get("error")
        if error:
            code = error.get("code", 0) if isinstance(error, dict) else 0
            message = error.get("message", "") if isinstance(error, dict) else str(error)
            try:
                outcome = classify_status(int(code)) or AttemptOutcome.PROVIDER_ERROR
            except (TypeError, ValueError):
                outcome = AttemptOutcome.PROVIDER_ERROR
            return ProviderReply(
                outcome=outcome,
                status_code=status_code,
                detail=f"Provider error {code}: {message}"[:_DETAIL_LIMIT],
            )

        choices = data.get("choices") or []
        message = choices[0].get("message", {}) if choices and isinstance(choices[0], dict) else {}
        text = _message_text(message.get("content") if isinstance(message, dict) else None)

        usage = data.get("usage") or {}
        reply = ProviderReply(
            outcome=AttemptOutcome.SUCCESS,
            content=text,
            status_code=status_code,
            model_version=data.get("model", request.model),
            input_tokens=usage.get("prompt_tokens", 0) or 0,
            output_tokens=usage.get("completion_tokens", 0) or 0,
        )
        if not text.strip():
            reply.outcome = AttemptOutcome.EMPTY_RESPONSE
            reply.content = ""
            reply.detail = "Empty response"
        return reply


class OpenRouterAdapter(OpenAICompatibleAdapter):
    """OpenRouter adapter: OpenAI protocol plus app attribution headers."""

    kind = ProviderKind.OPENROUTER
    api_url = "https://openrouter.ai/api/v1/chat/completions"

    def __init__(
        self,
        api_key: str,
        api_url: str | None = None,
        referer: str = "",
        title: str = "",
        **kwargs,
    ):
        super().__init__(api_key, api_url=api_url, **kwargs)
        self.referer = referer
        self.title = title

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        if self.referer:
            headers["HTTP-Referer"] = self.referer
        if self.title:
            headers["X-Title"] = self.title
        return headers


# ---------------------------------------------------------------------------
# Gemini Adapter (Google AI)
# ---------------------------------------------------------------------------


class GeminiAdapter(BaseVendorAdapter):
    """Google Gemini adapter with SAFETY filter detection."""

    kind = ProviderKind.GEMINI
    api_url_template = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

    async def send(self, request: ProviderRequest, timeout: float = 60.0) -> ProviderReply:
        url = self.api_url_template.format(model=request.model)

        payload: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": request.prompt}]}],
            "generationConfig": {
                "temperature": request.temperature,
                "maxOutputTokens": request.max_tokens,
            },
        }
        # System instruction (separate from contents in Gemini API)
        if request.system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": request.system_prompt}]}

        resp = await self._post(
            url,
            payload,
            timeout,
            params={"key": self.api_key},
            headers={"Content-Type": "application/json"},
        )
        if isinstance(resp, ProviderReply):
            return resp

        failure = classify_status(resp.status_code)
        if failure is not None:
            return _error_reply(resp, failure)

        try:
            data = resp.json()
        except ValueError:
            return ProviderReply(
                outcome=AttemptOutcome.EMPTY_RESPONSE,
                status_code=resp.status_code,
                detail="Response body is not JSON",
            )

        candidates = data.get("candidates") or []
        if not candidates:
            block_reason = (data.get("promptFeedback") or {}).get("blockReason", "")
            detail = f"Prompt blocked: {block_reason}" if block_reason else "No candidates"
            return ProviderReply(outcome=AttemptOutcome.EMPTY_RESPONSE, status_code=resp.status_code, detail=detail)

        candidate = candidates[0]
        if candidate.get("finishReason") == "SAFETY":
            return ProviderReply(
                outcome=AttemptOutcome.EMPTY_RESPONSE,
                status_code=resp.status_code,
                detail="Gemini safety filter triggered",
            )

        parts = (candidate.get("content") or {}).get("parts", [])
        text = "".join(p.get("text", "") for p in parts if "text" in p)
        usage = data.get("usageMetadata") or {}

        if not text.strip():
            return ProviderReply(outcome=AttemptOutcome.EMPTY_RESPONSE, status_code=resp.status_code, detail="Empty response")

        return ProviderReply(
            outcome=AttemptOutcome.SUCCESS,
            content=text,
            status_code=resp.status_code,
            model_version=data.get("modelVersion", request.model),
            input_tokens=usage.get("promptTokenCount", 0),
            output_tokens=usage.get("candidatesTokenCount", 0),
        )


# ---------------------------------------------------------------------------
# Adapter registry
# ---------------------------------------------------------------------------

ADAPTER_REGISTRY: dict[ProviderKind, type[BaseVendorAdapter]] = {
    ProviderKind.OPENROUTER: OpenRouterAdapter,
    ProviderKind.OPENAI_COMPATIBLE: OpenAICompatibleAdapter,
    ProviderKind.GEMINI: GeminiAdapter,
}


def get_adapter(kind: ProviderKind, api_key: str, **kwargs) -> BaseVendorAdapter:
    """Factory: get the appropriate adapter for a provider kind."""
    cls = ADAPTER_REGISTRY.get(kind)
    if cls is None:
        raise ValueError(f"No adapter registered for provider kind: {kind}")
    return cls(api_key=api_key, **kwargs)

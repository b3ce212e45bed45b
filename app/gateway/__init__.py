"""Inference Gateway layer.

Fronts a cost-ordered chain of LLM providers with:
  - Provider Registry (ordered fallback chain)
  - Vendor Adapters (OpenRouter, OpenAI-compatible, Gemini)
  - Fallback Orchestrator (sequential walk, per-attempt timeouts)
  - Origin Rate Limiter (per-origin sliding window)
  - Quota Accountant (monthly per-identity limits by plan tier)
  - Response Normalizer (structured JSON extraction)
"""

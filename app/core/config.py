from typing import Any

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # PostgreSQL (usage counters, subscriptions)
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "gateway_user"
    postgres_password: str = "changeme"
    postgres_db: str = "inference_gateway"

    @property
    def postgres_url(self) -> str:
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # Redis (shared rate-limit buckets when running several instances)
    redis_url: str = "redis://localhost:6379/0"

    # Auth: identity is the `sub` claim of the bearer token
    jwt_secret_key: str = "change-this-to-a-random-string"
    jwt_algorithm: str = "HS256"
    allow_anonymous: bool = False  # anonymous callers skip quota accounting

    # Providers
    openrouter_api_key: str = ""
    openrouter_api_url: str = "https://openrouter.ai/api/v1/chat/completions"
    openrouter_referer: str = "http://localhost:8000"
    openrouter_title: str = "Inference Gateway"
    openai_compatible_api_key: str = ""
    openai_compatible_api_url: str = "https://api.openai.com/v1/chat/completions"
    gemini_api_key: str = ""

    # Ordered fallback chain as JSON, e.g.
    # GATEWAY_PROVIDERS='[{"id": "google/gemini-2.5-flash", "cost_tier": "cheap-paid"}]'
    # Empty list → built-in default chain.
    gateway_providers: list[dict[str, Any]] = []

    # Fallback orchestration
    gateway_max_tokens: int = 2000
    gateway_temperature: float = 0.7
    gateway_attempt_timeout_seconds: float = 60.0
    gateway_deadline_seconds: float | None = None  # None → no end-to-end deadline
    gateway_backoff_seconds: float = 0.5  # only after provider-side 429/402
    gateway_degraded_placeholder: str = "The assistant is temporarily unavailable. Please try again in a few minutes."

    # Ingress rate limiting
    rate_limit_backend: str = "memory"  # memory | redis
    rate_limit_requests: int = 10
    rate_limit_window_seconds: float = 60.0
    rate_limit_max_origins: int = 10_000
    rate_limit_sweep_seconds: float = 60.0

    # Monthly AI request quota per plan tier; null → unlimited
    plan_limits: dict[str, int | None] = {
        "free": 20,
        "plus": 100,
        "pro": 500,
        "ultra": 2000,
    }
    default_plan: str = "free"

    # App
    app_env: str = "development"
    app_debug: bool = True
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # CORS
    allowed_origins: str = "*"  # comma-separated, e.g. "https://app.example.com,https://admin.example.com"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Sentry
    sentry_dsn: str = ""  # leave empty to disable


settings = Settings()


def validate_settings_for_production() -> None:
    """Validate critical settings. Called on startup in non-test environments."""
    errors: list[str] = []

    if settings.default_plan not in settings.plan_limits:
        errors.append(f"DEFAULT_PLAN '{settings.default_plan}' is not one of PLAN_LIMITS")

    if settings.rate_limit_backend not in ("memory", "redis"):
        errors.append("RATE_LIMIT_BACKEND must be 'memory' or 'redis'")

    if settings.app_env == "production":
        if not (settings.openrouter_api_key or settings.openai_compatible_api_key or settings.gemini_api_key):
            errors.append("At least one provider key must be set (OPENROUTER_API_KEY, OPENAI_COMPATIBLE_API_KEY, GEMINI_API_KEY)")
        if settings.jwt_secret_key in ("change-this-to-a-random-string", ""):
            errors.append("JWT_SECRET_KEY must be set to a secure random value")
        if len(settings.jwt_secret_key) < 32:
            errors.append("JWT_SECRET_KEY must be at least 32 characters")
        if settings.allowed_origins == "*":
            errors.append("ALLOWED_ORIGINS must not be '*' in production")
        if settings.app_debug:
            errors.append("APP_DEBUG must be false in production")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))

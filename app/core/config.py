from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000", "http://localhost:5173"]


def _parse_cors_origins(v: Any) -> List[str]:
    try:
        if v is None or v == "":
            return _DEFAULT_CORS.copy()
        if isinstance(v, list):
            return [x for x in v if isinstance(x, str) and x.strip()]
        s = str(v).strip()
        if not s:
            return _DEFAULT_CORS.copy()
        if s.startswith("["):
            import json
            out = json.loads(s)
            return [x for x in out if isinstance(x, str) and x.strip()] or _DEFAULT_CORS.copy()
        return [x.strip() for x in s.split(",") if x.strip()] or _DEFAULT_CORS.copy()
    except Exception:
        return _DEFAULT_CORS.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    secret_key: str = Field(default="change-me-in-production-min-32-chars")

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="creditmeter", alias="MONGODB_DB_NAME")

    # Redis (worker queue + pricing invalidation fan-out)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")
    pricing_invalidation_channel: str = "pricing:invalidate"
    pricing_listener_retry_seconds: float = 5.0

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @property
    def cors_origins(self) -> List[str]:
        return _parse_cors_origins(getattr(self, "cors_origins_raw", None))

    # Pricing (credits per outcome class)
    default_price_approved: int = 5
    default_price_live: int = 3
    pricing_cache_ttl_seconds: float = 60.0

    # Ledger
    ledger_max_retries: int = 5
    ledger_retry_backoff_ms: int = 10

    # Account bootstrap
    starter_credits: int = 25
    referral_credits: int = 15
    max_referrals: int = 10

    # Daily claim
    daily_claim_min_hours: float = 20.0

    # Operation lock
    operation_stale_seconds: int = 60
    operation_cleanup_seconds: int = 3600


@lru_cache
def get_settings() -> Settings:
    return Settings()

import os
from typing import List


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default


def _truthy(raw: str) -> bool:
    return str(raw or "").strip().lower() in {"1", "true", "yes", "on"}


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = os.getenv('DATABASE_URL', 'postgresql://localhost/bilee')
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"

        # Pool sizing defaults are conservative for local/dev.
        self.pool_min_size = _env_int("DB_POOL_MIN_SIZE", 1)
        self.pool_max_size = _env_int("DB_POOL_MAX_SIZE", 10)
        # Applied as both connect_timeout and statement_timeout.
        self.store_timeout_seconds = max(1, _env_int("STORE_TIMEOUT_SECONDS", 10))

        # PSP webhook signing.
        self.webhook_secret = (os.getenv("WEBHOOK_SECRET") or "").strip()
        self.webhook_signature_scheme = (os.getenv("WEBHOOK_SIGNATURE_SCHEME") or "hmac-sha256").strip().lower()

        # Which calendar day a completed session belongs to when the merchant has no timezone of its own.
        self.merchant_timezone = (os.getenv("MERCHANT_TIMEZONE") or "Asia/Kolkata").strip() or "Asia/Kolkata"
        self.eager_aggregation = _truthy(os.getenv("EAGER_AGGREGATION", ""))

        self.retention_days = max(1, _env_int("RETENTION_DAYS", 30))
        self.sweep_batch_limit = max(1, min(_env_int("SWEEP_BATCH_LIMIT", 500), 500))
        # Hourly by default; set to 86400 for deployments that expire once a day.
        self.expiry_sweep_interval_seconds = max(60, _env_int("EXPIRY_SWEEP_INTERVAL_SECONDS", 3600))

settings = Settings()

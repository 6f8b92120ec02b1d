from pydantic_settings import BaseSettings
from typing import List, Optional
import os
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    SECRET_KEY: str = "your-secret-key-change-in-production"
    # Optional override for the key material used to encrypt carrier credentials.
    JWT_SECRET: Optional[str] = None
    DEBUG: bool = False

    # DATABASE_URL must be provided via environment (Postgres in production).
    # SQLite is accepted for local runs and the test-suite.
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")

    ALLOWED_ORIGINS: str = "http://localhost:5173,http://localhost:3000"

    # Carrier platform endpoints. The legacy host speaks XML/Basic-Auth, the
    # v2 host speaks JSON with an api-key header.
    SHIPSTATION_LEGACY_BASE_URL: str = "https://ssapi.shipstation.com"
    SHIPSTATION_V2_BASE_URL: str = "https://api.shipstation.com"
    SHIPSTATION_HTTP_TIMEOUT_SECONDS: float = 30.0
    SHIPSTATION_CONNECT_TIMEOUT_SECONDS: float = 10.0
    # Carrier dates are exchanged as naive "MM/dd/yyyy HH:mm" in this zone.
    SHIPSTATION_TIMEZONE: str = "UTC"

    # When False, v2 shipments without a resolvable ship-from address fail
    # instead of going out with the placeholder warehouse.
    SHIPSTATION_ALLOW_PLACEHOLDER_SHIP_FROM: bool = False

    # Reject webhook callers that cannot be matched to a store integration.
    SHIPSTATION_WEBHOOK_AUTH_REQUIRED: bool = False

    # Shared key for /api/admin/*; admin endpoints are closed while unset
    # unless DEBUG is on.
    ADMIN_API_KEY: Optional[str] = None

    # Background job queue
    JOB_QUEUE_ENABLED: bool = True
    JOB_QUEUE_INTERVAL_SECONDS: float = 30.0
    JOB_QUEUE_BATCH_SIZE: int = 10
    JOB_MAX_ATTEMPTS: int = 3
    # Comma-separated backoff ladder; the last value repeats.
    JOB_RETRY_DELAYS_SECONDS: str = "1,5,15"
    JOB_RETENTION_DAYS: int = 30

    # Inventory thresholds (products may override the warning level).
    LOW_STOCK_THRESHOLD: int = 5
    CRITICAL_STOCK_THRESHOLD: int = 1

    @property
    def secret_key(self) -> str:
        return self.JWT_SECRET or self.SECRET_KEY

    @property
    def job_retry_delays(self) -> List[float]:
        delays: List[float] = []
        for part in (self.JOB_RETRY_DELAYS_SECONDS or "").split(","):
            part = part.strip()
            if part:
                delays.append(float(part))
        return delays or [1.0, 5.0, 15.0]

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")

    class Config:
        # Do not silently read .env in CI; the deployment injects env
        env_file = None
        env_file_encoding = "utf-8"
        extra = "ignore"


if not os.getenv("DATABASE_URL"):
    raise RuntimeError("DATABASE_URL is required (Postgres, or sqlite:// for local runs).")

settings = Settings()

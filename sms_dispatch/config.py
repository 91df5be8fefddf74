from pathlib import Path
from typing import Literal
from urllib.parse import quote

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Server settings
    HOST: str = "0.0.0.0"
    PORT: int = 3000
    CORS_ALLOWED_ORIGINS: str = "*"  # comma separated, "*" allows any origin

    # Redis settings
    REDIS_URL: str | None = None
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_PASSWORD: str | None = None
    REDIS_DB: int = 0
    REDIS_MAX_CONNECTIONS: int = 20

    # SMS gateway settings
    SMS_PROVIDER: Literal["africastalking", "simulated"] = "africastalking"
    AFRICASTALKING_USERNAME: str = "sandbox"
    AFRICASTALKING_API_KEY: str | None = None
    SMS_SENDER_NAME: str | None = None
    SIMULATED_SEND_DELAY_MS: int = 1000
    SMS_LENGTH_WARNING: int = 160

    # =================================================================
    # QUEUE SETTINGS
    # =================================================================
    SMS_QUEUE_NAME: str = "sms-queue"
    QUEUE_KEEP_COMPLETED: int = 100
    QUEUE_KEEP_FAILED: int = 50

    # =================================================================
    # RATE LIMITING - sliding window with temporary block
    # =================================================================
    RATE_LIMIT_WINDOW_MS: int = Field(default=60_000, gt=0)  # 1 minute
    RATE_LIMIT_MAX_REQUESTS: int = Field(default=30, gt=0)  # 30 SMS per minute
    RATE_LIMIT_BLOCK_DURATION_MS: int = Field(default=300_000, gt=0)  # 5 minutes

    # =================================================================
    # RETRY / WORKER SETTINGS
    # =================================================================
    MAX_RETRY_ATTEMPTS: int = 3
    RETRY_BACKOFF_TYPE: Literal["exponential", "fixed"] = "exponential"
    RETRY_DELAY_MS: int = 2000

    WORKER_ENABLED: bool = True
    WORKER_CONCURRENCY: int = 5
    WORKER_POLL_INTERVAL_MS: int = 500
    STALLED_INTERVAL_MS: int = 30_000
    MAX_STALLED_COUNT: int = 1
    DISPATCH_TIMEOUT_MS: int = 20_000  # must stay below STALLED_INTERVAL_MS

    # =================================================================
    # OUTCOME RECORDING
    # =================================================================
    DELIVERY_LOG_MAX_ENTRIES: int = 1000
    JOB_METRICS_MAX_ENTRIES: int = 1000
    STATS_RETENTION_DAYS: int = 7

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def redis_url(self) -> str:
        """Get the Redis URL, building it from host/port parts when not given."""
        if self.REDIS_URL:
            return self.REDIS_URL

        auth = f":{quote(self.REDIS_PASSWORD, safe='')}@" if self.REDIS_PASSWORD else ""
        return f"redis://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    def africastalking_base_url(self) -> str:
        """Sandbox accounts talk to a separate API host."""
        if self.AFRICASTALKING_USERNAME == "sandbox":
            return "https://api.sandbox.africastalking.com"
        return "https://api.africastalking.com"

    def cors_origins(self) -> list[str]:
        """Parse CORS_ALLOWED_ORIGINS into a list of origins."""
        return [origin.strip() for origin in self.CORS_ALLOWED_ORIGINS.split(",") if origin.strip()]

    def get_rate_limits(self) -> dict:
        """Get admission controller limits."""
        return {
            "window_ms": self.RATE_LIMIT_WINDOW_MS,
            "max_requests": self.RATE_LIMIT_MAX_REQUESTS,
            "block_duration_ms": self.RATE_LIMIT_BLOCK_DURATION_MS,
        }


settings = Settings()

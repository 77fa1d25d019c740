from pydantic_settings import BaseSettings
from typing import Optional
import os
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    SECRET_KEY: str = "your-secret-key-change-in-production"
    JWT_SECRET: Optional[str] = None
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24
    DEBUG: bool = False

    @property
    def secret_key(self) -> str:
        return self.JWT_SECRET or self.SECRET_KEY

    # Postgres in production; SQLite is accepted for local runs and tests.
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./crm_delivery.db")

    ALLOWED_ORIGINS: str = "http://localhost:5173,http://localhost:3000"

    # Outbound courier calls. Anything slower than the read timeout is reported
    # as a timeout, never as an HTTP error.
    DELIVERY_HTTP_TIMEOUT_SECONDS: float = 30.0
    DELIVERY_HTTP_CONNECT_TIMEOUT_SECONDS: float = 10.0

    # Sync pass throttling: shipments are tracked one at a time with this
    # delay between calls so couriers do not rate-limit us.
    DELIVERY_SYNC_DELAY_SECONDS: float = 1.0
    DELIVERY_SYNC_TICK_SECONDS: int = 60
    DELIVERY_SYNC_WORKER_ENABLED: bool = False
    DELIVERY_STALE_HOURS: int = 2

    # Automatic retry of shipment creation on timeout/network failures.
    # Some couriers bill per creation attempt, so the default is a single try.
    DELIVERY_CREATE_MAX_ATTEMPTS: int = 1
    DELIVERY_CREATE_RETRY_BACKOFF_SECONDS: float = 2.0

    BEST_DELIVERY_API_URL: str = "https://api.best-delivery.net/serviceShipments.php"

    class Config:
        env_file = None
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()

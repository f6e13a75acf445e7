from pydantic_settings import BaseSettings
from typing import Optional
import os
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    SECRET_KEY: str = "your-secret-key-change-in-production"
    # Optional dedicated key for credential encryption; falls back to SECRET_KEY.
    CREDENTIALS_SECRET: Optional[str] = None
    DEBUG: bool = False

    # SQLite is fine for local development and tests; production points this
    # at Postgres.
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./marketsync.db")

    ALLOWED_ORIGINS: str = "http://localhost:5173,http://localhost:3000"

    # Every adapter call is wrapped in a timeout; a timeout counts as a
    # retryable failure.
    ADAPTER_TIMEOUT_SECONDS: float = 30.0
    # Extra time a sync lease stays valid past the adapter timeout so a slow
    # commit after the call does not let a second sync in.
    LEASE_GRACE_SECONDS: int = 30

    # Retry policy for retryable remote errors: base delay doubling per
    # attempt, capped, at most SYNC_MAX_RETRIES attempts before giving up.
    SYNC_RETRY_BASE_SECONDS: int = 30
    SYNC_RETRY_MAX_SECONDS: int = 3600
    SYNC_MAX_RETRIES: int = 5

    # Consecutive listing-level errors that flip a connection into "error".
    CONNECTION_ERROR_THRESHOLD: int = 3
    # Synced listings older than this are re-queued by the scheduler.
    RESYNC_INTERVAL_MINUTES: int = 360
    SYNC_BULK_CONCURRENCY: int = 5

    RUN_SCHEDULER: bool = False
    SCHEDULER_INTERVAL_SECONDS: int = 60
    SCHEDULER_BATCH_SIZE: int = 100

    AMAZON_API_BASE_URL: str = "https://sellingpartnerapi-na.amazon.com"
    AMAZON_TOKEN_URL: str = "https://api.amazon.com/auth/o2/token"
    AMAZON_DEFAULT_MARKETPLACE_ID: str = "ATVPDKIKX0DER"

    EBAY_ENVIRONMENT: str = "sandbox"
    EBAY_MARKETPLACE_ID: str = "EBAY_US"

    WALMART_API_BASE_URL: str = "https://marketplace.walmartapis.com"
    WALMART_SERVICE_NAME: str = "Walmart Marketplace"

    ETSY_API_BASE_URL: str = "https://openapi.etsy.com"

    # When set, webhook deliveries must carry a valid X-Shopify-Hmac-Sha256.
    SHOPIFY_WEBHOOK_SECRET: Optional[str] = None
    SHOPIFY_API_VERSION: str = "2024-10"
    SHOPIFY_IMPORT_PAGE_SIZE: int = 250
    SHOPIFY_MAX_IMPORT_PAGES: int = 100

    class Config:
        env_file = None
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def credentials_secret(self) -> str:
        return self.CREDENTIALS_SECRET or self.SECRET_KEY

    @property
    def ebay_api_base_url(self) -> str:
        if self.EBAY_ENVIRONMENT == "sandbox":
            return "https://api.sandbox.ebay.com"
        return "https://api.ebay.com"


settings = Settings()

from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # MongoDB Configuration
    MONGODB_URI: str = "mongodb://localhost:27017"
    MONGODB_DB_NAME: str = "voucher_engine_db"

    # Money formatting for user-facing messages
    CURRENCY_SYMBOL: str = "₱"
    DATE_DISPLAY_FORMAT: str = "%b %d, %Y"

    # Monetary refund conversion
    MONETARY_REFUND_DELAY_DAYS: int = 14
    MONETARY_REFUND_REREQUEST_COOLDOWN_HOURS: int = 0  # 0 = may re-request right after a rejection
    MONETARY_REFUND_MAX_REJECTIONS: Optional[int] = None  # None = unlimited re-requests

    # Voucher codes
    REFUND_CODE_PREFIX: str = "REFUND"
    REFUND_CODE_MAX_ATTEMPTS: int = 10

    # Listing
    DEFAULT_PAGE_SIZE: int = 20
    MAX_PAGE_SIZE: int = 100

    # Application Settings
    BACKEND_CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:8000"]
    API_V1_PREFIX: str = "/api"
    PROJECT_NAME: str = "Voucher Engine"

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )


# Global settings instance
settings = Settings()

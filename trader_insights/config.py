"""Application configuration using Pydantic Settings."""

from functools import lru_cache
from pydantic_settings import BaseSettings

# ===========================================
# Product Branding
# ===========================================
PRODUCT_NAME = "Trader Insights"
PRODUCT_TAGLINE = "Your trading journal, synced with your broker."
PRODUCT_VERSION = "1.0.0"
PRODUCT_DESCRIPTION = "Connect a brokerage, pull your trades, keep the journal honest."


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: str = "sqlite:///./trader_insights.db"

    # Logging
    log_level: str = "INFO"

    # Default user (single-user mode)
    default_user_email: str = "user@localhost"

    # API Security
    api_key: str = ""  # Set in .env for production

    # Where the user lands after a completed connection
    dashboard_url: str = "/app/dashboard"

    # Outbound HTTP
    http_timeout_seconds: int = 30

    # SnapTrade (brokerage aggregator)
    snaptrade_client_id: str = ""
    snaptrade_consumer_key: str = ""
    snaptrade_redirect_uri: str = ""
    snaptrade_base_url: str = "https://api.snaptrade.com/api/v1"
    snaptrade_auth_scheme: str = "hmac_json"  # hmac_json, hmac, api_key
    snaptrade_rate_limit_max: int = 0  # 0 disables the local request budget
    snaptrade_rate_limit_window_minutes: int = 15

    # Scheduled broker sync
    sync_interval_minutes: int = 1440

    # Polygon market data
    polygon_api_key: str = ""
    polygon_ws_url: str = "wss://socket.polygon.io/stocks"
    polygon_rest_url: str = "https://api.polygon.io"
    quote_reconnect_delay_seconds: float = 3.0
    quote_max_reconnect_attempts: int = 5

    # Webull-compatible broker API
    webull_base_url: str = "https://userapi.webull.com/api"
    webull_device_name: str = "TraderInsights"

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

"""Sync engine configuration settings."""

from pydantic_settings import BaseSettings
from pydantic import Field
from typing import List
from dotenv import load_dotenv

from mailsync.services.circuit_breaker import CircuitBreakerConfig
from mailsync.services.rate_limiter import RateLimiterConfig
from mailsync.services.retry_engine import RetryConfig

load_dotenv()


class SyncSettings(BaseSettings):
    """Sync engine and API server configuration."""
    
    # API Settings
    api_port: int = Field(default=8000, description="API server port")
    debug: bool = Field(default=False, description="Debug mode")
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://127.0.0.1:3000"],
        description="Allowed CORS origins"
    )
    
    # MongoDB Settings
    mongodb_uri: str = Field(
        default="mongodb://localhost:27017/?directConnection=true",
        description="MongoDB connection string"
    )
    mongodb_database: str = Field(default="mailsync", description="Database name")
    mongodb_collection_emails: str = Field(default="emails")
    mongodb_collection_sync_state: str = Field(default="sync_state")
    mongodb_collection_sync_failures: str = Field(default="sync_failures")
    mongodb_collection_pending_conflicts: str = Field(default="pending_conflicts")
    mongodb_collection_conflict_audit: str = Field(default="conflict_audit")
    mongodb_collection_conflict_preferences: str = Field(default="conflict_preferences")
    mongodb_collection_adaptive_interval: str = Field(default="adaptive_interval")
    mongodb_collection_oauth_tokens: str = Field(default="oauth_tokens")
    
    # OAuth clients and token encryption
    google_client_id: str = Field(default="", description="Google OAuth client id")
    google_client_secret: str = Field(default="")
    microsoft_client_id: str = Field(default="", description="Microsoft identity platform client id")
    microsoft_client_secret: str = Field(default="")
    credential_vault_key: str = Field(default="", description="Master key for encrypting stored tokens")
    credential_vault_salt: str = Field(default="mailsync-credential-vault-salt")
    
    # Connectivity
    network_check_url: str = Field(default="https://www.gstatic.com/generate_204")
    network_check_interval_seconds: float = Field(default=30.0)
    
    # Scheduling
    sync_interval_seconds: float = Field(
        default=180.0,
        description="Fixed polling interval used when adaptive polling is disabled"
    )
    adaptive_polling_enabled: bool = Field(default=True, description="Adapt polling cadence to activity")
    adaptive_min_interval_seconds: float = Field(default=60.0)
    adaptive_max_interval_seconds: float = Field(default=600.0)
    
    # Full sync
    sync_lookback_days: int = Field(default=90, description="Initial sync lookback window")
    checkpoint_interval: int = Field(default=10, description="Persist progress every N items")
    gmail_page_size: int = Field(default=500)
    outlook_page_size: int = Field(default=50)
    
    # Retry
    retry_max_retries: int = Field(default=3)
    retry_base_delay_seconds: float = Field(default=1.0)
    retry_max_delay_seconds: float = Field(default=30.0)
    retry_multiplier: float = Field(default=2.0)
    
    # Rate limits
    gmail_max_tokens: int = Field(default=250, description="Gmail quota units per bucket")
    gmail_refill_rate: float = Field(default=250.0, description="Gmail quota units per second")
    outlook_max_tokens: int = Field(default=10)
    outlook_refill_rate: float = Field(default=10.0)
    throttle_threshold_percent: float = Field(
        default=80.0,
        description="Usage percentage at which proactive throttling starts"
    )
    
    # Circuit breaker
    circuit_failure_threshold: int = Field(default=3, description="Failures within the window that open the circuit")
    circuit_failure_window_seconds: float = Field(default=60.0)
    circuit_consecutive_failure_threshold: int = Field(default=5)
    circuit_cooldown_seconds: float = Field(default=60.0)
    
    # Bankruptcy and housekeeping
    bankruptcy_threshold_days: float = Field(
        default=7.0,
        description="Staleness after which incremental state is discarded"
    )
    failure_retention_days: int = Field(default=7, description="Keep resolved/dismissed failures this long")
    
    class Config:
        env_file = ".env"
        extra = "ignore"
    
    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.retry_max_retries,
            base_delay=self.retry_base_delay_seconds,
            max_delay=self.retry_max_delay_seconds,
            multiplier=self.retry_multiplier,
        )
    
    def circuit_breaker_config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            failure_threshold=self.circuit_failure_threshold,
            failure_window=self.circuit_failure_window_seconds,
            consecutive_failure_threshold=self.circuit_consecutive_failure_threshold,
            cooldown=self.circuit_cooldown_seconds,
        )
    
    def gmail_rate_limiter_config(self) -> RateLimiterConfig:
        return RateLimiterConfig(
            max_tokens=self.gmail_max_tokens,
            refill_rate=self.gmail_refill_rate,
            tokens_per_request=5,
            throttle_threshold=self.throttle_threshold_percent,
        )
    
    def outlook_rate_limiter_config(self) -> RateLimiterConfig:
        return RateLimiterConfig(
            max_tokens=self.outlook_max_tokens,
            refill_rate=self.outlook_refill_rate,
            tokens_per_request=1,
            throttle_threshold=self.throttle_threshold_percent,
        )


def get_settings() -> SyncSettings:
    """Load settings from environment and .env file."""
    return SyncSettings()


settings = get_settings()

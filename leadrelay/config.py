"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is missing.

Queue concurrency, rate limits and retry policies are read once here and
turned into QueueConfig objects by build_queue_configs(). Nothing in the
delivery core reads the environment per operation.
"""
from dataclasses import dataclass
from functools import lru_cache

from pydantic_settings import BaseSettings

DIRECT_MESSAGE_QUEUE = "direct-message"
TRANSACTIONAL_EMAIL_QUEUE = "transactional-email"
BULK_CAMPAIGN_QUEUE = "bulk-campaign"


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_base_url: str = "http://localhost:8000"
    log_level: str = "INFO"
    deployment_tier: str = "standard"  # "free" reduces worker concurrency

    # Database
    database_url: str = "sqlite+aiosqlite:///./leadrelay.db"
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis
    redis_url: str = "redis://localhost:6379/0"

    # Workers
    workers_enabled: bool = True
    worker_poll_interval_seconds: int = 30
    stall_timeout_seconds: int = 300
    maintenance_interval_seconds: int = 60

    # Per-queue concurrency (standard tier / free tier)
    direct_message_concurrency: int = 5
    transactional_email_concurrency: int = 10
    bulk_campaign_concurrency: int = 2
    free_tier_direct_message_concurrency: int = 2
    free_tier_transactional_email_concurrency: int = 3
    free_tier_bulk_campaign_concurrency: int = 1

    # Per-channel rate limits: max executions per rolling window
    direct_message_rate_limit: int = 20
    direct_message_rate_window_seconds: float = 1.0
    transactional_email_rate_limit: int = 50
    transactional_email_rate_window_seconds: float = 1.0
    bulk_campaign_rate_limit: int = 1
    bulk_campaign_rate_window_seconds: float = 1.0

    # Retry policies (seconds)
    direct_message_max_attempts: int = 3
    direct_message_initial_delay: float = 2.0
    direct_message_max_delay: float = 10.0
    transactional_email_max_attempts: int = 3
    transactional_email_initial_delay: float = 2.0
    transactional_email_max_delay: float = 15.0
    bulk_campaign_max_attempts: int = 2
    bulk_campaign_initial_delay: float = 5.0
    bulk_campaign_max_delay: float = 30.0
    retry_jitter: float = 0.1

    # Bulk campaign fan-out pacing between recipients
    campaign_pacing_seconds: float = 0.1

    # Response cache
    cache_default_ttl_seconds: int = 300
    catalog_cache_ttl_seconds: int = 300
    cache_warm_interval_seconds: int = 900
    cache_warm_owner_limit: int = 20

    # Credential cache
    credential_encryption_key: str = ""
    credential_expiry_buffer_seconds: int = 300
    credential_default_ttl_seconds: int = 3600

    # WhatsApp Cloud API (direct messages)
    whatsapp_api_base_url: str = "https://graph.facebook.com/v19.0"
    whatsapp_phone_number_id: str = ""

    # SendGrid (transactional email)
    sendgrid_api_key: str = ""
    sendgrid_from_email: str = "noreply@leadrelay.io"
    sendgrid_from_name: str = "LeadRelay"

    # Sentry
    sentry_dsn: str = ""

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def is_free_tier(self) -> bool:
        return self.deployment_tier.lower() == "free"


@dataclass(frozen=True)
class RetrySettings:
    max_attempts: int
    initial_delay: float
    max_delay: float
    jitter: float = 0.0


@dataclass(frozen=True)
class RetentionSettings:
    completed_max_age_seconds: int = 3600
    completed_max_count: int = 1000
    failed_max_age_seconds: int = 86400
    failed_max_count: int = 5000


@dataclass(frozen=True)
class QueueConfig:
    """Everything a worker pool needs to know about one queue."""
    name: str
    concurrency: int
    rate_limit: int
    rate_window_seconds: float
    retry: RetrySettings
    retention: RetentionSettings


def build_queue_configs(settings: Settings) -> dict[str, QueueConfig]:
    """Derive per-queue configuration from settings, honoring the deployment tier."""
    free = settings.is_free_tier

    return {
        DIRECT_MESSAGE_QUEUE: QueueConfig(
            name=DIRECT_MESSAGE_QUEUE,
            concurrency=(
                settings.free_tier_direct_message_concurrency if free
                else settings.direct_message_concurrency
            ),
            rate_limit=settings.direct_message_rate_limit,
            rate_window_seconds=settings.direct_message_rate_window_seconds,
            retry=RetrySettings(
                max_attempts=settings.direct_message_max_attempts,
                initial_delay=settings.direct_message_initial_delay,
                max_delay=settings.direct_message_max_delay,
                jitter=settings.retry_jitter,
            ),
            retention=RetentionSettings(),
        ),
        TRANSACTIONAL_EMAIL_QUEUE: QueueConfig(
            name=TRANSACTIONAL_EMAIL_QUEUE,
            concurrency=(
                settings.free_tier_transactional_email_concurrency if free
                else settings.transactional_email_concurrency
            ),
            rate_limit=settings.transactional_email_rate_limit,
            rate_window_seconds=settings.transactional_email_rate_window_seconds,
            retry=RetrySettings(
                max_attempts=settings.transactional_email_max_attempts,
                initial_delay=settings.transactional_email_initial_delay,
                max_delay=settings.transactional_email_max_delay,
                jitter=settings.retry_jitter,
            ),
            retention=RetentionSettings(),
        ),
        BULK_CAMPAIGN_QUEUE: QueueConfig(
            name=BULK_CAMPAIGN_QUEUE,
            concurrency=(
                settings.free_tier_bulk_campaign_concurrency if free
                else settings.bulk_campaign_concurrency
            ),
            rate_limit=settings.bulk_campaign_rate_limit,
            rate_window_seconds=settings.bulk_campaign_rate_window_seconds,
            retry=RetrySettings(
                max_attempts=settings.bulk_campaign_max_attempts,
                initial_delay=settings.bulk_campaign_initial_delay,
                max_delay=settings.bulk_campaign_max_delay,
                jitter=settings.retry_jitter,
            ),
            # Campaign results are larger; keep them around longer but fewer
            retention=RetentionSettings(
                completed_max_age_seconds=7200,
                completed_max_count=500,
            ),
        ),
    }


@lru_cache()
def get_settings() -> Settings:
    return Settings()

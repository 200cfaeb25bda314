from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    secret_key: str
    data_dir: str = "/data"
    cron_secret: str | None = None
    webhook_secret: str | None = None

    # Scheduling
    scheduler_enabled: bool = True
    sync_interval_minutes: int = 15
    stale_after_minutes: int = 60
    parallel_carriers: bool = False

    # Carrier API call limits
    rate_limit_per_minute: int = 60
    rate_limit_cooldown_seconds: float = 60.0
    request_timeout_seconds: float = 30.0
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    retry_backoff_multiplier: float = 2.0

    # Carrier credentials
    ups_api_key: str | None = None
    ups_base_url: str = "https://onlinetools.ups.com/api"
    ups_rate_limit_per_minute: int | None = None
    fedex_api_key: str | None = None
    fedex_base_url: str = "https://apis.fedex.com"
    fedex_rate_limit_per_minute: int | None = None
    dhl_api_key: str | None = None
    dhl_base_url: str = "https://api-eu.dhl.com"
    dhl_rate_limit_per_minute: int | None = None
    usps_api_key: str | None = None
    usps_base_url: str = "https://apis.usps.com"
    usps_rate_limit_per_minute: int | None = None

    health_alert_threshold_hours: int = 2

    model_config = {"env_prefix": "TRACKSYNC_"}


settings = Settings()

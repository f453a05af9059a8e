"""Application configuration pulled from environment variables via pydantic."""
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from utils.logging_utils import get_tagged_logger, mask_url_secrets
logger = get_tagged_logger(__name__, tag="config")


class Settings(BaseSettings):
    """Environment-driven configuration for the weather alert engine."""
    model_config = SettingsConfigDict(env_prefix="WEATHER_", extra="ignore")

    # Upstream provider (Tomorrow.io v4)
    tomorrow_api_key: str | None = None
    tomorrow_base_url: str = "https://api.tomorrow.io/v4"
    units: str = "metric"  # options: metric, imperial
    request_timeout_seconds: float = Field(default=15.0, gt=0)

    # Response cache
    current_cache_ttl_seconds: float = Field(default=180.0, gt=0)
    forecast_cache_ttl_seconds: float = Field(default=600.0, gt=0)
    cache_default_ttl_seconds: float = Field(default=600.0, gt=0)
    cache_cleanup_interval_seconds: float = Field(default=120.0, gt=0)

    # Free tier is 1000 calls/day (~41/hour); stay under it.
    rate_limit_key: str = "weather-api"
    rate_limit_max_requests: int = Field(default=35, gt=0)
    rate_limit_window_seconds: float = Field(default=3600.0, gt=0)
    rate_limit_cleanup_interval_seconds: float = Field(default=300.0, gt=0)

    retry_max_attempts: int = Field(default=3, gt=0)
    retry_base_delay_seconds: float = Field(default=1.0, gt=0)
    retry_max_delay_seconds: float = Field(default=5.0, gt=0)
    retry_backoff_multiplier: float = Field(default=2.0, gt=0)

    evaluation_enabled: bool = True
    evaluation_interval_seconds: float = Field(default=300.0, gt=0)
    evaluation_max_workers: int = Field(default=4, gt=0)

    rule_store: str = "memory"  # options: memory, sql
    rule_database_url: str = "sqlite:///./weather_alerts.db"

    # Name -> "lat,lon" pairs accepted in place of coordinates.
    known_locations: dict[str, str] = Field(default_factory=dict)

    log_level: str = "INFO"
    job_name: str = "weather_alerts"
    skip_provider_check: bool = False

    @field_validator("tomorrow_base_url", mode="after")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize base URLs to avoid double slashes."""
        return str(v).rstrip("/")

    @field_validator("rule_store", "units", mode="after")
    @classmethod
    def lowercase(cls, v: str) -> str:
        return str(v).strip().lower()


settings = Settings()


if __name__ == "__main__":
    logger.setLevel("DEBUG")
    dumped = settings.model_dump(mode="json")
    if dumped.get("tomorrow_api_key"):
        dumped["tomorrow_api_key"] = "***"
    dumped["rule_database_url"] = mask_url_secrets(dumped["rule_database_url"])
    logger.debug(f"Loaded settings: {dumped}")

import os
from datetime import timedelta

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


class Settings(BaseModel):
    # Google API Configuration
    google_api_key: str = Field(default="", alias="GOOGLE_API_KEY")
    songs_folder_id: str = Field(
        default="1w-jfbKc8pK4qCnak29xdb2cj6SpyxF9m", alias="SONGS_FOLDER_ID"
    )
    setlists_folder_id: str = Field(
        default="1jlKGeefkosdsrBwJ2toN0IB8a-G1FhGP", alias="SETLISTS_FOLDER_ID"
    )

    # Cache Configuration
    cache_ttl_ms: int = Field(default=1_800_000, alias="CACHE_TTL_MS")
    background_refresh_threshold_ms: int = Field(
        default=900_000, alias="BACKGROUND_REFRESH_THRESHOLD_MS"
    )
    refresh_timeout_ms: int = Field(default=5_400_000, alias="REFRESH_TIMEOUT_MS")
    cache_debug: bool = Field(default=False, alias="CACHE_DEBUG")

    # Upstream Request Configuration
    min_request_interval_ms: int = Field(default=2_000, alias="MIN_REQUEST_INTERVAL_MS")
    max_retry_attempts: int = Field(default=3, alias="MAX_RETRY_ATTEMPTS")
    soft_backoff_base_ms: int = Field(default=10_000, alias="SOFT_BACKOFF_BASE_MS")
    generic_backoff_base_ms: int = Field(
        default=2_000, alias="GENERIC_BACKOFF_BASE_MS"
    )
    request_timeout_seconds: float = Field(default=30.0, alias="REQUEST_TIMEOUT")

    # Server Configuration
    api_host: str = Field(default="0.0.0.0", alias="API_HOST")
    api_port: int = Field(default=8000, alias="API_PORT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @property
    def cache_ttl(self) -> timedelta:
        return timedelta(milliseconds=self.cache_ttl_ms)

    @property
    def background_refresh_threshold(self) -> timedelta:
        return timedelta(milliseconds=self.background_refresh_threshold_ms)

    @property
    def refresh_timeout(self) -> timedelta:
        return timedelta(milliseconds=self.refresh_timeout_ms)

    @property
    def min_request_interval(self) -> timedelta:
        return timedelta(milliseconds=self.min_request_interval_ms)

    @property
    def soft_backoff_base(self) -> timedelta:
        return timedelta(milliseconds=self.soft_backoff_base_ms)

    @property
    def generic_backoff_base(self) -> timedelta:
        return timedelta(milliseconds=self.generic_backoff_base_ms)

    @property
    def request_timeout(self) -> timedelta:
        return timedelta(seconds=self.request_timeout_seconds)

    def is_configured(self) -> bool:
        """Check if the Google API key is set."""
        return bool(self.google_api_key)


global_settings = Settings.model_validate(dict(os.environ))

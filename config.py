import logging
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from errors import ConfigError

# Validation error types that mean "not provided" rather than "wrong value"
MISSING_ERROR_TYPES = {"missing", "string_too_short"}


class Settings(BaseSettings):
    """
    Runtime configuration, read from the environment and a local .env file.

    Each field is set by the upper-cased variable of the same name, e.g.
    CLIENT_ID or MIRROR_MAX_DEPTH. Empty variables count as unset.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        str_strip_whitespace=True,
        extra="ignore",
    )

    # Google OAuth client and Drive destination
    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    redirect_uri: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)
    drive_folder_id: str = Field(min_length=1)

    # Mirror and pipeline limits
    downloads_dir: str = Field(default="downloads")
    mirror_max_depth: int = Field(default=2, ge=0)
    mirror_max_resources: int = Field(default=1000, gt=0)
    mirror_user_agent: str = Field(default="Mozilla/5.0 (Windows NT 10.0; Win64; x64)")
    crawl_timeout_seconds: float = Field(default=300.0, gt=0)
    archive_timeout_seconds: float = Field(default=120.0, gt=0)
    http_timeout_seconds: float = Field(default=30.0, gt=0)
    upload_timeout_seconds: float = Field(default=600.0, gt=0)

    # Background jobs
    keep_alive_url: Optional[str] = Field(default=None)
    keep_alive_timezone: str = Field(default="Asia/Kolkata")
    stale_download_hours: float = Field(default=6.0, gt=0)
    redis_url: str = Field(default="redis://localhost:6379/0")
    log_level: str = Field(default="INFO")

    @field_validator("keep_alive_timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown timezone {value!r}") from e
        return value

    @field_validator("log_level")
    @classmethod
    def _known_log_level(cls, value: str) -> str:
        value = value.upper()
        if not isinstance(logging.getLevelName(value), int):
            raise ValueError(f"unknown log level {value!r}")
        return value

    @property
    def job_budget_seconds(self) -> float:
        """Upper bound for one whole crawl/archive/upload run."""
        return (
            self.crawl_timeout_seconds
            + self.archive_timeout_seconds
            + self.upload_timeout_seconds
            + 3 * self.http_timeout_seconds
        )


def load_settings(**overrides) -> Settings:
    """Builds Settings, failing fast with the names of every bad variable."""
    try:
        return Settings(**overrides)
    except ValidationError as e:
        missing, invalid = [], []
        for err in e.errors():
            name = str(err["loc"][0]).upper() if err["loc"] else "?"
            (missing if err["type"] in MISSING_ERROR_TYPES else invalid).append(name)
        problems = []
        if missing:
            problems.append(f"Missing required configuration: {', '.join(missing)}")
        if invalid:
            problems.append(f"Invalid configuration value(s): {', '.join(invalid)}")
        raise ConfigError("; ".join(problems)) from e

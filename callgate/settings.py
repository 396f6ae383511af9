import os

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from callgate.services.errors import ConfigurationError

load_dotenv()


class Settings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Scheduler Configuration
    min_spacing_seconds: float = Field(default=1.0, ge=0, alias="CALLGATE_MIN_SPACING")
    max_concurrent: int = Field(default=1, ge=1, alias="CALLGATE_MAX_CONCURRENT")

    # Cache Configuration
    default_ttl_hours: float = Field(
        default=6.0, ge=0, alias="CALLGATE_DEFAULT_TTL_HOURS"
    )
    storage_path: str | None = Field(default=None, alias="CALLGATE_STORAGE_PATH")
    storage_max_bytes: int = Field(
        default=5 * 1024 * 1024, ge=1, alias="CALLGATE_STORAGE_MAX_BYTES"
    )
    memory_max_entries: int = Field(
        default=100, ge=1, alias="CALLGATE_MEMORY_MAX_ENTRIES"
    )
    cleanup_interval_minutes: int = Field(
        default=30, ge=1, alias="CALLGATE_CLEANUP_INTERVAL"
    )

    # Database Configuration (structured tier)
    database_url: str | None = Field(default=None, alias="CALLGATE_DATABASE_URL")
    database_echo: bool = Field(default=False, alias="CALLGATE_DATABASE_ECHO")

    # Upstream Configuration
    upstream_base_url: str = Field(default="", alias="CALLGATE_UPSTREAM_URL")
    upstream_api_key: str = Field(default="", alias="CALLGATE_UPSTREAM_KEY")
    upstream_timeout: float = Field(default=30.0, gt=0, alias="CALLGATE_UPSTREAM_TIMEOUT")

    # Logging
    log_level: str = Field(default="INFO", alias="CALLGATE_LOG_LEVEL")
    debug: bool = Field(default=False, alias="CALLGATE_DEBUG")

    @classmethod
    def from_env(cls, **overrides) -> "Settings":
        """Build settings from the process environment plus explicit overrides."""
        values: dict = {k: v for k, v in os.environ.items() if k.startswith("CALLGATE_")}
        values.update(overrides)
        try:
            return cls.model_validate(values)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid callgate settings: {e}") from e


global_settings = Settings.from_env()

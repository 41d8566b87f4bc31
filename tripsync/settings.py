import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

load_dotenv()


class Settings(BaseModel):
    # API Configuration
    api_base_url: str = Field(
        default="https://travel-api-79ct.onrender.com/api/v1", alias="API_BASE_URL"
    )
    refresh_path: str = Field(default="/auth/refresh-token", alias="REFRESH_PATH")
    request_timeout: float = Field(default=20.0, alias="REQUEST_TIMEOUT")
    resource_timeout: float = Field(default=60.0, alias="RESOURCE_TIMEOUT")
    auth_retry_statuses: frozenset[int] = Field(
        default=frozenset({401, 403, 500}), alias="AUTH_RETRY_STATUSES"
    )
    refresh_policy: str = Field(default="await", alias="REFRESH_POLICY")

    # Cache Configuration
    cache_ttl_seconds: float = Field(default=300.0, alias="CACHE_TTL_SECONDS")

    # Reachability Configuration
    reconnect_min_interval: float = Field(default=5.0, alias="RECONNECT_MIN_INTERVAL")
    probe_url: str | None = Field(default=None, alias="PROBE_URL")
    probe_interval_seconds: int = Field(default=30, alias="PROBE_INTERVAL_SECONDS")

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./tripsync.db", alias="DATABASE_URL"
    )
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")

    debug: bool = Field(default=False, alias="DEBUG")

    model_config = {"populate_by_name": True}

    @field_validator("auth_retry_statuses", mode="before")
    @classmethod
    def _parse_statuses(cls, value):
        # Accept "401,403,500" from the environment
        if isinstance(value, str):
            return frozenset(int(part) for part in value.split(",") if part.strip())
        return value


def load_settings() -> Settings:
    """Build settings from the process environment (after .env is loaded)."""
    load_dotenv()
    return Settings.model_validate(dict(os.environ))

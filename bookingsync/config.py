"""
Configuration management using Pydantic models loaded from YAML.
"""

import os
from datetime import time
from pathlib import Path
from typing import List

import pendulum
import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from .domain.exceptions import UnknownHostError
from .domain.models import WeeklyWindow, WorkingHoursPolicy

CLIENT_SECRET_ENV = "BOOKINGSYNC_CLIENT_SECRET"
ENCRYPTION_KEY_ENV = "BOOKINGSYNC_ENCRYPTION_KEY"


class ProviderConfig(BaseModel):
    """OAuth application registered with the calendar provider."""
    client_id: str
    client_secret: str = ""
    tenant_id: str = "common"
    redirect_uri: str = "http://localhost:8000/calendar/callback"
    scopes: List[str] = Field(default_factory=lambda: ["Calendars.ReadWrite", "User.Read"])

    def get_authority_url(self) -> str:
        """Get the formatted authority URL."""
        return f"https://login.microsoftonline.com/{self.tenant_id}"

    def resolve_client_secret(self) -> str:
        return os.environ.get(CLIENT_SECRET_ENV) or self.client_secret


class SyncConfig(BaseModel):
    """Timing knobs for token refresh, busy caching and outbound retries."""
    refresh_skew_minutes: int = 5
    busy_cache_ttl_seconds: int = 300
    provider_timeout_seconds: float = 10.0
    retry_delays_seconds: List[int] = Field(default_factory=lambda: [60, 300, 1800])
    sync_workers: int = 4

    @field_validator("refresh_skew_minutes", "busy_cache_ttl_seconds")
    @classmethod
    def validate_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("value must not be negative")
        return value

    @field_validator("sync_workers")
    @classmethod
    def validate_workers(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("sync_workers must be greater than zero")
        return value

    @field_validator("provider_timeout_seconds")
    @classmethod
    def validate_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("provider_timeout_seconds must be greater than zero")
        return value

    @field_validator("retry_delays_seconds")
    @classmethod
    def validate_delays(cls, value: List[int]) -> List[int]:
        if any(delay <= 0 for delay in value):
            raise ValueError("retry delays must be positive")
        return value


class StorageConfig(BaseModel):
    database_path: Path = Path("bookingsync.db")
    encryption_key: str = ""

    def resolve_encryption_key(self) -> str:
        return os.environ.get(ENCRYPTION_KEY_ENV) or self.encryption_key


class WindowConfig(BaseModel):
    """One weekly opening window, e.g. weekday 0 from 09:00 to 17:00."""
    weekday: int
    open: time
    close: time

    @field_validator("weekday")
    @classmethod
    def validate_weekday(cls, v: int) -> int:
        """Validate weekday is between 0 (Monday) and 6 (Sunday)."""
        if v not in range(7):
            raise ValueError(f"weekday must be between 0 and 6, got {v}")
        return v

    @model_validator(mode="after")
    def validate_window_order(self) -> "WindowConfig":
        """Ensure the configured window opens before it closes."""
        if self.close <= self.open:
            raise ValueError("close must be later than open")
        return self


def _check_timezone(value: str) -> str:
    try:
        pendulum.timezone(value)
    except Exception as exc:
        raise ValueError(f"Unknown timezone: {value}") from exc
    return value


class HostConfig(BaseModel):
    """Working-hours policy of one host."""
    host_id: str
    name: str = ""
    timezone: str | None = None
    granularity_minutes: int = 15
    lead_time_minutes: int = 60
    windows: List[WindowConfig] = Field(default_factory=list)

    @field_validator("granularity_minutes")
    @classmethod
    def validate_granularity(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("granularity_minutes must be greater than zero")
        return value

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str | None) -> str | None:
        return _check_timezone(value) if value is not None else None

    @field_validator("lead_time_minutes")
    @classmethod
    def validate_lead_time(cls, value: int) -> int:
        if value < 0:
            raise ValueError("lead_time_minutes must not be negative")
        return value

    def display_name(self) -> str:
        return self.name or self.host_id


class AppConfig(BaseModel):
    """Application configuration."""
    provider: ProviderConfig
    sync: SyncConfig = Field(default_factory=SyncConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    timezone: str = "UTC"
    hosts: List[HostConfig] = Field(default_factory=list)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        return _check_timezone(value)

    @field_validator("hosts")
    @classmethod
    def validate_hosts(cls, value: List[HostConfig]) -> List[HostConfig]:
        """Ensure host ids are unique."""
        seen: set[str] = set()
        for host in value:
            if host.host_id in seen:
                raise ValueError(f"Duplicate host id detected: {host.host_id}")
            seen.add(host.host_id)
        return value

    @classmethod
    def load_from_yaml(cls, config_path: Path) -> "AppConfig":
        """
        Load configuration from YAML file.

        Args:
            config_path: Path to the YAML config file

        Returns:
            AppConfig instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config is invalid
        """
        if not config_path.exists():
            raise FileNotFoundError(
                f"Config file not found: {config_path}\n"
                f"Please create a config.yaml file. See config.example.yaml for reference."
            )

        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {config_path}: {exc}") from exc

        if not isinstance(data, dict):
            raise ValueError("Config file must contain a mapping at the root level.")

        return cls(**data)

    def find_host(self, host_id: str) -> HostConfig | None:
        for host in self.hosts:
            if host.host_id == host_id:
                return host
        return None

    def policy_for(self, host_id: str) -> WorkingHoursPolicy:
        """
        Build the working-hours policy for a host.

        Raises:
            UnknownHostError: If the host is not configured
        """
        host = self.find_host(host_id)
        if host is None:
            raise UnknownHostError(f"Unknown host: '{host_id}'")

        return WorkingHoursPolicy(
            windows=tuple(
                WeeklyWindow(weekday=w.weekday, open_time=w.open, close_time=w.close)
                for w in host.windows
            ),
            granularity_minutes=host.granularity_minutes,
            lead_time_minutes=host.lead_time_minutes,
            timezone=host.timezone or self.timezone,
        )


def get_default_config_path() -> Path:
    """Get the default configuration file path."""
    # Look for config.yaml in current directory
    current_dir = Path.cwd()
    config_path = current_dir / "config.yaml"

    if not config_path.exists():
        # Try in the project root (parent of the package)
        project_root = Path(__file__).parent.parent
        config_path = project_root / "config.yaml"

    return config_path

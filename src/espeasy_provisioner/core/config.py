"""
Configuration management using Pydantic settings.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..paths import get_log_dir

DEFAULT_DEVICE_ADDRESS = "192.168.4.1"
DEFAULT_AP_SSID = "ESP_Easy_0"
DEFAULT_AP_PASSWORD = "configesp"


class Settings(BaseSettings):
    """Provisioner settings with automatic validation."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="ESPEASY_",
        case_sensitive=False,
    )

    # Device access point
    device_address: str = Field(
        default=DEFAULT_DEVICE_ADDRESS, description="Device address while in AP mode"
    )
    ap_ssid: str = Field(default=DEFAULT_AP_SSID, description="Device setup Access Point SSID")
    ap_password: str = Field(
        default=DEFAULT_AP_PASSWORD, description="Device setup Access Point passphrase"
    )

    # Setup confirmation window
    setup_window_ticks: int = Field(
        default=30, ge=1, description="Number of ticks to wait before checking setup"
    )
    setup_tick_interval: float = Field(
        default=1.0, ge=0.0, description="Seconds between setup window ticks"
    )

    # HTTP
    http_timeout: float = Field(
        default=10.0, gt=0.0, description="Timeout for setup and status requests (seconds)"
    )
    upload_timeout: float = Field(
        default=120.0, gt=0.0, description="Timeout for file uploads (seconds)"
    )

    # Link state
    join_timeout: float | None = Field(
        default=60.0,
        description="Seconds to wait for the Access Point association (None waits forever)",
    )

    # Runtime settings
    debug: bool = Field(default=False, description="Enable debug logging")

    log_dir: Path = Field(default_factory=get_log_dir, description="Log file directory")

    @property
    def setup_window_seconds(self) -> float:
        """Total length of the setup confirmation window."""
        return self.setup_window_ticks * self.setup_tick_interval

    def ensure_directories(self) -> None:
        """Ensure required directories exist."""
        self.log_dir.mkdir(parents=True, exist_ok=True)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

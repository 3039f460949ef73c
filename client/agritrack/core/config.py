"""Client configuration using pydantic-settings."""
from functools import lru_cache
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from pydantic_settings import BaseSettings, SettingsConfigDict


SUMMARY_TIME_RANGES = {"24h", "7d", "30d", "all"}


class Settings(BaseSettings):
    """Client settings loaded from environment variables."""
    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[3] / ".env"),
        case_sensitive=False,
    )

    # Remote shipment service
    api_base_url: str = "http://localhost:8080"
    request_timeout_seconds: float = 15.0

    # Application
    log_level: str = "INFO"
    session_state_path: str = ""

    # Poll cadences
    fleet_poll_interval_seconds: float = 2.0
    summary_poll_interval_seconds: float = 3.0
    incident_poll_interval_seconds: float = 3.0
    delivery_poll_interval_seconds: float = 3.0
    summary_time_range: str = "24h"

    # Arrival proximity is judged remotely; kept for display copy
    arrival_radius_meters: float = 1000.0

    # Web shell cookies
    token_cookie: str = "token"
    role_cookie: str = "user_role"
    active_shipment_cookie: str = "active_shipment"
    active_carrier_cookie: str = "active_truck"
    secure_cookies: bool = False

    def normalized_base_url(self) -> str:
        return (self.api_base_url or "").strip().rstrip("/") or "http://localhost:8080"

    def normalized_time_range(self, requested: Optional[str] = None) -> str:
        value = (requested or self.summary_time_range or "").strip().lower()
        return value if value in SUMMARY_TIME_RANGES else "24h"

    def is_local_api(self) -> bool:
        try:
            host = (urlparse(self.normalized_base_url()).hostname or "").lower()
        except ValueError:
            return False
        return host in {"localhost", "127.0.0.1", "::1"} or host.endswith(".local")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

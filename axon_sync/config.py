"""Client configuration via pydantic-settings.

Reads from environment variables (prefix ``AXON_``) and .env file.
"""

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="AXON_",
        extra="ignore",
    )

    # Service endpoint
    service_mode: Literal["local", "remote"] = "local"
    remote_url: str = ""
    local_host: str = "127.0.0.1"
    default_port: int = 9120
    auto_connect: bool = True

    # Liveness check
    health_timeout: float = 5.0
    health_check_interval: float = 30.0

    # Event stream
    event_path: str = "/global/event"
    heartbeat_timeout: float = 45.0
    heartbeat_check_interval: float = 10.0
    reconnect_base_delay: float = 1.0
    reconnect_multiplier: float = 2.0
    reconnect_max_delay: float = 30.0
    reconnect_max_attempts: int = 10

    # Transcript
    flush_interval: float = 0.016
    default_session_title: str = "New session"
    title_max_length: int = 30

    # Preferences
    database_url: str = "sqlite:///./data/preferences.db"

    @property
    def remote_configured(self) -> bool:
        return bool(self.remote_url)

    def local_endpoint(self, port: int | None = None) -> str:
        return f"http://{self.local_host}:{port or self.default_port}"


settings = Settings()

"""Settings via pydantic-settings with DUO_ env prefix.

The deployment secret also reads the unprefixed BROKER_API_KEY that
partner processes already export, so one .env drives broker and clients.
"""

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="DUO_", env_file=".env", populate_by_name=True)

    # Storage: SQLite by default, postgresql+asyncpg://... for shared deployments
    db_url: str = "sqlite+aiosqlite:///./data/duo.db"
    db_pool_size: int = 10
    db_max_overflow: int = 5
    log_level: str = "info"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 3210

    # Deployment-wide secret; empty disables the gate
    api_key: str = Field("", validation_alias=AliasChoices("DUO_API_KEY", "BROKER_API_KEY"))

    # Long polling (minutes, clamped server-side)
    listen_default_minutes: float = 30
    listen_min_minutes: float = 10
    listen_max_minutes: float = 60
    heartbeat_interval: float = 30.0  # seconds

    # Reads
    history_default_limit: int = 50
    history_max_limit: int = 500
    preview_chars: int = 200

    @model_validator(mode="after")
    def _validate_listen_bounds(self) -> "Settings":
        if self.listen_min_minutes > self.listen_max_minutes:
            raise ValueError(
                f"listen_min_minutes ({self.listen_min_minutes}) must be <= "
                f"listen_max_minutes ({self.listen_max_minutes})"
            )
        if not self.listen_min_minutes <= self.listen_default_minutes <= self.listen_max_minutes:
            raise ValueError("listen_default_minutes must lie within [listen_min_minutes, listen_max_minutes]")
        if self.heartbeat_interval <= 0:
            raise ValueError("heartbeat_interval must be > 0")
        return self

    @property
    def is_sqlite(self) -> bool:
        return self.db_url.startswith("sqlite")

    def clamp_listen_minutes(self, requested: float | None) -> float:
        """Clamp a client-requested listen timeout into the configured range."""
        minutes = requested if requested else self.listen_default_minutes
        return max(self.listen_min_minutes, min(self.listen_max_minutes, minutes))

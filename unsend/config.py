"""Configuration with .env file and environment variable support.

Prefix: UNSEND_ (e.g., UNSEND_STORAGE_DIR=/var/lib/unsend)
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

THIRTY_ONE_DAYS = 31 * 24 * 60 * 60


class Settings(BaseSettings):
    """Runtime settings for the relay process."""

    model_config = SettingsConfigDict(
        env_prefix="UNSEND_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000)
    log_level: str = Field(default="INFO")

    # Allow the frontend dev servers to call REST endpoints
    cors_origins: list[str] = Field(
        default_factory=lambda: [
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:3000",
        ]
    )

    # Files live under <storage_dir>/public until recalled, then <storage_dir>/vault.
    storage_dir: Path = Field(default=Path("./data"))
    max_upload_bytes: int = Field(default=50 * 1024 * 1024)

    default_room: str = Field(default="lobby")
    room_capacity: int = Field(default=2, ge=1)
    max_text_length: int = Field(default=4000, ge=1)
    max_ttl_seconds: float = Field(default=THIRTY_ONE_DAYS, ge=0)

    event_buffer_size: int = Field(default=1000, ge=1)
    stream_queue_size: int = Field(default=256, ge=1)
    stream_keepalive_seconds: float = Field(default=15.0, gt=0)
    # Buffers of rooms with no members or streams are dropped after this long without activity.
    channel_idle_seconds: float = Field(default=600.0, ge=0)

    pbkdf2_iterations: int = Field(default=200_000, ge=1)

    # Only enable behind a reverse proxy that overwrites X-Forwarded-For.
    trust_forwarded_for: bool = Field(default=False)

    @field_validator("default_room")
    @classmethod
    def _default_room_not_blank(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("default_room must not be blank")
        return v

    @property
    def public_dir(self) -> Path:
        return self.storage_dir / "public"

    @property
    def vault_dir(self) -> Path:
        return self.storage_dir / "vault"


@lru_cache
def get_settings() -> Settings:
    return Settings()

"""Application settings."""
from __future__ import annotations

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Access-control terminals accept at most this many paired devices per registrator.
HARD_DEVICE_LIMIT = 6


class Settings(BaseSettings):
    """Core configuration for the student registrator."""

    model_config = SettingsConfigDict(
        env_prefix="REGISTRATOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "student-registrator"

    # Default backend; callers may override per registration.
    backend_url: str | None = None
    backend_token: str | None = None

    device_request_timeout_seconds: float = 10.0
    backend_request_timeout_seconds: float = 15.0

    max_devices: int = Field(default=HARD_DEVICE_LIMIT, ge=1)
    rollout_max_concurrency: int = Field(default=HARD_DEVICE_LIMIT, ge=1)

    max_face_image_bytes: int = 200 * 1024
    face_image_base64_slack: int = 256

    employee_no_length: int = Field(default=10, ge=1)
    validity_years: int = 10

    face_library_type: str = "blackFD"
    face_library_id: str = "1"

    @model_validator(mode="after")
    def _clamp_device_limits(self) -> "Settings":
        """Never allow more than the hard device cap, whatever the environment says."""
        self.max_devices = min(self.max_devices, HARD_DEVICE_LIMIT)
        self.rollout_max_concurrency = min(self.rollout_max_concurrency, HARD_DEVICE_LIMIT)
        return self

    @property
    def max_face_image_base64_length(self) -> int:
        # base64 inflates by 4/3; the slack absorbs padding and data-URL noise.
        return self.max_face_image_bytes * 4 // 3 + self.face_image_base64_slack


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()

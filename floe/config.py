import os
from typing import List

from pydantic import BaseModel, Field


def _split_origins(value: str) -> List[str]:
    return [origin.strip() for origin in value.split(",") if origin.strip()]


class Settings(BaseModel):
    """Coordination server settings, normally read from the environment."""

    allowed_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    host: str = "0.0.0.0"
    port: int = Field(default=3001, ge=0, le=65535)
    rate_limit_max: int = Field(default=10, ge=1)
    rate_limit_window: float = Field(default=60.0, gt=0)
    rate_limit_sweep_interval: float = Field(default=60.0, gt=0)
    max_message_size: int = Field(default=100_000_000, ge=1)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ=None) -> "Settings":
        env = os.environ if environ is None else environ
        values = {}
        if "CLIENT_URL" in env:
            values["allowed_origins"] = _split_origins(env["CLIENT_URL"])
        for name, field in (
            ("HOST", "host"),
            ("PORT", "port"),
            ("RATE_LIMIT_MAX", "rate_limit_max"),
            ("RATE_LIMIT_WINDOW", "rate_limit_window"),
            ("RATE_LIMIT_SWEEP_INTERVAL", "rate_limit_sweep_interval"),
            ("MAX_MESSAGE_SIZE", "max_message_size"),
            ("LOG_LEVEL", "log_level"),
        ):
            if name in env:
                values[field] = env[name]
        return cls(**values)

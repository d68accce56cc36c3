"""
Codec configuration.

Values come from PALSAVE_* environment variables through pydantic-settings;
anything unset falls back to the defaults below. Unknown keys are ignored.
"""

from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_HINT_DISCOVERY_FILE = Path("data") / "discovered_hint_paths.txt"

ENV_PREFIX = "PALSAVE_"


class CodecConfig(BaseSettings):
    """Root configuration for decode/patch/export runs."""

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, extra="ignore")

    hint_discovery_file: Optional[Path] = Field(
        default=DEFAULT_HINT_DISCOVERY_FILE,
        description="Append-only file of discovered type hints (empty disables persistence)",
    )
    max_fallback_passes: int = Field(
        default=64, ge=1, le=512,
        description="Upper bound on full re-parse passes per file",
    )
    decode_timeout_s: float = Field(
        default=120.0, gt=0,
        description="Wall-clock limit for one file decode",
    )
    max_workers: int = Field(
        default=4, ge=1,
        description="Thread pool size for decoding independent files",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_json: bool = Field(default=False, description="Emit JSON log lines on stderr")

    @field_validator("hint_discovery_file", mode="before")
    @classmethod
    def empty_path_disables(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_level(cls, v):
        return v.upper() if isinstance(v, str) else v


def load_config(**overrides) -> CodecConfig:
    """
    Build a CodecConfig from the environment; keyword overrides win.

    Raises pydantic.ValidationError when a variable holds an invalid value.
    """
    return CodecConfig(**overrides)

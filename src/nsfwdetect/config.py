"""Environment-based configuration for NSFWDetect."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from NSFWDETECT_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="NSFWDETECT_",
        case_sensitive=False,
        protected_namespaces=("settings_",),
    )

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device used for accelerated execution
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # None = auto-detect; True forces CPU-only execution
    emulated: bool | None = None

    # Model artifact: explicit local path, or downloaded into models_dir
    model_path: str | None = None
    models_dir: str = "models"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Input limits
    max_file_size: int = Field(default=52_428_800, ge=1)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()

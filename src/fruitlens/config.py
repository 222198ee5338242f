"""Environment-based configuration for FruitLens."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Model artifacts installed alongside the package.
BUNDLED_MODELS_DIR = Path(__file__).resolve().parent / "models"


class Settings(BaseSettings):
    """Application settings loaded from FRUITLENS_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="FRUITLENS_",
        case_sensitive=False,
    )

    # Model selection
    models_dir: str = str(BUNDLED_MODELS_DIR)
    classifier_model: str = "fruits_classifier"

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=209_715_200, ge=1)

    # Worker
    queue_timeout: float = Field(default=5.0, gt=0)

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()

"""Environment-based configuration for GourdSense."""

from __future__ import annotations

from typing import Literal, Self

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from GOURDSENSE_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="GOURDSENSE_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8084

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Local model
    local_model: str = "gourd_tm_float"
    models_dir: str = "models"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)
    queue_timeout: float = Field(default=5.0, gt=0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)

    # Model management
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Temporal smoothing
    smoothing_window: int = Field(default=5, ge=1)
    reject_threshold: float = Field(default=0.70, ge=0.0, le=1.0)

    # Stability tracking
    stability_history: int = Field(default=7, ge=1)
    stability_run: int = Field(default=5, ge=1)

    # Frame selection (fractions, not percent)
    best_frame_min_confidence: float = Field(default=0.50, ge=0.0, le=1.0)
    recent_frame_min_confidence: float = Field(default=0.60, ge=0.0, le=1.0)

    # Local verdict
    local_confidence_threshold: float = Field(default=0.65, ge=0.0, le=1.0)

    # Scan loop
    scan_interval_ms: int = Field(default=200, ge=10)
    scan_capture_quality: float = Field(default=0.5, gt=0.0, le=1.0)
    fresh_capture_quality: float = Field(default=0.7, gt=0.0, le=1.0)

    # Remote validation (Gemini)
    enable_remote_validation: bool = False
    gemini_api_key: str | None = None
    gemini_model: str = "gemini-1.5-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    gemini_top_k: int = Field(default=1, ge=1)
    gemini_top_p: float = Field(default=1.0, ge=0.0, le=1.0)
    gemini_max_output_tokens: int = Field(default=512, ge=1)
    remote_timeout: float = Field(default=30.0, gt=0)

    @model_validator(mode="after")
    def _check_stability_window(self) -> Self:
        if self.stability_run > self.stability_history:
            raise ValueError("stability_run must not exceed stability_history")
        return self


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()

"""Centralised engine settings loaded from environment / .env file."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    """All runtime configuration for the nap decision engine.

    Values are read from environment variables first, then from a *.env* file
    located at the project root.  Every variable lives in the flat
    ``NAP_ENGINE_`` namespace (stripped automatically by *pydantic-settings*),
    e.g. ``NAP_ENGINE_WAKE_WINDOW_MINUTES=15``.
    """

    model_config = SettingsConfigDict(
        env_prefix="NAP_ENGINE_",
        env_file=str(_PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Logging ───────────────────────────────────────────────
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # ── Windowing ─────────────────────────────────────────────
    window_duration_seconds: float = Field(30.0, gt=0)
    window_overlap_ratio: float = Field(0.5, ge=0.0, lt=1.0)
    smoothing_span: int = Field(1, ge=1)  # 1 disables smoothing

    # ── Sample plausibility bounds ────────────────────────────
    min_heart_rate: float = 40.0
    max_heart_rate: float = 200.0
    min_hrv: float = 5.0
    max_hrv: float = 200.0
    min_motion: float = 0.0
    max_motion: float = 10.0

    # ── Heuristic classifier thresholds ───────────────────────
    low_motion_threshold: float = 0.1
    high_motion_threshold: float = 0.5
    motion_variance_threshold: float = 0.05
    high_motion_variance_threshold: float = 0.3
    hrv_variance_threshold: float = 50.0

    # ── Model-backed classifier ───────────────────────────────
    stage_model: str = ""  # registered model name, "" = heuristic only
    model_timeout_seconds: float = Field(0.5, gt=0)
    synthetic_training_sessions: int = 40  # used by the "centroid" model

    # ── Wake decision ─────────────────────────────────────────
    wake_window_minutes: int = Field(10, ge=0)
    confidence_threshold: float = Field(0.7, ge=0.0, le=1.0)
    candidate_lead_seconds: float = 120.0
    final_call_seconds: float = 60.0

    # ── Personalization ───────────────────────────────────────
    feedback_history_cap: int = Field(50, ge=1)
    retrain_threshold: int = Field(10, ge=1)
    default_resting_heart_rate: float = 65.0


@lru_cache
def get_settings() -> Settings:
    """Return a cached :class:`Settings` singleton."""
    return Settings()

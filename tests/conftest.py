"""Shared pytest fixtures."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

import pytest
import structlog

from nap_engine.config import Settings
from nap_engine.models import (
    BiometricSample,
    BiometricWindow,
    FeedbackEvent,
    PostNapFeeling,
    SessionContext,
    SleepStage,
)
from nap_engine.personalization.store import PersonalizationStore

T0 = datetime(2024, 5, 1, 13, 0, 0)


def _window(
    *,
    avg_heart_rate: float | None = 60.0,
    hrv_dispersion: float | None = 20.0,
    avg_motion: float | None = 0.2,
    motion_dispersion: float | None = 0.02,
    end_offset: float = 60.0,
    duration: float = 30.0,
) -> BiometricWindow:
    end = T0 + timedelta(seconds=end_offset)
    return BiometricWindow(
        start=end - timedelta(seconds=duration),
        end=end,
        avg_heart_rate=avg_heart_rate,
        hrv_dispersion=hrv_dispersion,
        avg_motion=avg_motion,
        motion_dispersion=motion_dispersion,
    )


def _feedback(
    rating: int,
    stage: SleepStage | None = None,
    *,
    heart_rate: float = 60.0,
    motion: float = 0.2,
    offset_minutes: float = 0.0,
) -> FeedbackEvent:
    target = T0 + timedelta(minutes=30)
    return FeedbackEvent(
        session_id="S-test",
        quality_rating=rating,
        post_nap_feeling=PostNapFeeling.REFRESHED if rating >= 4 else PostNapFeeling.GROGGY,
        biometric_snapshot=(
            BiometricSample(timestamp=target, heart_rate=heart_rate, motion_magnitude=motion),
        ),
        wake_stage=stage,
        target_wake_time=target,
        actual_wake_time=target + timedelta(minutes=offset_minutes),
    )


@pytest.fixture(autouse=True, scope="session")
def _route_logs_through_stdlib():
    """Send structlog output to stdlib logging so pytest captures it per test."""
    structlog.configure(
        processors=[structlog.processors.add_log_level, structlog.processors.JSONRenderer()],
        wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )
    yield
    structlog.reset_defaults()


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture
def t0() -> datetime:
    return T0


@pytest.fixture
def context() -> SessionContext:
    """A 90-minute nap with the default 10-minute wake window."""
    return SessionContext(
        session_id="S-001",
        start_time=T0,
        target_duration_seconds=5400,
        wake_window_minutes=10,
    )


@pytest.fixture
def store() -> PersonalizationStore:
    return PersonalizationStore()


@pytest.fixture
def make_window():
    """Factory for windows ending *end_offset* seconds after T0."""
    return _window


@pytest.fixture
def make_feedback():
    """Factory for feedback events waking 30 minutes after T0."""
    return _feedback

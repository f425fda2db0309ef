"""Shared Pydantic models used across the engine.

Every value object here is immutable once built.  Timestamps are
``datetime`` instances; durations are seconds unless the field name says
otherwise.  ``model_dump(mode="json")`` keeps full precision for
confidences and timestamps so collaborators can persist them losslessly.
"""

from __future__ import annotations

import statistics
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Sequence

from pydantic import BaseModel, ConfigDict, Field, computed_field

# ── Enums ─────────────────────────────────────────────────────


class SleepStage(str, Enum):
    """Sleep stage label produced for each biometric window."""

    AWAKE = "awake"
    LIGHT = "light_sleep"
    DEEP = "deep_sleep"
    REM = "rem_sleep"
    UNKNOWN = "unknown"

    @property
    def description(self) -> str:
        return _STAGE_DESCRIPTIONS[self]

    @property
    def is_optimal_for_waking(self) -> bool:
        """Light sleep and wakefulness are the only gentle wake points."""
        return self in (SleepStage.LIGHT, SleepStage.AWAKE)


_STAGE_DESCRIPTIONS = {
    SleepStage.AWAKE: "Awake",
    SleepStage.LIGHT: "Light Sleep",
    SleepStage.DEEP: "Deep Sleep",
    SleepStage.REM: "REM Sleep",
    SleepStage.UNKNOWN: "Unknown",
}


class WakeReason(str, Enum):
    """Why a wake time was proposed or chosen."""

    LIGHT_SLEEP_DETECTED = "light_sleep_detected"
    MOTION_INCREASE = "motion_increase"
    HEART_RATE_CHANGE = "heart_rate_change"
    TARGET_TIME_REACHED = "target_time_reached"
    USER_REQUEST = "user_request"

    @property
    def description(self) -> str:
        return _REASON_DESCRIPTIONS[self]


_REASON_DESCRIPTIONS = {
    WakeReason.LIGHT_SLEEP_DETECTED: "Light sleep phase detected",
    WakeReason.MOTION_INCREASE: "Increased movement detected",
    WakeReason.HEART_RATE_CHANGE: "Heart rate pattern change",
    WakeReason.TARGET_TIME_REACHED: "Target nap duration reached",
    WakeReason.USER_REQUEST: "Manual wake request",
}


class PostNapFeeling(str, Enum):
    """Self-reported feeling right after waking."""

    REFRESHED = "refreshed"
    ALERT = "alert"
    TIRED = "tired"
    GROGGY = "groggy"

    @property
    def score(self) -> float:
        return _FEELING_SCORES[self]


_FEELING_SCORES = {
    PostNapFeeling.REFRESHED: 1.0,
    PostNapFeeling.ALERT: 0.8,
    PostNapFeeling.TIRED: 0.3,
    PostNapFeeling.GROGGY: 0.1,
}


# ── Biometrics ────────────────────────────────────────────────


class BiometricSample(BaseModel):
    """A single sensor reading; optional fields model sensor dropout."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    heart_rate: float | None = None  # bpm
    heart_rate_variability: float | None = None  # ms
    motion_magnitude: float | None = None  # g
    motion_variance: float | None = None


class BiometricWindow(BaseModel):
    """Aggregate statistics over a fixed-duration slice of samples.

    A statistic with no contributing samples is ``None`` ("insufficient
    data"), never zero.  Build instances with :meth:`from_samples`.
    """

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime
    avg_heart_rate: float | None = None
    hrv_dispersion: float | None = None  # population variance of HRV
    avg_motion: float | None = None
    motion_dispersion: float | None = None  # population variance of motion
    samples: tuple[BiometricSample, ...] = ()

    @classmethod
    def from_samples(
        cls,
        start: datetime,
        end: datetime,
        samples: Sequence[BiometricSample],
    ) -> BiometricWindow:
        heart_rates = [s.heart_rate for s in samples if s.heart_rate is not None]
        hrvs = [s.heart_rate_variability for s in samples if s.heart_rate_variability is not None]
        motions = [s.motion_magnitude for s in samples if s.motion_magnitude is not None]
        return cls(
            start=start,
            end=end,
            avg_heart_rate=statistics.fmean(heart_rates) if heart_rates else None,
            hrv_dispersion=statistics.pvariance(hrvs) if hrvs else None,
            avg_motion=statistics.fmean(motions) if motions else None,
            motion_dispersion=statistics.pvariance(motions) if motions else None,
            samples=tuple(samples),
        )

    @property
    def duration_seconds(self) -> float:
        return (self.end - self.start).total_seconds()


# ── Stage records & wake decisions ───────────────────────────


class SleepStageRecord(BaseModel):
    """One classified window; the append-only stage log of a session."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime  # == window.end
    stage: SleepStage
    confidence: float = Field(ge=0.1, le=1.0)
    duration_seconds: float


class OptimalWakeTime(BaseModel):
    """A candidate wake moment found inside the wake window."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime
    confidence: float = Field(ge=0.0, le=1.0)
    stage: SleepStage
    reason: WakeReason


class WakeDecision(BaseModel):
    """The single terminal wake decision of a session."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    stage: SleepStage
    reason: WakeReason
    confidence: float = Field(ge=0.0, le=1.0)


class PersonalizedRecommendation(BaseModel):
    """Advisory, non-binding wake suggestion."""

    model_config = ConfigDict(frozen=True)

    recommended_wake_time: datetime
    confidence_score: float
    reasoning: str


# ── Session ───────────────────────────────────────────────────


class SessionContext(BaseModel):
    """Parameters supplied once when a nap session starts."""

    model_config = ConfigDict(frozen=True)

    session_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    start_time: datetime
    target_duration_seconds: float = Field(gt=0)
    wake_window_minutes: int = Field(10, ge=0)
    user_age: int = 30
    time_of_day: float | None = None  # hour of day, defaults to start hour
    caffeine_hours: float = 4.0
    sleep_debt: float = 1.0
    confidence_threshold: float = Field(0.7, ge=0.0, le=1.0)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def target_end_time(self) -> datetime:
        return self.start_time + timedelta(seconds=self.target_duration_seconds)

    @property
    def wake_window_start(self) -> datetime:
        return self.target_end_time - timedelta(minutes=self.wake_window_minutes)

    @property
    def hour_of_day(self) -> float:
        if self.time_of_day is not None:
            return self.time_of_day
        return self.start_time.hour + self.start_time.minute / 60


class TickResult(BaseModel):
    """What one call to :meth:`NapSession.tick` produced."""

    model_config = ConfigDict(frozen=True)

    records: tuple[SleepStageRecord, ...] = ()
    decision: WakeDecision | None = None
    rejected_samples: int = 0


# ── Feedback & personalization ───────────────────────────────


class FeedbackEvent(BaseModel):
    """Post-session feedback; the input of the personalization loop."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    session_id: str
    quality_rating: int = Field(ge=1, le=5)
    post_nap_feeling: PostNapFeeling
    biometric_snapshot: tuple[BiometricSample, ...] = ()
    was_wake_time_optimal: bool = False
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    # Stage at the moment of waking; inferred from the snapshot when absent.
    wake_stage: SleepStage | None = None
    target_wake_time: datetime | None = None
    actual_wake_time: datetime | None = None

    @property
    def is_successful(self) -> bool:
        return self.quality_rating >= 4

    @property
    def is_unsuccessful(self) -> bool:
        return self.quality_rating <= 2


class PersonalizationAdjustments(BaseModel):
    """Snapshot derived from the feedback history.

    Never mutated: every recomputation publishes a new instance.
    """

    model_config = ConfigDict(frozen=True)

    stage_success_rates: dict[SleepStage, float] = Field(default_factory=dict)
    heart_rate_preference: float | None = None  # bpm, successful − unsuccessful
    motion_preference: float | None = None
    timing_preference_minutes: float | None = None  # actual − target, successful only
    resting_heart_rate: float = 65.0
    feedback_count: int = 0
    computed_at: datetime = Field(default_factory=datetime.utcnow)

"""Synthetic nap data for tests, simulation and model fitting.

Sessions follow the usual nap architecture::

    awake (onset 2–10 min) → light (5–15 min) → deep (10–30 min, naps > 20 min)
    → light, or REM with 20 % probability for naps over an hour

Biometrics are drawn per stage around a :class:`UserArchetype`'s baseline
and always lie inside the default :class:`SampleBounds`, so generated
samples pass validation.
"""

from __future__ import annotations

import math
import random
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from enum import Enum

import structlog

from nap_engine.models import (
    BiometricSample,
    FeedbackEvent,
    PostNapFeeling,
    SessionContext,
    SleepStage,
)
from nap_engine.processing.validation import SampleBounds

logger = structlog.get_logger(__name__)

POINT_INTERVAL_SECONDS = 30.0
CYCLE_SECONDS = 5400.0  # 90-minute sleep cycle

# ── Archetypes ────────────────────────────────────────────────


class Chronotype(str, Enum):
    EARLY_BIRD = "early_bird"
    INTERMEDIATE = "intermediate"
    NIGHT_OWL = "night_owl"


class FitnessLevel(str, Enum):
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    ATHLETE = "athlete"


class NapFrequency(str, Enum):
    NEVER = "never"
    RARELY = "rarely"
    SOMETIMES = "sometimes"
    REGULARLY = "regularly"
    DAILY = "daily"


_NAP_HOURS = {
    Chronotype.EARLY_BIRD: (12.5, 14.0),
    Chronotype.INTERMEDIATE: (13.0, 15.0),
    Chronotype.NIGHT_OWL: (14.0, 16.0),
}

_NAP_DURATION_SECONDS = {
    NapFrequency.NEVER: (600, 1200),
    NapFrequency.RARELY: (900, 1800),
    NapFrequency.SOMETIMES: (1200, 2400),
    NapFrequency.REGULARLY: (1200, 3600),
    NapFrequency.DAILY: (1500, 5400),
}

_CAFFEINE_SCENARIOS = (0.5, 2.0, 4.0, 8.0, 24.0)


@dataclass(frozen=True, slots=True)
class UserArchetype:
    """A simulated user's stable traits."""

    age: int
    chronotype: Chronotype
    fitness_level: FitnessLevel
    nap_frequency: NapFrequency
    average_sleep_hours: float
    base_heart_rate: float
    base_hrv: float


def random_archetype(rng: random.Random | None = None) -> UserArchetype:
    rng = rng or random.Random()
    return UserArchetype(
        age=rng.randint(18, 75),
        chronotype=rng.choice(list(Chronotype)),
        fitness_level=rng.choice(list(FitnessLevel)),
        nap_frequency=rng.choice(list(NapFrequency)),
        average_sleep_hours=rng.uniform(5.0, 9.0),
        base_heart_rate=rng.uniform(50.0, 90.0),
        base_hrv=rng.uniform(20.0, 60.0),
    )


# ── Outputs ───────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class StageSegment:
    stage: SleepStage
    start_seconds: float
    duration_seconds: float

    @property
    def end_seconds(self) -> float:
        return self.start_seconds + self.duration_seconds


@dataclass(frozen=True, slots=True)
class TrainingPoint:
    """One labelled observation, every 30 s of a synthetic nap."""

    session_id: str
    heart_rate: float
    heart_rate_variability: float
    motion_magnitude: float
    motion_variance: float
    stage: SleepStage
    time_in_session: float
    nap_duration: float
    user_age: int
    time_of_day: float
    caffeine_hours: float
    sleep_debt: float
    is_optimal_wake: bool

    def as_dict(self) -> dict:
        data = asdict(self)
        data["stage"] = self.stage.value
        return data


@dataclass
class SyntheticSession:
    """A generated session: its context, raw samples and true stage timeline."""

    context: SessionContext
    samples: list[BiometricSample]
    timeline: list[StageSegment]
    archetype: UserArchetype

    def stage_at(self, when: datetime) -> SleepStage:
        offset = (when - self.context.start_time).total_seconds()
        return stage_at(self.timeline, offset)


def stage_at(timeline: list[StageSegment], offset_seconds: float) -> SleepStage:
    for segment in timeline:
        if segment.start_seconds <= offset_seconds < segment.end_seconds:
            return segment.stage
    return SleepStage.AWAKE


# ── Generator ─────────────────────────────────────────────────


class SyntheticSessionGenerator:
    """Draw plausible nap sessions, training points and feedback.

    Parameters
    ----------
    seed : int | None
        Seed for the private :class:`random.Random`; ``None`` is unseeded.
    bounds : SampleBounds | None
        Plausibility bounds every generated value is clamped into.
    """

    def __init__(self, seed: int | None = None, bounds: SampleBounds | None = None) -> None:
        self._rng = random.Random(seed)
        self._bounds = bounds or SampleBounds()

    @property
    def rng(self) -> random.Random:
        return self._rng

    # ── Stage architecture ───────────────────────────────────

    def stage_progression(self, duration_seconds: float) -> list[StageSegment]:
        """Stage timeline covering ``[0, duration_seconds)``."""
        rng = self._rng
        segments: list[StageSegment] = []
        t = 0.0

        onset = min(rng.uniform(120, 600), duration_seconds)
        segments.append(StageSegment(SleepStage.AWAKE, t, onset))
        t += onset

        light = min(rng.uniform(300, 900), duration_seconds - t - 300)
        if light > 0:
            segments.append(StageSegment(SleepStage.LIGHT, t, light))
            t += light

        if duration_seconds > 1200 and t < duration_seconds - 600:
            deep = min(rng.uniform(600, 1800), duration_seconds - t - 300)
            segments.append(StageSegment(SleepStage.DEEP, t, deep))
            t += deep

        remaining = duration_seconds - t
        if remaining > 120:
            final = (
                SleepStage.REM
                if duration_seconds > 3600 and rng.random() < 0.2
                else SleepStage.LIGHT
            )
            segments.append(StageSegment(final, t, remaining))
        elif remaining > 0:
            # too short for a final phase: extend the last one
            last = segments[-1]
            segments[-1] = StageSegment(last.stage, last.start_seconds, last.duration_seconds + remaining)
        return segments

    # ── Per-stage biometrics ─────────────────────────────────

    def heart_rate(self, stage: SleepStage, archetype: UserArchetype, offset_seconds: float) -> float:
        multiplier = {
            SleepStage.AWAKE: 1.0,
            SleepStage.LIGHT: 0.85,
            SleepStage.DEEP: 0.75,
            SleepStage.REM: 0.95,
        }.get(stage, 1.0)
        target = (archetype.base_heart_rate + (archetype.age - 30) * 0.2) * multiplier
        noise = self._rng.uniform(-5, 5)
        circadian = math.sin(offset_seconds / 1800) * 2
        return self._clamp(target + noise + circadian, self._bounds.min_heart_rate, self._bounds.max_heart_rate)

    def hrv(self, stage: SleepStage, archetype: UserArchetype) -> float:
        multiplier = {
            SleepStage.AWAKE: 0.8,
            SleepStage.LIGHT: 1.2,
            SleepStage.DEEP: 1.5,
            SleepStage.REM: 1.0,
        }.get(stage, 1.0)
        value = max(10.0, archetype.base_hrv * multiplier + self._rng.uniform(-3, 3))
        return self._clamp(value, self._bounds.min_hrv, self._bounds.max_hrv)

    def motion(self, stage: SleepStage) -> tuple[float, float]:
        """``(magnitude, variance)`` for one reading."""
        rng = self._rng
        magnitude_range, variance_range = {
            SleepStage.AWAKE: ((0.8, 2.0), (0.3, 0.8)),
            SleepStage.LIGHT: ((0.1, 0.4), (0.1, 0.3)),
            SleepStage.DEEP: ((0.0, 0.1), (0.0, 0.1)),
            SleepStage.REM: ((0.2, 0.6), (0.2, 0.5)),
        }.get(stage, ((0.1, 0.4), (0.1, 0.3)))
        magnitude = self._clamp(rng.uniform(*magnitude_range), self._bounds.min_motion, self._bounds.max_motion)
        return magnitude, rng.uniform(*variance_range)

    # ── Training points ──────────────────────────────────────

    def generate_points(
        self,
        archetype: UserArchetype | None = None,
        duration_seconds: float | None = None,
        *,
        session_id: str | None = None,
    ) -> list[TrainingPoint]:
        """Labelled points every 30 s for one synthetic nap."""
        archetype = archetype or random_archetype(self._rng)
        duration = duration_seconds or self._nap_duration(archetype)
        session_id = session_id or f"synthetic_{uuid.uuid4().hex[:8]}"
        timeline = self.stage_progression(duration)
        time_of_day = self._nap_hour(archetype)
        caffeine = self._rng.choice(_CAFFEINE_SCENARIOS)
        sleep_debt = self._rng.uniform(0.0, 4.0)

        points: list[TrainingPoint] = []
        for i in range(int(duration // POINT_INTERVAL_SECONDS)):
            offset = i * POINT_INTERVAL_SECONDS
            stage = stage_at(timeline, offset)
            magnitude, variance = self.motion(stage)
            points.append(
                TrainingPoint(
                    session_id=session_id,
                    heart_rate=self.heart_rate(stage, archetype, offset),
                    heart_rate_variability=self.hrv(stage, archetype),
                    motion_magnitude=magnitude,
                    motion_variance=variance,
                    stage=stage,
                    time_in_session=offset,
                    nap_duration=duration,
                    user_age=archetype.age,
                    time_of_day=time_of_day,
                    caffeine_hours=caffeine,
                    sleep_debt=sleep_debt,
                    is_optimal_wake=is_optimal_wake(stage, offset, duration),
                )
            )
        return points

    def generate_training_data(self, session_count: int) -> list[TrainingPoint]:
        """Points for *session_count* naps spread over a pool of archetypes."""
        archetypes = [random_archetype(self._rng) for _ in range(max(1, session_count // 10))]
        points: list[TrainingPoint] = []
        for i in range(session_count):
            points.extend(self.generate_points(archetypes[i % len(archetypes)]))
        logger.info("synthetic.training_data", sessions=session_count, points=len(points))
        return points

    # ── Sample streams ───────────────────────────────────────

    def generate_session(
        self,
        archetype: UserArchetype | None = None,
        duration_seconds: float | None = None,
        *,
        start_time: datetime | None = None,
        cadence_seconds: float = 5.0,
        wake_window_minutes: int = 10,
        dropout_rate: float = 0.0,
    ) -> SyntheticSession:
        """A full raw-sample session with its context and true timeline.

        *dropout_rate* is the probability that any single field of a sample
        is missing, simulating sensor gaps.
        """
        if not 1.0 <= cadence_seconds <= 30.0:
            raise ValueError("cadence_seconds must be within [1, 30]")
        archetype = archetype or random_archetype(self._rng)
        duration = duration_seconds or self._nap_duration(archetype)
        hour = self._nap_hour(archetype)
        if start_time is None:
            start_time = datetime(2024, 1, 1) + timedelta(hours=hour)

        context = SessionContext(
            start_time=start_time,
            target_duration_seconds=duration,
            wake_window_minutes=wake_window_minutes,
            user_age=archetype.age,
            time_of_day=hour,
            caffeine_hours=self._rng.choice(_CAFFEINE_SCENARIOS),
            sleep_debt=self._rng.uniform(0.0, 4.0),
        )
        timeline = self.stage_progression(duration)

        samples: list[BiometricSample] = []
        offset = 0.0
        while offset < duration:
            stage = stage_at(timeline, offset)
            magnitude, variance = self.motion(stage)
            samples.append(
                BiometricSample(
                    timestamp=start_time + timedelta(seconds=offset),
                    heart_rate=self._maybe(self.heart_rate(stage, archetype, offset), dropout_rate),
                    heart_rate_variability=self._maybe(self.hrv(stage, archetype), dropout_rate),
                    motion_magnitude=self._maybe(magnitude, dropout_rate),
                    motion_variance=self._maybe(variance, dropout_rate),
                )
            )
            offset += cadence_seconds

        logger.debug(
            "synthetic.session",
            session_id=context.session_id,
            duration=duration,
            samples=len(samples),
            stages=[s.stage.value for s in timeline],
        )
        return SyntheticSession(context=context, samples=samples, timeline=timeline, archetype=archetype)

    # ── Feedback ─────────────────────────────────────────────

    def synthetic_feedback(
        self,
        count: int,
        archetype: UserArchetype | None = None,
        *,
        start: datetime | None = None,
    ) -> list[FeedbackEvent]:
        """Plausible feedback: light-sleep wakes rate well, deep-sleep wakes poorly."""
        rng = self._rng
        archetype = archetype or random_archetype(rng)
        start = start or datetime(2024, 1, 1, 13)
        events: list[FeedbackEvent] = []
        for i in range(count):
            stage = rng.choices(
                [SleepStage.LIGHT, SleepStage.DEEP, SleepStage.AWAKE],
                weights=[0.6, 0.25, 0.15],
            )[0]
            rating = {
                SleepStage.LIGHT: rng.choice([4, 4, 5, 5, 3]),
                SleepStage.DEEP: rng.choice([1, 2, 2, 3]),
                SleepStage.AWAKE: rng.choice([3, 3, 4]),
            }[stage]
            target = start + timedelta(days=i, minutes=30)
            actual = target + timedelta(minutes=rng.gauss(-2.0, 2.0))
            snapshot = tuple(
                self._snapshot_sample(stage, archetype, actual - timedelta(seconds=30 * (4 - k)))
                for k in range(5)
            )
            events.append(
                FeedbackEvent(
                    session_id=f"synthetic_{uuid.uuid4().hex[:8]}",
                    quality_rating=rating,
                    post_nap_feeling=_feeling_for(rating),
                    biometric_snapshot=snapshot,
                    was_wake_time_optimal=rating >= 4,
                    timestamp=actual,
                    wake_stage=stage,
                    target_wake_time=target,
                    actual_wake_time=actual,
                )
            )
        return events

    def personalized_points(
        self,
        feedback: list[FeedbackEvent],
        archetype: UserArchetype,
        variations: int = 10,
    ) -> list[TrainingPoint]:
        """Variations around each feedback's last snapshot sample.

        Points are labelled optimal when the user was satisfied; the spread
        grows with how strongly the feedback leaned either way.
        """
        rng = self._rng
        points: list[TrainingPoint] = []
        for fb in feedback:
            adjustment = feedback_adjustment(fb)
            spread = abs(adjustment) * 0.1
            last = fb.biometric_snapshot[-1] if fb.biometric_snapshot else None
            base_hr = last.heart_rate if last and last.heart_rate is not None else 65.0
            base_hrv = last.heart_rate_variability if last and last.heart_rate_variability is not None else 40.0
            base_motion = last.motion_magnitude if last and last.motion_magnitude is not None else 0.1
            duration = 0.0
            if fb.target_wake_time is not None and fb.biometric_snapshot:
                duration = max(0.0, (fb.target_wake_time - fb.biometric_snapshot[0].timestamp).total_seconds())
            hour = fb.timestamp.hour + fb.timestamp.minute / 60

            for _ in range(variations):
                hr = self._clamp(
                    base_hr + rng.uniform(-spread, spread) * 10,
                    self._bounds.min_heart_rate, self._bounds.max_heart_rate,
                )
                hrv = self._clamp(
                    base_hrv + rng.uniform(-spread, spread) * 5,
                    self._bounds.min_hrv, self._bounds.max_hrv,
                )
                motion = self._clamp(
                    base_motion + rng.uniform(-spread, spread),
                    self._bounds.min_motion, self._bounds.max_motion,
                )
                points.append(
                    TrainingPoint(
                        session_id=f"personalized_{fb.session_id}",
                        heart_rate=hr,
                        heart_rate_variability=hrv,
                        motion_magnitude=motion,
                        motion_variance=(base_motion + rng.uniform(-spread, spread)) ** 2,
                        stage=_stage_from_biometrics(hr, hrv, motion),
                        time_in_session=duration * 0.9,
                        nap_duration=duration,
                        user_age=archetype.age,
                        time_of_day=hour,
                        caffeine_hours=rng.uniform(2.0, 8.0),
                        sleep_debt=rng.uniform(0.0, 3.0),
                        is_optimal_wake=adjustment > 0,
                    )
                )
        return points

    # ── Internals ────────────────────────────────────────────

    def _snapshot_sample(self, stage: SleepStage, archetype: UserArchetype, when: datetime) -> BiometricSample:
        magnitude, variance = self.motion(stage)
        return BiometricSample(
            timestamp=when,
            heart_rate=self.heart_rate(stage, archetype, 0.0),
            heart_rate_variability=self.hrv(stage, archetype),
            motion_magnitude=magnitude,
            motion_variance=variance,
        )

    def _nap_duration(self, archetype: UserArchetype) -> float:
        lo, hi = _NAP_DURATION_SECONDS[archetype.nap_frequency]
        return self._rng.uniform(lo, hi)

    def _nap_hour(self, archetype: UserArchetype) -> float:
        lo, hi = _NAP_HOURS[archetype.chronotype]
        return self._rng.uniform(lo, hi) + self._rng.uniform(-0.5, 0.5)

    def _maybe(self, value: float, dropout_rate: float) -> float | None:
        if dropout_rate > 0 and self._rng.random() < dropout_rate:
            return None
        return value

    @staticmethod
    def _clamp(value: float, lo: float, hi: float) -> float:
        return max(lo, min(hi, value))


# ── Labelling rules ───────────────────────────────────────────


def is_optimal_wake(stage: SleepStage, offset_seconds: float, duration_seconds: float) -> bool:
    """Light sleep near the target or near a 90-minute cycle boundary."""
    if duration_seconds - offset_seconds <= 300:
        return stage in (SleepStage.LIGHT, SleepStage.AWAKE)
    position = offset_seconds % CYCLE_SECONDS
    near_boundary = position < 300 or position > CYCLE_SECONDS - 300
    return near_boundary and stage is SleepStage.LIGHT


def feedback_adjustment(feedback: FeedbackEvent) -> float:
    """Satisfaction in ``[-1, 1]`` from rating and feeling."""
    combined = (feedback.quality_rating / 5.0 + feedback.post_nap_feeling.score) / 2.0
    return (combined - 0.5) * 2.0


def _stage_from_biometrics(heart_rate: float, hrv: float, motion: float) -> SleepStage:
    if motion > 0.5:
        return SleepStage.AWAKE
    if motion < 0.1 and hrv > 50:
        return SleepStage.DEEP
    if heart_rate > 70:
        return SleepStage.REM
    return SleepStage.LIGHT


def _feeling_for(rating: int) -> PostNapFeeling:
    if rating >= 5:
        return PostNapFeeling.REFRESHED
    if rating == 4:
        return PostNapFeeling.ALERT
    if rating == 3:
        return PostNapFeeling.TIRED
    return PostNapFeeling.GROGGY

"""Personalization store — learns from post-nap feedback.

The store keeps a capped, append-only feedback history and derives a
:class:`PersonalizationAdjustments` snapshot from it.  Snapshots are
immutable and published by a single reference assignment, so readers
(classification cycles of any number of live sessions) never take a lock
and always see either the previous or the next snapshot in full.

Writers serialize on ``_write_lock``; readers never touch it.

Derivations
-----------
- **Stage success rate**: successful / (successful + unsuccessful) feedback
  whose wake stage was that stage.  Neutral ratings (3) count on neither side.
- **Heart-rate / motion preference**: mean last-snapshot value of
  successful feedback minus that of unsuccessful feedback (rating ≤ 2).
- **Timing preference**: mean ``actual − target`` wake offset of successful
  feedback, in minutes (negative = woke early).
- **Resting heart rate**: mean first-snapshot HR of the five latest events.
"""

from __future__ import annotations

import asyncio
import statistics
import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Protocol, Sequence

import structlog

from nap_engine.config import Settings
from nap_engine.models import (
    BiometricSample,
    BiometricWindow,
    FeedbackEvent,
    PersonalizationAdjustments,
    SleepStage,
)

logger = structlog.get_logger(__name__)

_STAGE_TERM_WEIGHT = 0.2  # (rate − 0.5) × 0.2 → at most ±0.1
_PROXIMITY_BONUS = 0.1
_HR_PROXIMITY_BPM = 5.0
_MOTION_PROXIMITY = 0.1
_TIMING_MAX_BONUS = 0.05
_TIMING_FALLOFF_MINUTES = 5.0
_RESTING_HR_LOOKBACK = 5


RetrainHook = Callable[[tuple[FeedbackEvent, ...]], object]


class FeedbackPersistenceError(Exception):
    """The feedback sink could not store an event; nothing was changed."""


class FeedbackSink(Protocol):
    """Durable storage for feedback events, owned by a collaborator."""

    def append(self, feedback: FeedbackEvent) -> None: ...


class InMemoryFeedbackSink:
    """Sink that keeps events in a list."""

    def __init__(self) -> None:
        self.events: list[FeedbackEvent] = []

    def append(self, feedback: FeedbackEvent) -> None:
        self.events.append(feedback)


# ── Pure derivations ─────────────────────────────────────────


def infer_stage(sample: BiometricSample | None) -> SleepStage:
    """Coarse stage from a single sample's motion."""
    if sample is None or sample.motion_magnitude is None:
        return SleepStage.UNKNOWN
    if sample.motion_magnitude > 0.5:
        return SleepStage.AWAKE
    if sample.motion_magnitude < 0.1:
        return SleepStage.DEEP
    return SleepStage.LIGHT


def feedback_stage(feedback: FeedbackEvent) -> SleepStage:
    if feedback.wake_stage is not None:
        return feedback.wake_stage
    last = feedback.biometric_snapshot[-1] if feedback.biometric_snapshot else None
    return infer_stage(last)


def _last_value(feedback: FeedbackEvent, attr: str) -> float | None:
    if not feedback.biometric_snapshot:
        return None
    return getattr(feedback.biometric_snapshot[-1], attr)


def _preference_delta(
    successful: Sequence[FeedbackEvent],
    unsuccessful: Sequence[FeedbackEvent],
    attr: str,
) -> float | None:
    good = [v for v in (_last_value(f, attr) for f in successful) if v is not None]
    bad = [v for v in (_last_value(f, attr) for f in unsuccessful) if v is not None]
    if not good or not bad:
        return None
    return statistics.fmean(good) - statistics.fmean(bad)


def _wake_offset_minutes(feedback: FeedbackEvent) -> float:
    if feedback.target_wake_time is None or feedback.actual_wake_time is None:
        return 0.0
    return (feedback.actual_wake_time - feedback.target_wake_time).total_seconds() / 60.0


def compute_adjustments(
    history: Sequence[FeedbackEvent],
    default_resting_heart_rate: float = 65.0,
) -> PersonalizationAdjustments:
    """Derive a fresh adjustments snapshot from *history*."""
    if not history:
        return PersonalizationAdjustments(resting_heart_rate=default_resting_heart_rate)

    successful = [f for f in history if f.is_successful]
    unsuccessful = [f for f in history if f.is_unsuccessful]

    totals: dict[SleepStage, int] = {}
    wins: dict[SleepStage, int] = {}
    for f in history:
        stage = feedback_stage(f)
        if stage is SleepStage.UNKNOWN or not (f.is_successful or f.is_unsuccessful):
            continue
        totals[stage] = totals.get(stage, 0) + 1
        if f.is_successful:
            wins[stage] = wins.get(stage, 0) + 1
    rates = {stage: wins.get(stage, 0) / total for stage, total in totals.items()}

    timing = (
        statistics.fmean(_wake_offset_minutes(f) for f in successful) if successful else None
    )

    recent_hr = [
        f.biometric_snapshot[0].heart_rate
        for f in history[-_RESTING_HR_LOOKBACK:]
        if f.biometric_snapshot and f.biometric_snapshot[0].heart_rate is not None
    ]
    resting_hr = statistics.fmean(recent_hr) if recent_hr else default_resting_heart_rate

    return PersonalizationAdjustments(
        stage_success_rates=rates,
        heart_rate_preference=_preference_delta(successful, unsuccessful, "heart_rate"),
        motion_preference=_preference_delta(successful, unsuccessful, "motion_magnitude"),
        timing_preference_minutes=timing,
        resting_heart_rate=resting_hr,
        feedback_count=len(history),
    )


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


# ── Store ─────────────────────────────────────────────────────


class PersonalizationStore:
    """Capped feedback history plus its latest derived snapshot.

    Parameters
    ----------
    history_cap : int
        Maximum number of retained events; the oldest are dropped.
    retrain_threshold : int
        :meth:`should_retrain` fires on every multiple of this count.
    default_resting_heart_rate : float
        Resting HR assumed until feedback provides one.
    sink : FeedbackSink | None
        Optional durable storage; written before in-memory state changes.
    on_retrain : callable | None
        Called with the history whenever :meth:`should_retrain` turns true.
        Failures are logged; the feedback stays recorded.
    """

    def __init__(
        self,
        history_cap: int = 50,
        retrain_threshold: int = 10,
        default_resting_heart_rate: float = 65.0,
        sink: FeedbackSink | None = None,
        on_retrain: RetrainHook | None = None,
    ) -> None:
        if history_cap < 1 or retrain_threshold < 1:
            raise ValueError("history_cap and retrain_threshold must be >= 1")
        self._history: deque[FeedbackEvent] = deque(maxlen=history_cap)
        self._retrain_threshold = retrain_threshold
        self._default_resting_hr = default_resting_heart_rate
        self._sink = sink
        self._on_retrain = on_retrain
        self._write_lock = threading.Lock()
        self._recorded_total = 0
        self._adjustments = PersonalizationAdjustments(
            resting_heart_rate=default_resting_heart_rate
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        sink: FeedbackSink | None = None,
        on_retrain: RetrainHook | None = None,
    ) -> PersonalizationStore:
        return cls(
            history_cap=settings.feedback_history_cap,
            retrain_threshold=settings.retrain_threshold,
            default_resting_heart_rate=settings.default_resting_heart_rate,
            sink=sink,
            on_retrain=on_retrain,
        )

    # ── Read side (lock-free) ────────────────────────────────

    @property
    def adjustments(self) -> PersonalizationAdjustments:
        """The last published snapshot."""
        return self._adjustments

    @property
    def history(self) -> tuple[FeedbackEvent, ...]:
        return tuple(self._history)

    @property
    def recorded_total(self) -> int:
        """Events recorded over the store's lifetime (not capped)."""
        return self._recorded_total

    # ── Write side ───────────────────────────────────────────

    def record(self, feedback: FeedbackEvent) -> PersonalizationAdjustments:
        """Append *feedback* and publish recomputed adjustments.

        Raises
        ------
        FeedbackPersistenceError
            If the sink rejects the event.  History and snapshot are left
            exactly as they were so the caller can retry.
        """
        with self._write_lock:
            if self._sink is not None:
                try:
                    self._sink.append(feedback)
                except Exception as exc:
                    logger.error(
                        "personalization.persist_failed",
                        session_id=feedback.session_id,
                        error=str(exc),
                    )
                    raise FeedbackPersistenceError(
                        f"could not persist feedback for session {feedback.session_id}"
                    ) from exc

            history = [*self._history, feedback][-self._history.maxlen:]  # type: ignore[misc]
            snapshot = compute_adjustments(history, self._default_resting_hr)
            self._history.append(feedback)
            self._recorded_total += 1
            self._adjustments = snapshot
            retrain = self.should_retrain()
            history_now = tuple(self._history)

        logger.info(
            "personalization.feedback_recorded",
            session_id=feedback.session_id,
            quality=feedback.quality_rating,
            feeling=feedback.post_nap_feeling.value,
            history=len(history_now),
            retrain=retrain,
        )
        if retrain and self._on_retrain is not None:
            self._run_retrain(history_now)
        return snapshot

    def _run_retrain(self, history: tuple[FeedbackEvent, ...]) -> None:
        try:
            self._on_retrain(history)  # type: ignore[misc]
        except Exception as exc:
            logger.error(
                "personalization.retrain_failed",
                history=len(history),
                error=str(exc),
            )

    async def arecord(self, feedback: FeedbackEvent) -> PersonalizationAdjustments:
        """:meth:`record` off the event loop."""
        return await asyncio.to_thread(self.record, feedback)

    def should_retrain(self) -> bool:
        """True exactly when the recorded count is a positive multiple of the threshold."""
        n = self._recorded_total
        return n > 0 and n % self._retrain_threshold == 0

    # ── Adjustments ──────────────────────────────────────────

    def adjust_confidence(
        self,
        confidence: float,
        stage: SleepStage,
        window: BiometricWindow | None = None,
    ) -> float:
        """Nudge *confidence* towards the user's history, clamped to [0.1, 1.0].

        Each factor contributes at most ±0.1: the stage success rate, heart
        rate near the preferred level, motion near the preferred level.
        """
        adj = self._adjustments
        value = confidence

        rate = adj.stage_success_rates.get(stage)
        if rate is not None:
            value += (rate - 0.5) * _STAGE_TERM_WEIGHT

        if window is not None:
            if adj.heart_rate_preference is not None and window.avg_heart_rate is not None:
                preferred_hr = adj.resting_heart_rate + adj.heart_rate_preference
                if abs(window.avg_heart_rate - preferred_hr) < _HR_PROXIMITY_BPM:
                    value += _PROXIMITY_BONUS
            if adj.motion_preference is not None and window.avg_motion is not None:
                if abs(window.avg_motion - adj.motion_preference) < _MOTION_PROXIMITY:
                    value += _PROXIMITY_BONUS

        return _clamp(value, 0.1, 1.0)

    def adjust_timing(
        self,
        confidence: float,
        timestamp: datetime,
        target_end_time: datetime,
    ) -> float:
        """Favour candidates near the user's preferred wake offset (±0.05)."""
        pref = self._adjustments.timing_preference_minutes
        if pref is None:
            return _clamp(confidence, 0.1, 1.0)
        preferred = target_end_time + timedelta(minutes=pref)
        distance = abs((timestamp - preferred).total_seconds()) / 60.0
        bonus = _TIMING_MAX_BONUS * max(-1.0, 1.0 - distance / _TIMING_FALLOFF_MINUTES)
        return _clamp(confidence + bonus, 0.1, 1.0)

    def preferred_wake_offset(self) -> timedelta:
        pref = self._adjustments.timing_preference_minutes
        return timedelta(minutes=pref) if pref is not None else timedelta(0)

    def condition_score(self, window: BiometricWindow) -> float:
        """How closely *window* matches conditions of past good wakes (0.1–0.9)."""
        adj = self._adjustments
        score = 0.5
        max_adjustment = 0.4

        if adj.heart_rate_preference is not None and window.avg_heart_rate is not None:
            diff = abs(window.avg_heart_rate - (adj.resting_heart_rate + adj.heart_rate_preference))
            hr_score = max(0.0, 1.0 - diff / 20.0)
            score += (hr_score - 0.5) * max_adjustment * 0.4

        if adj.motion_preference is not None and window.avg_motion is not None:
            diff = abs(window.avg_motion - adj.motion_preference)
            motion_score = max(0.0, 1.0 - diff)
            score += (motion_score - 0.5) * max_adjustment * 0.6

        return _clamp(score, 0.1, 0.9)

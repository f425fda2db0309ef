"""Stage-classifier capability shared by every classifier variant."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import timedelta
from typing import TYPE_CHECKING, Mapping, Protocol

from nap_engine.models import BiometricWindow, SessionContext, SleepStage

if TYPE_CHECKING:
    from nap_engine.personalization.store import PersonalizationStore

MIN_CONFIDENCE = 0.1
MAX_CONFIDENCE = 1.0

# Order matters for models that consume a positional vector.
FEATURE_NAMES = (
    "avg_heart_rate",
    "hrv_dispersion",
    "avg_motion",
    "motion_dispersion",
    "minutes_elapsed",
    "user_age",
    "nap_duration_minutes",
    "time_of_day",
    "caffeine_hours",
    "sleep_debt",
)


class ClassifierUnavailable(Exception):
    """Raised by a classifier variant that cannot produce a stage right now."""


class StageModel(Protocol):
    """Contract for a learned model behind :class:`ModelBackedStageClassifier`.

    ``predict`` receives the feature mapping keyed by :data:`FEATURE_NAMES`
    and returns a :class:`SleepStage` value string (e.g. ``"light_sleep"``).
    """

    def predict(self, features: Mapping[str, float]) -> str: ...


class StageClassifier(ABC):
    """Contract that every classifier variant must implement.

    A classifier maps one window plus session context to a stage and a
    confidence in ``[0.1, 1.0]``, already passed through the personalization
    store when one is attached.
    """

    name: str = "base"

    def __init__(self, personalization: PersonalizationStore | None = None) -> None:
        self._personalization = personalization

    @abstractmethod
    def classify(
        self,
        window: BiometricWindow,
        context: SessionContext,
        time_in_session: timedelta,
    ) -> tuple[SleepStage, float]:
        """Return ``(stage, confidence)`` for *window*."""

    def close(self) -> None:
        """Release any resources held by the classifier."""

    def _personalize(self, confidence: float, stage: SleepStage, window: BiometricWindow) -> float:
        if self._personalization is None:
            return clamp_confidence(confidence)
        return self._personalization.adjust_confidence(confidence, stage, window)


def clamp_confidence(value: float) -> float:
    return max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, value))


def build_feature_vector(
    window: BiometricWindow,
    context: SessionContext,
    time_in_session: timedelta,
) -> dict[str, float]:
    """Assemble the model input for *window*.

    Heart rate, HRV dispersion and average motion are mandatory; a missing
    motion dispersion is treated as a still window (``0.0``).

    Raises
    ------
    ClassifierUnavailable
        If a mandatory statistic is ``None``.
    """
    missing = [
        name
        for name in ("avg_heart_rate", "hrv_dispersion", "avg_motion")
        if getattr(window, name) is None
    ]
    if missing:
        raise ClassifierUnavailable(f"incomplete feature vector: missing {', '.join(missing)}")

    return {
        "avg_heart_rate": float(window.avg_heart_rate),  # type: ignore[arg-type]
        "hrv_dispersion": float(window.hrv_dispersion),  # type: ignore[arg-type]
        "avg_motion": float(window.avg_motion),  # type: ignore[arg-type]
        "motion_dispersion": float(window.motion_dispersion or 0.0),
        "minutes_elapsed": time_in_session.total_seconds() / 60.0,
        "user_age": float(context.user_age),
        "nap_duration_minutes": context.target_duration_seconds / 60.0,
        "time_of_day": context.hour_of_day,
        "caffeine_hours": context.caffeine_hours,
        "sleep_debt": context.sleep_debt,
    }

"""Deterministic threshold classifier — always available.

Rules are evaluated in order, first match wins:

=====  ===========================================================  ======
Rule   Condition                                                    Stage
=====  ===========================================================  ======
1      avg motion > high OR motion dispersion > high-variance       Awake
2      avg motion < low AND motion disp. < variance AND HRV disp.   Deep
       < HRV-variance
3      anything else with complete statistics                       Light
4      statistics needed by rules 2-3 missing                       Unknown
=====  ===========================================================  ======

Rule 1 can fire on whichever motion statistic is present.  The HRV
threshold is applied to the *dispersion* of HRV inside the window, as the
field name says.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

import structlog

from nap_engine.classification.base import StageClassifier, clamp_confidence
from nap_engine.config import Settings
from nap_engine.models import BiometricWindow, SessionContext, SleepStage

if TYPE_CHECKING:
    from nap_engine.personalization.store import PersonalizationStore

logger = structlog.get_logger(__name__)

UNKNOWN_CONFIDENCE = 0.3
_LIGHT_BASELINE = 0.6
_LIGHT_MAX_BONUS = 0.3
_AWAKE_BASELINE = 0.6


@dataclass(frozen=True)
class SleepThresholds:
    """Thresholds for the heuristic classifier."""

    low_motion: float = 0.1
    high_motion: float = 0.5
    motion_variance: float = 0.05
    high_motion_variance: float = 0.3
    hrv_variance: float = 50.0

    @classmethod
    def from_settings(cls, settings: Settings) -> SleepThresholds:
        return cls(
            low_motion=settings.low_motion_threshold,
            high_motion=settings.high_motion_threshold,
            motion_variance=settings.motion_variance_threshold,
            high_motion_variance=settings.high_motion_variance_threshold,
            hrv_variance=settings.hrv_variance_threshold,
        )


def _ratio(value: float, threshold: float) -> float:
    if threshold <= 0:
        return 1.0
    return value / threshold


class HeuristicStageClassifier(StageClassifier):
    """Threshold rules over motion and HRV dispersion."""

    name = "heuristic_v1"

    def __init__(
        self,
        thresholds: SleepThresholds | None = None,
        personalization: PersonalizationStore | None = None,
    ) -> None:
        super().__init__(personalization)
        self.thresholds = thresholds or SleepThresholds()

    def classify(
        self,
        window: BiometricWindow,
        context: SessionContext | None = None,
        time_in_session: timedelta | None = None,
    ) -> tuple[SleepStage, float]:
        stage, raw = self.score(window)
        return stage, self._personalize(raw, stage, window)

    def score(self, window: BiometricWindow) -> tuple[SleepStage, float]:
        """Apply the rule table; returns the un-personalized confidence."""
        t = self.thresholds
        motion = window.avg_motion
        motion_disp = window.motion_dispersion
        hrv_disp = window.hrv_dispersion

        # 1. Awake: high movement or erratic movement
        excesses: list[float] = []
        if motion is not None and motion > t.high_motion:
            excesses.append(_ratio(motion - t.high_motion, t.high_motion))
        if motion_disp is not None and motion_disp > t.high_motion_variance:
            excesses.append(_ratio(motion_disp - t.high_motion_variance, t.high_motion_variance))
        if excesses:
            confidence = _AWAKE_BASELINE + 0.4 * min(1.0, max(excesses))
            return SleepStage.AWAKE, clamp_confidence(confidence)

        if motion is None or motion_disp is None or hrv_disp is None:
            logger.debug(
                "heuristic.insufficient_data",
                window_end=window.end.isoformat(),
                has_motion=motion is not None,
                has_hrv=hrv_disp is not None,
            )
            return SleepStage.UNKNOWN, UNKNOWN_CONFIDENCE

        # 2. Deep: still body, stable HRV
        if motion < t.low_motion and motion_disp < t.motion_variance and hrv_disp < t.hrv_variance:
            confidence = (
                0.3
                + 0.4 * (1.0 - min(1.0, _ratio(motion, t.low_motion)))
                + 0.3 * (1.0 - min(1.0, _ratio(hrv_disp, t.hrv_variance)))
            )
            return SleepStage.DEEP, clamp_confidence(confidence)

        # 3. Light: default for optimal wake detection
        bonus = min(_LIGHT_MAX_BONUS, _ratio(motion_disp, t.motion_variance) * _LIGHT_MAX_BONUS)
        return SleepStage.LIGHT, clamp_confidence(_LIGHT_BASELINE + bonus)

"""Physiological plausibility checks for incoming biometric samples."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

import structlog

from nap_engine.config import Settings
from nap_engine.models import BiometricSample

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SampleBounds:
    """Inclusive plausibility ranges per optional sample field."""

    min_heart_rate: float = 40.0
    max_heart_rate: float = 200.0
    min_hrv: float = 5.0
    max_hrv: float = 200.0
    min_motion: float = 0.0
    max_motion: float = 10.0

    @classmethod
    def from_settings(cls, settings: Settings) -> SampleBounds:
        return cls(
            min_heart_rate=settings.min_heart_rate,
            max_heart_rate=settings.max_heart_rate,
            min_hrv=settings.min_hrv,
            max_hrv=settings.max_hrv,
            min_motion=settings.min_motion,
            max_motion=settings.max_motion,
        )


def is_plausible(sample: BiometricSample, bounds: SampleBounds = SampleBounds()) -> bool:
    """Return ``True`` when every present field lies within *bounds*.

    Missing fields never disqualify a sample.
    """
    hr = sample.heart_rate
    if hr is not None and not bounds.min_heart_rate <= hr <= bounds.max_heart_rate:
        return False
    hrv = sample.heart_rate_variability
    if hrv is not None and not bounds.min_hrv <= hrv <= bounds.max_hrv:
        return False
    motion = sample.motion_magnitude
    if motion is not None and not bounds.min_motion <= motion <= bounds.max_motion:
        return False
    return True


class SampleValidator:
    """Drop implausible samples and keep a tally of what was dropped."""

    def __init__(self, bounds: SampleBounds | None = None) -> None:
        self._bounds = bounds or SampleBounds()
        self.rejected_count = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> SampleValidator:
        return cls(SampleBounds.from_settings(settings))

    @property
    def bounds(self) -> SampleBounds:
        return self._bounds

    def validate(self, sample: BiometricSample) -> BiometricSample | None:
        """Return *sample* if plausible, otherwise ``None``."""
        if is_plausible(sample, self._bounds):
            return sample
        self.rejected_count += 1
        logger.debug(
            "validator.sample_rejected",
            timestamp=sample.timestamp.isoformat(),
            heart_rate=sample.heart_rate,
            hrv=sample.heart_rate_variability,
            motion=sample.motion_magnitude,
            rejected_total=self.rejected_count,
        )
        return None

    def filter(self, samples: Iterable[BiometricSample]) -> list[BiometricSample]:
        """Validate a batch, keeping order."""
        return [s for s in samples if self.validate(s) is not None]

"""Nap session orchestration.

A :class:`NapSession` owns every per-session component and is driven by
explicit ticks::

    session = NapSession(context, settings, personalization=store)
    result = session.tick(now, samples_since_last_tick)
    if result.decision:
        trigger_alarm(result.decision)

Each tick runs validate → aggregate → (smooth) → classify → record →
decide.  With smoothing on, a window is classified once the windows after
it that its average needs have arrived.  Nothing here blocks on I/O; the
only bounded wait is the model-backed classifier's own timeout.  Call
:meth:`NapSession.close` (or use the session as a context manager) to
release the classifier's worker thread.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable

import structlog

from nap_engine.classification.base import StageClassifier
from nap_engine.classification.registry import create_classifier
from nap_engine.config import Settings, get_settings
from nap_engine.decision.engine import WakeDecisionEngine
from nap_engine.models import (
    BiometricSample,
    BiometricWindow,
    PersonalizedRecommendation,
    SessionContext,
    SleepStageRecord,
    TickResult,
    WakeDecision,
)
from nap_engine.personalization.store import PersonalizationStore
from nap_engine.processing.validation import SampleValidator
from nap_engine.processing.windows import SmoothingWindowAggregator

logger = structlog.get_logger(__name__)


class NapSession:
    """One supervised nap, from the first sample to the wake decision."""

    def __init__(
        self,
        context: SessionContext,
        settings: Settings | None = None,
        personalization: PersonalizationStore | None = None,
        classifier: StageClassifier | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.context = context
        self._validator = SampleValidator.from_settings(settings)
        self._aggregator = SmoothingWindowAggregator.from_settings(settings)
        self._classifier = classifier or create_classifier(settings, personalization)
        self._engine = WakeDecisionEngine.from_settings(context, settings, personalization)
        self._records: list[SleepStageRecord] = []
        self._last_window: BiometricWindow | None = None
        self._reported = False
        logger.info(
            "session.started",
            session_id=context.session_id,
            target_end=context.target_end_time.isoformat(),
            wake_window_minutes=context.wake_window_minutes,
            classifier=self._classifier.name,
        )

    # ── Accessors ─────────────────────────────────────────────

    @property
    def engine(self) -> WakeDecisionEngine:
        return self._engine

    @property
    def classifier(self) -> StageClassifier:
        return self._classifier

    @property
    def records(self) -> list[SleepStageRecord]:
        return list(self._records)

    @property
    def decision(self) -> WakeDecision | None:
        return self._engine.decision

    @property
    def is_finished(self) -> bool:
        return self._engine.decision is not None

    # ── Driving ───────────────────────────────────────────────

    def tick(self, now: datetime, new_samples: Iterable[BiometricSample] = ()) -> TickResult:
        """Ingest *new_samples* and evaluate the wake decision at *now*.

        The decision is attached to the result only on the tick where it is
        first made; later ticks return records (if any) without it.
        """
        rejected_before = self._validator.rejected_count
        for sample in self._validator.filter(new_samples):
            self._aggregator.add_sample(sample)

        windows = self._aggregator.drain_smoothed()

        new_records: list[SleepStageRecord] = []
        for window in windows:
            record = self._classify(window)
            self._records.append(record)
            new_records.append(record)
            self._engine.observe(record)
            self._last_window = window

        decision = self._engine.should_wake(now)
        if decision is not None and self._reported:
            decision = None
        elif decision is not None:
            self._reported = True
            logger.info(
                "session.wake",
                session_id=self.context.session_id,
                reason=decision.reason.value,
                records=len(self._records),
            )

        return TickResult(
            records=tuple(new_records),
            decision=decision,
            rejected_samples=self._validator.rejected_count - rejected_before,
        )

    def request_wake(self, now: datetime) -> WakeDecision:
        """Wake immediately at the user's request."""
        decision = self._engine.request_wake(now)
        self._reported = True
        return decision

    def recommendation(self, now: datetime) -> PersonalizedRecommendation | None:
        """Advisory suggestion based on the latest window, if any."""
        if self._last_window is None:
            return None
        return self._engine.get_personalized_recommendation(
            self._last_window, self._last_window.end - self.context.start_time, now
        )

    def close(self) -> None:
        """Release classifier resources; the session can no longer tick."""
        self._classifier.close()
        logger.debug("session.closed", session_id=self.context.session_id)

    def __enter__(self) -> NapSession:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _classify(self, window: BiometricWindow) -> SleepStageRecord:
        stage, confidence = self._classifier.classify(
            window, self.context, window.end - self.context.start_time
        )
        return SleepStageRecord(
            timestamp=window.end,
            stage=stage,
            confidence=confidence,
            duration_seconds=window.duration_seconds,
        )

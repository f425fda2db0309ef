"""Model-backed classification with a structurally guaranteed fallback.

:class:`ModelBackedStageClassifier` consults a :class:`StageModel` under a
local timeout and raises :class:`ClassifierUnavailable` on any failure.
:class:`FallbackStageClassifier` wraps a primary classifier and a fallback
and *always* answers: any exception from the primary is logged and the
fallback is consulted instead.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import timedelta
from typing import TYPE_CHECKING

import structlog

from nap_engine.classification.base import (
    ClassifierUnavailable,
    StageClassifier,
    StageModel,
    build_feature_vector,
)
from nap_engine.models import BiometricWindow, SessionContext, SleepStage

if TYPE_CHECKING:
    from nap_engine.personalization.store import PersonalizationStore

logger = structlog.get_logger(__name__)

_BASE_MODEL_CONFIDENCE = 0.8
_MISSING_DISPERSION_PENALTY = 0.1


class ModelBackedStageClassifier(StageClassifier):
    """Ask a learned model for the stage label.

    Parameters
    ----------
    model : StageModel | None
        The model to consult.  ``None`` means "not loaded" and every call
        raises :class:`ClassifierUnavailable`.
    personalization : PersonalizationStore | None
        Store used to adjust the confidence of each prediction.
    timeout_seconds : float
        Upper bound on a single ``predict`` call.
    """

    name = "model_v1"

    def __init__(
        self,
        model: StageModel | None,
        personalization: PersonalizationStore | None = None,
        timeout_seconds: float = 0.5,
    ) -> None:
        super().__init__(personalization)
        self._model = model
        self._timeout = timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="stage-model")
        self._closed = False

    @property
    def model(self) -> StageModel | None:
        return self._model

    @property
    def closed(self) -> bool:
        return self._closed

    def classify(
        self,
        window: BiometricWindow,
        context: SessionContext,
        time_in_session: timedelta,
    ) -> tuple[SleepStage, float]:
        if self._closed:
            raise ClassifierUnavailable("classifier is closed")
        if self._model is None:
            raise ClassifierUnavailable("no stage model loaded")

        features = build_feature_vector(window, context, time_in_session)
        future = self._executor.submit(self._model.predict, features)
        try:
            label = future.result(timeout=self._timeout)
        except FutureTimeout as exc:
            future.cancel()
            raise ClassifierUnavailable(f"model timed out after {self._timeout}s") from exc
        except Exception as exc:
            raise ClassifierUnavailable(f"model raised {type(exc).__name__}: {exc}") from exc

        try:
            stage = SleepStage(label)
        except ValueError as exc:
            raise ClassifierUnavailable(f"malformed model output: {label!r}") from exc

        confidence = _BASE_MODEL_CONFIDENCE
        if window.motion_dispersion is None:
            confidence -= _MISSING_DISPERSION_PENALTY
        return stage, self._personalize(confidence, stage, window)

    def close(self) -> None:
        """Release the worker thread."""
        self._closed = True
        self._executor.shutdown(wait=False, cancel_futures=True)


class FallbackStageClassifier(StageClassifier):
    """Try *primary* first; on any failure answer with *fallback*.

    The fallback is expected to be the heuristic classifier, which never
    raises, so classification is never unavailable.
    """

    def __init__(self, primary: StageClassifier, fallback: StageClassifier) -> None:
        super().__init__(None)
        self._primary = primary
        self._fallback = fallback
        self.fallback_count = 0
        self.name = f"{primary.name}+{fallback.name}"

    @property
    def primary(self) -> StageClassifier:
        return self._primary

    @property
    def fallback(self) -> StageClassifier:
        return self._fallback

    def classify(
        self,
        window: BiometricWindow,
        context: SessionContext,
        time_in_session: timedelta,
    ) -> tuple[SleepStage, float]:
        try:
            return self._primary.classify(window, context, time_in_session)
        except Exception as exc:
            self.fallback_count += 1
            logger.warning(
                "classifier.model_fallback",
                primary=self._primary.name,
                fallback=self._fallback.name,
                reason=str(exc),
                window_end=window.end.isoformat(),
                fallback_total=self.fallback_count,
            )
            return self._fallback.classify(window, context, time_in_session)

    def close(self) -> None:
        self._primary.close()
        self._fallback.close()

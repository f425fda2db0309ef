"""Refit the shared centroid stage model from the user's feedback."""

from __future__ import annotations

from typing import Sequence

import pandas as pd
import structlog

from nap_engine.classification.centroid import CentroidStageModel
from nap_engine.classification.registry import cache_model
from nap_engine.config import Settings
from nap_engine.models import FeedbackEvent
from nap_engine.synthetic.analysis import labelled_window_frame, personalized_window_frame
from nap_engine.synthetic.generator import (
    SyntheticSessionGenerator,
    UserArchetype,
    random_archetype,
)

logger = structlog.get_logger(__name__)


class CentroidRetrainer:
    """``on_retrain`` hook for a :class:`PersonalizationStore`.

    Every call turns the feedback history into personalized windows, adds
    them to a synthetic base frame (built once, lazily) and publishes the
    refitted model under *model_name*.  Sessions created afterwards with
    ``stage_model = model_name`` classify with it.
    """

    def __init__(
        self,
        settings: Settings,
        generator: SyntheticSessionGenerator | None = None,
        archetype: UserArchetype | None = None,
        model_name: str = "centroid",
    ) -> None:
        self._settings = settings
        self._generator = generator or SyntheticSessionGenerator()
        self._archetype = archetype or random_archetype(self._generator.rng)
        self._model_name = model_name
        self._base: pd.DataFrame | None = None
        self.model: CentroidStageModel | None = None

    def base_frame(self) -> pd.DataFrame:
        if self._base is None:
            self._base = labelled_window_frame(
                self._generator,
                sessions=self._settings.synthetic_training_sessions,
                settings=self._settings,
            )
        return self._base

    def __call__(self, history: Sequence[FeedbackEvent]) -> CentroidStageModel:
        points = self._generator.personalized_points(list(history), self._archetype)
        personal = personalized_window_frame(points)
        frame = pd.concat([self.base_frame(), personal], ignore_index=True)
        model = CentroidStageModel.fit(frame)
        cache_model(self._model_name, model)
        self.model = model
        logger.info(
            "retrain.model_refitted",
            model=self._model_name,
            feedback=len(history),
            personalized_windows=len(personal),
        )
        return model

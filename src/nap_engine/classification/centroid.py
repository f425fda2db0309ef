"""Nearest-centroid stage model fitted with pandas.

A deliberately small learned model: per-stage means of the window
statistics, distances scaled by the pooled standard deviation.  It exists
so the model-backed classifier path can be exercised end to end with
something fitted from data rather than hand-written rules.
"""

from __future__ import annotations

from typing import Mapping, Sequence

import pandas as pd
import structlog

logger = structlog.get_logger(__name__)

DEFAULT_FEATURES = ("avg_heart_rate", "hrv_dispersion", "avg_motion", "motion_dispersion")


class CentroidStageModel:
    """Predict the stage whose centroid is closest in z-scaled space."""

    def __init__(self, centroids: pd.DataFrame, scale: pd.Series) -> None:
        self._centroids = centroids
        self._scale = scale
        self._features = list(centroids.columns)

    @classmethod
    def fit(
        cls,
        frame: pd.DataFrame,
        features: Sequence[str] = DEFAULT_FEATURES,
        label_column: str = "stage",
    ) -> CentroidStageModel:
        """Fit centroids from a labelled window frame.

        Raises :class:`ValueError` if no complete labelled rows remain.
        """
        columns = list(features)
        if label_column not in frame.columns:
            raise ValueError(f"frame has no {label_column!r} column")
        data = frame.dropna(subset=[*columns, label_column])
        if data.empty:
            raise ValueError("no complete labelled rows to fit on")

        centroids = data.groupby(label_column)[columns].mean()
        scale = data[columns].std(ddof=0).replace(0.0, 1.0).fillna(1.0)
        logger.info(
            "centroid_model.fitted",
            rows=len(data),
            stages=[str(s) for s in centroids.index],
        )
        return cls(centroids, scale)

    @property
    def stages(self) -> list[str]:
        return [str(s) for s in self._centroids.index]

    def predict(self, features: Mapping[str, float]) -> str:
        vector = pd.Series({name: float(features[name]) for name in self._features})
        distances = (((self._centroids - vector) / self._scale) ** 2).sum(axis=1)
        return str(distances.idxmin())

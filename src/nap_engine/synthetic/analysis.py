"""Analysis helpers — pandas-based utilities over synthetic nap data."""

from __future__ import annotations

from collections import Counter
from dataclasses import asdict
from datetime import timedelta
from typing import Any, Sequence

import pandas as pd
import structlog

from nap_engine.classification.base import StageClassifier
from nap_engine.classification.heuristic import SleepThresholds
from nap_engine.config import Settings, get_settings
from nap_engine.models import BiometricWindow, SessionContext
from nap_engine.processing.windows import WindowAggregator
from nap_engine.synthetic.generator import SyntheticSessionGenerator, TrainingPoint

logger = structlog.get_logger(__name__)

WINDOW_STATS = ["avg_heart_rate", "hrv_dispersion", "avg_motion", "motion_dispersion"]


def points_to_dataframe(points: Sequence[TrainingPoint]) -> pd.DataFrame:
    """Load training points into a :class:`pandas.DataFrame`, one row each."""
    return pd.DataFrame([p.as_dict() for p in points])


def personalized_window_frame(points: Sequence[TrainingPoint]) -> pd.DataFrame:
    """Collapse personalized points into one labelled window per feedback.

    Each group of variations (one ``session_id``) becomes a row of window
    statistics labelled with its most common stage.
    """
    frame = points_to_dataframe(points)
    if frame.empty:
        return pd.DataFrame(columns=["session_id", *WINDOW_STATS, "stage"])
    grouped = frame.groupby("session_id")
    windows = pd.DataFrame(
        {
            "avg_heart_rate": grouped["heart_rate"].mean(),
            "hrv_dispersion": grouped["heart_rate_variability"].var(ddof=0),
            "avg_motion": grouped["motion_magnitude"].mean(),
            "motion_dispersion": grouped["motion_magnitude"].var(ddof=0),
            "stage": grouped["stage"].agg(lambda s: s.mode().iloc[0]),
        }
    )
    return windows.reset_index()


def labelled_window_frame(
    generator: SyntheticSessionGenerator,
    sessions: int = 20,
    settings: Settings | None = None,
) -> pd.DataFrame:
    """Window synthetic sessions exactly as a live session would.

    Each row is one window's statistics plus ``stage``, the true stage of
    the majority of its samples (as a :class:`SleepStage` value string).
    """
    settings = settings or get_settings()
    rows: list[dict[str, Any]] = []
    for _ in range(sessions):
        synthetic = generator.generate_session()
        ctx = synthetic.context
        aggregator = WindowAggregator.from_settings(settings)
        for sample in synthetic.samples:
            aggregator.add_sample(sample)
        for window in aggregator.drain_windows():
            votes = Counter(synthetic.stage_at(s.timestamp) for s in window.samples)
            stage = votes.most_common(1)[0][0]
            rows.append(
                {
                    "session_id": ctx.session_id,
                    "session_start": ctx.start_time,
                    "nap_duration": ctx.target_duration_seconds,
                    "window_start": window.start,
                    "window_end": window.end,
                    "minutes_elapsed": (window.end - ctx.start_time).total_seconds() / 60.0,
                    **{name: getattr(window, name) for name in WINDOW_STATS},
                    "stage": stage.value,
                }
            )
    logger.info("analysis.labelled_windows", sessions=sessions, windows=len(rows))
    return pd.DataFrame(rows)


def stage_summary(frame: pd.DataFrame) -> pd.DataFrame:
    """Mean, spread and count of each window statistic per true stage."""
    if frame.empty:
        return frame
    return frame.groupby("stage")[WINDOW_STATS].agg(["mean", "std", "count"])


def _quantile(frame: pd.DataFrame, stages: Sequence[str], column: str, q: float) -> float | None:
    values = frame.loc[frame["stage"].isin(stages), column].dropna()
    if values.empty:
        return None
    return float(values.quantile(q))


def _midpoint(lower: float | None, upper: float | None, default: float) -> float:
    if lower is None or upper is None:
        return default
    return round((lower + upper) / 2.0, 4)


def calibrate_thresholds(
    frame: pd.DataFrame,
    base: SleepThresholds | None = None,
) -> SleepThresholds:
    """Suggest heuristic thresholds that separate the labelled stages.

    Boundaries sit halfway between the upper tail of the quieter stage and
    the lower tail of the livelier one.  A boundary whose stages are absent
    from *frame* keeps the value from *base*.
    """
    base = base or SleepThresholds()
    if frame.empty:
        return base

    sleeping = ["light_sleep", "rem_sleep"]
    low_motion = _midpoint(
        _quantile(frame, ["deep_sleep"], "avg_motion", 0.9),
        _quantile(frame, sleeping, "avg_motion", 0.1),
        base.low_motion,
    )
    high_motion = _midpoint(
        _quantile(frame, sleeping, "avg_motion", 0.9),
        _quantile(frame, ["awake"], "avg_motion", 0.1),
        base.high_motion,
    )
    motion_variance = _midpoint(
        _quantile(frame, ["deep_sleep"], "motion_dispersion", 0.9),
        _quantile(frame, sleeping, "motion_dispersion", 0.1),
        base.motion_variance,
    )
    high_motion_variance = _midpoint(
        _quantile(frame, sleeping, "motion_dispersion", 0.9),
        _quantile(frame, ["awake"], "motion_dispersion", 0.1),
        base.high_motion_variance,
    )
    deep_hrv = _quantile(frame, ["deep_sleep"], "hrv_dispersion", 0.95)
    hrv_variance = base.hrv_variance if deep_hrv is None else max(base.hrv_variance, round(deep_hrv, 2))

    thresholds = SleepThresholds(
        low_motion=low_motion,
        high_motion=high_motion,
        motion_variance=motion_variance,
        high_motion_variance=high_motion_variance,
        hrv_variance=hrv_variance,
    )
    logger.info("analysis.thresholds_calibrated", windows=len(frame), **asdict(thresholds))
    return thresholds


def evaluate_classifier(classifier: StageClassifier, frame: pd.DataFrame) -> dict[str, Any]:
    """Accuracy and per-stage recall of *classifier* on a labelled window frame."""
    if frame.empty:
        return {"windows": 0, "accuracy": None, "recall": {}}

    predicted: list[str] = []
    for row in frame.itertuples(index=False):
        window = BiometricWindow(
            start=pd.Timestamp(row.window_start).to_pydatetime(),
            end=pd.Timestamp(row.window_end).to_pydatetime(),
            **{name: _none_if_nan(getattr(row, name)) for name in WINDOW_STATS},
        )
        context = SessionContext(
            session_id=row.session_id,
            start_time=pd.Timestamp(row.session_start).to_pydatetime(),
            target_duration_seconds=float(row.nap_duration),
        )
        stage, _ = classifier.classify(
            window, context, timedelta(minutes=float(row.minutes_elapsed))
        )
        predicted.append(stage.value)

    result = frame.assign(predicted=predicted)
    hits = result["predicted"] == result["stage"]
    recall = {
        str(stage): round(float(group.mean()), 4)
        for stage, group in hits.groupby(result["stage"])
    }
    return {
        "windows": int(len(result)),
        "accuracy": round(float(hits.mean()), 4),
        "recall": recall,
    }


def _none_if_nan(value: Any) -> float | None:
    if value is None or pd.isna(value):
        return None
    return float(value)

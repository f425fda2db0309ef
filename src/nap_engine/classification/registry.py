"""Model registry — discover stage models by name and build classifiers."""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable

import structlog

from nap_engine.classification.base import StageClassifier, StageModel
from nap_engine.classification.heuristic import HeuristicStageClassifier, SleepThresholds
from nap_engine.classification.model import FallbackStageClassifier, ModelBackedStageClassifier
from nap_engine.config import Settings, get_settings

if TYPE_CHECKING:
    from nap_engine.personalization.store import PersonalizationStore

logger = structlog.get_logger(__name__)

ModelFactory = Callable[[Settings], StageModel]

# ── Registry ──────────────────────────────────────────────────

_REGISTRY: dict[str, ModelFactory] = {}
_LOADED: dict[str, StageModel] = {}


def register_model(name: str, factory: ModelFactory) -> None:
    """Register a factory that builds a :class:`StageModel` from settings."""
    _REGISTRY[name] = factory
    _LOADED.pop(name, None)


def available_models() -> list[str]:
    """Return the names of all registered models."""
    return list(_REGISTRY.keys())


def load_model(name: str, settings: Settings) -> StageModel:
    """Return the model registered under *name*, building it on first use.

    Built models are shared by every later caller until
    :func:`clear_model_cache` or a new :func:`cache_model` for the name.
    Raises :class:`ValueError` if no model is registered.
    """
    cached = _LOADED.get(name)
    if cached is not None:
        return cached
    factory = _REGISTRY.get(name)
    if factory is None:
        raise ValueError(
            f"No stage model registered as {name!r}. Available: {available_models()}"
        )
    model = factory(settings)
    _LOADED[name] = model
    logger.info("classifier.model_loaded", model=name)
    return model


def cache_model(name: str, model: StageModel) -> None:
    """Replace the shared instance of *name*, e.g. after retraining."""
    _LOADED[name] = model
    logger.info("classifier.model_replaced", model=name)


def clear_model_cache() -> None:
    _LOADED.clear()


def create_classifier(
    settings: Settings | None = None,
    personalization: PersonalizationStore | None = None,
    model: StageModel | None = None,
) -> StageClassifier:
    """Return the best classifier available.

    With a *model* (or a loadable ``settings.stage_model``) this is a
    :class:`FallbackStageClassifier` over the model-backed variant and the
    heuristic; otherwise the heuristic alone.
    """
    settings = settings or get_settings()
    heuristic = HeuristicStageClassifier(SleepThresholds.from_settings(settings), personalization)

    if model is None and settings.stage_model:
        try:
            model = load_model(settings.stage_model, settings)
        except Exception as exc:
            logger.warning(
                "classifier.model_load_failed",
                model=settings.stage_model,
                error=str(exc),
            )

    if model is None:
        return heuristic

    primary = ModelBackedStageClassifier(
        model,
        personalization=personalization,
        timeout_seconds=settings.model_timeout_seconds,
    )
    return FallbackStageClassifier(primary, heuristic)


# ── Built-in models ───────────────────────────────────────────


def _fit_centroid_model(settings: Settings) -> StageModel:
    from nap_engine.classification.centroid import CentroidStageModel
    from nap_engine.synthetic.analysis import labelled_window_frame
    from nap_engine.synthetic.generator import SyntheticSessionGenerator

    frame = labelled_window_frame(
        SyntheticSessionGenerator(),
        sessions=settings.synthetic_training_sessions,
        settings=settings,
    )
    return CentroidStageModel.fit(frame)


register_model("centroid", _fit_centroid_model)

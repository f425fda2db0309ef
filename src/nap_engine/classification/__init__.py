"""Sleep-stage classification — heuristic rules, learned models and the fallback between them."""

from nap_engine.classification.base import ClassifierUnavailable, StageClassifier, StageModel
from nap_engine.classification.heuristic import HeuristicStageClassifier, SleepThresholds
from nap_engine.classification.model import FallbackStageClassifier, ModelBackedStageClassifier
from nap_engine.classification.registry import available_models, create_classifier, register_model

__all__ = [
    "ClassifierUnavailable",
    "FallbackStageClassifier",
    "HeuristicStageClassifier",
    "ModelBackedStageClassifier",
    "SleepThresholds",
    "StageClassifier",
    "StageModel",
    "available_models",
    "create_classifier",
    "register_model",
]

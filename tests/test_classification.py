"""Tests for the stage classifiers."""

from __future__ import annotations

import time
from datetime import timedelta

import pandas as pd
import pytest

from nap_engine.classification.base import ClassifierUnavailable, build_feature_vector
from nap_engine.classification.centroid import CentroidStageModel
from nap_engine.classification.heuristic import HeuristicStageClassifier, SleepThresholds
from nap_engine.classification.model import FallbackStageClassifier, ModelBackedStageClassifier
from nap_engine.classification.registry import (
    available_models,
    create_classifier,
    clear_model_cache,
    load_model,
    register_model,
)
from nap_engine.models import SleepStage

ELAPSED = timedelta(minutes=20)


class FixedModel:
    def __init__(self, label: str) -> None:
        self.label = label
        self.calls = 0

    def predict(self, features):
        self.calls += 1
        return self.label


class BrokenModel:
    def predict(self, features):
        raise RuntimeError("model exploded")


class SlowModel:
    def predict(self, features):
        time.sleep(0.3)
        return "light_sleep"


class TestHeuristicClassifier:
    def test_high_motion_is_awake(self, context, make_window):
        stage, confidence = HeuristicStageClassifier().classify(
            make_window(avg_motion=0.9, motion_dispersion=0.6), context, ELAPSED
        )
        assert stage is SleepStage.AWAKE
        assert confidence >= 0.75

    def test_still_body_stable_hrv_is_deep(self, context, make_window):
        stage, confidence = HeuristicStageClassifier().classify(
            make_window(avg_motion=0.03, motion_dispersion=0.02, hrv_dispersion=20.0), context, ELAPSED
        )
        assert stage is SleepStage.DEEP
        assert confidence == pytest.approx(0.76)

    def test_moderate_motion_is_light(self, context, make_window):
        stage, confidence = HeuristicStageClassifier().classify(
            make_window(avg_motion=0.2, motion_dispersion=0.02), context, ELAPSED
        )
        assert stage is SleepStage.LIGHT
        assert confidence == pytest.approx(0.72)

    def test_erratic_hrv_prevents_deep(self, context, make_window):
        stage, _ = HeuristicStageClassifier().classify(
            make_window(avg_motion=0.03, motion_dispersion=0.02, hrv_dispersion=80.0), context, ELAPSED
        )
        assert stage is SleepStage.LIGHT

    def test_awake_from_dispersion_alone(self, context, make_window):
        stage, _ = HeuristicStageClassifier().classify(
            make_window(avg_motion=None, motion_dispersion=0.5), context, ELAPSED
        )
        assert stage is SleepStage.AWAKE

    def test_missing_data_is_unknown(self, context, make_window):
        stage, confidence = HeuristicStageClassifier().classify(
            make_window(avg_heart_rate=None, hrv_dispersion=None, avg_motion=None, motion_dispersion=None),
            context,
            ELAPSED,
        )
        assert stage is SleepStage.UNKNOWN
        assert confidence == pytest.approx(0.3)

    def test_never_produces_rem(self, context, make_window):
        clf = HeuristicStageClassifier()
        for motion in (0.0, 0.05, 0.2, 0.45, 0.6, 2.0):
            for disp in (0.0, 0.01, 0.1, 0.4):
                stage, _ = clf.classify(make_window(avg_motion=motion, motion_dispersion=disp), context, ELAPSED)
                assert stage is not SleepStage.REM

    @pytest.mark.parametrize(
        "stats",
        [
            {},
            {"avg_heart_rate": None, "hrv_dispersion": None, "avg_motion": None, "motion_dispersion": None},
            {"avg_motion": 0.0, "motion_dispersion": 0.0, "hrv_dispersion": 0.0},
            {"avg_motion": 10.0, "motion_dispersion": 25.0},
            {"hrv_dispersion": None},
        ],
    )
    def test_always_answers_within_bounds(self, context, store, stats, make_window):
        for clf in (HeuristicStageClassifier(), HeuristicStageClassifier(personalization=store)):
            stage, confidence = clf.classify(make_window(**stats), context, ELAPSED)
            assert isinstance(stage, SleepStage)
            assert 0.1 <= confidence <= 1.0

    def test_zero_thresholds_do_not_divide_by_zero(self, context, make_window):
        clf = HeuristicStageClassifier(SleepThresholds(low_motion=0, high_motion=0, hrv_variance=0))
        stage, confidence = clf.classify(make_window(avg_motion=0.2), context, ELAPSED)
        assert 0.1 <= confidence <= 1.0
        assert stage is SleepStage.AWAKE

    def test_personalization_rewards_successful_stage(self, context, store, make_feedback, make_window):
        for _ in range(4):
            store.record(make_feedback(5, SleepStage.LIGHT))
        window = make_window(avg_motion=0.2, motion_dispersion=0.02, avg_heart_rate=90.0)
        _, plain = HeuristicStageClassifier().classify(window, context, ELAPSED)
        _, personalized = HeuristicStageClassifier(personalization=store).classify(window, context, ELAPSED)
        assert personalized == pytest.approx(plain + 0.1)

    def test_unknown_confidence_is_personalized(self, context, store, make_feedback, make_window):
        for rating, stage, hr in ((5, SleepStage.LIGHT, 60), (5, SleepStage.LIGHT, 60), (1, SleepStage.DEEP, 80), (1, SleepStage.DEEP, 80)):
            store.record(make_feedback(rating, stage, heart_rate=hr))
        # preferred heart rate is resting 70 - 20 = 50
        window = make_window(avg_heart_rate=52, hrv_dispersion=None, avg_motion=None, motion_dispersion=None)
        stage, confidence = HeuristicStageClassifier(personalization=store).classify(window, context, ELAPSED)
        assert stage is SleepStage.UNKNOWN
        assert confidence == pytest.approx(0.4)


class TestFeatureVector:
    def test_contains_context(self, context, make_window):
        features = build_feature_vector(make_window(), context, ELAPSED)
        assert features["minutes_elapsed"] == pytest.approx(20.0)
        assert features["nap_duration_minutes"] == pytest.approx(90.0)
        assert features["time_of_day"] == pytest.approx(13.0)

    def test_missing_dispersion_defaults_to_still(self, context, make_window):
        features = build_feature_vector(make_window(motion_dispersion=None), context, ELAPSED)
        assert features["motion_dispersion"] == 0.0

    def test_missing_heart_rate_is_unavailable(self, context, make_window):
        with pytest.raises(ClassifierUnavailable):
            build_feature_vector(make_window(avg_heart_rate=None), context, ELAPSED)


class TestModelBackedClassifier:
    def test_uses_model_label(self, context, make_window):
        clf = ModelBackedStageClassifier(FixedModel("light_sleep"))
        stage, confidence = clf.classify(make_window(), context, ELAPSED)
        assert stage is SleepStage.LIGHT
        assert confidence == pytest.approx(0.8)

    def test_missing_dispersion_lowers_confidence(self, context, make_window):
        clf = ModelBackedStageClassifier(FixedModel("deep_sleep"))
        _, confidence = clf.classify(make_window(motion_dispersion=None), context, ELAPSED)
        assert confidence == pytest.approx(0.7)

    def test_no_model_is_unavailable(self, context, make_window):
        with pytest.raises(ClassifierUnavailable):
            ModelBackedStageClassifier(None).classify(make_window(), context, ELAPSED)

    def test_model_error_is_unavailable(self, context, make_window):
        with pytest.raises(ClassifierUnavailable):
            ModelBackedStageClassifier(BrokenModel()).classify(make_window(), context, ELAPSED)

    def test_malformed_label_is_unavailable(self, context, make_window):
        with pytest.raises(ClassifierUnavailable):
            ModelBackedStageClassifier(FixedModel("napping")).classify(make_window(), context, ELAPSED)

    def test_slow_model_times_out(self, context, make_window):
        clf = ModelBackedStageClassifier(SlowModel(), timeout_seconds=0.05)
        with pytest.raises(ClassifierUnavailable, match="timed out"):
            clf.classify(make_window(), context, ELAPSED)
        clf.close()


class TestFallbackClassifier:
    def test_primary_answer_is_used(self, context, make_window):
        clf = FallbackStageClassifier(
            ModelBackedStageClassifier(FixedModel("rem_sleep")), HeuristicStageClassifier()
        )
        stage, _ = clf.classify(make_window(), context, ELAPSED)
        assert stage is SleepStage.REM
        assert clf.fallback_count == 0

    @pytest.mark.parametrize("model", [None, BrokenModel(), FixedModel("bogus")])
    def test_falls_back_to_heuristic(self, context, model, make_window):
        clf = FallbackStageClassifier(ModelBackedStageClassifier(model), HeuristicStageClassifier())
        stage, confidence = clf.classify(make_window(avg_motion=0.9, motion_dispersion=0.6), context, ELAPSED)
        assert stage is SleepStage.AWAKE
        assert 0.1 <= confidence <= 1.0
        assert clf.fallback_count == 1

    def test_incomplete_window_falls_back_to_unknown(self, context, make_window):
        clf = FallbackStageClassifier(
            ModelBackedStageClassifier(FixedModel("light_sleep")), HeuristicStageClassifier()
        )
        stage, confidence = clf.classify(
            make_window(avg_heart_rate=None, hrv_dispersion=None, avg_motion=None, motion_dispersion=None),
            context,
            ELAPSED,
        )
        assert stage is SleepStage.UNKNOWN
        assert confidence == pytest.approx(0.3)


class TestCentroidModel:
    @pytest.fixture
    def frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [
                {"avg_heart_rate": 75, "hrv_dispersion": 10, "avg_motion": 1.2, "motion_dispersion": 0.3, "stage": "awake"},
                {"avg_heart_rate": 78, "hrv_dispersion": 12, "avg_motion": 1.4, "motion_dispersion": 0.2, "stage": "awake"},
                {"avg_heart_rate": 60, "hrv_dispersion": 8, "avg_motion": 0.25, "motion_dispersion": 0.008, "stage": "light_sleep"},
                {"avg_heart_rate": 62, "hrv_dispersion": 9, "avg_motion": 0.22, "motion_dispersion": 0.007, "stage": "light_sleep"},
                {"avg_heart_rate": 52, "hrv_dispersion": 3, "avg_motion": 0.05, "motion_dispersion": 0.001, "stage": "deep_sleep"},
                {"avg_heart_rate": 50, "hrv_dispersion": 4, "avg_motion": 0.04, "motion_dispersion": 0.001, "stage": "deep_sleep"},
            ]
        )

    def test_fit_and_predict(self, frame):
        model = CentroidStageModel.fit(frame)
        assert set(model.stages) == {"awake", "light_sleep", "deep_sleep"}
        assert model.predict({"avg_heart_rate": 51, "hrv_dispersion": 3.5, "avg_motion": 0.05, "motion_dispersion": 0.001}) == "deep_sleep"
        assert model.predict({"avg_heart_rate": 77, "hrv_dispersion": 11, "avg_motion": 1.3, "motion_dispersion": 0.25}) == "awake"

    def test_fit_on_empty_frame_raises(self, frame):
        with pytest.raises(ValueError):
            CentroidStageModel.fit(frame.iloc[0:0])

    def test_drives_model_backed_classifier(self, frame, context, make_window):
        clf = ModelBackedStageClassifier(CentroidStageModel.fit(frame))
        stage, _ = clf.classify(
            make_window(avg_heart_rate=61, hrv_dispersion=8.5, avg_motion=0.23, motion_dispersion=0.007),
            context,
            ELAPSED,
        )
        assert stage is SleepStage.LIGHT


class TestRegistry:
    @pytest.fixture(autouse=True)
    def _fresh_cache(self):
        clear_model_cache()
        yield
        clear_model_cache()

    def test_heuristic_without_model(self, settings):
        assert isinstance(create_classifier(settings), HeuristicStageClassifier)

    def test_fallback_with_model(self, settings):
        clf = create_classifier(settings, model=FixedModel("light_sleep"))
        assert isinstance(clf, FallbackStageClassifier)

    def test_unknown_model_name_degrades_to_heuristic(self, settings):
        clf = create_classifier(settings.model_copy(update={"stage_model": "does-not-exist"}))
        assert isinstance(clf, HeuristicStageClassifier)

    def test_register_and_load(self, settings):
        register_model("fixed-test", lambda s: FixedModel("awake"))
        assert "fixed-test" in available_models()
        assert "centroid" in available_models()
        assert load_model("fixed-test", settings).predict({}) == "awake"

    def test_load_unknown_raises(self, settings):
        with pytest.raises(ValueError):
            load_model("nope", settings)

    def test_centroid_model_builds_from_synthetic_data(self, settings):
        small = settings.model_copy(update={"stage_model": "centroid", "synthetic_training_sessions": 3})
        clf = create_classifier(small)
        assert isinstance(clf, FallbackStageClassifier)

    def test_loaded_model_is_shared(self, settings):
        builds = []

        def factory(s):
            builds.append(s)
            return FixedModel("light_sleep")

        register_model("counted-test", factory)
        configured = settings.model_copy(update={"stage_model": "counted-test"})
        first = create_classifier(configured)
        second = create_classifier(configured)
        assert len(builds) == 1
        assert first.primary.model is second.primary.model
        first.close()
        second.close()

    def test_reregistering_drops_the_shared_model(self, settings):
        register_model("swap-test", lambda s: FixedModel("awake"))
        assert load_model("swap-test", settings).predict({}) == "awake"
        register_model("swap-test", lambda s: FixedModel("deep_sleep"))
        assert load_model("swap-test", settings).predict({}) == "deep_sleep"

    def test_closed_classifier_falls_back(self, context, make_window):
        primary = ModelBackedStageClassifier(FixedModel("rem_sleep"))
        clf = FallbackStageClassifier(primary, HeuristicStageClassifier())
        clf.close()
        assert primary.closed
        stage, _ = clf.classify(make_window(avg_motion=0.9), context, ELAPSED)
        assert stage is SleepStage.AWAKE
        assert clf.fallback_count == 1

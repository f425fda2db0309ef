"""Tests for synthetic data generation, analysis, export and the CLI."""

from __future__ import annotations

import csv
import json

import pytest

from nap_engine.classification.heuristic import HeuristicStageClassifier, SleepThresholds
from nap_engine.classification.registry import clear_model_cache, load_model
from nap_engine.main import main
from nap_engine.models import SleepStage
from nap_engine.personalization.retrain import CentroidRetrainer
from nap_engine.personalization.store import PersonalizationStore
from nap_engine.processing.validation import SampleValidator
from nap_engine.synthetic.analysis import (
    calibrate_thresholds,
    evaluate_classifier,
    labelled_window_frame,
    personalized_window_frame,
    points_to_dataframe,
    stage_summary,
)
from nap_engine.synthetic.export import export_points_csv, export_points_json
from nap_engine.synthetic.generator import (
    SyntheticSessionGenerator,
    feedback_adjustment,
    is_optimal_wake,
    random_archetype,
)


@pytest.fixture
def generator() -> SyntheticSessionGenerator:
    return SyntheticSessionGenerator(seed=7)


class TestStageProgression:
    @pytest.mark.parametrize("duration", [60, 600, 900, 1800, 3600, 5400])
    def test_timeline_covers_the_nap(self, generator, duration):
        timeline = generator.stage_progression(duration)
        assert timeline[0].stage is SleepStage.AWAKE
        assert timeline[0].start_seconds == 0
        for prev, nxt in zip(timeline, timeline[1:]):
            assert nxt.start_seconds == pytest.approx(prev.end_seconds)
        assert timeline[-1].end_seconds == pytest.approx(duration)

    def test_short_naps_have_no_deep_sleep(self, generator):
        for _ in range(20):
            assert SleepStage.DEEP not in {s.stage for s in generator.stage_progression(900)}

    def test_long_naps_reach_deep_sleep(self, generator):
        assert SleepStage.DEEP in {s.stage for s in generator.stage_progression(3600)}

    def test_seeded_generators_agree(self):
        a = SyntheticSessionGenerator(seed=3).stage_progression(3600)
        b = SyntheticSessionGenerator(seed=3).stage_progression(3600)
        assert a == b


class TestGenerator:
    def test_session_samples_pass_validation(self, generator):
        session = generator.generate_session(duration_seconds=1800, cadence_seconds=10)
        validator = SampleValidator()
        assert len(validator.filter(session.samples)) == len(session.samples) == 180
        assert session.context.target_duration_seconds == 1800

    def test_dropout_creates_gaps(self, generator):
        session = generator.generate_session(duration_seconds=600, dropout_rate=0.5)
        assert any(s.heart_rate is None for s in session.samples)

    def test_rejects_bad_cadence(self, generator):
        with pytest.raises(ValueError):
            generator.generate_session(duration_seconds=600, cadence_seconds=60)

    def test_points_every_30_seconds(self, generator):
        points = generator.generate_points(random_archetype(generator.rng), duration_seconds=1800)
        assert len(points) == 60
        assert [p.time_in_session for p in points[:3]] == [0, 30, 60]
        assert all(40 <= p.heart_rate <= 200 for p in points)

    def test_optimal_wake_rule(self):
        assert is_optimal_wake(SleepStage.LIGHT, 1600, 1800)
        assert is_optimal_wake(SleepStage.AWAKE, 1600, 1800)
        assert not is_optimal_wake(SleepStage.DEEP, 1600, 1800)
        assert is_optimal_wake(SleepStage.LIGHT, 5450, 7200)  # near a cycle boundary
        assert not is_optimal_wake(SleepStage.LIGHT, 2700, 7200)

    def test_feedback_feeds_a_store(self, generator):
        events = generator.synthetic_feedback(12)
        store = PersonalizationStore()
        for e in events:
            assert 1 <= e.quality_rating <= 5
            store.record(e)
        assert store.recorded_total == 12
        assert store.adjustments.stage_success_rates

    def test_personalized_points(self, generator):
        archetype = random_archetype(generator.rng)
        events = generator.synthetic_feedback(3, archetype)
        points = generator.personalized_points(events, archetype)
        assert len(points) == 30
        for p in points:
            fb = next(e for e in events if p.session_id == f"personalized_{e.session_id}")
            assert p.is_optimal_wake == (feedback_adjustment(fb) > 0)


class TestAnalysis:
    @pytest.fixture
    def frame(self, generator, settings):
        return labelled_window_frame(generator, sessions=3, settings=settings)

    def test_labelled_windows(self, frame):
        assert not frame.empty
        assert set(frame["stage"]) <= {s.value for s in SleepStage}
        assert {"avg_motion", "motion_dispersion", "hrv_dispersion", "avg_heart_rate"} <= set(frame.columns)

    def test_stage_summary(self, frame):
        summary = stage_summary(frame)
        assert "awake" in summary.index

    def test_calibrate_and_evaluate(self, frame):
        thresholds = calibrate_thresholds(frame)
        assert isinstance(thresholds, SleepThresholds)
        assert thresholds.low_motion < thresholds.high_motion
        report = evaluate_classifier(HeuristicStageClassifier(thresholds), frame)
        assert report["windows"] == len(frame)
        assert 0.0 <= report["accuracy"] <= 1.0

    def test_empty_frame(self):
        empty = points_to_dataframe([])
        assert calibrate_thresholds(empty) == SleepThresholds()
        assert evaluate_classifier(HeuristicStageClassifier(), empty)["windows"] == 0


class TestRetraining:
    @pytest.fixture(autouse=True)
    def _fresh_cache(self):
        clear_model_cache()
        yield
        clear_model_cache()

    def test_personalized_windows_one_per_feedback(self, generator):
        archetype = random_archetype(generator.rng)
        events = generator.synthetic_feedback(4, archetype)
        frame = personalized_window_frame(generator.personalized_points(events, archetype))
        assert len(frame) == 4
        assert set(frame["stage"]) <= {s.value for s in SleepStage}
        assert frame["avg_heart_rate"].between(40, 200).all()

    def test_store_refits_the_shared_model(self, generator, settings):
        small = settings.model_copy(update={"synthetic_training_sessions": 2})
        retrainer = CentroidRetrainer(small, generator)
        store = PersonalizationStore(retrain_threshold=3, on_retrain=retrainer)
        for event in generator.synthetic_feedback(3):
            store.record(event)
        assert retrainer.model is not None
        assert load_model("centroid", small) is retrainer.model


class TestExport:
    def test_csv(self, generator, tmp_path):
        points = generator.generate_points(duration_seconds=600)
        path = export_points_csv(points, tmp_path / "out" / "points.csv")
        with path.open() as f:
            rows = list(csv.DictReader(f))
        assert len(rows) == len(points)
        assert rows[0]["stage"] == "awake"

    def test_json(self, generator, tmp_path):
        points = generator.generate_points(duration_seconds=600)
        path = export_points_json(points, tmp_path / "points.json")
        records = json.loads(path.read_text())
        assert len(records) == len(points)
        assert records[0]["session_id"] == points[0].session_id


class TestCli:
    @pytest.fixture(autouse=True)
    def _keep_test_logging(self, monkeypatch):
        monkeypatch.setattr("nap_engine.main.setup_logging", lambda *args, **kwargs: None)

    def test_simulate(self, capsys):
        main(["simulate", "--duration-min", "30", "--seed", "11", "--feedback", "5"])
        result = json.loads(capsys.readouterr().out)
        assert result["decision"]["reason"] in {"light_sleep_detected", "motion_increase", "target_time_reached"}
        assert result["feedback_recorded"] == 5
        assert result["minutes_early"] <= 10

    def test_generate(self, tmp_path, capsys):
        out = tmp_path / "data.json"
        main(["generate", "--sessions", "2", "--output", str(out), "--format", "json", "--seed", "1"])
        assert json.loads(out.read_text())

    def test_calibrate(self, capsys):
        main(["calibrate", "--sessions", "2", "--seed", "5"])
        result = json.loads(capsys.readouterr().out)
        assert set(result) == {"current", "suggested", "current_accuracy", "suggested_accuracy"}

    def test_no_command_exits(self):
        with pytest.raises(SystemExit):
            main([])

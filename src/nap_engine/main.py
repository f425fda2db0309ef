"""Command-line entrypoint — simulate naps and work with synthetic data."""

from __future__ import annotations

import argparse
import json
import sys
from collections import Counter
from dataclasses import asdict
from datetime import timedelta
from typing import Any

from nap_engine.classification.heuristic import HeuristicStageClassifier, SleepThresholds
from nap_engine.config import Settings, get_settings
from nap_engine.logger import setup_logging
from nap_engine.personalization.retrain import CentroidRetrainer
from nap_engine.personalization.store import PersonalizationStore
from nap_engine.session import NapSession
from nap_engine.synthetic.analysis import (
    calibrate_thresholds,
    evaluate_classifier,
    labelled_window_frame,
)
from nap_engine.synthetic.export import export_points_csv, export_points_json
from nap_engine.synthetic.generator import SyntheticSessionGenerator


def simulate(
    settings: Settings,
    *,
    duration_minutes: float,
    wake_window_minutes: int,
    seed: int | None = None,
    feedback: int = 0,
    tick_seconds: float = 30.0,
) -> dict[str, Any]:
    """Run one synthetic nap through a :class:`NapSession` tick by tick."""
    generator = SyntheticSessionGenerator(seed=seed)
    synthetic = generator.generate_session(
        duration_seconds=duration_minutes * 60,
        wake_window_minutes=wake_window_minutes,
    )
    on_retrain = (
        CentroidRetrainer(settings, generator, synthetic.archetype)
        if settings.stage_model == "centroid"
        else None
    )
    store = PersonalizationStore.from_settings(settings, on_retrain=on_retrain)
    for event in generator.synthetic_feedback(feedback, synthetic.archetype):
        store.record(event)

    ctx = synthetic.context.model_copy(
        update={"confidence_threshold": settings.confidence_threshold}
    )
    pending = list(synthetic.samples)
    now = ctx.start_time
    step = timedelta(seconds=tick_seconds)
    decision = None
    with NapSession(ctx, settings, personalization=store) as session:
        while decision is None:
            now += step
            batch = [s for s in pending if s.timestamp <= now]
            pending = pending[len(batch):]
            decision = session.tick(now, batch).decision

    records = session.records
    return {
        "session_id": ctx.session_id,
        "start": ctx.start_time.isoformat(),
        "target_end": ctx.target_end_time.isoformat(),
        "classifier": session.classifier.name,
        "windows": len(records),
        "stages": dict(Counter(r.stage.value for r in records)),
        "true_stages": [s.stage.value for s in synthetic.timeline],
        "feedback_recorded": store.recorded_total,
        "decision": decision.model_dump(mode="json"),
        "minutes_early": round((ctx.target_end_time - decision.timestamp).total_seconds() / 60, 2),
    }


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="nap-engine",
        description="Smart-wake decision engine for timed naps.",
    )
    sub = parser.add_subparsers(dest="command")

    # ── simulate ──────────────────────────────────────────────
    sim_parser = sub.add_parser("simulate", help="Run a synthetic nap end to end.")
    sim_parser.add_argument("--duration-min", type=float, default=30.0)
    sim_parser.add_argument("--wake-window-min", type=int, default=None)
    sim_parser.add_argument("--seed", type=int, default=None)
    sim_parser.add_argument("--model", default=None, help="Registered stage model name.")
    sim_parser.add_argument("--feedback", type=int, default=0, help="Synthetic feedback to backfill.")
    sim_parser.add_argument("--tick-seconds", type=float, default=30.0)

    # ── generate ──────────────────────────────────────────────
    gen_parser = sub.add_parser("generate", help="Write synthetic training data.")
    gen_parser.add_argument("--sessions", type=int, default=100)
    gen_parser.add_argument("--output", required=True)
    gen_parser.add_argument("--format", choices=["csv", "json"], default="csv")
    gen_parser.add_argument("--seed", type=int, default=None)

    # ── calibrate ─────────────────────────────────────────────
    cal_parser = sub.add_parser("calibrate", help="Suggest heuristic thresholds.")
    cal_parser.add_argument("--sessions", type=int, default=20)
    cal_parser.add_argument("--seed", type=int, default=None)

    args = parser.parse_args(argv)
    settings = get_settings()
    setup_logging(settings.log_level)

    if args.command == "simulate":
        if args.model is not None:
            settings = settings.model_copy(update={"stage_model": args.model})
        result = simulate(
            settings,
            duration_minutes=args.duration_min,
            wake_window_minutes=(
                args.wake_window_min
                if args.wake_window_min is not None
                else settings.wake_window_minutes
            ),
            seed=args.seed,
            feedback=args.feedback,
            tick_seconds=args.tick_seconds,
        )
        print(json.dumps(result, indent=2))
    elif args.command == "generate":
        points = SyntheticSessionGenerator(seed=args.seed).generate_training_data(args.sessions)
        exporter = export_points_json if args.format == "json" else export_points_csv
        path = exporter(points, args.output)
        print(f"Wrote {len(points)} points to {path}")
    elif args.command == "calibrate":
        frame = labelled_window_frame(
            SyntheticSessionGenerator(seed=args.seed), sessions=args.sessions, settings=settings
        )
        current = SleepThresholds.from_settings(settings)
        suggested = calibrate_thresholds(frame, base=current)
        print(
            json.dumps(
                {
                    "current": asdict(current),
                    "suggested": asdict(suggested),
                    "current_accuracy": evaluate_classifier(HeuristicStageClassifier(current), frame),
                    "suggested_accuracy": evaluate_classifier(HeuristicStageClassifier(suggested), frame),
                },
                indent=2,
            )
        )
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()

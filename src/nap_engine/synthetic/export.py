"""Export synthetic datasets for offline model work."""

from __future__ import annotations

import csv
import json
from dataclasses import fields
from pathlib import Path
from typing import Sequence

import structlog

from nap_engine.synthetic.generator import TrainingPoint

logger = structlog.get_logger(__name__)

COLUMNS = [f.name for f in fields(TrainingPoint)]


def export_points_csv(points: Sequence[TrainingPoint], output_path: str | Path) -> Path:
    """Write training points to a CSV file.

    Returns the resolved output path.
    """
    output = Path(output_path)
    output.parent.mkdir(parents=True, exist_ok=True)

    with output.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=COLUMNS)
        writer.writeheader()
        for p in points:
            writer.writerow(p.as_dict())

    logger.info("export.csv_written", path=str(output), rows=len(points))
    return output


def export_points_json(points: Sequence[TrainingPoint], output_path: str | Path) -> Path:
    """Write training points to a JSON file."""
    output = Path(output_path)
    output.parent.mkdir(parents=True, exist_ok=True)

    records = [p.as_dict() for p in points]
    with output.open("w", encoding="utf-8") as f:
        json.dump(records, f, indent=2)

    logger.info("export.json_written", path=str(output), rows=len(records))
    return output

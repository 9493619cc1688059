"""Serialization of differ findings to JSON and CSV files."""

from __future__ import annotations

import csv
import json
from dataclasses import asdict
from typing import List

from h2csmuggler.differ import Mismatch

COLUMNS = [
    "target",
    "normal-status-code",
    "h2c-status-code",
    "normal-response-body-len",
    "h2c-response-body-len",
    "normal-error",
    "h2c-error",
    "normal-headers",
    "h2c-headers",
]


def write_mismatches_json(path: str, mismatches: List[Mismatch]) -> None:
    """Serialize mismatches (fields and detail) to a JSON file."""
    payload = [asdict(m) for m in mismatches]
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f, ensure_ascii=False, indent=2, default=str)


def write_mismatches_csv(path: str, mismatches: List[Mismatch]) -> None:
    """Serialize mismatches to a CSV file, one row per target.

    Header partitions are stored as JSON strings to keep the CSV flat; the
    byte-level detail is left to the JSON output.
    """
    with open(path, "w", newline="", encoding="utf-8") as f:
        w = csv.DictWriter(f, fieldnames=COLUMNS)
        w.writeheader()
        for m in mismatches:
            row = {"target": m.target}
            for col in COLUMNS[1:]:
                value = m.fields.get(col, "")
                if isinstance(value, dict):
                    value = json.dumps(value, ensure_ascii=False)
                row[col] = value
            w.writerow(row)

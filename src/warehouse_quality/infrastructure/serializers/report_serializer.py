from __future__ import annotations

import json
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd

from warehouse_quality.domain.models.report import RuleOutcome, ValidationReport

VIOLATION_COLUMNS = [
    "run_id",
    "rule_id",
    "dataset",
    "kind",
    "severity",
    "key",
    "values",
    "reason",
]


class ReportSerializer:
    @staticmethod
    def serialize(obj):
        if obj is pd.NaT or obj is pd.NA:
            return None
        if isinstance(obj, (np.bool_, bool)):
            return bool(obj)
        if isinstance(obj, (np.integer, int)):
            return int(obj)
        if isinstance(obj, (np.floating, float)):
            return float(obj)
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        return str(obj)

    @classmethod
    def _outcome(cls, outcome: RuleOutcome) -> dict[str, Any]:
        return {
            "rule_id": outcome.rule_id,
            "dataset": outcome.dataset,
            "kind": outcome.kind,
            "severity": outcome.severity.value,
            "status": outcome.status.value,
            "violation_count": outcome.violation_count,
            "truncated": outcome.truncated,
            "started_at": outcome.started_at,
            "finished_at": outcome.finished_at,
            "error": outcome.error,
            "violations": [v.as_row() for v in outcome.violations],
        }

    @classmethod
    def to_dict(cls, report: ValidationReport) -> dict[str, Any]:
        return {
            "run_id": report.run_id,
            "catalog": report.catalog,
            "snapshot_id": report.snapshot_id,
            "started_at": report.started_at,
            "finished_at": report.finished_at,
            "partial": report.partial,
            "is_pass": report.is_pass,
            "total_violations": report.total_violations,
            "summary": report.summary(),
            "outcomes": [cls._outcome(o) for o in report.outcomes],
        }

    @classmethod
    def to_json(cls, report: ValidationReport, indent: int | None = None) -> str:
        return json.dumps(cls.to_dict(report), default=cls.serialize, indent=indent)

    @classmethod
    def to_frame(cls, report: ValidationReport) -> pd.DataFrame:
        """One flat row per kept violation; key and values are JSON encoded."""
        rows = [
            {
                "run_id": report.run_id,
                "rule_id": v.rule_id,
                "dataset": v.dataset,
                "kind": v.kind,
                "severity": v.severity.value,
                "key": json.dumps(dict(v.key), default=cls.serialize, sort_keys=True),
                "values": json.dumps(dict(v.values), default=cls.serialize, sort_keys=True),
                "reason": v.reason,
            }
            for v in report.violations
        ]
        return pd.DataFrame(rows, columns=VIOLATION_COLUMNS)

    @classmethod
    def write_json(cls, report: ValidationReport, path: Path) -> None:
        path.write_text(cls.to_json(report, indent=2), encoding="utf-8")

    @classmethod
    def write_csv(cls, report: ValidationReport, path: Path) -> None:
        cls.to_frame(report).to_csv(path, index=False)

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Iterator, Sequence

import pandas as pd
from loguru import logger

from warehouse_quality.domain.errors import DataAccessError
from warehouse_quality.domain.models.report import ValidationReport
from warehouse_quality.infrastructure.clients.clickhouse import ClickHouseFactory
from warehouse_quality.infrastructure.serializers.report_serializer import ReportSerializer

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

REPORTS_TABLE = "dq_reports"
VIOLATIONS_TABLE = "dq_violations"


def quote(identifier: str) -> str:
    if not _IDENTIFIER.match(identifier):
        raise ValueError(f"invalid identifier {identifier!r}")
    return f"`{identifier}`"


class ClickHouseRepository:
    """
    Dataset accessor over ClickHouse, plus persistence of finished reports.

    Scans stream `SELECT` results block by block. MergeTree tables have no
    snapshot isolation, so a stable view relies on the loading job not writing
    while checks run.
    """

    def __init__(self, factory: ClickHouseFactory) -> None:
        self._factory = factory
        self.database = factory.config.database
        self._opened_at = datetime.now(timezone.utc)

    def snapshot_id(self) -> str:
        config = self._factory.config
        return f"clickhouse:{config.host}/{config.database}@{self._opened_at.isoformat()}"

    def _table(self, dataset_id: str) -> str:
        parts = dataset_id.split(".") if "." in dataset_id else [self.database, dataset_id]
        return ".".join(quote(part) for part in parts)

    def scan(
        self, dataset_id: str, columns: Sequence[str] | None = None
    ) -> Iterator[pd.DataFrame]:
        try:
            table = self._table(dataset_id)
            projection = ", ".join(quote(c) for c in columns) if columns else "*"
        except ValueError as exc:
            raise DataAccessError(dataset_id, str(exc)) from exc

        query = f"SELECT {projection} FROM {table}"
        logger.debug("scan {}: {}", dataset_id, query)
        try:
            with self._factory.connect() as client:
                with client.query_df_stream(query) as stream:
                    yield from stream
        except Exception as exc:
            raise DataAccessError(dataset_id, str(exc)) from exc

    def ensure_schema_output(self) -> None:
        with self._factory.connect() as client:
            client.command(f"""
                CREATE TABLE IF NOT EXISTS {quote(self.database)}.{REPORTS_TABLE} (
                    run_id String,
                    catalog String,
                    snapshot_id String,
                    rule_id String,
                    dataset String,
                    kind String,
                    severity String,
                    status String,
                    violation_count UInt64,
                    generated_at DateTime
                ) ENGINE = MergeTree()
                ORDER BY (generated_at, rule_id)
            """)
            client.command(f"""
                CREATE TABLE IF NOT EXISTS {quote(self.database)}.{VIOLATIONS_TABLE} (
                    run_id String,
                    rule_id String,
                    dataset String,
                    kind String,
                    severity String,
                    record_key String,
                    field_values String,
                    reason String
                ) ENGINE = MergeTree()
                ORDER BY (run_id, rule_id)
            """)

    def save_report(self, report: ValidationReport) -> None:
        self.ensure_schema_output()
        generated_at = report.finished_at.astimezone(timezone.utc).replace(tzinfo=None)
        outcomes = pd.DataFrame(
            [
                {
                    "run_id": report.run_id,
                    "catalog": report.catalog,
                    "snapshot_id": report.snapshot_id,
                    "rule_id": o.rule_id,
                    "dataset": o.dataset,
                    "kind": o.kind,
                    "severity": o.severity.value,
                    "status": o.status.value,
                    "violation_count": o.violation_count,
                    "generated_at": generated_at,
                }
                for o in report.outcomes
            ]
        )
        violations = ReportSerializer.to_frame(report)
        with self._factory.connect() as client:
            if not outcomes.empty:
                client.insert_df(f"{self.database}.{REPORTS_TABLE}", outcomes)
            if not violations.empty:
                client.insert_df(
                    f"{self.database}.{VIOLATIONS_TABLE}",
                    violations.rename(columns={"key": "record_key", "values": "field_values"})[
                        ["run_id", "rule_id", "dataset", "kind", "severity", "record_key", "field_values", "reason"]
                    ],
                )
        logger.info(
            "saved report {} ({} outcomes, {} violations) to {}",
            report.run_id,
            len(outcomes),
            len(violations),
            self.database,
        )

    def list_reports(self) -> pd.DataFrame:
        with self._factory.connect() as client:
            return client.query_df(
                f"SELECT * FROM {quote(self.database)}.{REPORTS_TABLE} ORDER BY generated_at DESC"
            )

import sys
import threading
import time
from collections import Counter

import pandas as pd
import pytest
from loguru import logger

from warehouse_quality.application.services.executor import ValidationExecutor
from warehouse_quality.domain.errors import ConfigurationError
from warehouse_quality.domain.models.catalog import RuleCatalog
from warehouse_quality.domain.models.report import OutcomeStatus
from warehouse_quality.domain.models.rule import EXECUTION_ERROR_KIND, Rule, Severity, Transform
from warehouse_quality.infrastructure.repositories.frame_accessor import InMemoryAccessor

logger.remove()
logger.add(sys.stderr, level="INFO")


class CountingAccessor:
    def __init__(self, inner, delay: float = 0.0) -> None:
        self.inner = inner
        self.delay = delay
        self.scans = Counter()
        self._lock = threading.Lock()

    def snapshot_id(self) -> str:
        return self.inner.snapshot_id()

    def scan(self, dataset_id, columns=None):
        with self._lock:
            self.scans[dataset_id] += 1
        for frame in self.inner.scan(dataset_id, columns):
            if self.delay:
                time.sleep(self.delay)
            yield frame


def bronze_customers() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "cst_id": [1, 1, 2, 3, 3],
            "cst_firstname": ["Jon", " Jon", "Ann", "Lee", "Lee"],
            "cst_gndr": ["M", "M", "F", "X", "X"],
            "cst_create_date": ["2024-01-01", "2025-01-01", "2024-03-01", "2024-01-01", "2023-01-01"],
        }
    )


def products() -> pd.DataFrame:
    return pd.DataFrame({"prd_id": [1, 2, 3], "prd_cost": [10, -5, 20]})


LATEST = Transform(
    id="cust_latest",
    dataset="bronze.crm_cust_info",
    key_columns=("cst_id",),
    recency_column="cst_create_date",
)


def rule(rule_id, dataset, kind, columns=(), severity=Severity.BLOCKING, **kwargs):
    params = kwargs.pop("params", {})
    return Rule(
        id=rule_id,
        dataset=dataset,
        kind=kind,
        columns=columns,
        params=params,
        severity=severity,
        **kwargs,
    )


def accessor(**kwargs) -> CountingAccessor:
    frames = {"bronze.crm_cust_info": bronze_customers(), "silver.crm_prd_info": products()}
    return CountingAccessor(InMemoryAccessor(frames, chunk_size=2), **kwargs)


def test_outcomes_follow_catalog_order():
    rules = tuple(
        rule(f"r{i}", "silver.crm_prd_info", "key_integrity", ("prd_id",)) for i in range(8)
    )
    report = ValidationExecutor(max_workers=4).run(RuleCatalog("c", rules=rules), accessor())
    assert [o.rule_id for o in report.outcomes] == [r.id for r in rules]
    assert report.is_pass
    assert not report.partial


def test_blocking_and_advisory_violations():
    catalog = RuleCatalog(
        "c",
        rules=(
            rule("cost", "silver.crm_prd_info", "numeric_range", ("prd_cost",), params={"min": 0}),
            rule(
                "trim",
                "bronze.crm_cust_info",
                "no_unwanted_whitespace",
                ("cst_firstname",),
                severity=Severity.ADVISORY,
            ),
        ),
    )
    report = ValidationExecutor().run(catalog, accessor())
    assert report.summary() == {"cost": 1, "trim": 1}
    assert report.outcome("cost").status is OutcomeStatus.FAILED
    assert not report.is_pass

    advisory_only = RuleCatalog("c", rules=(catalog.rule("trim"),))
    assert ValidationExecutor().run(advisory_only, accessor()).is_pass


def test_failing_rule_does_not_affect_siblings():
    catalog = RuleCatalog(
        "c",
        rules=(
            rule("missing_table", "silver.nope", "key_integrity", ("id",)),
            rule("missing_column", "silver.crm_prd_info", "key_integrity", ("prd_key",)),
            rule("ok", "silver.crm_prd_info", "key_integrity", ("prd_id",)),
        ),
    )
    report = ValidationExecutor(max_workers=2).run(catalog, accessor())

    for rule_id in ("missing_table", "missing_column"):
        outcome = report.outcome(rule_id)
        assert outcome.status is OutcomeStatus.ERROR
        assert outcome.violation_count == 1
        assert outcome.violations[0].kind == EXECUTION_ERROR_KIND
        assert outcome.violations[0].severity is Severity.BLOCKING
    assert "DataAccessError" in report.outcome("missing_table").error
    assert "EvaluationError" in report.outcome("missing_column").error
    assert report.outcome("ok").status is OutcomeStatus.PASSED
    assert report.has_errors
    assert len(report.errors()) == 2


def test_violation_rows_use_scan_positions_across_chunks():
    catalog = RuleCatalog(
        "c",
        rules=(rule("trim", "bronze.crm_cust_info", "no_unwanted_whitespace", ("cst_firstname",)),),
    )
    report = ValidationExecutor().run(catalog, accessor())
    assert [v.key for v in report.violations_for("trim")] == [{"row": 1}]


def test_transform_computed_once_and_shared():
    catalog = RuleCatalog(
        "c",
        rules=(
            rule("pk", "bronze.crm_cust_info", "key_integrity", ("cst_id",), source="cust_latest"),
            rule(
                "gender",
                "bronze.crm_cust_info",
                "domain_membership",
                ("cst_gndr",),
                severity=Severity.ADVISORY,
                source="cust_latest",
                params={"mapping": {"M": "Male", "F": "Female"}},
            ),
            rule("raw_pk", "bronze.crm_cust_info", "key_integrity", ("cst_id",)),
        ),
        transforms=(LATEST,),
    )
    source = accessor()
    report = ValidationExecutor(max_workers=3).run(catalog, source)

    assert report.outcome("pk").status is OutcomeStatus.PASSED
    assert report.outcome("raw_pk").violation_count == 2
    assert report.violations_for("gender")[0].values["observed_count"] == 1
    # one scan for the shared transform, one for the raw rule
    assert source.scans["bronze.crm_cust_info"] == 2


class EmptyAccessor:
    def snapshot_id(self) -> str:
        return "empty"

    def scan(self, dataset_id, columns=None):
        return iter(())


def test_transform_over_table_without_chunks_passes():
    catalog = RuleCatalog(
        "c",
        rules=(
            rule("raw_pk", "bronze.crm_cust_info", "key_integrity", ("cst_id",)),
            rule("pk", "bronze.crm_cust_info", "key_integrity", ("cst_id",), source="cust_latest"),
            rule(
                "gender",
                "bronze.crm_cust_info",
                "domain_membership",
                ("cst_gndr",),
                severity=Severity.ADVISORY,
                source="cust_latest",
                params={"allowed": ["M", "F"]},
            ),
        ),
        transforms=(LATEST,),
    )
    report = ValidationExecutor().run(catalog, EmptyAccessor())

    assert [o.status for o in report.outcomes] == [OutcomeStatus.PASSED] * 3
    assert not report.has_errors
    assert report.is_pass


def test_transform_drops_rows_without_a_key():
    customers = pd.DataFrame(
        {
            "cst_id": [1, None, None, 2],
            "cst_create_date": ["2024-01-01", "2024-02-01", "2024-03-01", "2024-01-01"],
        }
    )
    catalog = RuleCatalog(
        "c",
        rules=(
            rule("pk", "bronze.crm_cust_info", "key_integrity", ("cst_id",), source="cust_latest"),
            rule("raw_pk", "bronze.crm_cust_info", "key_integrity", ("cst_id",)),
        ),
        transforms=(LATEST,),
    )
    source = InMemoryAccessor({"bronze.crm_cust_info": customers}, chunk_size=2)
    report = ValidationExecutor().run(catalog, source)

    assert report.outcome("pk").status is OutcomeStatus.PASSED
    assert report.outcome("raw_pk").violation_count > 0


def test_sample_limit_bounds_kept_violations():
    frame = pd.DataFrame({"name": [f" n{i}" for i in range(10)]})
    catalog = RuleCatalog("c", rules=(rule("trim", "t", "no_unwanted_whitespace", ("name",)),))
    report = ValidationExecutor(sample_limit=3).run(catalog, InMemoryAccessor({"t": frame}))
    outcome = report.outcome("trim")
    assert outcome.violation_count == 10
    assert len(outcome.violations) == 3
    assert outcome.truncated
    assert report.total_violations == 10


def test_invalid_catalog_fails_before_reading():
    source = accessor()
    catalog = RuleCatalog(
        "c", rules=(rule("pk", "silver.crm_prd_info", "key_integrity", ("prd_id",), source="nope"),)
    )
    with pytest.raises(ConfigurationError):
        ValidationExecutor().run(catalog, source)
    assert sum(source.scans.values()) == 0

    unusable = RuleCatalog("c", rules=(rule("dom", "silver.crm_prd_info", "domain_membership", ("x",)),))
    with pytest.raises(ConfigurationError):
        ValidationExecutor().run(unusable, source)
    assert sum(source.scans.values()) == 0


def test_timeout_returns_partial_report():
    frames = {
        "fast": pd.DataFrame({"id": [1, 2]}),
        "slow": pd.DataFrame({"id": list(range(40))}),
    }
    source = CountingAccessor(InMemoryAccessor(frames, chunk_size=1), delay=0.1)
    catalog = RuleCatalog(
        "c",
        rules=(
            rule("fast", "fast", "key_integrity", ("id",)),
            rule("slow", "slow", "key_integrity", ("id",)),
            rule("queued", "fast", "key_integrity", ("id",)),
        ),
    )
    report = ValidationExecutor(max_workers=1).run(catalog, source, timeout=0.6)

    assert report.partial
    assert report.outcome("fast").status is OutcomeStatus.PASSED
    assert report.outcome("slow").status is OutcomeStatus.CANCELLED
    assert report.outcome("queued").status in (OutcomeStatus.NOT_RUN, OutcomeStatus.CANCELLED)
    assert [o.rule_id for o in report.outcomes] == ["fast", "slow", "queued"]


def test_cancel_event_marks_rules_not_run():
    event = threading.Event()
    event.set()
    catalog = RuleCatalog(
        "c", rules=tuple(rule(f"r{i}", "silver.crm_prd_info", "key_integrity", ("prd_id",)) for i in range(3))
    )
    report = ValidationExecutor(max_workers=1).run(catalog, accessor(), cancel_event=event)
    assert report.partial
    assert all(
        o.status in (OutcomeStatus.NOT_RUN, OutcomeStatus.CANCELLED) for o in report.outcomes
    )
    assert report.total_violations == 0


def test_runs_are_deterministic():
    catalog = RuleCatalog(
        "c",
        rules=(
            rule("raw_pk", "bronze.crm_cust_info", "key_integrity", ("cst_id",)),
            rule("cost", "silver.crm_prd_info", "numeric_range", ("prd_cost",), params={"min": 0}),
        ),
    )
    source = accessor()
    first = ValidationExecutor(max_workers=2).run(catalog, source)
    second = ValidationExecutor(max_workers=1).run(catalog, source)
    assert first.summary() == second.summary()
    assert first.violations == second.violations
    assert first.snapshot_id == second.snapshot_id
    assert first.run_id != second.run_id


def test_executor_arguments_are_validated():
    with pytest.raises(ValueError):
        ValidationExecutor(max_workers=0)
    with pytest.raises(ValueError):
        ValidationExecutor(sample_limit=-1)
    with pytest.raises(ValueError):
        ValidationExecutor().run(RuleCatalog("c"), accessor(), timeout=0)


def test_sales_arithmetic_example():
    frame = pd.DataFrame({"sales": [100, 0], "qty": [10, 5], "price": [10, 5]})
    catalog = RuleCatalog(
        "c",
        rules=(
            rule(
                "sales",
                "silver.crm_sales_details",
                "cross_field_arithmetic",
                params={"result": "sales", "operands": ["qty", "price"], "op": "multiply"},
            ),
        ),
    )
    report = ValidationExecutor().run(
        catalog, InMemoryAccessor({"silver.crm_sales_details": frame})
    )
    (violation,) = report.violations_for("sales")
    assert violation.key == {"row": 1}
    assert "non-positive: sales" in violation.reason
    assert "sales != qty * price" in violation.reason


def test_date_order_example():
    frame = pd.DataFrame({"order_dt": ["2024-05-01"], "ship_dt": ["2024-04-01"]})
    catalog = RuleCatalog(
        "c",
        rules=(
            rule(
                "order",
                "silver.crm_sales_details",
                "date_order",
                params={"earlier": "order_dt", "later": ["ship_dt"]},
            ),
        ),
    )
    report = ValidationExecutor().run(
        catalog, InMemoryAccessor({"silver.crm_sales_details": frame})
    )
    assert report.summary() == {"order": 1}
    assert not report.is_pass

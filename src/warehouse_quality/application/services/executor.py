from __future__ import annotations

import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Iterable, Iterator

import pandas as pd
from loguru import logger

from warehouse_quality.domain.errors import EvaluationError, RunCancelled
from warehouse_quality.domain.models.catalog import RuleCatalog
from warehouse_quality.domain.models.report import OutcomeStatus, RuleOutcome, ValidationReport
from warehouse_quality.domain.models.rule import EXECUTION_ERROR_KIND, Rule
from warehouse_quality.domain.models.violation import Violation
from warehouse_quality.domain.repository.accessor import DatasetAccessor
from warehouse_quality.infrastructure.adapters.metrics import (
    rule_counter,
    rule_duration,
    run_counter,
    violation_counter,
)
from warehouse_quality.infrastructure.rules import engine
from warehouse_quality.infrastructure.rules.engine import EvaluationContext
from warehouse_quality.infrastructure.rules.reconciliation import latest_wins

POLL_INTERVAL = 0.05


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _positioned(frames: Iterable[pd.DataFrame]) -> Iterator[pd.DataFrame]:
    """Re-index chunks so row positions count from the start of the scan."""
    offset = 0
    for frame in frames:
        yield frame.set_axis(pd.RangeIndex(offset, offset + len(frame)), axis=0)
        offset += len(frame)


def execution_error(rule: Rule, exc: BaseException) -> Violation:
    return Violation(
        rule_id=rule.id,
        dataset=rule.dataset,
        kind=EXECUTION_ERROR_KIND,
        reason=f"{type(exc).__name__}: {exc}",
        values={"rule_kind": rule.kind.value},
        severity=rule.severity,
    )


class _TransformCache:
    """Latest-wins views computed at most once per run and shared by the rules reading them."""

    def __init__(
        self, catalog: RuleCatalog, accessor: DatasetAccessor, context: EvaluationContext
    ) -> None:
        self._catalog = catalog
        self._accessor = accessor
        self._context = context
        self._locks = {t.id: threading.Lock() for t in catalog.transforms}
        self._results: dict[str, pd.DataFrame | Exception] = {}

    def _columns(self, transform_id: str) -> list[str]:
        transform = self._catalog.transform(transform_id)
        names = [*transform.key_columns, transform.recency_column, *transform.tie_breakers]
        for rule in self._catalog.rules:
            if rule.source == transform_id:
                names.extend(engine.required_columns(rule))
        return list(dict.fromkeys(names))

    def _compute(self, transform_id: str) -> pd.DataFrame:
        transform = self._catalog.transform(transform_id)
        logger.info("computing transform {} over {}", transform.id, transform.dataset)
        columns = self._columns(transform_id)
        frames = self._accessor.scan(transform.dataset, columns)
        view = latest_wins(
            engine.cancellable(frames, self._context),
            transform.key_columns,
            transform.recency_column,
            transform.tie_breakers,
            columns=columns,
        )
        logger.info("transform {} kept {} rows", transform.id, len(view))
        return view

    def frames(self, rule: Rule) -> Iterator[pd.DataFrame]:
        transform_id = rule.source
        with self._locks[transform_id]:
            if transform_id not in self._results:
                try:
                    self._results[transform_id] = self._compute(transform_id)
                except Exception as exc:
                    self._results[transform_id] = exc
        result = self._results[transform_id]
        if isinstance(result, RunCancelled):
            raise result
        if isinstance(result, Exception):
            raise EvaluationError(rule.id, f"transform '{transform_id}' failed: {result}") from result
        return iter([result])


class ValidationExecutor:
    def __init__(self, max_workers: int = 4, sample_limit: int = 1000) -> None:
        if max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {max_workers}")
        if sample_limit < 0:
            raise ValueError(f"sample_limit must be non-negative, got {sample_limit}")
        self._max_workers = max_workers
        self._sample_limit = sample_limit

    def _frames(
        self, rule: Rule, accessor: DatasetAccessor, cache: _TransformCache
    ) -> Iterable[pd.DataFrame]:
        if rule.source:
            return cache.frames(rule)
        return _positioned(accessor.scan(rule.dataset, list(engine.required_columns(rule)) or None))

    def _run_rule(
        self,
        rule: Rule,
        accessor: DatasetAccessor,
        cache: _TransformCache,
        context: EvaluationContext,
    ) -> RuleOutcome:
        try:
            context.check_cancelled()
        except RunCancelled:
            return _skipped(rule, OutcomeStatus.NOT_RUN)

        started_at = _utcnow()
        timer = time.perf_counter()
        logger.info("running rule {} ({}) on {}", rule.id, rule.kind.value, rule.dataset)

        kept: list[Violation] = []
        count = 0
        error = None
        try:
            for violation in engine.evaluate(rule, self._frames(rule, accessor, cache), context):
                count += 1
                if len(kept) < self._sample_limit:
                    kept.append(violation)
            status = OutcomeStatus.FAILED if count else OutcomeStatus.PASSED
        except RunCancelled as exc:
            logger.warning("rule {} stopped: {}", rule.id, exc)
            kept, count, error = [], 0, str(exc)
            status = OutcomeStatus.CANCELLED
        except Exception as exc:
            logger.error("rule {} could not be evaluated: {}", rule.id, exc)
            kept, count, error = [execution_error(rule, exc)], 1, f"{type(exc).__name__}: {exc}"
            status = OutcomeStatus.ERROR

        rule_duration.labels(kind=rule.kind.value).observe(time.perf_counter() - timer)
        logger.info("rule {} finished: {} ({} violations)", rule.id, status.value, count)
        return RuleOutcome(
            rule_id=rule.id,
            dataset=rule.dataset,
            kind=rule.kind.value,
            severity=rule.severity,
            status=status,
            violation_count=count,
            violations=tuple(kept),
            started_at=started_at,
            finished_at=_utcnow(),
            error=error,
        )

    def run(
        self,
        catalog: RuleCatalog,
        accessor: DatasetAccessor,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ValidationReport:
        catalog.validate()
        for rule in catalog.rules:
            engine.check_rule(rule)
        if timeout is not None and timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")

        context = EvaluationContext.now(cancel_event=cancel_event, timeout=timeout)
        run_id = uuid.uuid4().hex
        snapshot_id = accessor.snapshot_id()
        cache = _TransformCache(catalog, accessor, context)
        logger.info(
            "run {} started: catalog {}, {} rules, snapshot {}",
            run_id,
            catalog.name,
            len(catalog.rules),
            snapshot_id,
        )

        outcomes: dict[str, RuleOutcome] = {}
        partial = False
        pool = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="dq-rule")
        futures: dict[Future, Rule] = {
            pool.submit(self._run_rule, rule, accessor, cache, context): rule
            for rule in catalog.rules
        }
        pending = set(futures)
        try:
            while pending:
                done, pending = wait(pending, timeout=POLL_INTERVAL, return_when=FIRST_COMPLETED)
                for future in done:
                    outcomes[futures[future].id] = future.result()
                if pending and (context.expired() or _is_set(cancel_event)):
                    partial = True
                    break
        finally:
            pool.shutdown(wait=not partial, cancel_futures=partial)

        for future in pending:
            rule = futures[future]
            if future.cancelled():
                outcomes[rule.id] = _skipped(rule, OutcomeStatus.NOT_RUN)
            elif future.done():
                outcomes[rule.id] = future.result()
            else:
                outcomes[rule.id] = _skipped(rule, OutcomeStatus.CANCELLED)
        partial = partial or any(
            o.status in (OutcomeStatus.CANCELLED, OutcomeStatus.NOT_RUN) for o in outcomes.values()
        )

        report = ValidationReport(
            run_id=run_id,
            catalog=catalog.name,
            snapshot_id=snapshot_id,
            started_at=context.run_started_at,
            finished_at=_utcnow(),
            outcomes=tuple(outcomes[rule.id] for rule in catalog.rules),
            partial=partial,
        )
        _record(report)
        logger.info(
            "run {} finished: pass={} partial={} violations={}",
            run_id,
            report.is_pass,
            report.partial,
            report.total_violations,
        )
        return report


def _is_set(event: threading.Event | None) -> bool:
    return event is not None and event.is_set()


def _skipped(rule: Rule, status: OutcomeStatus) -> RuleOutcome:
    return RuleOutcome(
        rule_id=rule.id,
        dataset=rule.dataset,
        kind=rule.kind.value,
        severity=rule.severity,
        status=status,
    )


def _record(report: ValidationReport) -> None:
    for outcome in report.outcomes:
        rule_counter.labels(kind=outcome.kind, status=outcome.status.value).inc()
        if outcome.violation_count:
            violation_counter.labels(
                dataset=outcome.dataset, severity=outcome.severity.value
            ).inc(outcome.violation_count)
    if report.partial:
        run_counter.labels(outcome="partial").inc()
    elif report.has_errors:
        run_counter.labels(outcome="error").inc()
    else:
        run_counter.labels(outcome="pass" if report.is_pass else "fail").inc()

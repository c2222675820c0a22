from __future__ import annotations

import operator
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import reduce
from typing import Any, Callable, Iterable, Iterator, Mapping

import numpy as np
import pandas as pd
from pandas.api.types import is_datetime64_any_dtype, is_numeric_dtype

from warehouse_quality.domain.errors import ConfigurationError, RunCancelled, RunTimeoutError
from warehouse_quality.domain.models.rule import Rule, RuleKind
from warehouse_quality.domain.models.violation import Violation
from warehouse_quality.domain.services.normalizer import (
    DEFAULT_LABEL,
    canonical_code,
    canonicalize_enum,
    normalize_whitespace,
    whitespace_mask,
)
from warehouse_quality.infrastructure.rules.reconciliation import (
    RANK_COLUMN,
    require_columns,
    superseded,
)

UNPARSEABLE = "unparseable"
NOW = "now"
INTEGER_DATE_FORMAT = "%Y%m%d"

OPERATORS: Mapping[str, Callable[[Any, Any], Any]] = {
    "multiply": operator.mul,
    "add": operator.add,
    "subtract": operator.sub,
    "divide": operator.truediv,
}
_SYMBOLS = {"multiply": "*", "add": "+", "subtract": "-", "divide": "/"}


@dataclass(frozen=True)
class EvaluationContext:
    run_started_at: datetime
    cancel_event: threading.Event | None = None
    deadline: float | None = None

    @classmethod
    def now(
        cls, cancel_event: threading.Event | None = None, timeout: float | None = None
    ) -> "EvaluationContext":
        return cls(
            run_started_at=datetime.now(timezone.utc).replace(tzinfo=None),
            cancel_event=cancel_event,
            deadline=None if timeout is None else time.monotonic() + timeout,
        )

    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def check_cancelled(self) -> None:
        if self.expired():
            raise RunTimeoutError("run timed out")
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise RunCancelled("run cancelled")


Evaluator = Callable[[Iterable[pd.DataFrame], Rule, EvaluationContext], Iterator[Violation]]


def plain(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (list, tuple, dict)):
        return value
    if pd.isna(value):
        return None
    if isinstance(value, np.generic):
        return value.item()
    return value


def cancellable(frames: Iterable[pd.DataFrame], context: EvaluationContext) -> Iterator[pd.DataFrame]:
    for frame in frames:
        context.check_cancelled()
        yield frame


def _violation(
    rule: Rule, reason: str, key: Mapping[str, Any], values: Mapping[str, Any]
) -> Violation:
    return Violation(
        rule_id=rule.id,
        dataset=rule.dataset,
        kind=rule.kind.value,
        reason=reason,
        key=dict(key),
        values=dict(values),
        severity=rule.severity,
    )


def _row_key(rule: Rule, frame: pd.DataFrame, index: Any) -> dict[str, Any]:
    if rule.identity:
        return {column: plain(frame.at[index, column]) for column in rule.identity}
    return {"row": int(index)}


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


def parse_dates(series: pd.Series, date_format: str | None = None) -> tuple[pd.Series, pd.Series]:
    """
    Parse a column into naive UTC timestamps.

    Returns the parsed series and a mask of non-null values that could not be
    parsed. Numeric columns are read as integer-coded dates (YYYYMMDD) unless
    another format is given.
    """
    if is_datetime64_any_dtype(series):
        parsed = series
        if getattr(parsed.dt, "tz", None) is not None:
            parsed = parsed.dt.tz_convert("UTC").dt.tz_localize(None)
        return parsed, pd.Series(False, index=series.index)

    raw = series
    if is_numeric_dtype(series):
        raw = series.map(
            lambda v: None if pd.isna(v) else (str(int(v)) if float(v).is_integer() else str(v))
        )
        date_format = date_format or INTEGER_DATE_FORMAT

    parsed = pd.to_datetime(raw, format=date_format or "mixed", errors="coerce", utc=True)
    parsed = parsed.dt.tz_localize(None)
    unparseable = series.notna() & parsed.isna()
    return parsed, unparseable


def parse_numbers(series: pd.Series) -> tuple[pd.Series, pd.Series]:
    numbers = pd.to_numeric(series, errors="coerce")
    return numbers, series.notna() & numbers.isna()


def _number(value: Any) -> float | None:
    return None if value is None else float(value)


def _bound(value: Any, context: EvaluationContext) -> pd.Timestamp | None:
    if value is None:
        return None
    if isinstance(value, str) and value.lower() == NOW:
        return pd.Timestamp(context.run_started_at)
    stamp = pd.Timestamp(value)
    if stamp.tzinfo is not None:
        stamp = stamp.tz_convert("UTC").tz_localize(None)
    return stamp


def key_integrity(
    frames: Iterable[pd.DataFrame], rule: Rule, context: EvaluationContext
) -> Iterator[Violation]:
    columns = list(rule.columns)
    counts: dict[tuple, int] = {}
    for frame in cancellable(frames, context):
        require_columns(frame, columns, rule.id)
        keys = frame[columns]
        null_mask = keys.isna().any(axis=1)
        for index in keys.index[null_mask]:
            nulls = [c for c in columns if pd.isna(keys.at[index, c])]
            yield _violation(
                rule,
                f"null key column(s): {', '.join(nulls)}",
                _row_key(rule, frame, index),
                {c: plain(keys.at[index, c]) for c in columns},
            )
        present = keys[~null_mask]
        for values in present.itertuples(index=False, name=None):
            key = tuple(plain(v) for v in values)
            counts[key] = counts.get(key, 0) + 1

    for key, count in counts.items():
        if count > 1:
            yield _violation(
                rule,
                f"duplicate key: {count} records",
                dict(zip(columns, key)),
                {"record_count": count},
            )


def no_unwanted_whitespace(
    frames: Iterable[pd.DataFrame], rule: Rule, context: EvaluationContext
) -> Iterator[Violation]:
    columns = list(rule.columns)
    for frame in cancellable(frames, context):
        require_columns(frame, columns, rule.id)
        masks = {column: whitespace_mask(frame[column]) for column in columns}
        offending = reduce(operator.or_, masks.values())
        for index in frame.index[offending]:
            dirty = [c for c in columns if masks[c].at[index]]
            values: dict[str, Any] = {}
            for column in dirty:
                values[column] = frame.at[index, column]
                values[f"{column}_trimmed"] = normalize_whitespace(frame.at[index, column])
            yield _violation(
                rule,
                f"leading/trailing whitespace in {', '.join(dirty)}",
                _row_key(rule, frame, index),
                values,
            )


def _domain(rule: Rule) -> Mapping[str, str]:
    mapping = rule.param("mapping")
    if mapping is None:
        mapping = {value: value for value in _as_list(rule.param("allowed"))}
    return mapping


def domain_membership(
    frames: Iterable[pd.DataFrame], rule: Rule, context: EvaluationContext
) -> Iterator[Violation]:
    """Distinct observed values outside the mapping, e.g. new codes needing a label."""
    column = rule.columns[0]
    mapping = _domain(rule)
    known = {canonical_code(key) for key in mapping}
    default = rule.param("default", DEFAULT_LABEL)
    allow_null = bool(rule.param("allow_null", True))

    observed: dict[Any, int] = {}
    for frame in cancellable(frames, context):
        require_columns(frame, [column], rule.id)
        for value, count in frame[column].value_counts(dropna=False, sort=False).items():
            value = plain(value)
            observed[value] = observed.get(value, 0) + int(count)

    for value, count in observed.items():
        code = canonical_code(value)
        if code is None:
            if not allow_null:
                yield _violation(
                    rule, "null value", {column: None}, {"observed_count": count}
                )
            continue
        if code not in known:
            yield _violation(
                rule,
                f"value {value!r} is not in the domain",
                {column: value},
                {
                    "observed_count": count,
                    "canonical": canonicalize_enum(value, mapping, default),
                },
            )


def cross_field_arithmetic(
    frames: Iterable[pd.DataFrame], rule: Rule, context: EvaluationContext
) -> Iterator[Violation]:
    result_column = rule.param("result") or rule.columns[0]
    operands = _as_list(rule.param("operands")) or list(rule.columns[1:])
    op_name = rule.param("op", "multiply")
    tolerance = float(rule.param("tolerance", 0))
    columns = [result_column, *operands]
    expression = f" {_SYMBOLS[op_name]} ".join(operands)

    for frame in cancellable(frames, context):
        require_columns(frame, columns, rule.id)
        numbers: dict[str, pd.Series] = {}
        unparseable: dict[str, pd.Series] = {}
        for column in columns:
            numbers[column], unparseable[column] = parse_numbers(frame[column])
        nulls = {c: frame[c].isna() for c in columns}
        non_positive = {c: numbers[c] <= 0 for c in columns}

        with np.errstate(divide="ignore", invalid="ignore"):
            expected = reduce(OPERATORS[op_name], [numbers[c] for c in operands])
        complete = reduce(operator.and_, [numbers[c].notna() for c in columns])
        mismatch = complete & ((numbers[result_column] - expected).abs() > tolerance)

        offending = mismatch.copy()
        for column in columns:
            offending |= nulls[column] | unparseable[column] | non_positive[column]

        for index in frame.index[offending]:
            reasons = []
            bad = [c for c in columns if unparseable[c].at[index]]
            if bad:
                reasons.append(f"{UNPARSEABLE}: {', '.join(bad)}")
            missing = [c for c in columns if nulls[c].at[index]]
            if missing:
                reasons.append(f"null: {', '.join(missing)}")
            negative = [c for c in columns if non_positive[c].at[index]]
            if negative:
                reasons.append(f"non-positive: {', '.join(negative)}")
            if mismatch.at[index]:
                reasons.append(
                    f"{result_column} != {expression} (expected {plain(expected.at[index])})"
                )
            yield _violation(
                rule,
                "; ".join(reasons),
                _row_key(rule, frame, index),
                {c: plain(frame.at[index, c]) for c in columns},
            )


def date_order(
    frames: Iterable[pd.DataFrame], rule: Rule, context: EvaluationContext
) -> Iterator[Violation]:
    earlier = rule.param("earlier") or rule.columns[0]
    later = _as_list(rule.param("later")) or list(rule.columns[1:])
    date_format = rule.param("date_format")
    columns = [earlier, *later]

    for frame in cancellable(frames, context):
        require_columns(frame, columns, rule.id)
        parsed: dict[str, pd.Series] = {}
        unparseable: dict[str, pd.Series] = {}
        for column in columns:
            parsed[column], unparseable[column] = parse_dates(frame[column], date_format)

        inverted = {c: (parsed[earlier] > parsed[c]).fillna(False) for c in later}
        offending = reduce(operator.or_, [*inverted.values(), *unparseable.values()])

        for index in frame.index[offending]:
            reasons = []
            bad = [c for c in columns if unparseable[c].at[index]]
            if bad:
                reasons.append(f"{UNPARSEABLE}: {', '.join(bad)}")
            reasons.extend(f"{earlier} > {c}" for c in later if inverted[c].at[index])
            yield _violation(
                rule,
                "; ".join(reasons),
                _row_key(rule, frame, index),
                {c: plain(frame.at[index, c]) for c in columns},
            )


def date_range(
    frames: Iterable[pd.DataFrame], rule: Rule, context: EvaluationContext
) -> Iterator[Violation]:
    column = rule.columns[0]
    lower = _bound(rule.param("min"), context)
    upper = _bound(rule.param("max"), context)
    date_format = rule.param("date_format")

    for frame in cancellable(frames, context):
        require_columns(frame, [column], rule.id)
        parsed, unparseable = parse_dates(frame[column], date_format)
        too_early = (parsed < lower) if lower is not None else pd.Series(False, index=frame.index)
        too_late = (parsed > upper) if upper is not None else pd.Series(False, index=frame.index)
        offending = unparseable | too_early.fillna(False) | too_late.fillna(False)

        for index in frame.index[offending]:
            if unparseable.at[index]:
                reason = UNPARSEABLE
            elif too_early.at[index]:
                reason = f"{column} before {lower.date().isoformat()}"
            else:
                reason = f"{column} after {upper.date().isoformat()}"
            yield _violation(
                rule,
                reason,
                _row_key(rule, frame, index),
                {column: plain(frame.at[index, column])},
            )


def numeric_range(
    frames: Iterable[pd.DataFrame], rule: Rule, context: EvaluationContext
) -> Iterator[Violation]:
    column = rule.columns[0]
    lower = _number(rule.param("min"))
    upper = _number(rule.param("max"))
    allow_null = bool(rule.param("allow_null", False))

    for frame in cancellable(frames, context):
        require_columns(frame, [column], rule.id)
        numbers, unparseable = parse_numbers(frame[column])
        nulls = frame[column].isna() if not allow_null else pd.Series(False, index=frame.index)
        too_low = numbers < lower if lower is not None else pd.Series(False, index=frame.index)
        too_high = numbers > upper if upper is not None else pd.Series(False, index=frame.index)
        offending = nulls | unparseable | too_low | too_high

        for index in frame.index[offending]:
            if unparseable.at[index]:
                reason = UNPARSEABLE
            elif nulls.at[index]:
                reason = f"{column} is null"
            elif too_low.at[index]:
                reason = f"{column} below {lower}"
            else:
                reason = f"{column} above {upper}"
            yield _violation(
                rule,
                reason,
                _row_key(rule, frame, index),
                {column: plain(frame.at[index, column])},
            )


def latest_wins_dedup(
    frames: Iterable[pd.DataFrame], rule: Rule, context: EvaluationContext
) -> Iterator[Violation]:
    """Report every record that a latest-wins pass would drop."""
    keys = _as_list(rule.param("key_columns")) or list(rule.columns)
    recency = rule.param("recency_column")
    tie_breakers = _as_list(rule.param("tie_breakers"))

    losers = superseded(cancellable(frames, context), keys, recency, tie_breakers)
    for index, row in losers.iterrows():
        yield _violation(
            rule,
            f"superseded by a more recent record (rank {int(row[RANK_COLUMN])})",
            _row_key(rule, losers, index) if rule.identity else {k: plain(row[k]) for k in keys},
            {recency: plain(row[recency]), RANK_COLUMN: int(row[RANK_COLUMN])},
        )


REGISTRY: Mapping[RuleKind, Evaluator] = {
    RuleKind.KEY_INTEGRITY: key_integrity,
    RuleKind.NO_UNWANTED_WHITESPACE: no_unwanted_whitespace,
    RuleKind.DOMAIN_MEMBERSHIP: domain_membership,
    RuleKind.CROSS_FIELD_ARITHMETIC: cross_field_arithmetic,
    RuleKind.DATE_ORDER: date_order,
    RuleKind.DATE_RANGE: date_range,
    RuleKind.NUMERIC_RANGE: numeric_range,
    RuleKind.LATEST_WINS_DEDUP: latest_wins_dedup,
}


def check_rule(rule: Rule) -> None:
    """Reject rules that could never evaluate. Called before any data is read."""
    kind = rule.kind

    def fail(message: str) -> None:
        raise ConfigurationError(f"rule '{rule.id}' ({kind.value}): {message}")

    if kind in (RuleKind.KEY_INTEGRITY, RuleKind.NO_UNWANTED_WHITESPACE) and not rule.columns:
        fail("needs at least one column")
    if kind in (RuleKind.DOMAIN_MEMBERSHIP, RuleKind.DATE_RANGE, RuleKind.NUMERIC_RANGE):
        if len(rule.columns) != 1:
            fail("needs exactly one column")
    if kind is RuleKind.DOMAIN_MEMBERSHIP:
        if rule.param("mapping") is None and rule.param("allowed") is None:
            fail("needs 'mapping' or 'allowed'")
    if kind is RuleKind.CROSS_FIELD_ARITHMETIC:
        if rule.param("op", "multiply") not in OPERATORS:
            fail(f"unknown op {rule.param('op')!r}, expected one of {sorted(OPERATORS)}")
        result = rule.param("result") or (rule.columns[0] if rule.columns else None)
        operands = _as_list(rule.param("operands")) or list(rule.columns[1:])
        if result is None or not operands:
            fail("needs a result column and at least one operand")
        try:
            if float(rule.param("tolerance", 0)) < 0:
                fail("tolerance must be non-negative")
        except (TypeError, ValueError):
            fail(f"tolerance {rule.param('tolerance')!r} is not a number")
    if kind is RuleKind.DATE_ORDER:
        earlier = rule.param("earlier") or (rule.columns[0] if rule.columns else None)
        later = _as_list(rule.param("later")) or list(rule.columns[1:])
        if earlier is None or not later:
            fail("needs an earlier column and at least one later column")
    if kind is RuleKind.DATE_RANGE:
        if rule.param("min") is None and rule.param("max") is None:
            fail("needs 'min' and/or 'max'")
        for name in ("min", "max"):
            value = rule.param(name)
            if value is None or (isinstance(value, str) and value.lower() == NOW):
                continue
            try:
                pd.Timestamp(value)
            except (TypeError, ValueError):
                fail(f"{name} bound {value!r} is not a date")
    if kind is RuleKind.NUMERIC_RANGE:
        if rule.param("min") is None and rule.param("max") is None:
            fail("needs 'min' and/or 'max'")
        try:
            _number(rule.param("min"))
            _number(rule.param("max"))
        except (TypeError, ValueError):
            fail("bounds must be numbers")
    if kind is RuleKind.LATEST_WINS_DEDUP:
        if not (_as_list(rule.param("key_columns")) or rule.columns):
            fail("needs key columns")
        if not rule.param("recency_column"):
            fail("needs 'recency_column'")


def required_columns(rule: Rule) -> tuple[str, ...]:
    """Columns an evaluator reads, for projected scans."""
    names: list[str] = list(rule.columns)
    for name in ("result", "earlier", "recency_column"):
        if rule.param(name):
            names.append(rule.param(name))
    for name in ("operands", "later", "key_columns", "tie_breakers"):
        names.extend(_as_list(rule.param(name)))
    names.extend(rule.identity)
    return tuple(dict.fromkeys(names))


def evaluate(
    rule: Rule, frames: Iterable[pd.DataFrame], context: EvaluationContext
) -> Iterator[Violation]:
    evaluator = REGISTRY.get(rule.kind)
    if evaluator is None:
        raise ConfigurationError(f"unknown rule kind {rule.kind}")
    return evaluator(frames, rule, context)

from __future__ import annotations

from typing import Iterable, Sequence

import pandas as pd
from pandas.api.types import is_datetime64_any_dtype, is_numeric_dtype

from warehouse_quality.domain.errors import EvaluationError

RANK_COLUMN = "recency_rank"
_SEQ = "__scan_seq__"
_ORDER = "__recency_order__"


def require_columns(frame: pd.DataFrame, columns: Iterable[str], owner: str) -> None:
    missing = [column for column in columns if column not in frame.columns]
    if missing:
        raise EvaluationError(owner, f"missing columns {missing}")


def orderable(series: pd.Series) -> pd.Series:
    """Numbers and datetimes sort as they are; anything else is read as a date."""
    if is_numeric_dtype(series) or is_datetime64_any_dtype(series):
        return series
    return pd.to_datetime(series, errors="coerce")


def _sorted(
    frame: pd.DataFrame, recency_column: str, tie_breakers: Sequence[str]
) -> pd.DataFrame:
    work = frame.assign(**{_ORDER: orderable(frame[recency_column])})
    by = [_ORDER, *tie_breakers, _SEQ]
    ascending = [False] * (1 + len(tie_breakers)) + [True]
    return work.sort_values(by=by, ascending=ascending, na_position="last", kind="mergesort")


def rank_latest(
    frame: pd.DataFrame,
    key_columns: Sequence[str],
    recency_column: str,
    tie_breakers: Sequence[str] = (),
) -> pd.DataFrame:
    """
    Equivalent of ROW_NUMBER() OVER (PARTITION BY key ORDER BY recency DESC).

    Equal recency is resolved by `tie_breakers` (descending), then by scan order:
    the row read first keeps rank 1. Null recency ranks last.
    """
    require_columns(frame, [*key_columns, recency_column, *tie_breakers], "latest_wins")
    work = frame.assign(**{_SEQ: range(len(frame))})
    ranked = _sorted(work, recency_column, tie_breakers)
    ranked[RANK_COLUMN] = ranked.groupby(list(key_columns), dropna=False).cumcount() + 1
    return ranked.sort_values(_SEQ, kind="mergesort").drop(columns=[_SEQ, _ORDER])


def latest_wins(
    frames: Iterable[pd.DataFrame],
    key_columns: Sequence[str],
    recency_column: str,
    tie_breakers: Sequence[str] = (),
    columns: Sequence[str] | None = None,
) -> pd.DataFrame:
    """
    Keep exactly one row per key: the most recent one.

    Chunks are folded into a running set of winners, so memory is bounded by the
    number of distinct keys rather than the number of rows. Rows with a null key
    belong to no entity and are dropped. `columns` names the output columns when
    the scan yields no chunks at all.
    """
    keys = list(key_columns)
    best: pd.DataFrame | None = None
    offset = 0
    for chunk in frames:
        require_columns(chunk, [*keys, recency_column, *tie_breakers], "latest_wins")
        chunk = chunk.assign(**{_SEQ: range(offset, offset + len(chunk))})
        offset += len(chunk)
        combined = chunk if best is None else pd.concat([best, chunk], ignore_index=True)
        best = _sorted(combined, recency_column, tie_breakers).drop(columns=[_ORDER])
        best = best.drop_duplicates(subset=keys, keep="first")

    if best is None:
        names = columns if columns is not None else [*keys, recency_column, *tie_breakers]
        return pd.DataFrame(columns=list(dict.fromkeys(names)))
    best = best[best[keys].notna().all(axis=1)]
    return best.sort_values(_SEQ, kind="mergesort").drop(columns=[_SEQ]).reset_index(drop=True)


def superseded(
    frames: Iterable[pd.DataFrame],
    key_columns: Sequence[str],
    recency_column: str,
    tie_breakers: Sequence[str] = (),
) -> pd.DataFrame:
    """Rows that lose the latest-wins ranking (rank > 1), with their rank."""
    chunks = [chunk for chunk in frames]
    if not chunks:
        return pd.DataFrame(columns=[*key_columns, recency_column, RANK_COLUMN])
    ranked = rank_latest(
        pd.concat(chunks, ignore_index=True), key_columns, recency_column, tie_breakers
    )
    return ranked[ranked[RANK_COLUMN] > 1]

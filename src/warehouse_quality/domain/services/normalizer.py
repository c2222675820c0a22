from __future__ import annotations

from typing import Any, Mapping

import pandas as pd

DEFAULT_LABEL = "n/a"


def _is_null(value: Any) -> bool:
    if value is None:
        return True
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def normalize_whitespace(value: Any) -> Any:
    """Strip leading and trailing whitespace. Internal spaces and non-strings are untouched."""
    if isinstance(value, str):
        return value.strip()
    return value


def is_clean(value: Any) -> bool:
    if _is_null(value):
        return True
    return value == normalize_whitespace(value)


def canonical_code(value: Any) -> str | None:
    if _is_null(value):
        return None
    return str(value).strip().upper()


def canonicalize_enum(
    value: Any, mapping: Mapping[str, str], default: str = DEFAULT_LABEL
) -> str:
    """
    Map a raw code to its label, e.g. " m " -> "Male" for {"M": "Male"}.
    Keys are compared trimmed and upper-cased; null or unknown codes give `default`.
    """
    code = canonical_code(value)
    if code is None:
        return default
    lookup = {canonical_code(key): label for key, label in mapping.items()}
    return lookup.get(code, default)


def whitespace_mask(series: pd.Series) -> pd.Series:
    """True where a string value carries leading or trailing whitespace."""
    is_text = series.map(lambda item: isinstance(item, str)).astype(bool)
    stripped = series.map(normalize_whitespace)
    return is_text & (series != stripped)

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


class RuleKind(str, Enum):
    KEY_INTEGRITY = "key_integrity"
    NO_UNWANTED_WHITESPACE = "no_unwanted_whitespace"
    DOMAIN_MEMBERSHIP = "domain_membership"
    CROSS_FIELD_ARITHMETIC = "cross_field_arithmetic"
    DATE_ORDER = "date_order"
    DATE_RANGE = "date_range"
    LATEST_WINS_DEDUP = "latest_wins_dedup"
    NUMERIC_RANGE = "numeric_range"


EXECUTION_ERROR_KIND = "rule_execution_error"


class Severity(str, Enum):
    BLOCKING = "blocking"
    ADVISORY = "advisory"


def _freeze(params: Mapping[str, Any]) -> Mapping[str, Any]:
    frozen: dict[str, Any] = {}
    for key, value in params.items():
        if isinstance(value, Mapping):
            frozen[key] = _freeze(value)
        elif isinstance(value, list):
            frozen[key] = tuple(value)
        else:
            frozen[key] = value
    return MappingProxyType(frozen)


@dataclass(frozen=True)
class Rule:
    """
    One declarative invariant over one or more columns of one dataset.

    `source` names a transform declared in the same catalog; when set, the rule
    reads the transformed stream instead of the raw dataset.
    `identity` lists the columns that identify an offending row in violations.
    """

    id: str
    dataset: str
    kind: RuleKind
    columns: tuple[str, ...] = ()
    params: Mapping[str, Any] = field(default_factory=dict)
    severity: Severity = Severity.BLOCKING
    description: str = ""
    source: str | None = None
    reference_dataset: str | None = None
    identity: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", RuleKind(self.kind))
        object.__setattr__(self, "severity", Severity(self.severity))
        object.__setattr__(self, "columns", tuple(self.columns))
        object.__setattr__(self, "identity", tuple(self.identity))
        object.__setattr__(self, "params", _freeze(self.params))

    def param(self, name: str, default: Any = None) -> Any:
        return self.params.get(name, default)


@dataclass(frozen=True)
class Transform:
    """Latest-wins preprocessing step: one row per key, highest recency first."""

    id: str
    dataset: str
    key_columns: tuple[str, ...]
    recency_column: str
    tie_breakers: tuple[str, ...] = ()
    kind: RuleKind = RuleKind.LATEST_WINS_DEDUP
    description: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", RuleKind(self.kind))
        object.__setattr__(self, "key_columns", tuple(self.key_columns))
        object.__setattr__(self, "tie_breakers", tuple(self.tie_breakers))

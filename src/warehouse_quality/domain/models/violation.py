from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from warehouse_quality.domain.models.rule import Severity


@dataclass(frozen=True, slots=True)
class Violation:
    rule_id: str
    dataset: str
    kind: str
    reason: str
    key: Mapping[str, Any] = field(default_factory=dict)
    values: Mapping[str, Any] = field(default_factory=dict)
    severity: Severity = Severity.BLOCKING

    def as_row(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "dataset": self.dataset,
            "kind": self.kind,
            "severity": self.severity.value,
            "key": dict(self.key),
            "values": dict(self.values),
            "reason": self.reason,
        }

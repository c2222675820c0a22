from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Tuple

from warehouse_quality.domain.models.rule import EXECUTION_ERROR_KIND, Severity
from warehouse_quality.domain.models.violation import Violation


class OutcomeStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    ERROR = "error"
    CANCELLED = "cancelled"
    NOT_RUN = "not_run"


@dataclass(frozen=True, slots=True)
class RuleOutcome:
    rule_id: str
    dataset: str
    kind: str
    severity: Severity
    status: OutcomeStatus
    violation_count: int = 0
    violations: Tuple[Violation, ...] = field(default_factory=tuple)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: str | None = None

    @property
    def truncated(self) -> bool:
        return self.violation_count > len(self.violations)

    @property
    def failed_blocking(self) -> bool:
        return self.severity is Severity.BLOCKING and self.violation_count > 0


@dataclass(frozen=True, slots=True)
class ValidationReport:
    run_id: str
    catalog: str
    snapshot_id: str
    started_at: datetime
    finished_at: datetime
    outcomes: Tuple[RuleOutcome, ...] = field(default_factory=tuple)
    partial: bool = False

    @property
    def is_pass(self) -> bool:
        return not any(outcome.failed_blocking for outcome in self.outcomes)

    @property
    def has_errors(self) -> bool:
        return any(outcome.status is OutcomeStatus.ERROR for outcome in self.outcomes)

    @property
    def total_violations(self) -> int:
        return sum(outcome.violation_count for outcome in self.outcomes)

    @property
    def violations(self) -> tuple[Violation, ...]:
        return tuple(v for outcome in self.outcomes for v in outcome.violations)

    def outcome(self, rule_id: str) -> RuleOutcome:
        for outcome in self.outcomes:
            if outcome.rule_id == rule_id:
                return outcome
        raise KeyError(rule_id)

    def violations_for(self, rule_id: str) -> tuple[Violation, ...]:
        return self.outcome(rule_id).violations

    def errors(self) -> tuple[Violation, ...]:
        return tuple(v for v in self.violations if v.kind == EXECUTION_ERROR_KIND)

    def summary(self) -> dict[str, int]:
        return {outcome.rule_id: outcome.violation_count for outcome in self.outcomes}

    def sample(self, rule_id: str, n: int) -> tuple[Violation, ...]:
        if n < 0:
            raise ValueError(f"sample size must be non-negative, got {n}")
        return self.violations_for(rule_id)[:n]

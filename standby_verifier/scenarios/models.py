"""
Scenario result models.
"""

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class ScenarioStatus(str, Enum):
    """Outcome of one scenario."""

    PASS = "PASS"
    FAIL = "FAIL"
    SKIP = "SKIP"
    TIMEOUT = "TIMEOUT"  # budget exceeded, distinct from FAIL

    @property
    def is_failure(self) -> bool:
        return self in (ScenarioStatus.FAIL, ScenarioStatus.TIMEOUT)


@dataclass(frozen=True)
class ScenarioResult:
    """Immutable result of one scenario run."""

    name: str
    status: ScenarioStatus
    reason: str = ""
    metrics: dict[str, Any] = field(default_factory=dict)
    duration_s: float = 0.0
    group: str = ""

    @property
    def passed(self) -> bool:
        return self.status == ScenarioStatus.PASS

    def with_duration(self, duration_s: float) -> "ScenarioResult":
        return replace(self, duration_s=duration_s)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "group": self.group,
            "status": self.status.value,
            "reason": self.reason,
            "metrics": self.metrics,
            "duration_s": round(self.duration_s, 3),
        }


class RunReport:
    """
    Ordered, append-only collection of scenario results for one run.
    """

    def __init__(self, run_id: str, group: str) -> None:
        self.run_id = run_id
        self.group = group
        self.started_at = datetime.now(UTC)
        self.finished_at: datetime | None = None
        self._results: list[ScenarioResult] = []

    def append(self, result: ScenarioResult) -> None:
        self._results.append(result)

    def finish(self) -> None:
        self.finished_at = datetime.now(UTC)

    @property
    def results(self) -> tuple[ScenarioResult, ...]:
        return tuple(self._results)

    @property
    def failed_count(self) -> int:
        """FAIL plus TIMEOUT results. Used as the process exit code."""
        return sum(1 for r in self._results if r.status.is_failure)

    @property
    def passed(self) -> bool:
        """True iff every non-skipped scenario passed."""
        return self.failed_count == 0

    def counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in ScenarioStatus}
        for result in self._results:
            counts[result.status.value] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "group": self.group,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "passed": self.passed,
            "failed_count": self.failed_count,
            "counts": self.counts(),
            "results": [r.to_dict() for r in self._results],
        }

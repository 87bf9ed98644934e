"""
Scenario orchestrator.

Runs scenarios one at a time, each under its own wall-clock budget, and
collects their results. A failing, raising or overrunning scenario never
stops the ones after it; only a ConfigurationError aborts the run.
"""

import asyncio
import time
from collections.abc import Callable, Sequence
from dataclasses import replace
from datetime import UTC, datetime
from uuid import uuid4

from standby_verifier.errors import ConfigurationError
from standby_verifier.logging import get_logger, set_run_id
from standby_verifier.scenarios.base import Scenario, ScenarioContext
from standby_verifier.scenarios.models import RunReport, ScenarioResult

logger = get_logger(__name__)


def generate_run_id(prefix: str = "verify") -> str:
    """
    Generate a unique run ID.

    Format: {prefix}_{timestamp}_{uuid8}
    Example: standby_20240115_143022_a1b2c3d4
    """
    timestamp = datetime.now(UTC).strftime("%Y%m%d_%H%M%S")
    short_uuid = uuid4().hex[:8]
    return f"{prefix}_{timestamp}_{short_uuid}"


class ScenarioOrchestrator:
    """Sequential scenario runner."""

    def __init__(
        self, ctx: ScenarioContext, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self._ctx = ctx
        self._clock = clock

    async def run_scenario(self, scenario: Scenario) -> ScenarioResult:
        """
        Run one scenario and always return its result.

        Raises:
            ConfigurationError: Propagated; the run cannot continue
        """
        reason = scenario.should_skip(self._ctx)
        if reason is not None:
            logger.warning("Skipped %s: %s", scenario.name, reason)
            return scenario.skipped(reason)

        budget = scenario.budget(self._ctx.settings)
        deadline = asyncio.timeout(budget)
        promotions_before = len(self._ctx.promotions.records)
        start = self._clock()
        try:
            async with deadline:
                result = await scenario.run(self._ctx)
        except ConfigurationError:
            raise
        except TimeoutError as e:
            if deadline.expired():
                logger.error("%s exceeded its %gs budget", scenario.name, budget)
                result = scenario.timed_out(budget)
            else:
                logger.exception("%s failed", scenario.name)
                result = scenario.failed(f"{type(e).__name__}: {e}")
            result = self._note_unrestored(result, promotions_before)
        except Exception as e:
            logger.exception("%s failed", scenario.name)
            result = scenario.failed(f"{type(e).__name__}: {e}")
            result = self._note_unrestored(result, promotions_before)

        return result.with_duration(self._clock() - start)

    def _note_unrestored(self, result: ScenarioResult, since: int) -> ScenarioResult:
        """Carry restoration failures of an aborted scenario into its result."""
        pending = [r for r in self._ctx.promotions.records[since:] if r.needs_operator]
        if not pending:
            return result
        notes = "; ".join(
            f"{r.cluster_id} not restored: {r.restoration_error}. {r.remediation}"
            for r in pending
        )
        return replace(
            result,
            reason=f"{result.reason}; {notes}",
            metrics={**result.metrics, "promotions": [r.to_dict() for r in pending]},
        )

    async def run(self, scenarios: Sequence[Scenario], group: str) -> RunReport:
        """Run scenarios in order and collect a report."""
        run_id = self._ctx.run_id or generate_run_id(group)
        set_run_id(run_id)
        report = RunReport(run_id=run_id, group=group)

        logger.info("=" * 60)
        logger.info("Warm standby verification: %s (%d scenarios)", group, len(scenarios))
        logger.info("=" * 60)

        for index, scenario in enumerate(scenarios, start=1):
            logger.info("[%d/%d] %s", index, len(scenarios), scenario.name)
            result = await self.run_scenario(scenario)
            report.append(result)
            logger.info("  -> %s: %s", result.status.value, result.reason)

        report.finish()
        return report

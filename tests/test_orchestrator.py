"""
Tests for the scenario orchestrator.
"""

import asyncio
import re

import pytest

from standby_verifier.config import Settings
from standby_verifier.errors import ConfigurationError
from standby_verifier.logging import current_run_id
from standby_verifier.orchestrator import ScenarioOrchestrator, generate_run_id
from standby_verifier.remote.shell import CommandResult
from standby_verifier.replication import (
    DiscoveryResult,
    PromotionState,
    PromotionStateMachine,
    RestorationOutcome,
)
from standby_verifier.scenarios import Scenario, ScenarioContext, ScenarioResult, ScenarioStatus
from standby_verifier.scenarios.standby import PromotionScenario
from standby_verifier.workload import WorkloadReport


class PassingScenario(Scenario):
    name = "passing"
    group = "test"

    async def run(self, ctx: ScenarioContext) -> ScenarioResult:
        return self.passed("ok", value=1)


class FailingScenario(Scenario):
    name = "failing"
    group = "test"

    async def run(self, ctx: ScenarioContext) -> ScenarioResult:
        return self.failed("expected failure")


class RaisingScenario(Scenario):
    name = "raising"
    group = "test"

    async def run(self, ctx: ScenarioContext) -> ScenarioResult:
        raise RuntimeError("boom")


class SlowScenario(Scenario):
    name = "slow"
    group = "test"
    budget_s = 0.05

    async def run(self, ctx: ScenarioContext) -> ScenarioResult:
        await asyncio.sleep(10)
        return self.passed("never")


class InnerTimeoutScenario(Scenario):
    """Raises TimeoutError from its own work, well inside its budget."""

    name = "inner_timeout"
    group = "test"
    budget_s = 60

    async def run(self, ctx: ScenarioContext) -> ScenarioResult:
        raise TimeoutError("perf-test did not answer")


class SkippedScenario(Scenario):
    name = "skipped"
    group = "test"

    def should_skip(self, ctx: ScenarioContext) -> str | None:
        return "not enabled"

    async def run(self, ctx: ScenarioContext) -> ScenarioResult:
        raise AssertionError("must not run")


class MisconfiguredScenario(Scenario):
    name = "misconfigured"
    group = "test"

    async def run(self, ctx: ScenarioContext) -> ScenarioResult:
        raise ConfigurationError("Topology has no regional downstream cluster")


class TestRunScenario:
    """Tests for single scenario execution."""

    @pytest.mark.asyncio
    async def test_pass(self, ctx: ScenarioContext) -> None:
        result = await ScenarioOrchestrator(ctx).run_scenario(PassingScenario())

        assert result.status == ScenarioStatus.PASS
        assert result.metrics == {"value": 1}
        assert result.duration_s >= 0

    @pytest.mark.asyncio
    async def test_exception_becomes_fail(self, ctx: ScenarioContext) -> None:
        """An exception is a FAIL carrying the error type and message."""
        result = await ScenarioOrchestrator(ctx).run_scenario(RaisingScenario())

        assert result.status == ScenarioStatus.FAIL
        assert result.reason == "RuntimeError: boom"

    @pytest.mark.asyncio
    async def test_budget_exceeded_is_timeout(self, ctx: ScenarioContext) -> None:
        result = await ScenarioOrchestrator(ctx).run_scenario(SlowScenario())

        assert result.status == ScenarioStatus.TIMEOUT
        assert result.status.is_failure is True

    @pytest.mark.asyncio
    async def test_inner_timeout_is_fail(self, ctx: ScenarioContext) -> None:
        """A TimeoutError raised by the scenario itself is not a budget overrun."""
        result = await ScenarioOrchestrator(ctx).run_scenario(InnerTimeoutScenario())

        assert result.status == ScenarioStatus.FAIL
        assert "perf-test did not answer" in result.reason

    @pytest.mark.asyncio
    async def test_skip(self, ctx: ScenarioContext) -> None:
        result = await ScenarioOrchestrator(ctx).run_scenario(SkippedScenario())

        assert result.status == ScenarioStatus.SKIP
        assert result.reason == "not enabled"

    @pytest.mark.asyncio
    async def test_configuration_error_propagates(self, ctx: ScenarioContext) -> None:
        with pytest.raises(ConfigurationError):
            await ScenarioOrchestrator(ctx).run_scenario(MisconfiguredScenario())

    def test_default_budget_from_settings(self, settings: Settings) -> None:
        assert PassingScenario().budget(settings) == settings.default_scenario_budget_s


class TestRun:
    """Tests for whole runs."""

    @pytest.mark.asyncio
    async def test_failures_do_not_stop_run(self, ctx: ScenarioContext) -> None:
        """Every scenario runs and results keep their order."""
        scenarios = [
            PassingScenario(),
            RaisingScenario(),
            SlowScenario(),
            SkippedScenario(),
            FailingScenario(),
        ]

        report = await ScenarioOrchestrator(ctx).run(scenarios, "test")

        assert [r.name for r in report.results] == [
            "passing",
            "raising",
            "slow",
            "skipped",
            "failing",
        ]
        assert report.failed_count == 3
        assert report.passed is False
        assert report.counts() == {"PASS": 1, "FAIL": 2, "SKIP": 1, "TIMEOUT": 1}
        assert report.finished_at is not None

    @pytest.mark.asyncio
    async def test_all_skipped_passes(self, ctx: ScenarioContext) -> None:
        report = await ScenarioOrchestrator(ctx).run([SkippedScenario()], "test")

        assert report.failed_count == 0
        assert report.passed is True

    @pytest.mark.asyncio
    async def test_run_id_set(self, ctx: ScenarioContext) -> None:
        report = await ScenarioOrchestrator(ctx).run([PassingScenario()], "test")

        assert report.run_id == "test-run"
        assert current_run_id.get() == "test-run"


class TestRunId:
    """Tests for run id generation."""

    def test_format(self) -> None:
        assert re.fullmatch(r"standby_\d{8}_\d{6}_[0-9a-f]{8}", generate_run_id("standby"))

    def test_unique(self) -> None:
        assert generate_run_id() != generate_run_id()


# =============================================================================
# Promotion under the scenario budget
# =============================================================================


class TestPromotionBudget:
    """Tests for a scenario budget that expires while a promoted cluster is restored."""

    @pytest.fixture
    def promoting(self, ctx: ScenarioContext) -> ScenarioContext:
        """Promotion enabled with a short budget; restarting a member takes a second."""
        regional = ctx.registry.cluster("az-2")
        carrier = regional.nodes[1]

        async def slow_restart(host: str) -> CommandResult:
            await asyncio.sleep(1)
            return CommandResult(host=host, command="", exit_code=0, stdout="", stderr="")

        ctx.settings = ctx.settings.model_copy(
            update={"test_promotion": True, "promotion_scenario_budget_s": 0.3}
        )
        ctx.discoverer.discover.return_value = DiscoveryResult(
            cluster_id="az-2", carrier=carrier
        )
        ctx.driver.run.return_value = WorkloadReport.from_output(
            "id: test, sending rate avg: 987 msg/s\n", exit_code=0, duration_s=1.0
        )
        ctx.management.queue_messages.return_value = 100
        ctx.control.vhosts_available_for_recovery.return_value = ["/"]
        ctx.control.promote.return_value = CommandResult(
            host=carrier.address, command="", exit_code=0, stdout="Promoted", stderr=""
        )
        ctx.control.restart_service.side_effect = slow_restart
        ctx.control.await_ready.return_value = True
        return ctx

    @staticmethod
    def rebuild_promotions(ctx: ScenarioContext, **overrides: float) -> None:
        settings = ctx.settings.model_copy(update=overrides)
        ctx.promotions = PromotionStateMachine(
            ctx.registry, ctx.control, ctx.management, ctx.discoverer, settings, sleep=ctx.sleep
        )

    @pytest.mark.asyncio
    async def test_expiry_mid_restore__restore_completes(self, promoting: ScenarioContext) -> None:
        """The scenario times out but the cluster still ends up back in downstream mode."""
        self.rebuild_promotions(promoting)

        result = await ScenarioOrchestrator(promoting).run_scenario(PromotionScenario())

        assert result.status == ScenarioStatus.TIMEOUT
        assert result.reason == "exceeded budget of 0.3s"
        assert promoting.promotions.state_of("az-2") == PromotionState.DOWNSTREAM
        (record,) = promoting.promotions.records
        assert record.restoration_outcome == RestorationOutcome.SUCCESS
        promoting.control.connect_downstream.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_restore_overruns_own_deadline__failure_recorded(
        self, promoting: ScenarioContext
    ) -> None:
        """A restore cut off by its own deadline is recorded with a remediation."""
        self.rebuild_promotions(promoting, restore_budget_s=0.5)

        result = await ScenarioOrchestrator(promoting).run_scenario(PromotionScenario())

        assert promoting.promotions.state_of("az-2") == PromotionState.RESTORATION_FAILED
        (record,) = promoting.promotions.records
        assert record.restoration_outcome == RestorationOutcome.FAILED
        assert "did not finish within" in (record.restoration_error or "")
        assert record.needs_operator
        assert result.status == ScenarioStatus.TIMEOUT
        assert "az-2 not restored" in result.reason
        assert "operating_mode = downstream" in result.reason
        assert result.metrics["promotions"][0]["restoration_outcome"] == "failed"
        promoting.control.connect_downstream.assert_not_awaited()

"""
Scenario base class and shared run context.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from standby_verifier.config import Settings
from standby_verifier.logging import get_logger
from standby_verifier.management.client import ManagementClient
from standby_verifier.remote.control import ControlPlane
from standby_verifier.remote.shell import RemoteShell
from standby_verifier.replication.discovery import ActiveLinkDiscoverer
from standby_verifier.replication.lag import LagSampler
from standby_verifier.replication.prober import NodeProber
from standby_verifier.replication.promotion import PromotionStateMachine
from standby_verifier.scenarios.models import ScenarioResult, ScenarioStatus
from standby_verifier.topology.models import ClusterTopology
from standby_verifier.topology.registry import TopologyRegistry
from standby_verifier.workload.driver import WorkloadDriver, amqp_uri

logger = get_logger(__name__)


@dataclass
class ScenarioContext:
    """
    Everything a scenario needs, built once per run.

    Scenarios get collaborators from here instead of constructing their own,
    so tests can swap any of them.
    """

    settings: Settings
    registry: TopologyRegistry
    shell: RemoteShell
    control: ControlPlane
    management: ManagementClient
    prober: NodeProber
    discoverer: ActiveLinkDiscoverer
    sampler: LagSampler
    driver: WorkloadDriver
    promotions: PromotionStateMachine
    run_id: str = ""
    sleep: Callable[[float], Awaitable[Any]] = field(default=asyncio.sleep)

    @classmethod
    def create(
        cls, settings: Settings, registry: TopologyRegistry, run_id: str = ""
    ) -> "ScenarioContext":
        """Wire the default collaborators for a real run."""
        shell = RemoteShell(settings)
        control = ControlPlane(shell, settings)
        management = ManagementClient(
            settings,
            get_logger("standby_verifier.management"),
            management_port=registry.ports.management,
        )
        prober = NodeProber(control, timeout=settings.probe_timeout)
        discoverer = ActiveLinkDiscoverer(prober)
        return cls(
            settings=settings,
            registry=registry,
            shell=shell,
            control=control,
            management=management,
            prober=prober,
            discoverer=discoverer,
            sampler=LagSampler(control, read_timeout=settings.probe_timeout),
            driver=WorkloadDriver(settings.perf_test_path),
            promotions=PromotionStateMachine(registry, control, management, discoverer, settings),
            run_id=run_id,
        )

    async def close(self) -> None:
        await self.management.close()

    def downstreams_in_scope(self) -> list[ClusterTopology]:
        return self.registry.downstreams(include_cross_region=not self.settings.skip_cross_region)

    def clusters_in_scope(self) -> list[ClusterTopology]:
        return [self.registry.upstream, *self.downstreams_in_scope()]

    def upstream_uri(self) -> str:
        return amqp_uri(
            self.settings.user,
            self.settings.password_value(),
            self.registry.upstream.primary_address,
            self.registry.ports.amqp,
        )

    @staticmethod
    def unique_name(prefix: str) -> str:
        """Test entity name that cannot collide with an earlier run."""
        return f"{prefix}-{int(time.time())}-{uuid4().hex[:6]}"


class Scenario(ABC):
    """
    One verification scenario.

    Subclasses set ``name`` and ``group`` and implement ``run``. A scenario
    returns its own PASS/FAIL result; raising is also fine, the orchestrator
    turns any exception into a FAIL.
    """

    name: str = ""
    group: str = ""
    budget_s: float | None = None

    def budget(self, settings: Settings) -> float:
        """Wall-clock budget for one run of this scenario."""
        return self.budget_s if self.budget_s is not None else settings.default_scenario_budget_s

    def should_skip(self, ctx: ScenarioContext) -> str | None:
        """Reason to skip, or None to run."""
        return None

    @abstractmethod
    async def run(self, ctx: ScenarioContext) -> ScenarioResult:
        """Run the scenario."""
        ...

    # =========================================================================
    # Result helpers
    # =========================================================================

    def _result(self, status: ScenarioStatus, reason: str, **metrics: Any) -> ScenarioResult:
        return ScenarioResult(
            name=self.name, group=self.group, status=status, reason=reason, metrics=metrics
        )

    def passed(self, reason: str, **metrics: Any) -> ScenarioResult:
        return self._result(ScenarioStatus.PASS, reason, **metrics)

    def failed(self, reason: str, **metrics: Any) -> ScenarioResult:
        return self._result(ScenarioStatus.FAIL, reason, **metrics)

    def skipped(self, reason: str) -> ScenarioResult:
        return self._result(ScenarioStatus.SKIP, reason)

    def timed_out(self, budget_s: float) -> ScenarioResult:
        return self._result(ScenarioStatus.TIMEOUT, f"exceeded budget of {budget_s:g}s")

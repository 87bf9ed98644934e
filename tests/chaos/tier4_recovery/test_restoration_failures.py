"""
Tier 4: Restoration under control plane failures.

Tests that a promoted cluster never stays PROMOTED: every restoration
attempt ends either back in DOWNSTREAM or in RESTORATION_FAILED with a
remediation an operator can act on.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from standby_verifier.config import Settings
from standby_verifier.management.client import ManagementClient
from standby_verifier.replication import (
    ActiveLinkDiscoverer,
    DiscoveryResult,
    PromotionState,
    PromotionStateMachine,
    RestorationOutcome,
)
from standby_verifier.topology import TopologyRegistry
from tests.chaos.fixtures.node_chaos import NodeChaos, ok

RESTORE_COMMANDS = (
    "set_operating_mode",
    "restart_service",
    "set_schema_upstream_endpoints",
    "set_standby_upstream_endpoints",
    "connect_downstream",
)


@pytest.fixture
def chaotic_control(control: AsyncMock) -> AsyncMock:
    control.promote.return_value = ok(stdout="Promoted")
    control.await_ready.return_value = True
    for method in RESTORE_COMMANDS:
        NodeChaos.intermittent_command_failure(control, method, fail_rate=0.1)
    return control


@pytest.fixture
def machine(
    registry: TopologyRegistry,
    chaotic_control: AsyncMock,
    settings: Settings,
    no_sleep: AsyncMock,
) -> PromotionStateMachine:
    discoverer = AsyncMock(spec=ActiveLinkDiscoverer)
    discoverer.discover.return_value = DiscoveryResult(
        cluster_id="az-2", carrier=registry.cluster("az-2").nodes[0]
    )
    return PromotionStateMachine(
        registry,
        chaotic_control,
        AsyncMock(spec=ManagementClient),
        discoverer,
        settings,
        sleep=no_sleep,
    )


@pytest.mark.chaos
@pytest.mark.tier4
class TestRestorationUnderFaults:
    """Tests for promote/restore cycles with failing remote commands."""

    @pytest.mark.asyncio
    async def test_repeated_cycles__never_left_promoted(
        self, machine: PromotionStateMachine, registry: TopologyRegistry
    ) -> None:
        """
        SCENARIO: Ten promote/restore cycles, each restore command fails 10% of the time
        EXPECTED: Each cycle ends DOWNSTREAM or RESTORATION_FAILED (which stops further cycles)
        FAILURE MODE: Cluster silently stays promoted after a failed step
        """
        cluster = registry.cluster("az-2")
        outcomes = []

        for _ in range(10):
            if machine.state_of("az-2") == PromotionState.RESTORATION_FAILED:
                break
            async with machine.promoted(cluster, cluster.nodes[0]) as record:
                assert machine.state_of("az-2") == PromotionState.PROMOTED
            outcomes.append(record.restoration_outcome)
            assert machine.state_of("az-2") in (
                PromotionState.DOWNSTREAM,
                PromotionState.RESTORATION_FAILED,
            )
            if record.restoration_outcome == RestorationOutcome.FAILED:
                assert record.remediation

        assert outcomes
        assert all(o is not None for o in outcomes)

    @pytest.mark.asyncio
    async def test_unready_member__fails_with_remediation(
        self,
        machine: PromotionStateMachine,
        chaotic_control: AsyncMock,
        registry: TopologyRegistry,
    ) -> None:
        """
        SCENARIO: One member never becomes ready after the restart
        EXPECTED: RESTORATION_FAILED naming the member, bounded readiness polls
        """
        for method in RESTORE_COMMANDS:
            getattr(chaotic_control, method).side_effect = None
            getattr(chaotic_control, method).return_value = ok()
        NodeChaos.never_ready(chaotic_control, {"10.0.2.3"})
        cluster = registry.cluster("az-2")

        async with machine.promoted(cluster, cluster.nodes[0]) as record:
            pass

        assert record.restoration_outcome == RestorationOutcome.FAILED
        assert "10.0.2.3" in (record.restoration_error or "")
        assert record.remediation
        assert machine.state_of("az-2") == PromotionState.RESTORATION_FAILED

    @pytest.mark.asyncio
    async def test_cancelled_mid_run__still_restored(
        self,
        machine: PromotionStateMachine,
        chaotic_control: AsyncMock,
        registry: TopologyRegistry,
    ) -> None:
        """
        SCENARIO: Scenario budget expires while the cluster is promoted
        EXPECTED: Restoration still runs before the cancellation propagates
        """
        for method in RESTORE_COMMANDS:
            getattr(chaotic_control, method).side_effect = None
            getattr(chaotic_control, method).return_value = ok()
        cluster = registry.cluster("az-2")

        async def hold_promoted() -> None:
            async with machine.promoted(cluster, cluster.nodes[0]):
                await asyncio.Event().wait()

        with pytest.raises(TimeoutError):
            async with asyncio.timeout(0.05):
                await hold_promoted()

        assert machine.state_of("az-2") == PromotionState.DOWNSTREAM
        chaotic_control.connect_downstream.assert_awaited_once()

"""
Resiliency scenarios.

Inject one fault, observe, heal, and check that replication recovers. Every
fault is applied through ``injected`` so it is healed on every exit path.
Opt-in only: these take nodes down.
"""

import math

from standby_verifier.chaos.actions import NetworkPartition, NodeKill, PacketLoss, injected
from standby_verifier.errors import ManagementAPIError
from standby_verifier.logging import get_logger
from standby_verifier.replication.discovery import DiscoveryResult
from standby_verifier.scenarios.base import Scenario, ScenarioContext
from standby_verifier.scenarios.models import ScenarioResult
from standby_verifier.scenarios.standby import delete_test_queue
from standby_verifier.topology.models import ClusterTopology, Node
from standby_verifier.workload.driver import WorkloadSpec

logger = get_logger(__name__)

GROUP = "resiliency"

PARTITION_SETUP_MESSAGES = 500
DURABILITY_MESSAGES = 500
RECOVERY_POLL_S = 5.0


async def rediscover(ctx: ScenarioContext, cluster: ClusterTopology) -> DiscoveryResult:
    """Poll discovery until a carrier shows up or the recovery window ends."""
    polls = max(1, math.ceil(ctx.settings.chaos_recovery_s / RECOVERY_POLL_S))
    discovery = await ctx.discoverer.discover(cluster)
    for _ in range(polls - 1):
        if discovery.found:
            break
        await ctx.sleep(RECOVERY_POLL_S)
        discovery = await ctx.discoverer.discover(cluster)
    return discovery


async def running_nodes(ctx: ScenarioContext, host: str) -> int | None:
    """Running member count as seen from ``host``, or None if it cannot answer."""
    try:
        return await ctx.management.running_node_count(host)
    except ManagementAPIError as e:
        logger.debug("Node listing on %s failed: %s", host, e)
        return None


async def await_running(ctx: ScenarioContext, host: str, expected: int) -> int | None:
    """Poll until ``expected`` members run or the recovery window ends."""
    polls = max(1, math.ceil(ctx.settings.chaos_recovery_s / RECOVERY_POLL_S))
    count = await running_nodes(ctx, host)
    for _ in range(polls - 1):
        if count is not None and count >= expected:
            break
        await ctx.sleep(RECOVERY_POLL_S)
        count = await running_nodes(ctx, host)
    return count


def secondary_member(cluster: ClusterTopology) -> Node | None:
    """A member other than the primary, which serves the management queries."""
    return cluster.nodes[-1] if len(cluster.nodes) > 1 else None


class ChaosScenario(Scenario):
    """Base for fault injection scenarios."""

    group = GROUP

    def should_skip(self, ctx: ScenarioContext) -> str | None:
        if not ctx.settings.enable_chaos:
            return "fault injection not enabled (use --enable-chaos)"
        return None


class CarrierFailoverScenario(ChaosScenario):
    """Kill the regional carrier; replication must come back after restart."""

    name = "carrier_failover"

    async def run(self, ctx: ScenarioContext) -> ScenarioResult:
        settings = ctx.settings
        regional = ctx.registry.regional_downstream()

        before = await ctx.discoverer.discover(regional)
        if before.carrier is None:
            return self.failed(f"No replication carrier in {regional.display_name} to kill")
        victim = before.carrier

        action = NodeKill(ctx.shell, victim.address, settings.service_name)
        async with injected(action, settings.chaos_observation_s, sleep=ctx.sleep):
            during = await ctx.discoverer.discover(regional)
            if during.carrier is not None:
                logger.info("Replication taken over by %s while %s down", during.carrier, victim)

        after = await rediscover(ctx, regional)
        metrics = {
            "killed": victim.address,
            "carrier_during_fault": during.carrier.address if during.carrier else None,
            "carrier_after_heal": after.carrier.address if after.carrier else None,
        }
        if not after.found:
            return self.failed(
                f"No replication carrier in {regional.display_name} "
                f"{settings.chaos_recovery_s:.0f}s after restarting {victim.address}",
                **metrics,
            )
        return self.passed(f"Replication recovered on {after.carrier}", **metrics)


class MemberKillScenario(ChaosScenario):
    """Base for scenarios that kill a non-primary upstream member."""

    def should_skip(self, ctx: ScenarioContext) -> str | None:
        reason = super().should_skip(ctx)
        if reason is None and secondary_member(ctx.registry.upstream) is None:
            return "upstream has a single member; nothing to kill"
        return reason


class NodeDurabilityScenario(MemberKillScenario):
    """Confirmed messages on the upstream survive the loss of one member."""

    name = "node_durability"

    async def run(self, ctx: ScenarioContext) -> ScenarioResult:
        settings = ctx.settings
        upstream = ctx.registry.upstream
        host = upstream.primary_address
        target = secondary_member(upstream)
        queue = ctx.unique_name("resiliency-test-durability")

        publish = await ctx.driver.run(
            WorkloadSpec(
                uri=ctx.upstream_uri(),
                queue=queue,
                run_id="durability-pub",
                producers=1,
                consumers=0,
                message_count=DURABILITY_MESSAGES,
                message_size=5000,
                confirm=1,
            ),
            timeout=settings.remote_command_timeout * 4,
        )
        if publish.failed:
            await delete_test_queue(ctx, host, queue)
            return self.failed(f"Publish failed: {publish.output_tail}", queue=queue)
        initial = await ctx.management.queue_messages(host, queue)
        logger.info("Published %d messages (expected %d)", initial, DURABILITY_MESSAGES)

        action = NodeKill(ctx.shell, target.address, settings.service_name)
        async with injected(action, settings.chaos_observation_s, sleep=ctx.sleep):
            during = await ctx.management.queue_messages(host, queue)
            logger.info("Messages while %s is down: %d", target.address, during)

        recovered = await await_running(ctx, host, len(upstream.nodes))
        final = await ctx.management.queue_messages(host, queue)
        await delete_test_queue(ctx, host, queue)

        metrics = {
            "queue": queue,
            "killed": target.address,
            "expected_messages": DURABILITY_MESSAGES,
            "initial_messages": initial,
            "messages_during_fault": during,
            "final_messages": final,
            "running_after_heal": recovered,
        }
        if during < DURABILITY_MESSAGES:
            return self.failed(
                f"Messages lost while {target.address} was down: "
                f"{DURABILITY_MESSAGES} -> {during}",
                **metrics,
            )
        if final < during:
            return self.failed(f"Messages lost after restart: {during} -> {final}", **metrics)
        return self.passed(f"{during} messages survived the loss of {target.address}", **metrics)


class ClusterRecoveryScenario(MemberKillScenario):
    """The upstream returns to its full member count after one member restarts."""

    name = "cluster_recovery"

    async def run(self, ctx: ScenarioContext) -> ScenarioResult:
        settings = ctx.settings
        upstream = ctx.registry.upstream
        host = upstream.primary_address
        target = secondary_member(upstream)

        initial = await running_nodes(ctx, host)
        if initial is None:
            return self.failed(f"Cannot list members of {upstream.display_name} via {host}")
        if initial < len(upstream.nodes):
            return self.failed(
                f"Only {initial} of {len(upstream.nodes)} members running before the test",
                initial_running=initial,
            )

        action = NodeKill(ctx.shell, target.address, settings.service_name)
        async with injected(action, settings.chaos_observation_s, sleep=ctx.sleep):
            during = await running_nodes(ctx, host)
            logger.info("Running members during failure: %s", during)

        final = await await_running(ctx, host, initial)
        metrics = {
            "killed": target.address,
            "initial_running": initial,
            "running_during_fault": during,
            "final_running": final,
        }
        if during is not None and during >= initial:
            logger.warning("Loss of %s was not visible from %s", target.address, host)
        if final is None or final < initial:
            return self.failed(
                f"{upstream.display_name} did not recover to {initial} members within "
                f"{settings.chaos_recovery_s:.0f}s ({final} running)",
                **metrics,
            )
        return self.passed(f"Cluster recovered ({final} members running)", **metrics)


class UpstreamPartitionScenario(ChaosScenario):
    """Cut the regional carrier off from the upstream; no data may be lost."""

    name = "upstream_partition"

    async def run(self, ctx: ScenarioContext) -> ScenarioResult:
        settings = ctx.settings
        regional = ctx.registry.regional_downstream()
        upstream_host = ctx.registry.upstream.primary_address

        before = await ctx.discoverer.discover(regional)
        if before.carrier is None:
            return self.failed(f"No replication carrier in {regional.display_name} to partition")
        carrier = before.carrier

        queue = ctx.unique_name("resiliency-test-partition")
        await ctx.driver.run(
            WorkloadSpec(
                uri=ctx.upstream_uri(),
                queue=queue,
                run_id="partition-setup",
                producers=1,
                consumers=0,
                message_count=PARTITION_SETUP_MESSAGES,
                message_size=1000,
                confirm=10,
            ),
            timeout=settings.remote_command_timeout * 4,
        )
        initial = await ctx.management.queue_messages(upstream_host, queue)

        action = NetworkPartition(ctx.shell, carrier.address, upstream_host)
        async with injected(action, settings.chaos_observation_s, sleep=ctx.sleep):
            partitioned = await self._partition_seen(ctx, upstream_host)
            logger.info("Upstream cluster status: %s", "partitioned" if partitioned else "healthy")

        await ctx.sleep(settings.chaos_recovery_s)
        after = await rediscover(ctx, regional)
        final = await ctx.management.queue_messages(upstream_host, queue)
        await delete_test_queue(ctx, upstream_host, queue)

        metrics = {
            "queue": queue,
            "partitioned": f"{carrier.address}<->{upstream_host}",
            "partition_reported": partitioned,
            "initial_messages": initial,
            "final_messages": final,
            "carrier_after_heal": after.carrier.address if after.carrier else None,
        }
        if final < initial:
            return self.failed(f"Message loss during partition: {initial} -> {final}", **metrics)
        if not after.found:
            return self.failed(
                f"No replication carrier in {regional.display_name} after healing", **metrics
            )
        return self.passed(f"Partition handled, messages intact ({final})", **metrics)

    @staticmethod
    async def _partition_seen(ctx: ScenarioContext, host: str) -> bool:
        try:
            return any(n.is_partitioned for n in await ctx.management.list_nodes(host))
        except ManagementAPIError as e:
            logger.debug("Node listing on %s failed: %s", host, e)
            return False


class PacketLossScenario(ChaosScenario):
    """Publishing keeps a minimum rate with packet loss on an upstream node."""

    name = "packet_loss"

    async def run(self, ctx: ScenarioContext) -> ScenarioResult:
        settings = ctx.settings
        upstream = ctx.registry.upstream
        # Prefer a member other than the one perf-test connects to
        target = upstream.nodes[1] if len(upstream.nodes) > 1 else upstream.nodes[0]
        queue = ctx.unique_name("resiliency-packet-loss")

        action = PacketLoss(
            ctx.shell, target.address, settings.packet_loss_interface, settings.packet_loss_pct
        )
        async with injected(action, sleep=ctx.sleep):
            report = await ctx.driver.run(
                WorkloadSpec(
                    uri=ctx.upstream_uri(),
                    queue=queue,
                    run_id="packet-loss",
                    producers=2,
                    consumers=2,
                    duration_s=max(1, int(settings.chaos_observation_s)),
                    message_size=5000,
                    confirm=50,
                )
            )
        await delete_test_queue(ctx, upstream.primary_address, queue)

        metrics = {
            "target": target.address,
            "loss_pct": settings.packet_loss_pct,
            "send_rate": report.send_rate,
            "min_rate": settings.packet_loss_min_rate,
        }
        if report.send_rate <= settings.packet_loss_min_rate:
            return self.failed(
                f"Severe throughput degradation under packet loss ({report.send_rate} msg/s)",
                **metrics,
            )
        return self.passed(f"Throughput {report.send_rate} msg/s under packet loss", **metrics)


def resiliency_scenarios(ctx: ScenarioContext) -> list[Scenario]:
    """The resiliency group in run order."""
    return [
        CarrierFailoverScenario(),
        NodeDurabilityScenario(),
        ClusterRecoveryScenario(),
        UpstreamPartitionScenario(),
        PacketLossScenario(),
    ]

"""
Warm standby verification scenarios.

Run in order: connectivity, schema replication, message replication per
downstream, replication lag, sustained throughput, and (opt-in) promotion.
"""

import math

from standby_verifier.config import Settings
from standby_verifier.errors import (
    ConfigurationError,
    ManagementAPIError,
    ManagementAuthError,
    PromotionError,
)
from standby_verifier.logging import get_logger
from standby_verifier.replication.discovery import recovery_vhosts
from standby_verifier.replication.lag import LagOutcomeState, LagStatistics
from standby_verifier.replication.promotion import RestorationOutcome, ValidationOutcome
from standby_verifier.scenarios.base import Scenario, ScenarioContext
from standby_verifier.scenarios.models import ScenarioResult
from standby_verifier.topology.models import ClusterTopology
from standby_verifier.workload.driver import WorkloadSpec

logger = get_logger(__name__)

GROUP = "standby"

CONNECT_HINT = "run 'rabbitmqctl connect_standby_replication_downstream' on one member"


async def delete_test_queue(ctx: ScenarioContext, host: str, queue: str) -> None:
    """Best-effort removal of a test queue; failures are logged only."""
    if not ctx.settings.cleanup:
        logger.info("Leaving queue '%s' on %s for analysis (cleanup disabled)", queue, host)
        return
    try:
        await ctx.management.delete_queue(host, queue)
    except ManagementAPIError as e:
        logger.warning("Could not delete queue '%s' on %s: %s", queue, host, e)


class ConnectivityScenario(Scenario):
    """Management API reachable on every cluster in scope."""

    name = "connectivity"
    group = GROUP

    async def run(self, ctx: ScenarioContext) -> ScenarioResult:
        reachable: dict[str, str] = {}
        running: dict[str, int | None] = {}
        unreachable: list[str] = []

        for cluster in ctx.clusters_in_scope():
            try:
                host = await self._first_reachable(ctx, cluster)
            except ManagementAuthError as e:
                return self.failed(
                    f"Credentials rejected by {cluster.display_name}: {e}",
                    cluster=cluster.cluster_id,
                    reachable_via=reachable,
                )
            if host is None:
                logger.error("  x %s not accessible", cluster.display_name)
                unreachable.append(cluster.cluster_id)
                continue
            reachable[cluster.cluster_id] = host
            try:
                running[cluster.cluster_id] = await ctx.management.running_node_count(host)
            except ManagementAPIError as e:
                logger.debug("Node listing on %s failed: %s", host, e)
                running[cluster.cluster_id] = None
            logger.info("  v %s accessible via %s", cluster.display_name, host)

        metrics = {"reachable_via": reachable, "running_nodes": running}
        if unreachable:
            return self.failed(
                f"Not accessible: {', '.join(unreachable)}", unreachable=unreachable, **metrics
            )
        return self.passed(f"All {len(reachable)} clusters accessible", **metrics)

    @staticmethod
    async def _first_reachable(ctx: ScenarioContext, cluster: ClusterTopology) -> str | None:
        for address in cluster.addresses:
            if await ctx.management.is_reachable(address):
                return address
        return None


class SchemaReplicationScenario(Scenario):
    """A new exchange on the upstream shows up on every downstream in scope."""

    name = "schema_replication"
    group = GROUP

    async def run(self, ctx: ScenarioContext) -> ScenarioResult:
        settings = ctx.settings
        upstream_host = ctx.registry.upstream.primary_address
        exchange = ctx.unique_name("warm-standby-schema-test")

        logger.info("Creating test exchange '%s' on upstream", exchange)
        await ctx.management.create_exchange(upstream_host, exchange)
        try:
            if not await ctx.management.exchange_exists(upstream_host, exchange):
                return self.failed(f"Exchange '{exchange}' not found on upstream after create")

            pending = {c.cluster_id: c for c in ctx.downstreams_in_scope()}
            seen_after: dict[str, float] = {}
            polls = max(1, math.ceil(settings.schema_wait_s / settings.schema_poll_interval_s))

            for attempt in range(1, polls + 1):
                for cluster_id, cluster in list(pending.items()):
                    if await self._exists(ctx, cluster, exchange):
                        waited = attempt * settings.schema_poll_interval_s
                        logger.info(
                            "  v Exchange replicated to %s (~%.0fs)", cluster.display_name, waited
                        )
                        seen_after[cluster_id] = waited
                        del pending[cluster_id]
                if not pending:
                    break
                await ctx.sleep(settings.schema_poll_interval_s)

            metrics = {"exchange": exchange, "replicated_after_s": seen_after}
            if pending:
                for cluster in pending.values():
                    logger.error("  x Exchange NOT replicated to %s", cluster.display_name)
                return self.failed(
                    f"Exchange not replicated within {settings.schema_wait_s:.0f}s to: "
                    f"{', '.join(pending)}",
                    missing=list(pending),
                    **metrics,
                )
            return self.passed(
                f"Exchange replicated to all {len(seen_after)} standby clusters", **metrics
            )
        finally:
            if settings.cleanup:
                try:
                    await ctx.management.delete_exchange(upstream_host, exchange)
                except ManagementAPIError as e:
                    logger.warning("Could not delete exchange '%s': %s", exchange, e)

    @staticmethod
    async def _exists(ctx: ScenarioContext, cluster: ClusterTopology, exchange: str) -> bool:
        try:
            return await ctx.management.exchange_exists(cluster.primary_address, exchange)
        except ManagementAPIError as e:
            logger.debug("Exchange check on %s failed: %s", cluster.primary_address, e)
            return False


class MessageReplicationScenario(Scenario):
    """Standby message replication is active on one downstream cluster."""

    group = GROUP

    def __init__(self, cluster: ClusterTopology) -> None:
        self.cluster = cluster
        self.name = f"message_replication[{cluster.cluster_id}]"

    async def run(self, ctx: ScenarioContext) -> ScenarioResult:
        discovery = await ctx.discoverer.discover(self.cluster)
        if discovery.found:
            assert discovery.carrier is not None
            probe = discovery.carrier_probe
            if probe is not None:
                for line in probe.raw.splitlines():
                    if line.strip():
                        logger.info("    %s", line.strip())
            return self.passed(
                f"{self.cluster.display_name} replicating (carrier {discovery.carrier.address})",
                carrier=discovery.carrier.address,
            )

        logger.info("  No member reported connected, checking vhosts available for recovery")
        vhosts = await recovery_vhosts(ctx.control, self.cluster)
        if vhosts:
            return self.passed(
                f"{self.cluster.display_name} replicating (vhosts available for recovery)",
                carrier=None,
                recovery_vhosts=vhosts,
            )

        return self.failed(
            f"Standby replication not active on any member of {self.cluster.display_name}; "
            f"{CONNECT_HINT}",
            checked=self.cluster.addresses,
            probe_errors=discovery.errors,
        )


class ReplicationLagScenario(Scenario):
    """Initial delay and steady-state lag under sustained publish load."""

    name = "replication_lag"
    group = GROUP

    async def run(self, ctx: ScenarioContext) -> ScenarioResult:
        settings = ctx.settings
        regional = ctx.registry.regional_downstream()
        targets = [regional] + [c for c in ctx.downstreams_in_scope() if c.is_cross_region]

        carriers = {}
        for cluster in targets:
            discovery = await ctx.discoverer.discover(cluster)
            if discovery.carrier is not None:
                carriers[cluster.cluster_id] = discovery.carrier
            elif cluster is regional:
                return self.failed(
                    f"No replication carrier in {regional.display_name}; {CONNECT_HINT}"
                )
            else:
                logger.warning("Skipping lag for %s: no carrier found", cluster.display_name)

        upstream_node = ctx.registry.upstream.nodes[0]
        queue = ctx.unique_name("lag-test")
        spec = WorkloadSpec(
            uri=ctx.upstream_uri(),
            queue=queue,
            run_id="lag-test",
            producers=2,
            consumers=0,
            duration_s=settings.lag_test_duration_s,
            message_size=5000,
            rate=settings.lag_publish_rate,
            confirm=50,
        )

        logger.info(
            "Lag test: %ds with sampling every %.0fs on %s",
            settings.lag_test_duration_s,
            settings.lag_sample_interval_s,
            ", ".join(n.address for n in carriers.values()),
        )
        handle = await ctx.driver.start(spec)
        try:
            await ctx.sleep(settings.lag_startup_delay_s)
            lag_run = await ctx.sampler.run(
                queue,
                upstream_node,
                list(carriers.values()),
                interval_s=settings.lag_sample_interval_s,
                deadline_s=settings.lag_appear_timeout_s + settings.lag_test_duration_s,
                appear_timeout_s=settings.lag_appear_timeout_s,
                liveness=handle,
            )
            report = await handle.wait(timeout=settings.lag_test_duration_s + 30)
        finally:
            await handle.stop()

        per_cluster = {}
        for cluster_id, node in carriers.items():
            outcome = lag_run.outcome_for(node)
            assert outcome is not None
            per_cluster[cluster_id] = {
                "carrier": node.address,
                "state": outcome.state.value,
                **outcome.statistics.to_dict(),
            }
            self._log_outcome(ctx.registry.cluster(cluster_id), outcome.state, outcome.statistics)

        regional_carrier = carriers[regional.cluster_id]
        post = await ctx.prober.probe(regional_carrier)
        if post.connected:
            logger.info("  v Regional standby still connected after load")
        else:
            logger.warning("  x Regional standby may have disconnected after load")

        await delete_test_queue(ctx, ctx.registry.upstream.primary_address, queue)

        metrics = {
            "queue": queue,
            "publish_rate": report.send_rate,
            "clusters": per_cluster,
            "still_connected": post.connected,
        }
        if not lag_run.upstream_visible:
            return self.failed(
                "Initial delay measurement failed: queue never appeared in upstream metrics",
                **metrics,
            )

        regional_outcome = lag_run.outcome_for(regional_carrier)
        assert regional_outcome is not None
        if regional_outcome.state != LagOutcomeState.MEASURED:
            return self.failed(
                "Regional downstream never received replication data", **metrics
            )

        stats = regional_outcome.statistics
        reason = f"Initial delay {stats.initial_delay_s:.1f}s (regional)"
        if stats.has_data:
            reason += f", peak lag {stats.max_ms}ms"
        else:
            reason += ", no steady-state samples"
        return self.passed(reason, **metrics)

    @staticmethod
    def _log_outcome(
        cluster: ClusterTopology, state: LagOutcomeState, stats: LagStatistics
    ) -> None:
        if state != LagOutcomeState.MEASURED:
            logger.warning("  %s: queue never appeared in downstream metrics", cluster.display_name)
            return
        logger.info("  %s:", cluster.display_name)
        logger.info("    Initial replication delay: %.1fs", stats.initial_delay_s)
        if stats.has_data:
            logger.info("    Samples collected: %d", stats.sample_count)
            logger.info("    Peak replication lag: %dms", stats.max_ms)
            logger.info("    Min replication lag: %dms", stats.min_ms)
            logger.info("    Avg replication lag: %.0fms", stats.avg_ms)
        else:
            logger.info("    No steady-state samples (workload ended before sampling)")


class SustainedThroughputScenario(Scenario):
    """Upstream keeps accepting publishes at rate for the configured duration."""

    name = "sustained_throughput"
    group = GROUP

    async def run(self, ctx: ScenarioContext) -> ScenarioResult:
        settings = ctx.settings
        queue = ctx.unique_name("warm-standby-throughput")
        spec = WorkloadSpec(
            uri=ctx.upstream_uri(),
            queue=queue,
            run_id="throughput-pub",
            producers=2,
            consumers=0,
            duration_s=settings.throughput_duration_s,
            message_size=5000,
            rate=settings.throughput_publish_rate,
            confirm=50,
        )
        logger.info("Running sustained throughput test (%ds)", settings.throughput_duration_s)
        report = await ctx.driver.run(spec)

        regional = ctx.registry.regional_downstream()
        discovery = await ctx.discoverer.discover(regional)
        await delete_test_queue(ctx, ctx.registry.upstream.primary_address, queue)

        metrics = {
            "queue": queue,
            "send_rate": report.send_rate,
            "target_rate": settings.throughput_publish_rate,
            "carrier_after_load": discovery.carrier.address if discovery.carrier else None,
        }
        if report.send_rate <= 0:
            return self.failed(
                f"No publish rate reported; last output: {report.output_tail}", **metrics
            )
        if not discovery.found:
            logger.warning("No replication carrier in %s after load", regional.display_name)
        return self.passed(f"Sustained {report.send_rate} msg/s", **metrics)


class PromotionScenario(Scenario):
    """
    Promote the regional downstream, check the data, restore it.

    Destructive for the duration of the test; opt-in only.
    """

    name = "promotion"
    group = GROUP

    def budget(self, settings: Settings) -> float:
        return settings.promotion_scenario_budget_s

    def should_skip(self, ctx: ScenarioContext) -> str | None:
        if not ctx.settings.test_promotion:
            return "promotion testing not enabled (use --test-promotion)"
        return None

    async def run(self, ctx: ScenarioContext) -> ScenarioResult:
        settings = ctx.settings
        regional = ctx.registry.regional_downstream()
        upstream_host = ctx.registry.upstream.primary_address
        expected = settings.promotion_message_count

        discovery = await ctx.discoverer.discover(regional)
        if discovery.carrier is None:
            return self.failed(
                f"No active standby replication in {regional.display_name}",
                checked=regional.addresses,
            )
        carrier = discovery.carrier

        queue = ctx.unique_name("promotion-test")
        logger.info("Publishing %d messages to '%s' on upstream", expected, queue)
        publish = await ctx.driver.run(
            WorkloadSpec(
                uri=ctx.upstream_uri(),
                queue=queue,
                run_id="promotion-test",
                producers=1,
                consumers=0,
                message_count=expected,
                message_size=100,
                confirm=10,
            ),
            timeout=settings.remote_command_timeout * 4,
        )
        if publish.failed:
            await delete_test_queue(ctx, upstream_host, queue)
            return self.failed(f"Publish failed: {publish.output_tail}", queue=queue)

        upstream_count = await self._await_upstream_count(ctx, upstream_host, queue)

        logger.info("Waiting %.0fs for replication to sync", settings.promotion_sync_wait_s)
        await ctx.sleep(settings.promotion_sync_wait_s)
        vhosts = await recovery_vhosts(ctx.control, regional)
        logger.info("Vhosts available for recovery: %s", ", ".join(vhosts) or "none")

        outcome = None
        body_error = None
        try:
            async with ctx.promotions.promoted(regional, carrier) as record:
                try:
                    await ctx.sleep(settings.promotion_settle_s)
                    outcome = await ctx.promotions.validate(record, queue, expected)
                    await delete_test_queue(ctx, carrier.address, queue)
                except ConfigurationError:
                    raise
                except Exception as e:
                    logger.exception("Validation on %s failed", carrier.address)
                    body_error = f"{type(e).__name__}: {e}"
        except PromotionError as e:
            await delete_test_queue(ctx, upstream_host, queue)
            return self.failed(str(e), queue=queue, carrier=carrier.address)

        await delete_test_queue(ctx, upstream_host, queue)

        metrics = {
            "queue": queue,
            "upstream_count": upstream_count,
            "recovery_vhosts": vhosts,
            "promotion": record.to_dict(),
        }
        # A cluster left promoted outranks anything validation reported
        if record.restoration_outcome != RestorationOutcome.SUCCESS:
            reason = f"Restoration failed: {record.restoration_error}. {record.remediation}"
            if body_error is not None:
                reason = f"{reason} (validation also failed: {body_error})"
            return self.failed(reason, **metrics)
        if body_error is not None:
            return self.failed(f"Validation failed: {body_error}", **metrics)
        if outcome == ValidationOutcome.NONE:
            return self.failed("No messages found after promotion", **metrics)
        if outcome == ValidationOutcome.PARTIAL:
            return self.passed(
                f"Partial replication: {record.observed_count} of {expected} messages", **metrics
            )
        return self.passed(f"All {record.observed_count} messages available", **metrics)

    @staticmethod
    async def _await_upstream_count(ctx: ScenarioContext, host: str, queue: str) -> int:
        # The management API lags behind confirms by a second or two
        count = 0
        for attempt in range(1, 11):
            await ctx.sleep(1)
            count = await ctx.management.queue_messages(host, queue)
            if count > 0:
                logger.info("Upstream has %d messages (after %ds)", count, attempt)
                return count
        logger.warning("Upstream shows 0 messages for '%s' after 10s", queue)
        return count


def standby_scenarios(ctx: ScenarioContext) -> list[Scenario]:
    """The standby group in run order."""
    return [
        ConnectivityScenario(),
        SchemaReplicationScenario(),
        *(MessageReplicationScenario(c) for c in ctx.downstreams_in_scope()),
        ReplicationLagScenario(),
        SustainedThroughputScenario(),
        PromotionScenario(),
    ]

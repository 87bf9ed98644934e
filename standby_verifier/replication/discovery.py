"""
Active-link discovery.

Standby replication runs on exactly one member of a downstream cluster, and
which member is not fixed. Discovery probes every candidate in parallel and
returns the one holding the connection, or None.
"""

import asyncio
from dataclasses import dataclass, field

from standby_verifier.errors import RemoteCommandError
from standby_verifier.logging import get_logger
from standby_verifier.remote.control import ControlPlane
from standby_verifier.replication.prober import NodeProber, ProbeResult
from standby_verifier.replication.status import ReplicationChannel
from standby_verifier.topology.models import ClusterTopology, Node

logger = get_logger(__name__)


@dataclass(frozen=True)
class DiscoveryResult:
    """Outcome of one discovery pass over a cluster."""

    cluster_id: str
    carrier: Node | None
    probes: tuple[ProbeResult, ...] = field(default_factory=tuple)

    @property
    def found(self) -> bool:
        return self.carrier is not None

    @property
    def carrier_probe(self) -> ProbeResult | None:
        """Probe result of the carrier, including its raw status text."""
        for probe in self.probes:
            if probe.node == self.carrier:
                return probe
        return None

    @property
    def errors(self) -> dict[str, str]:
        """Per-address probe errors, for diagnostics."""
        return {p.node.address: p.error for p in self.probes if p.error}


class ActiveLinkDiscoverer:
    """
    Finds the carrier node of a cluster.

    Exactly one pass per call; the caller decides whether to call again.
    Nothing is cached between calls.
    """

    def __init__(self, prober: NodeProber, probe_timeout: float | None = None) -> None:
        self._prober = prober
        self._probe_timeout = probe_timeout

    async def discover(
        self,
        cluster: ClusterTopology,
        channel: ReplicationChannel = ReplicationChannel.STANDBY,
    ) -> DiscoveryResult:
        """
        Probe all members once, in parallel, first CONNECTED wins.

        When several members report CONNECTED in the same wakeup the earliest
        in declared order is chosen. Outstanding probes are cancelled once a
        carrier is known.

        Args:
            cluster: Cluster whose members are the candidates
            channel: Which replication link to look for

        Returns:
            DiscoveryResult with the carrier, or ``carrier=None`` if no member
            reported CONNECTED
        """
        tasks = {
            asyncio.create_task(
                self._prober.probe(node, channel=channel, timeout=self._probe_timeout),
                name=f"probe-{node.address}",
            ): node
            for node in cluster.nodes
        }
        results: dict[Node, ProbeResult] = {}
        carrier: Node | None = None
        pending: set[asyncio.Task[ProbeResult]] = set(tasks)

        try:
            while pending and carrier is None:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    result = task.result()
                    results[result.node] = result
                for node in cluster.nodes:
                    probe = results.get(node)
                    if probe is not None and probe.connected:
                        carrier = node
                        break
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        probes = tuple(results[n] for n in cluster.nodes if n in results)
        if carrier is not None:
            logger.info(
                "Found %s replication carrier for %s on %s",
                channel.value,
                cluster.display_name,
                carrier.address,
            )
        else:
            logger.warning(
                "No %s replication carrier in %s (checked %s)",
                channel.value,
                cluster.display_name,
                ", ".join(cluster.addresses),
            )
        return DiscoveryResult(cluster_id=cluster.cluster_id, carrier=carrier, probes=probes)


async def recovery_vhosts(control: ControlPlane, cluster: ClusterTopology) -> list[str]:
    """
    Namespaces the cluster could recover if promoted.

    Asks members in order and returns the first answer; an empty list if no
    member answers.
    """
    for node in cluster.nodes:
        try:
            return await control.vhosts_available_for_recovery(node.address)
        except RemoteCommandError as e:
            logger.debug("Recovery vhost listing on %s failed: %s", node.address, e)
    return []

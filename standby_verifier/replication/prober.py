"""
Node prober.

Issues one bounded status query against one node and classifies the answer.
A failed or slow node is reported as UNKNOWN, never raised.
"""

import asyncio
import time
from dataclasses import dataclass

from standby_verifier.errors import RemoteCommandError, TransientProbeError
from standby_verifier.logging import get_logger
from standby_verifier.remote.control import ControlPlane
from standby_verifier.replication.status import (
    ReplicationChannel,
    ReplicationLinkState,
    classify_status,
)
from standby_verifier.topology.models import Node

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProbeResult:
    """Classified status of one node."""

    node: Node
    state: ReplicationLinkState
    raw: str = ""
    error: str | None = None
    latency_ms: int = 0

    @property
    def connected(self) -> bool:
        return self.state == ReplicationLinkState.CONNECTED


class NodeProber:
    """Single-shot replication status probes."""

    def __init__(self, control: ControlPlane, timeout: float = 10.0) -> None:
        """
        Initialize prober.

        Args:
            control: Control plane used to query nodes
            timeout: Default per-probe timeout in seconds
        """
        self._control = control
        self._timeout = timeout

    async def _query(self, node: Node, channel: ReplicationChannel, timeout: float) -> str:
        try:
            if channel == ReplicationChannel.SCHEMA:
                return await self._control.schema_replication_status(node.address, timeout=timeout)
            return await self._control.standby_replication_status(node.address, timeout=timeout)
        except RemoteCommandError as e:
            raise TransientProbeError(str(e), node.address) from e

    async def probe(
        self,
        node: Node,
        channel: ReplicationChannel = ReplicationChannel.STANDBY,
        timeout: float | None = None,
    ) -> ProbeResult:
        """
        Probe one node.

        Args:
            node: Node to query
            channel: Standby (message) or schema replication
            timeout: Override of the default probe timeout

        Returns:
            ProbeResult; UNKNOWN with ``error`` set if the node could not be
            queried in time
        """
        timeout = timeout if timeout is not None else self._timeout
        start_time = time.perf_counter()

        try:
            raw = await asyncio.wait_for(self._query(node, channel, timeout), timeout=timeout)
        except TransientProbeError as e:
            logger.debug("Probe of %s failed: %s", node.address, e)
            return ProbeResult(
                node=node,
                state=ReplicationLinkState.UNKNOWN,
                error=str(e),
                latency_ms=int((time.perf_counter() - start_time) * 1000),
            )
        except asyncio.TimeoutError:
            logger.debug("Probe of %s timed out after %.1fs", node.address, timeout)
            return ProbeResult(
                node=node,
                state=ReplicationLinkState.UNKNOWN,
                error=f"timed out after {timeout:.1f}s",
                latency_ms=int((time.perf_counter() - start_time) * 1000),
            )

        state = classify_status(raw, channel)
        logger.debug("Probe of %s (%s): %s", node.address, channel.value, state.value)
        return ProbeResult(
            node=node,
            state=state,
            raw=raw,
            latency_ms=int((time.perf_counter() - start_time) * 1000),
        )

    async def probe_schema(self, node: Node, timeout: float | None = None) -> ProbeResult:
        """Probe the schema (definition) replication link of one node."""
        return await self.probe(node, channel=ReplicationChannel.SCHEMA, timeout=timeout)

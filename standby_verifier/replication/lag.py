"""
Replication lag sampling.

Measures two things for one tracked entity (queue):
- Initial delay: how long after the entity shows up in the upstream's
  replication metrics it shows up in a downstream's metrics
- Steady-state lag: per tick, upstream last-write timestamp minus downstream
  last-write timestamp, clamped at zero because the two sides are read a few
  milliseconds apart and the downstream can appear ahead

Sampling stops at the deadline or as soon as the driving workload exits.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

from standby_verifier.errors import RemoteCommandError
from standby_verifier.logging import get_logger
from standby_verifier.remote.control import ControlPlane
from standby_verifier.topology.models import Node

logger = get_logger(__name__)


class LivenessHandle(Protocol):
    """Anything that can say whether the driving workload is still running."""

    def is_running(self) -> bool: ...


class AlwaysAlive:
    """Liveness handle for sampling without a workload."""

    def is_running(self) -> bool:
        return True


def parse_metrics_timestamp(output: str, entity: str) -> int | None:
    """
    Select the timestamp of ``entity`` from a metrics table.

    Rows are whitespace separated with the timestamp in the first column and
    the entity name in the second. Header and banner lines never match
    because their first column is not an integer.
    """
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 2 or parts[1] != entity:
            continue
        if parts[0].isdigit():
            return int(parts[0])
    return None


class LagOutcomeState(str, Enum):
    """Terminal state of a sampling run for one downstream."""

    MEASURED = "measured"
    UPSTREAM_NOT_VISIBLE = "upstream_not_visible"
    DOWNSTREAM_NOT_VISIBLE = "downstream_not_visible"


@dataclass(frozen=True)
class LagSample:
    """One tick's comparison of upstream and downstream timestamps."""

    observed_at: datetime
    upstream_ts: int
    downstream_ts: int
    lag_ms: int

    @classmethod
    def from_timestamps(
        cls,
        upstream_ts: int,
        downstream_ts: int,
        observed_at: datetime | None = None,
    ) -> "LagSample":
        """Build a sample; a downstream ahead of upstream counts as zero lag."""
        return cls(
            observed_at=observed_at or datetime.now(UTC),
            upstream_ts=upstream_ts,
            downstream_ts=downstream_ts,
            lag_ms=max(0, upstream_ts - downstream_ts),
        )


@dataclass(frozen=True)
class LagStatistics:
    """
    Aggregate over a sampling run.

    ``sample_count == 0`` means no data; min/max/avg are None then, never 0.
    """

    sample_count: int = 0
    min_ms: int | None = None
    max_ms: int | None = None
    avg_ms: float | None = None
    initial_delay_s: float | None = None
    failed_upstream_reads: int = 0
    failed_downstream_reads: int = 0

    @property
    def has_data(self) -> bool:
        return self.sample_count > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "sample_count": self.sample_count,
            "min_ms": self.min_ms,
            "max_ms": self.max_ms,
            "avg_ms": round(self.avg_ms, 1) if self.avg_ms is not None else None,
            "initial_delay_s": (
                round(self.initial_delay_s, 3) if self.initial_delay_s is not None else None
            ),
            "failed_upstream_reads": self.failed_upstream_reads,
            "failed_downstream_reads": self.failed_downstream_reads,
        }


@dataclass
class _Accumulator:
    count: int = 0
    total: int = 0
    min_ms: int | None = None
    max_ms: int | None = None
    failed_reads: int = 0
    samples: list[LagSample] = field(default_factory=list)

    def add(self, sample: LagSample) -> None:
        self.count += 1
        self.total += sample.lag_ms
        self.min_ms = sample.lag_ms if self.min_ms is None else min(self.min_ms, sample.lag_ms)
        self.max_ms = sample.lag_ms if self.max_ms is None else max(self.max_ms, sample.lag_ms)
        self.samples.append(sample)

    def statistics(self, initial_delay_s: float | None, failed_upstream: int) -> LagStatistics:
        return LagStatistics(
            sample_count=self.count,
            min_ms=self.min_ms,
            max_ms=self.max_ms,
            avg_ms=self.total / self.count if self.count else None,
            initial_delay_s=initial_delay_s,
            failed_upstream_reads=failed_upstream,
            failed_downstream_reads=self.failed_reads,
        )


@dataclass(frozen=True)
class LagOutcome:
    """Result of sampling one downstream."""

    node: Node
    state: LagOutcomeState
    statistics: LagStatistics
    samples: tuple[LagSample, ...] = ()

    @property
    def measured(self) -> bool:
        return self.state == LagOutcomeState.MEASURED


@dataclass(frozen=True)
class LagRun:
    """Result of one sampling run across one or more downstreams."""

    entity: str
    upstream: Node
    upstream_visible: bool
    outcomes: tuple[LagOutcome, ...]

    def outcome_for(self, node: Node) -> LagOutcome | None:
        for outcome in self.outcomes:
            if outcome.node == node:
                return outcome
        return None


class LagSampler:
    """
    Samples replication lag between one upstream node and downstream carriers.

    All waiting is cooperative (``asyncio.sleep``) and bounded.
    """

    def __init__(
        self,
        control: ControlPlane,
        *,
        read_timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """
        Initialize sampler.

        Args:
            control: Control plane used to read metrics tables
            read_timeout: Timeout for each metrics read
            clock: Monotonic clock (injectable for tests)
            sleep: Sleep coroutine (injectable for tests)
        """
        self._control = control
        self._read_timeout = read_timeout
        self._clock = clock
        self._sleep = sleep

    async def _upstream_ts(self, node: Node, entity: str) -> int | None:
        try:
            output = await self._control.upstream_metrics(node.address, timeout=self._read_timeout)
        except RemoteCommandError as e:
            logger.debug("Upstream metrics read on %s failed: %s", node.address, e)
            return None
        return parse_metrics_timestamp(output, entity)

    async def _downstream_ts(self, node: Node, entity: str) -> int | None:
        try:
            output = await self._control.downstream_metrics(
                node.address, timeout=self._read_timeout
            )
        except RemoteCommandError as e:
            logger.debug("Downstream metrics read on %s failed: %s", node.address, e)
            return None
        return parse_metrics_timestamp(output, entity)

    async def measure(
        self,
        entity: str,
        upstream: Node,
        downstream: Node,
        *,
        interval_s: float,
        deadline_s: float,
        appear_timeout_s: float,
        liveness: LivenessHandle | None = None,
    ) -> LagOutcome:
        """Sample a single downstream. See ``run``."""
        run = await self.run(
            entity,
            upstream,
            [downstream],
            interval_s=interval_s,
            deadline_s=deadline_s,
            appear_timeout_s=appear_timeout_s,
            liveness=liveness,
        )
        return run.outcomes[0]

    async def run(
        self,
        entity: str,
        upstream: Node,
        downstreams: Sequence[Node],
        *,
        interval_s: float,
        deadline_s: float,
        appear_timeout_s: float,
        liveness: LivenessHandle | None = None,
    ) -> LagRun:
        """
        Run one sampling session.

        Args:
            entity: Tracked queue name
            upstream: Upstream node whose metrics are the reference
            downstreams: Downstream carrier nodes
            interval_s: Pause between ticks
            deadline_s: Total budget for the run, from now
            appear_timeout_s: Budget for the entity to show up (within deadline)
            liveness: Workload handle; sampling stops when it exits

        Returns:
            LagRun with one LagOutcome per downstream, in input order
        """
        liveness = liveness or AlwaysAlive()
        start = self._clock()
        deadline = start + deadline_s
        appear_deadline = min(deadline, start + appear_timeout_s)

        upstream_at: float | None = None
        appeared_at: dict[Node, float] = {}

        # Phase 1 and 2: wait for the entity to appear upstream, then downstream
        while self._clock() < appear_deadline:
            if upstream_at is None:
                if await self._upstream_ts(upstream, entity) is not None:
                    upstream_at = self._clock()
                    logger.info(
                        "Queue %s appeared in upstream metrics after %.1fs",
                        entity,
                        upstream_at - start,
                    )

            if upstream_at is not None:
                for node in downstreams:
                    if node in appeared_at:
                        continue
                    if await self._downstream_ts(node, entity) is not None:
                        appeared_at[node] = self._clock()
                        logger.info(
                            "Queue %s appeared in downstream metrics on %s (%.1fs after upstream)",
                            entity,
                            node.address,
                            appeared_at[node] - upstream_at,
                        )

            if upstream_at is not None and len(appeared_at) == len(downstreams):
                break
            await self._sleep(interval_s)

        if upstream_at is None:
            logger.warning(
                "Queue %s did not appear in upstream metrics within %.0fs",
                entity,
                appear_timeout_s,
            )
            return LagRun(
                entity=entity,
                upstream=upstream,
                upstream_visible=False,
                outcomes=tuple(
                    LagOutcome(
                        node=node,
                        state=LagOutcomeState.UPSTREAM_NOT_VISIBLE,
                        statistics=LagStatistics(),
                    )
                    for node in downstreams
                ),
            )

        for node in downstreams:
            if node not in appeared_at:
                logger.warning(
                    "Queue %s did not appear in downstream metrics on %s", entity, node.address
                )

        # Phase 3: steady-state sampling
        accumulators = {node: _Accumulator() for node in appeared_at}
        failed_upstream = 0
        while accumulators and self._clock() < deadline and liveness.is_running():
            upstream_ts = await self._upstream_ts(upstream, entity)
            if upstream_ts is None:
                failed_upstream += 1
            else:
                for node, acc in accumulators.items():
                    downstream_ts = await self._downstream_ts(node, entity)
                    if downstream_ts is None:
                        acc.failed_reads += 1
                        continue
                    acc.add(LagSample.from_timestamps(upstream_ts, downstream_ts))
            await self._sleep(interval_s)

        outcomes: list[LagOutcome] = []
        for node in downstreams:
            if node not in appeared_at:
                outcomes.append(
                    LagOutcome(
                        node=node,
                        state=LagOutcomeState.DOWNSTREAM_NOT_VISIBLE,
                        statistics=LagStatistics(failed_upstream_reads=failed_upstream),
                    )
                )
                continue
            acc = accumulators[node]
            initial_delay = max(0.0, appeared_at[node] - upstream_at)
            outcomes.append(
                LagOutcome(
                    node=node,
                    state=LagOutcomeState.MEASURED,
                    statistics=acc.statistics(initial_delay, failed_upstream),
                    samples=tuple(acc.samples),
                )
            )

        return LagRun(
            entity=entity,
            upstream=upstream,
            upstream_visible=True,
            outcomes=tuple(outcomes),
        )

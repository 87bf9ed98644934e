"""
Promotion / restoration state machine.

Promotes a downstream cluster, validates the recovered data, and restores
the cluster to downstream mode. Once a promotion is accepted, restoration is
always attempted: ``promoted()`` runs it on every exit path.

State transitions:
- DOWNSTREAM -> PROMOTION_REQUESTED (promote issued)
- PROMOTION_REQUESTED -> PROMOTED (request accepted, or timed out with unknown effect)
- PROMOTION_REQUESTED -> DOWNSTREAM (request rejected)
- PROMOTED -> VALIDATION_PASSED | VALIDATION_PARTIAL | VALIDATION_FAILED
- PROMOTED | VALIDATION_* -> RESTORATION_REQUESTED
- RESTORATION_REQUESTED -> DOWNSTREAM | RESTORATION_FAILED

RESTORATION_FAILED is terminal: an operator has to intervene.
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from standby_verifier.config import Settings
from standby_verifier.errors import (
    InvalidTransitionError,
    PromotionError,
    RemoteCommandError,
    RemoteCommandTimeout,
    RestorationFailure,
)
from standby_verifier.logging import get_logger
from standby_verifier.management.client import ManagementClient
from standby_verifier.remote.control import ControlPlane
from standby_verifier.replication.discovery import ActiveLinkDiscoverer
from standby_verifier.topology.models import ClusterTopology, Node
from standby_verifier.topology.registry import TopologyRegistry

logger = get_logger(__name__)


class PromotionState(str, Enum):
    """Role state of a downstream cluster during a promotion test."""

    DOWNSTREAM = "DOWNSTREAM"
    PROMOTION_REQUESTED = "PROMOTION_REQUESTED"
    PROMOTED = "PROMOTED"
    VALIDATION_PASSED = "VALIDATION_PASSED"
    VALIDATION_PARTIAL = "VALIDATION_PARTIAL"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    RESTORATION_REQUESTED = "RESTORATION_REQUESTED"
    RESTORATION_FAILED = "RESTORATION_FAILED"

    @property
    def is_terminal(self) -> bool:
        return self == PromotionState.RESTORATION_FAILED


_RESTORABLE = {
    PromotionState.RESTORATION_REQUESTED,
}

PROMOTION_TRANSITIONS: dict[PromotionState, set[PromotionState]] = {
    PromotionState.DOWNSTREAM: {PromotionState.PROMOTION_REQUESTED},
    PromotionState.PROMOTION_REQUESTED: {PromotionState.PROMOTED, PromotionState.DOWNSTREAM},
    PromotionState.PROMOTED: {
        PromotionState.VALIDATION_PASSED,
        PromotionState.VALIDATION_PARTIAL,
        PromotionState.VALIDATION_FAILED,
        *_RESTORABLE,
    },
    PromotionState.VALIDATION_PASSED: set(_RESTORABLE),
    PromotionState.VALIDATION_PARTIAL: set(_RESTORABLE),
    PromotionState.VALIDATION_FAILED: set(_RESTORABLE),
    PromotionState.RESTORATION_REQUESTED: {
        PromotionState.DOWNSTREAM,
        PromotionState.RESTORATION_FAILED,
    },
    PromotionState.RESTORATION_FAILED: set(),
}


def validate_promotion_transition(from_state: PromotionState, to_state: PromotionState) -> bool:
    """Check if a state transition is allowed."""
    return to_state in PROMOTION_TRANSITIONS.get(from_state, set())


class ValidationOutcome(str, Enum):
    """How much of the tracked data the promoted cluster holds."""

    FULL = "full"
    PARTIAL = "partial"
    NONE = "none"


class RestorationOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


def classify_validation(observed: int, expected: int) -> ValidationOutcome:
    """FULL if observed >= expected, PARTIAL if some, NONE if zero."""
    if observed >= expected:
        return ValidationOutcome.FULL
    if observed > 0:
        return ValidationOutcome.PARTIAL
    return ValidationOutcome.NONE


_VALIDATION_STATES = {
    ValidationOutcome.FULL: PromotionState.VALIDATION_PASSED,
    ValidationOutcome.PARTIAL: PromotionState.VALIDATION_PARTIAL,
    ValidationOutcome.NONE: PromotionState.VALIDATION_FAILED,
}


def remediation_for(cluster: ClusterTopology) -> str:
    """Operator instructions for a cluster left promoted."""
    return (
        f"Manually restore {cluster.display_name} to downstream mode: set "
        f"'operating_mode = downstream' on {', '.join(cluster.addresses)}, restart the "
        "service on every member, set the schema and standby upstream endpoints, then run "
        "'rabbitmqctl connect_standby_replication_downstream' on one member "
        "(or re-run the warm standby configuration playbook)"
    )


@dataclass
class PromotionRecord:
    """
    Audit record of one promotion.

    Created once a promotion is accepted, or may have been (the promote
    command timed out or was cancelled). From then on restoration must be
    attempted and its outcome recorded here.
    """

    cluster_id: str
    carrier: Node
    promoted_at: datetime
    confirmed: bool = True
    validation_outcome: ValidationOutcome | None = None
    observed_count: int | None = None
    expected_count: int | None = None
    restored_at: datetime | None = None
    restoration_outcome: RestorationOutcome | None = None
    remediation: str | None = None
    restoration_error: str | None = None
    restored_carrier: Node | None = None
    steps: list[str] = field(default_factory=list)

    @property
    def needs_operator(self) -> bool:
        """Promoted but not (successfully) restored."""
        return self.restoration_outcome != RestorationOutcome.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "cluster_id": self.cluster_id,
            "carrier": self.carrier.address,
            "promoted_at": self.promoted_at.isoformat(),
            "promotion_confirmed": self.confirmed,
            "validation_outcome": (
                self.validation_outcome.value if self.validation_outcome else None
            ),
            "observed_count": self.observed_count,
            "expected_count": self.expected_count,
            "restored_at": self.restored_at.isoformat() if self.restored_at else None,
            "restoration_outcome": (
                self.restoration_outcome.value if self.restoration_outcome else None
            ),
            "restored_carrier": self.restored_carrier.address if self.restored_carrier else None,
            "restoration_error": self.restoration_error,
            "remediation": self.remediation,
        }


class PromotionStateMachine:
    """
    Drives promotion, validation and restoration of downstream clusters.

    One state per cluster; every change goes through the transition table.
    Promote and restore hold a per-cluster lock so two role changes can
    never interleave on the same cluster.
    """

    def __init__(
        self,
        registry: TopologyRegistry,
        control: ControlPlane,
        management: ManagementClient,
        discoverer: ActiveLinkDiscoverer,
        settings: Settings,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._registry = registry
        self._control = control
        self._management = management
        self._discoverer = discoverer
        self._settings = settings
        self._sleep = sleep
        self._states: dict[str, PromotionState] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._records: list[PromotionRecord] = []

    @property
    def records(self) -> list[PromotionRecord]:
        return list(self._records)

    def state_of(self, cluster_id: str) -> PromotionState:
        return self._states.get(cluster_id, PromotionState.DOWNSTREAM)

    def _lock(self, cluster_id: str) -> asyncio.Lock:
        if cluster_id not in self._locks:
            self._locks[cluster_id] = asyncio.Lock()
        return self._locks[cluster_id]

    def _transition(self, cluster_id: str, to_state: PromotionState) -> None:
        from_state = self.state_of(cluster_id)
        if not validate_promotion_transition(from_state, to_state):
            raise InvalidTransitionError(
                f"Illegal transition for {cluster_id}: {from_state.value} -> {to_state.value}"
            )
        self._states[cluster_id] = to_state
        logger.info("Cluster %s: %s -> %s", cluster_id, from_state.value, to_state.value)

    # =========================================================================
    # Promote
    # =========================================================================

    async def promote(self, cluster: ClusterTopology, carrier: Node) -> PromotionRecord:
        """
        Issue one promotion request and wait for it to be accepted.

        Does not wait for data visibility. A promote command that timed out
        or was cancelled may still have been applied by the broker, so it
        counts as promoted (``confirmed=False``) and must be restored.

        Raises:
            PromotionError: The request was rejected (cluster stays downstream)
            InvalidTransitionError: The cluster is not in DOWNSTREAM state
        """
        if not cluster.has_member(carrier.address):
            raise PromotionError(f"{carrier.address} is not a member of {cluster.cluster_id}")

        async with self._lock(cluster.cluster_id):
            self._transition(cluster.cluster_id, PromotionState.PROMOTION_REQUESTED)
            logger.warning(
                "Promoting %s via %s (all available vhosts, from earliest data)",
                cluster.display_name,
                carrier.address,
            )
            try:
                result = await self._control.promote(carrier.address)
            except RemoteCommandTimeout as e:
                logger.error("Promote on %s timed out, treating as promoted", carrier.address)
                return self._accept(cluster, carrier, f"promote timed out: {e}", confirmed=False)
            except RemoteCommandError as e:
                self._transition(cluster.cluster_id, PromotionState.DOWNSTREAM)
                raise PromotionError(f"Promotion of {cluster.cluster_id} rejected: {e}") from e
            except asyncio.CancelledError:
                logger.error("Cancelled while promoting %s, treating as promoted", carrier.address)
                self._accept(cluster, carrier, "promote cancelled", confirmed=False)
                raise

            return self._accept(cluster, carrier, f"promoted: {result.stdout.strip()[:200]}")

    def _accept(
        self, cluster: ClusterTopology, carrier: Node, step: str, confirmed: bool = True
    ) -> PromotionRecord:
        self._transition(cluster.cluster_id, PromotionState.PROMOTED)
        record = PromotionRecord(
            cluster_id=cluster.cluster_id,
            carrier=carrier,
            promoted_at=datetime.now(UTC),
            confirmed=confirmed,
        )
        record.steps.append(step)
        self._records.append(record)
        return record

    def _unrestored(self, cluster_id: str) -> PromotionRecord | None:
        """The record of a cluster that is PROMOTED with no restore attempted yet."""
        if self.state_of(cluster_id) != PromotionState.PROMOTED:
            return None
        for record in reversed(self._records):
            if record.cluster_id == cluster_id and record.restoration_outcome is None:
                return record
        return None

    # =========================================================================
    # Validate
    # =========================================================================

    async def validate(
        self, record: PromotionRecord, entity: str, expected_count: int
    ) -> ValidationOutcome:
        """
        Compare the promoted cluster's message count with what was published.

        A missing queue counts as zero messages.
        """
        observed = await self._management.queue_messages(record.carrier.address, entity)
        outcome = classify_validation(observed, expected_count)

        record.observed_count = observed
        record.expected_count = expected_count
        record.validation_outcome = outcome
        self._transition(record.cluster_id, _VALIDATION_STATES[outcome])

        logger.info(
            "Validation on %s: %d of %d messages (%s)",
            record.carrier.address,
            observed,
            expected_count,
            outcome.value,
        )
        return outcome

    # =========================================================================
    # Restore
    # =========================================================================

    async def restore(
        self, record: PromotionRecord, upstream: ClusterTopology | None = None
    ) -> RestorationOutcome:
        """
        Return a promoted cluster to downstream mode.

        Bounded by ``restore_budget_s``. Never raises for failures: they end
        in RESTORATION_FAILED with a remediation on the record. Not retried.
        If the restore itself is cancelled the failure is recorded the same
        way before the cancellation propagates.
        """
        upstream = upstream or self._registry.upstream
        cluster = self._registry.cluster(record.cluster_id)
        remediation = remediation_for(cluster)
        budget = self._settings.restore_budget_s

        async with self._lock(cluster.cluster_id):
            self._transition(cluster.cluster_id, PromotionState.RESTORATION_REQUESTED)
            deadline = asyncio.timeout(budget)
            try:
                async with deadline:
                    await self._restore_steps(record, cluster, upstream)
            except RestorationFailure as e:
                return self._restoration_failed(record, cluster, str(e), e.remediation)
            except TimeoutError as e:
                reason = (
                    f"Restoration did not finish within {budget:g}s"
                    if deadline.expired()
                    else f"TimeoutError: {e}"
                )
                return self._restoration_failed(record, cluster, reason, remediation)
            except Exception as e:
                logger.exception("Unexpected error restoring %s", cluster.display_name)
                return self._restoration_failed(
                    record, cluster, f"{type(e).__name__}: {e}", remediation
                )
            except BaseException as e:
                self._restoration_failed(
                    record, cluster, f"Restoration interrupted ({type(e).__name__})", remediation
                )
                raise

            record.restoration_outcome = RestorationOutcome.SUCCESS
            record.restored_at = datetime.now(UTC)
            self._transition(cluster.cluster_id, PromotionState.DOWNSTREAM)
            logger.info("Restored %s to downstream mode", cluster.display_name)
            return RestorationOutcome.SUCCESS

    def _restoration_failed(
        self, record: PromotionRecord, cluster: ClusterTopology, error: str, remediation: str
    ) -> RestorationOutcome:
        record.restoration_outcome = RestorationOutcome.FAILED
        record.restoration_error = error
        record.remediation = remediation
        self._transition(cluster.cluster_id, PromotionState.RESTORATION_FAILED)
        logger.error("Restoration of %s FAILED: %s", cluster.display_name, error)
        logger.error("Remediation: %s", remediation)
        return RestorationOutcome.FAILED

    async def _restore_to_completion(
        self, record: PromotionRecord, upstream: ClusterTopology | None
    ) -> RestorationOutcome:
        """
        Run ``restore`` so that cancelling the caller does not interrupt it.

        A scenario budget expiring mid-restore would otherwise leave the
        cluster in RESTORATION_REQUESTED with nothing recorded. The
        cancellation is delivered once the restore has finished.
        """
        task = asyncio.ensure_future(self.restore(record, upstream))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            logger.warning(
                "Cancelled while restoring %s, finishing restoration first", record.cluster_id
            )
            await asyncio.shield(task)
            raise

    async def _restore_steps(
        self,
        record: PromotionRecord,
        cluster: ClusterTopology,
        upstream: ClusterTopology,
    ) -> None:
        remediation = remediation_for(cluster)
        ports = self._registry.ports

        # Operating mode is a per-node config setting, so every member changes
        logger.info("Setting operating mode to downstream on all %s members", cluster.display_name)
        results = await asyncio.gather(
            *(self._control.set_operating_mode(n.address, "downstream") for n in cluster.nodes),
            return_exceptions=True,
        )
        self._raise_on_errors("set operating mode", cluster, results, remediation)
        record.steps.append("operating mode set to downstream")

        logger.info("Restarting service on all %s members", cluster.display_name)
        results = await asyncio.gather(
            *(self._control.restart_service(n.address) for n in cluster.nodes),
            return_exceptions=True,
        )
        self._raise_on_errors("restart service", cluster, results, remediation)
        record.steps.append("service restarted")

        await self._await_cluster_ready(cluster, remediation)
        record.steps.append("all members ready")

        entry = record.carrier.address
        user = self._settings.user
        password = self._settings.password_value()
        try:
            await self._control.set_schema_upstream_endpoints(
                entry, [f"{a}:{ports.amqp}" for a in upstream.addresses], user, password
            )
            await self._control.set_standby_upstream_endpoints(
                entry, [f"{a}:{ports.stream}" for a in upstream.addresses], user, password
            )
            record.steps.append("upstream endpoints set")

            # Standby replication runs on one node only
            await self._control.connect_downstream(entry)
            record.steps.append(f"downstream connected via {entry}")
        except RemoteCommandError as e:
            raise RestorationFailure(
                f"Reconfiguring replication on {entry} failed: {e}", remediation
            ) from e

        await self._sleep(self._settings.restore_settle_s)
        discovery = await self._discoverer.discover(cluster)
        if not discovery.found:
            raise RestorationFailure(
                f"No replication carrier found in {cluster.display_name} after restore",
                remediation,
            )
        record.restored_carrier = discovery.carrier
        record.steps.append(f"carrier confirmed on {discovery.carrier}")

    async def _await_cluster_ready(self, cluster: ClusterTopology, remediation: str) -> None:
        """Poll every member until ready, bounded by a fixed number of attempts."""
        attempts = self._settings.restore_ready_attempts
        timeout = self._settings.remote_command_timeout
        pending = list(cluster.nodes)

        for attempt in range(1, attempts + 1):
            still_pending = []
            for node in pending:
                if not await self._control.await_ready(node.address, timeout=timeout):
                    still_pending.append(node)
            pending = still_pending
            if not pending:
                logger.info(
                    "All %s members ready after %d attempt(s)", cluster.display_name, attempt
                )
                return
            if attempt < attempts:
                await self._sleep(self._settings.restore_ready_interval_s)

        raise RestorationFailure(
            f"Members not ready after {attempts} attempts: "
            f"{', '.join(n.address for n in pending)}",
            remediation,
        )

    @staticmethod
    def _raise_on_errors(
        step: str,
        cluster: ClusterTopology,
        results: list[Any],
        remediation: str,
    ) -> None:
        failed = [
            (node.address, result)
            for node, result in zip(cluster.nodes, results, strict=True)
            if isinstance(result, BaseException)
        ]
        if not failed:
            return
        for address, error in failed:
            logger.error("%s failed on %s: %s", step, address, error)
        # Anything other than a remote command failure is a bug, not a node fault
        for _, error in failed:
            if not isinstance(error, RemoteCommandError):
                raise error
        raise RestorationFailure(
            f"{step} failed on {', '.join(a for a, _ in failed)}", remediation
        )

    # =========================================================================
    # Scoped operation
    # =========================================================================

    @asynccontextmanager
    async def promoted(
        self,
        cluster: ClusterTopology,
        carrier: Node,
        upstream: ClusterTopology | None = None,
    ) -> AsyncIterator[PromotionRecord]:
        """
        Promote for the duration of the block, then always restore.

        If the promotion is rejected nothing was promoted and no restore runs.
        Otherwise restoration runs to completion whether the block succeeds,
        raises or is cancelled, including a cancellation that lands while the
        promote command itself is still running.
        """
        try:
            record = await self.promote(cluster, carrier)
        except asyncio.CancelledError:
            uncertain = self._unrestored(cluster.cluster_id)
            if uncertain is not None:
                await self._restore_to_completion(uncertain, upstream)
            raise
        try:
            yield record
        finally:
            await self._restore_to_completion(record, upstream)

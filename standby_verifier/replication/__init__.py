"""
Replication verification core.

Provides:
- Status classification contract for control-plane text
- NodeProber: bounded single-node status probes
- ActiveLinkDiscoverer: parallel carrier discovery
- LagSampler: initial delay and steady-state lag
- PromotionStateMachine: promote, validate, always restore
"""

from standby_verifier.replication.discovery import (
    ActiveLinkDiscoverer,
    DiscoveryResult,
    recovery_vhosts,
)
from standby_verifier.replication.lag import (
    AlwaysAlive,
    LagOutcome,
    LagOutcomeState,
    LagRun,
    LagSample,
    LagSampler,
    LagStatistics,
    parse_metrics_timestamp,
)
from standby_verifier.replication.prober import NodeProber, ProbeResult
from standby_verifier.replication.promotion import (
    PROMOTION_TRANSITIONS,
    PromotionRecord,
    PromotionState,
    PromotionStateMachine,
    RestorationOutcome,
    ValidationOutcome,
    classify_validation,
)
from standby_verifier.replication.status import (
    ReplicationChannel,
    ReplicationLinkState,
    classify_status,
)

__all__ = [
    "ActiveLinkDiscoverer",
    "AlwaysAlive",
    "DiscoveryResult",
    "LagOutcome",
    "LagOutcomeState",
    "LagRun",
    "LagSample",
    "LagSampler",
    "LagStatistics",
    "NodeProber",
    "PROMOTION_TRANSITIONS",
    "ProbeResult",
    "PromotionRecord",
    "PromotionState",
    "PromotionStateMachine",
    "ReplicationChannel",
    "ReplicationLinkState",
    "RestorationOutcome",
    "ValidationOutcome",
    "classify_status",
    "classify_validation",
    "parse_metrics_timestamp",
    "recovery_vhosts",
]

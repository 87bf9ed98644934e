"""
Replication topology.

Provides:
- Frozen models for clusters, nodes and ports
- TopologyRegistry: load-once, read-only lookups
"""

from standby_verifier.topology.models import (
    ClusterRole,
    ClusterTopology,
    Node,
    PeerClass,
    Ports,
    Topology,
)
from standby_verifier.topology.registry import TopologyRegistry, parse_topology

__all__ = [
    "ClusterRole",
    "ClusterTopology",
    "Node",
    "PeerClass",
    "Ports",
    "Topology",
    "TopologyRegistry",
    "parse_topology",
]

"""
Topology registry.

Loads the replication topology from a YAML or JSON file once, validates it,
and answers read-only lookups for the rest of the run.

Example file::

    ports:
      management: 15672
    clusters:
      - id: az-cluster-1
        role: upstream
        nodes:
          - {address: 192.168.20.200, datacenter: phoenix}
      - id: az-cluster-2
        role: downstream
        peer_class: regional
        nodes: [192.168.20.203, 192.168.20.204, 192.168.20.205]
"""

import json
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from standby_verifier.errors import ConfigurationError
from standby_verifier.logging import get_logger
from standby_verifier.topology.models import (
    ClusterRole,
    ClusterTopology,
    Node,
    PeerClass,
    Ports,
    Topology,
)

logger = get_logger(__name__)


def _parse_node(raw: Any, cluster_id: str, default_dc: str | None) -> Node:
    if isinstance(raw, str):
        return Node(address=raw, cluster_id=cluster_id, datacenter=default_dc)
    if isinstance(raw, dict) and raw.get("address"):
        return Node(
            address=str(raw["address"]),
            cluster_id=cluster_id,
            datacenter=raw.get("datacenter", default_dc),
        )
    raise ConfigurationError(f"Invalid node entry in cluster {cluster_id}: {raw!r}")


def _parse_cluster(raw: dict[str, Any]) -> ClusterTopology:
    cluster_id = raw.get("id") or raw.get("cluster_id")
    if not cluster_id:
        raise ConfigurationError(f"Cluster entry without id: {raw!r}")

    try:
        role = ClusterRole(str(raw.get("role", "")).lower())
    except ValueError:
        raise ConfigurationError(
            f"Cluster {cluster_id} has unknown role {raw.get('role')!r}"
        ) from None

    try:
        peer_class = PeerClass(str(raw.get("peer_class", PeerClass.REGIONAL.value)).lower())
    except ValueError:
        raise ConfigurationError(
            f"Cluster {cluster_id} has unknown peer_class {raw.get('peer_class')!r}"
        ) from None

    nodes = tuple(
        _parse_node(n, cluster_id, raw.get("datacenter")) for n in raw.get("nodes") or []
    )

    try:
        return ClusterTopology(
            cluster_id=cluster_id,
            name=raw.get("name"),
            role=role,
            peer_class=peer_class,
            nodes=nodes,
        )
    except ValidationError as e:
        raise ConfigurationError(f"Invalid cluster {cluster_id}: {e}") from e


def parse_topology(data: dict[str, Any]) -> Topology:
    """
    Build a Topology from a decoded document.

    Raises:
        ConfigurationError: On any structural problem
    """
    if not isinstance(data, dict):
        raise ConfigurationError("Topology document must be a mapping")

    clusters = [_parse_cluster(c) for c in data.get("clusters") or []]
    upstreams = [c for c in clusters if c.role == ClusterRole.UPSTREAM]
    downstreams = [c for c in clusters if c.role == ClusterRole.DOWNSTREAM]

    if len(upstreams) != 1:
        raise ConfigurationError(
            f"Topology must declare exactly one upstream cluster, found {len(upstreams)}"
        )

    ids = [c.cluster_id for c in clusters]
    if len(set(ids)) != len(ids):
        raise ConfigurationError(f"Duplicate cluster ids in topology: {ids}")

    seen: dict[str, str] = {}
    for cluster in clusters:
        for address in cluster.addresses:
            if address in seen:
                raise ConfigurationError(
                    f"Node {address} listed in both {seen[address]} and {cluster.cluster_id}"
                )
            seen[address] = cluster.cluster_id

    try:
        ports = Ports(**(data.get("ports") or {}))
    except (TypeError, ValidationError) as e:
        raise ConfigurationError(f"Invalid ports section: {e}") from e

    return Topology(upstream=upstreams[0], downstreams=tuple(downstreams), ports=ports)


class TopologyRegistry:
    """
    Read-only view over a loaded Topology.

    Passed by reference to every component; nothing mutates it.
    """

    def __init__(self, topology: Topology) -> None:
        self._topology = topology
        self._by_id = {c.cluster_id: c for c in self.all_clusters()}

    @classmethod
    def load(cls, path: Path) -> "TopologyRegistry":
        """
        Load a topology file (.yaml, .yml or .json).

        Raises:
            ConfigurationError: If the file is missing or invalid
        """
        if not path.exists():
            raise ConfigurationError(f"Topology file not found: {path}")

        try:
            text = path.read_text(encoding="utf-8")
            if path.suffix.lower() == ".json":
                data = json.loads(text)
            else:
                data = yaml.safe_load(text)
        except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot read topology file {path}: {e}") from e

        registry = cls(parse_topology(data))
        logger.info(
            "Loaded topology from %s: upstream=%s, downstreams=%s",
            path,
            registry.upstream.cluster_id,
            [c.cluster_id for c in registry.downstreams()],
        )
        return registry

    @property
    def topology(self) -> Topology:
        return self._topology

    @property
    def upstream(self) -> ClusterTopology:
        return self._topology.upstream

    @property
    def ports(self) -> Ports:
        return self._topology.ports

    def all_clusters(self) -> list[ClusterTopology]:
        """Upstream first, then downstreams in declared order."""
        return [self._topology.upstream, *self._topology.downstreams]

    def downstreams(self, include_cross_region: bool = True) -> list[ClusterTopology]:
        """Downstream clusters in declared order."""
        return [
            c
            for c in self._topology.downstreams
            if include_cross_region or not c.is_cross_region
        ]

    def regional_downstream(self) -> ClusterTopology:
        """
        First regional downstream, the default promotion target.

        Raises:
            ConfigurationError: If the topology has no regional downstream
        """
        for cluster in self._topology.downstreams:
            if not cluster.is_cross_region:
                return cluster
        raise ConfigurationError("Topology has no regional downstream cluster")

    def cluster(self, cluster_id: str) -> ClusterTopology:
        """
        Look up a cluster by id.

        Raises:
            ConfigurationError: If the id is unknown
        """
        try:
            return self._by_id[cluster_id]
        except KeyError:
            raise ConfigurationError(f"Unknown cluster: {cluster_id}") from None

    def cluster_of(self, address: str) -> ClusterTopology | None:
        """Find the cluster a node address belongs to."""
        for cluster in self.all_clusters():
            if cluster.has_member(address):
                return cluster
        return None

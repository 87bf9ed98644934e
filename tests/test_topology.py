"""
Tests for topology loading and lookups.
"""

import json
from pathlib import Path
from typing import Any

import pytest
import yaml
from pydantic import ValidationError

from standby_verifier.errors import ConfigurationError
from standby_verifier.topology import (
    ClusterRole,
    Node,
    PeerClass,
    TopologyRegistry,
    parse_topology,
)


class TestParseTopology:
    """Tests for topology document validation."""

    def test_valid_document(self, topology_doc: dict[str, Any]) -> None:
        """A valid document should yield one upstream and ordered downstreams."""
        topology = parse_topology(topology_doc)

        assert topology.upstream.cluster_id == "az-1"
        assert topology.upstream.role == ClusterRole.UPSTREAM
        assert [c.cluster_id for c in topology.downstreams] == ["az-2", "tx-1"]
        assert topology.downstreams[1].peer_class == PeerClass.CROSS_REGION
        assert topology.ports.stream == 5552

    def test_node_order_preserved(self, topology_doc: dict[str, Any]) -> None:
        """Members keep their declared order."""
        topology = parse_topology(topology_doc)

        assert topology.downstreams[0].addresses == ["10.0.2.1", "10.0.2.2", "10.0.2.3"]

    def test_nodes_carry_cluster_id(self, topology_doc: dict[str, Any]) -> None:
        """Every node should know which cluster it belongs to."""
        topology = parse_topology(topology_doc)

        assert all(n.cluster_id == "az-2" for n in topology.downstreams[0].nodes)

    def test_node_mapping_form(self, topology_doc: dict[str, Any]) -> None:
        """Nodes may be given as mappings with a datacenter."""
        topology_doc["clusters"][0]["nodes"] = [{"address": "10.0.1.1", "datacenter": "phx"}]

        topology = parse_topology(topology_doc)

        assert topology.upstream.nodes[0].datacenter == "phx"

    def test_no_upstream_rejected(self, topology_doc: dict[str, Any]) -> None:
        """A topology without an upstream is unusable."""
        topology_doc["clusters"] = topology_doc["clusters"][1:]

        with pytest.raises(ConfigurationError, match="exactly one upstream"):
            parse_topology(topology_doc)

    def test_two_upstreams_rejected(self, topology_doc: dict[str, Any]) -> None:
        """Two upstream clusters are ambiguous."""
        topology_doc["clusters"][1]["role"] = "upstream"

        with pytest.raises(ConfigurationError, match="exactly one upstream"):
            parse_topology(topology_doc)

    def test_unknown_role_rejected(self, topology_doc: dict[str, Any]) -> None:
        """Roles outside upstream/downstream are rejected."""
        topology_doc["clusters"][1]["role"] = "mirror"

        with pytest.raises(ConfigurationError, match="unknown role"):
            parse_topology(topology_doc)

    def test_empty_node_list_rejected(self, topology_doc: dict[str, Any]) -> None:
        """A cluster needs at least one member."""
        topology_doc["clusters"][1]["nodes"] = []

        with pytest.raises(ConfigurationError, match="az-2"):
            parse_topology(topology_doc)

    def test_node_in_two_clusters_rejected(self, topology_doc: dict[str, Any]) -> None:
        """A node may belong to one cluster only."""
        topology_doc["clusters"][2]["nodes"].append("10.0.2.1")

        with pytest.raises(ConfigurationError, match="10.0.2.1"):
            parse_topology(topology_doc)

    def test_duplicate_cluster_id_rejected(self, topology_doc: dict[str, Any]) -> None:
        """Cluster ids must be unique."""
        topology_doc["clusters"][2]["id"] = "az-2"

        with pytest.raises(ConfigurationError, match="Duplicate"):
            parse_topology(topology_doc)

    def test_non_mapping_rejected(self) -> None:
        """The document root must be a mapping."""
        with pytest.raises(ConfigurationError):
            parse_topology(["not", "a", "mapping"])  # type: ignore[arg-type]


class TestTopologyRegistry:
    """Tests for registry lookups and file loading."""

    def test_downstreams_filter_cross_region(self, registry: TopologyRegistry) -> None:
        """Cross-region clusters can be excluded."""
        assert [c.cluster_id for c in registry.downstreams()] == ["az-2", "tx-1"]
        assert [c.cluster_id for c in registry.downstreams(include_cross_region=False)] == [
            "az-2"
        ]

    def test_all_clusters_upstream_first(self, registry: TopologyRegistry) -> None:
        assert [c.cluster_id for c in registry.all_clusters()] == ["az-1", "az-2", "tx-1"]

    def test_regional_downstream(self, registry: TopologyRegistry) -> None:
        assert registry.regional_downstream().cluster_id == "az-2"

    def test_cluster_lookup(self, registry: TopologyRegistry) -> None:
        assert registry.cluster("tx-1").display_name == "TX-Cluster-1"

    def test_unknown_cluster_raises(self, registry: TopologyRegistry) -> None:
        """Unknown ids are configuration errors, not KeyErrors."""
        with pytest.raises(ConfigurationError, match="Unknown cluster"):
            registry.cluster("nope")

    def test_cluster_of(self, registry: TopologyRegistry) -> None:
        """Addresses map back to their cluster."""
        cluster = registry.cluster_of("10.0.3.2")

        assert cluster is not None
        assert cluster.cluster_id == "tx-1"
        assert registry.cluster_of("192.0.2.1") is None

    def test_models_frozen(self, registry: TopologyRegistry) -> None:
        """Loaded clusters cannot be mutated."""
        with pytest.raises(ValidationError):
            registry.upstream.name = "changed"  # type: ignore[misc]

    def test_load_yaml(self, tmp_path: Path, topology_doc: dict[str, Any]) -> None:
        """YAML files should load."""
        path = tmp_path / "topology.yaml"
        path.write_text(yaml.safe_dump(topology_doc))

        registry = TopologyRegistry.load(path)

        assert registry.upstream.cluster_id == "az-1"

    def test_load_json(self, tmp_path: Path, topology_doc: dict[str, Any]) -> None:
        """JSON files should load."""
        path = tmp_path / "topology.json"
        path.write_text(json.dumps(topology_doc))

        registry = TopologyRegistry.load(path)

        assert len(registry.downstreams()) == 2

    def test_load_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="not found"):
            TopologyRegistry.load(tmp_path / "missing.yaml")

    def test_load_malformed_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "topology.yaml"
        path.write_text("clusters: [unclosed")

        with pytest.raises(ConfigurationError, match="Cannot read"):
            TopologyRegistry.load(path)

    def test_example_topology_loads(self) -> None:
        """The shipped example topology should be valid."""
        path = Path(__file__).parent.parent / "topology.example.yaml"

        registry = TopologyRegistry.load(path)

        assert registry.upstream.display_name == "AZ-Cluster-1"
        assert len(registry.downstreams(include_cross_region=False)) == 1


class TestNodeIdentity:
    """Tests for node equality."""

    def test_equal_by_address(self) -> None:
        """Nodes are identified by address only."""
        a = Node(address="10.0.0.1", cluster_id="a", datacenter="x")
        b = Node(address="10.0.0.1", cluster_id="a", datacenter="y")

        assert a == b
        assert hash(a) == hash(b)
        assert len({a, b}) == 1

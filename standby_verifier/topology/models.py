"""
Topology models.

All models are frozen Pydantic models: the topology is loaded once per run
and shared read-only by every component.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ClusterRole(str, Enum):
    """Declared replication role of a cluster."""

    UPSTREAM = "upstream"
    DOWNSTREAM = "downstream"


class PeerClass(str, Enum):
    """Distance class of a downstream relative to the upstream."""

    REGIONAL = "regional"
    CROSS_REGION = "cross-region"


class Node(BaseModel):
    """
    A cluster member.

    Identity is the address: two Node values with the same address are equal.
    """

    model_config = ConfigDict(frozen=True)

    address: str
    cluster_id: str
    datacenter: str | None = None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Node):
            return NotImplemented
        return self.address == other.address

    def __hash__(self) -> int:
        return hash(self.address)

    def __str__(self) -> str:
        return self.address


class ClusterTopology(BaseModel):
    """A cluster, its ordered members and its declared role."""

    model_config = ConfigDict(frozen=True)

    cluster_id: str
    name: str | None = None
    role: ClusterRole
    peer_class: PeerClass = PeerClass.REGIONAL
    nodes: tuple[Node, ...] = Field(default_factory=tuple)

    @field_validator("nodes")
    @classmethod
    def validate_nodes(cls, v: tuple[Node, ...]) -> tuple[Node, ...]:
        """Require at least one member and no duplicate addresses."""
        if not v:
            raise ValueError("cluster must list at least one node")
        addresses = [n.address for n in v]
        if len(set(addresses)) != len(addresses):
            raise ValueError(f"duplicate node address in {addresses}")
        return v

    @property
    def display_name(self) -> str:
        """Human name, falling back to the id."""
        return self.name or self.cluster_id

    @property
    def addresses(self) -> list[str]:
        """Member addresses in declared order."""
        return [n.address for n in self.nodes]

    @property
    def primary_address(self) -> str:
        """First declared member, used as the cluster's API entry point."""
        return self.nodes[0].address

    @property
    def is_cross_region(self) -> bool:
        """Check if this downstream sits in another region."""
        return self.peer_class == PeerClass.CROSS_REGION

    def has_member(self, address: str) -> bool:
        """Check if an address belongs to this cluster."""
        return any(n.address == address for n in self.nodes)


class Ports(BaseModel):
    """Listener ports shared by every cluster."""

    model_config = ConfigDict(frozen=True)

    management: int = 15672
    amqp: int = 5672
    stream: int = 5552


class Topology(BaseModel):
    """One upstream fanning out to several downstream clusters."""

    model_config = ConfigDict(frozen=True)

    upstream: ClusterTopology
    downstreams: tuple[ClusterTopology, ...] = Field(default_factory=tuple)
    ports: Ports = Field(default_factory=Ports)

"""
Pydantic models for management API responses.

Only the fields the verifier reads are declared; everything else is ignored.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ManagementModel(BaseModel):
    """Base model tolerant of extra response fields."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class Overview(ManagementModel):
    """Subset of ``GET /api/overview``."""

    cluster_name: str | None = None
    rabbitmq_version: str | None = None
    node: str | None = None


class NodeInfo(ManagementModel):
    """One entry of ``GET /api/nodes``."""

    name: str
    running: bool = False
    partitions: list[str] = Field(default_factory=list)

    @property
    def is_partitioned(self) -> bool:
        return bool(self.partitions)


class MessageStats(ManagementModel):
    publish: int = 0
    deliver_get: int = 0


class QueueInfo(ManagementModel):
    """Subset of ``GET /api/queues/{vhost}/{name}``."""

    name: str
    vhost: str = "/"
    type: str | None = None
    state: str | None = None
    messages: int = 0
    messages_ready: int = 0
    messages_unacknowledged: int = 0
    consumers: int = 0
    leader: str | None = None
    members: list[str] = Field(default_factory=list)
    effective_policy_definition: dict[str, Any] | None = None
    message_stats: MessageStats = Field(default_factory=MessageStats)

    @property
    def is_internal(self) -> bool:
        """Broker-internal queues are never touched by the verifier."""
        return self.name.startswith("rabbitmq.internal")

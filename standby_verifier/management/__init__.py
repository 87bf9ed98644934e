"""
Broker management HTTP API access.

Provides:
- ManagementClient: async httpx client with retries
- Response models for overview, nodes and queues
"""

from standby_verifier.management.client import ManagementClient
from standby_verifier.management.types import NodeInfo, Overview, QueueInfo

__all__ = ["ManagementClient", "NodeInfo", "Overview", "QueueInfo"]

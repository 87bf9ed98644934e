"""
Fault injection for resiliency scenarios.
"""

from standby_verifier.chaos.actions import (
    ChaosAction,
    NetworkPartition,
    NodeKill,
    PacketLoss,
    injected,
)

__all__ = ["ChaosAction", "NetworkPartition", "NodeKill", "PacketLoss", "injected"]

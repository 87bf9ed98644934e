"""
Replication status classification.

The control plane answers status queries with free text. This module is the
single, explicit contract for turning that text into a link state: a fixed
vocabulary per channel, negative phrases checked first, everything else
UNKNOWN.
"""

import re
from enum import Enum


class ReplicationLinkState(str, Enum):
    """Observed state of a node's replication link."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    UNKNOWN = "unknown"


class ReplicationChannel(str, Enum):
    """Which replication link a status text describes."""

    STANDBY = "standby"  # message (stream) replication
    SCHEMA = "schema"  # definition replication


NEGATIVE_KEYWORDS: tuple[str, ...] = (
    "not connected",
    "not running",
    "disconnected",
    "stopped",
)

POSITIVE_KEYWORDS: dict[ReplicationChannel, tuple[str, ...]] = {
    ReplicationChannel.STANDBY: ("connected", "downstream", "running", "replicating"),
    ReplicationChannel.SCHEMA: ("running", "connected", "syncing"),
}


def _contains(text: str, phrase: str) -> bool:
    return re.search(rf"\b{re.escape(phrase)}\b", text) is not None


def classify_status(
    text: str | None,
    channel: ReplicationChannel = ReplicationChannel.STANDBY,
) -> ReplicationLinkState:
    """
    Classify a status response.

    Args:
        text: Raw status output (None when the query failed)
        channel: Which link the output describes

    Returns:
        CONNECTED, DISCONNECTED, or UNKNOWN for anything outside the vocabulary
    """
    if not text:
        return ReplicationLinkState.UNKNOWN

    lowered = text.lower()
    if any(_contains(lowered, phrase) for phrase in NEGATIVE_KEYWORDS):
        return ReplicationLinkState.DISCONNECTED
    if any(_contains(lowered, phrase) for phrase in POSITIVE_KEYWORDS[channel]):
        return ReplicationLinkState.CONNECTED
    return ReplicationLinkState.UNKNOWN

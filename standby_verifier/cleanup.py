"""
Test queue cleanup.

Removes queues left behind by verification and performance runs. Broker
internal queues are never touched.
"""

import re
from collections.abc import Sequence
from dataclasses import dataclass, field

from standby_verifier.errors import ManagementAPIError
from standby_verifier.logging import get_logger
from standby_verifier.management.client import ManagementClient

logger = get_logger(__name__)

TEST_QUEUE_PATTERNS: tuple[str, ...] = (
    r"^core-test-",
    r"^resiliency-",
    r"^warm-standby-",
    r"^lag-test-",
    r"^promotion-test-",
    r"^perf-test-",
    r"^manual-test-",
    r"^baseline$",
)


def is_test_queue(name: str, patterns: Sequence[str] = TEST_QUEUE_PATTERNS) -> bool:
    """True if ``name`` matches a test pattern and is not a broker internal queue."""
    if name.startswith("rabbitmq.internal."):
        return False
    return any(re.search(pattern, name) for pattern in patterns)


@dataclass
class CleanupResult:
    """Per-run cleanup tally."""

    dry_run: bool
    matched: dict[str, list[str]] = field(default_factory=dict)
    deleted: int = 0
    failed: int = 0
    unreachable: list[str] = field(default_factory=list)


async def cleanup_queues(
    management: ManagementClient,
    hosts: Sequence[str],
    patterns: Sequence[str] = TEST_QUEUE_PATTERNS,
    dry_run: bool = False,
) -> CleanupResult:
    """
    Delete matching queues on each host.

    A host whose queue listing fails is skipped and recorded as unreachable;
    a queue that cannot be deleted counts as failed.
    """
    result = CleanupResult(dry_run=dry_run)

    for host in hosts:
        try:
            queues = await management.list_queues(host)
        except ManagementAPIError as e:
            logger.error("Cannot list queues on %s: %s", host, e)
            result.unreachable.append(host)
            continue

        matched = [q for q in queues if is_test_queue(q.name, patterns)]
        result.matched[host] = [q.name for q in matched]
        logger.info("%s: %d test queue(s)", host, len(matched))

        for queue in matched:
            if dry_run:
                logger.info("  would delete %s (%d msgs)", queue.name, queue.messages)
                continue
            try:
                await management.delete_queue(host, queue.name, queue.vhost)
            except ManagementAPIError as e:
                logger.error("  failed to delete %s: %s", queue.name, e)
                result.failed += 1
                continue
            logger.info("  deleted %s", queue.name)
            result.deleted += 1

    logger.info(
        "Cleanup %s: %d deleted, %d failed",
        "(dry run)" if dry_run else "complete",
        result.deleted,
        result.failed,
    )
    return result

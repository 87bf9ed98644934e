"""
Workload driver for the external perf-test load generator.
"""

from standby_verifier.workload.driver import (
    WorkloadDriver,
    WorkloadHandle,
    WorkloadReport,
    WorkloadSpec,
    amqp_uri,
    looks_failed,
    parse_rates,
)

__all__ = [
    "WorkloadDriver",
    "WorkloadHandle",
    "WorkloadReport",
    "WorkloadSpec",
    "amqp_uri",
    "looks_failed",
    "parse_rates",
]

"""
Chaos/failure injection testing suite.

Tests verifier behavior under adverse conditions:
- Tier 1: Management API faults (refused connections, 5xx storms, timeouts)
- Tier 2: Discovery faults (flaky probes, hung nodes)
- Tier 4: Recovery scenarios (restoration under control plane failures)
"""

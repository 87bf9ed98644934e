"""
Warm Standby Replication Verifier

Verifies disaster-recovery readiness of warm standby replication:
- Active replication carrier discovery across downstream clusters
- Initial delay and steady-state replication lag under load
- Controlled promotion with data validation and guaranteed restoration
- Opt-in fault injection (node kill, partition, packet loss)
"""

__version__ = "0.1.0"

from standby_verifier.config import Settings, get_settings

__all__ = ["__version__", "Settings", "get_settings"]

"""
Remote access to cluster nodes.

Provides:
- RemoteShell: bounded ssh command execution
- ControlPlane: replication status, metrics and role-change commands
"""

from standby_verifier.remote.control import ControlPlane
from standby_verifier.remote.shell import CommandResult, RemoteShell

__all__ = ["CommandResult", "ControlPlane", "RemoteShell"]

"""
Control-plane operations for warm standby replication.

Each method is one remote ``rabbitmqctl`` / ``rabbitmq-diagnostics`` /
``systemctl`` invocation. Retrying is left to the caller.
"""

import json
import shlex

from standby_verifier.config import Settings
from standby_verifier.errors import RemoteCommandError
from standby_verifier.logging import get_logger
from standby_verifier.remote.shell import CommandResult, RemoteShell

logger = get_logger(__name__)

OPERATING_MODES = ("upstream", "downstream")


class ControlPlane:
    """Remote replication control operations for cluster nodes."""

    def __init__(self, shell: RemoteShell, settings: Settings) -> None:
        self._shell = shell
        self._service = settings.service_name
        self._conf_path = settings.rabbitmq_conf_path

    @property
    def shell(self) -> RemoteShell:
        return self._shell

    # =========================================================================
    # Status queries
    # =========================================================================

    async def standby_replication_status(self, host: str, timeout: float | None = None) -> str:
        """Raw ``standby_replication_status`` output."""
        result = await self._shell.run(
            host, "rabbitmqctl standby_replication_status", timeout=timeout
        )
        return result.stdout

    async def schema_replication_status(self, host: str, timeout: float | None = None) -> str:
        """Raw ``schema_replication_status`` output."""
        result = await self._shell.run(
            host, "rabbitmqctl schema_replication_status", timeout=timeout
        )
        return result.stdout

    async def vhosts_available_for_recovery(self, host: str) -> list[str]:
        """
        Virtual hosts a standby could recover on promotion.

        Banner and header lines are dropped.
        """
        result = await self._shell.run(
            host, "rabbitmqctl list_vhosts_available_for_standby_replication_recovery"
        )
        vhosts: list[str] = []
        for line in result.stdout.splitlines():
            line = line.strip()
            if not line or line.startswith("Listing") or line.lower() in {"name", "vhost"}:
                continue
            vhosts.append(line)
        return vhosts

    async def upstream_metrics(self, host: str, timeout: float | None = None) -> str:
        """Raw ``inspect_standby_upstream_metrics`` table."""
        result = await self._shell.run(
            host, "rabbitmq-diagnostics inspect_standby_upstream_metrics", timeout=timeout
        )
        return result.stdout

    async def downstream_metrics(self, host: str, timeout: float | None = None) -> str:
        """Raw ``inspect_standby_downstream_metrics`` table."""
        result = await self._shell.run(
            host, "rabbitmq-diagnostics inspect_standby_downstream_metrics", timeout=timeout
        )
        return result.stdout

    # =========================================================================
    # Role changes
    # =========================================================================

    async def promote(self, host: str) -> CommandResult:
        """
        Promote the downstream cluster ``host`` belongs to.

        Recovers every replicated virtual host, starting from the earliest
        retained data so no gap is silently skipped.
        """
        return await self._shell.run(
            host,
            "rabbitmqctl promote_standby_replication_downstream_cluster "
            "--all-available --start-from-scratch",
        )

    async def set_operating_mode(self, host: str, mode: str) -> CommandResult:
        """Rewrite ``operating_mode`` in the node's config file."""
        if mode not in OPERATING_MODES:
            raise ValueError(f"Unknown operating mode: {mode}")
        previous = OPERATING_MODES[1] if mode == OPERATING_MODES[0] else OPERATING_MODES[0]
        expr = f"s/operating_mode = {previous}/operating_mode = {mode}/g"
        return await self._shell.run(
            host, f"sed -i {shlex.quote(expr)} {shlex.quote(self._conf_path)}"
        )

    async def restart_service(self, host: str) -> CommandResult:
        """Restart the broker service."""
        return await self._shell.run(host, f"systemctl restart {self._service}")

    async def await_ready(self, host: str, timeout: float | None = None) -> bool:
        """Check once whether the node finished booting."""
        try:
            result = await self._shell.run(
                host, "rabbitmqctl await_startup", timeout=timeout, check=False
            )
        except RemoteCommandError as e:
            logger.debug("await_startup on %s failed: %s", host, e)
            return False
        return result.ok

    async def set_schema_upstream_endpoints(
        self, host: str, endpoints: list[str], user: str, password: str
    ) -> CommandResult:
        """Point schema (definition) replication at the upstream AMQP listeners."""
        return await self._set_endpoints(
            host, "set_schema_replication_upstream_endpoints", endpoints, user, password
        )

    async def set_standby_upstream_endpoints(
        self, host: str, endpoints: list[str], user: str, password: str
    ) -> CommandResult:
        """Point standby (stream) replication at the upstream stream listeners."""
        return await self._set_endpoints(
            host, "set_standby_replication_upstream_endpoints", endpoints, user, password
        )

    async def connect_downstream(self, host: str) -> CommandResult:
        """Start the standby replication connection from this node."""
        return await self._shell.run(host, "rabbitmqctl connect_standby_replication_downstream")

    async def _set_endpoints(
        self, host: str, subcommand: str, endpoints: list[str], user: str, password: str
    ) -> CommandResult:
        payload = json.dumps({"endpoints": endpoints, "username": user, "password": password})
        return await self._shell.run(host, f"rabbitmqctl {subcommand} {shlex.quote(payload)}")

"""
Chaos action adapter.

Fault injections as paired apply/heal remote commands. The mechanics stay
on the nodes (systemctl, iptables, tc); this module only guarantees that
every applied fault is healed.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from standby_verifier.errors import ChaosActionError, RemoteCommandError
from standby_verifier.logging import get_logger
from standby_verifier.remote.shell import RemoteShell

logger = get_logger(__name__)


class ChaosAction(ABC):
    """
    A reversible fault on one node.

    Implementations must make ``heal`` safe to call even when ``apply`` only
    partly succeeded.
    """

    def __init__(self, shell: RemoteShell, target: str) -> None:
        self._shell = shell
        self.target = target

    @property
    @abstractmethod
    def description(self) -> str:
        """Human-readable summary, used in logs and results."""
        ...

    @abstractmethod
    async def apply(self) -> None:
        """
        Inject the fault.

        Raises:
            ChaosActionError: If the fault could not be injected
        """
        ...

    @abstractmethod
    async def heal(self) -> None:
        """
        Remove the fault.

        Raises:
            ChaosActionError: If the fault could not be removed
        """
        ...

    async def _run(self, command: str, check: bool = True) -> None:
        try:
            await self._shell.run(self.target, command, check=check)
        except RemoteCommandError as e:
            raise ChaosActionError(f"{self.description}: {e}") from e


class NodeKill(ChaosAction):
    """Hard-kill the broker service on a node; heal starts it again."""

    def __init__(self, shell: RemoteShell, target: str, service: str) -> None:
        super().__init__(shell, target)
        self._service = service

    @property
    def description(self) -> str:
        return f"kill {self._service} on {self.target}"

    async def apply(self) -> None:
        await self._run(
            f"sh -c 'systemctl kill -s SIGKILL {self._service} || pkill -9 beam.smp'"
        )

    async def heal(self) -> None:
        await self._run(f"systemctl start {self._service}")


class NetworkPartition(ChaosAction):
    """Drop all traffic between ``target`` and ``peer`` in both directions."""

    def __init__(self, shell: RemoteShell, target: str, peer: str) -> None:
        super().__init__(shell, target)
        self.peer = peer

    @property
    def description(self) -> str:
        return f"partition {self.target} from {self.peer}"

    async def apply(self) -> None:
        await self._run(f"iptables -A INPUT -s {self.peer} -j DROP")
        await self._run(f"iptables -A OUTPUT -d {self.peer} -j DROP")

    async def heal(self) -> None:
        errors: list[str] = []
        # Delete both rules even if one is already gone
        for rule in (f"INPUT -s {self.peer}", f"OUTPUT -d {self.peer}"):
            try:
                await self._run(f"iptables -D {rule} -j DROP")
            except ChaosActionError as e:
                errors.append(str(e))
        if len(errors) == 2:
            raise ChaosActionError("; ".join(errors))


class PacketLoss(ChaosAction):
    """Random packet loss on one interface via netem."""

    def __init__(self, shell: RemoteShell, target: str, interface: str, loss_pct: float) -> None:
        super().__init__(shell, target)
        self.interface = interface
        self.loss_pct = loss_pct

    @property
    def description(self) -> str:
        return f"{self.loss_pct:g}% packet loss on {self.target}:{self.interface}"

    async def apply(self) -> None:
        rule = f"root netem loss {self.loss_pct:g}%"
        await self._run(
            f"sh -c 'tc qdisc add dev {self.interface} {rule} "
            f"|| tc qdisc change dev {self.interface} {rule}'"
        )

    async def heal(self) -> None:
        await self._run(f"tc qdisc del dev {self.interface} root")


@asynccontextmanager
async def injected(
    action: ChaosAction,
    observation_s: float = 0.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> AsyncIterator[ChaosAction]:
    """
    Apply a fault for the duration of the block, then always heal it.

    ``observation_s`` is waited after applying, before the block runs. A heal
    failure is logged; it is raised only if the block itself succeeded, so
    it never masks the original error.
    """
    logger.warning("Injecting fault: %s", action.description)
    body_failed = False
    try:
        await action.apply()
        if observation_s > 0:
            await sleep(observation_s)
        yield action
    except BaseException:
        body_failed = True
        raise
    finally:
        logger.info("Healing fault: %s", action.description)
        try:
            await action.heal()
        except ChaosActionError as e:
            logger.error("Heal failed for %s: %s", action.description, e)
            if not body_failed:
                raise

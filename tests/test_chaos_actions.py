"""
Tests for fault injection actions.
"""

from unittest.mock import AsyncMock

import pytest

from standby_verifier.chaos import NetworkPartition, NodeKill, PacketLoss, injected
from standby_verifier.errors import ChaosActionError, RemoteCommandError
from standby_verifier.remote.shell import RemoteShell


@pytest.fixture
def shell() -> AsyncMock:
    return AsyncMock(spec=RemoteShell)


def commands(shell: AsyncMock) -> list[str]:
    return [call.args[1] for call in shell.run.await_args_list]


class TestCommands:
    """Tests for the remote commands each action issues."""

    @pytest.mark.asyncio
    async def test_node_kill(self, shell: AsyncMock) -> None:
        action = NodeKill(shell, "10.0.1.2", "rabbitmq-server")

        await action.apply()
        await action.heal()

        assert "systemctl kill -s SIGKILL rabbitmq-server" in commands(shell)[0]
        assert commands(shell)[1] == "systemctl start rabbitmq-server"
        assert all(call.args[0] == "10.0.1.2" for call in shell.run.await_args_list)

    @pytest.mark.asyncio
    async def test_partition_both_directions(self, shell: AsyncMock) -> None:
        action = NetworkPartition(shell, "10.0.2.1", "10.0.1.1")

        await action.apply()

        assert commands(shell) == [
            "iptables -A INPUT -s 10.0.1.1 -j DROP",
            "iptables -A OUTPUT -d 10.0.1.1 -j DROP",
        ]

    @pytest.mark.asyncio
    async def test_partition_heal_tolerates_one_missing_rule(self, shell: AsyncMock) -> None:
        """Healing succeeds if at least one rule could be removed."""
        shell.run.side_effect = [RemoteCommandError("Bad rule"), None]
        action = NetworkPartition(shell, "10.0.2.1", "10.0.1.1")

        await action.heal()

        assert len(commands(shell)) == 2

    @pytest.mark.asyncio
    async def test_partition_heal_fails_when_both_fail(self, shell: AsyncMock) -> None:
        shell.run.side_effect = RemoteCommandError("ssh: connection refused")
        action = NetworkPartition(shell, "10.0.2.1", "10.0.1.1")

        with pytest.raises(ChaosActionError):
            await action.heal()

    @pytest.mark.asyncio
    async def test_packet_loss(self, shell: AsyncMock) -> None:
        action = PacketLoss(shell, "10.0.1.2", "eth0", 5.0)

        await action.apply()
        await action.heal()

        assert "tc qdisc add dev eth0 root netem loss 5%" in commands(shell)[0]
        assert commands(shell)[1] == "tc qdisc del dev eth0 root"
        assert action.description == "5% packet loss on 10.0.1.2:eth0"


class TestInjected:
    """Tests for the always-heal guarantee."""

    @pytest.mark.asyncio
    async def test_heals_after_body(self, shell: AsyncMock, no_sleep: AsyncMock) -> None:
        action = NodeKill(shell, "10.0.1.2", "rabbitmq-server")

        async with injected(action, observation_s=10, sleep=no_sleep):
            assert len(commands(shell)) == 1

        assert len(commands(shell)) == 2
        no_sleep.assert_awaited_once_with(10)

    @pytest.mark.asyncio
    async def test_heals_when_body_raises(self, shell: AsyncMock) -> None:
        action = NodeKill(shell, "10.0.1.2", "rabbitmq-server")

        with pytest.raises(RuntimeError, match="assertion in body"):
            async with injected(action):
                raise RuntimeError("assertion in body")

        assert commands(shell)[-1] == "systemctl start rabbitmq-server"

    @pytest.mark.asyncio
    async def test_heals_when_apply_fails(self, shell: AsyncMock) -> None:
        """A half-applied fault is still healed."""
        shell.run.side_effect = [RemoteCommandError("iptables: locked"), None, None]
        action = NetworkPartition(shell, "10.0.2.1", "10.0.1.1")

        with pytest.raises(ChaosActionError):
            async with injected(action):
                pass

        assert commands(shell)[1:] == [
            "iptables -D INPUT -s 10.0.1.1 -j DROP",
            "iptables -D OUTPUT -d 10.0.1.1 -j DROP",
        ]

    @pytest.mark.asyncio
    async def test_heal_error_does_not_mask_body_error(self, shell: AsyncMock) -> None:
        shell.run.side_effect = [None, RemoteCommandError("unreachable")]
        action = NodeKill(shell, "10.0.1.2", "rabbitmq-server")

        with pytest.raises(ValueError):
            async with injected(action):
                raise ValueError("original")

    @pytest.mark.asyncio
    async def test_heal_error_raised_after_clean_body(self, shell: AsyncMock) -> None:
        shell.run.side_effect = [None, RemoteCommandError("unreachable")]
        action = NodeKill(shell, "10.0.1.2", "rabbitmq-server")

        with pytest.raises(ChaosActionError, match="unreachable"):
            async with injected(action):
                pass

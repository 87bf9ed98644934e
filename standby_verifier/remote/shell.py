"""
Remote command execution over SSH.

Every call is a single ``ssh`` subprocess bounded by an explicit timeout.
Processes that overrun are killed, never left behind.
"""

import asyncio
import time
from dataclasses import dataclass

from standby_verifier.config import Settings
from standby_verifier.errors import RemoteCommandError, RemoteCommandTimeout
from standby_verifier.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one remote command."""

    host: str
    command: str
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        """Check if the command exited with status 0."""
        return self.exit_code == 0


class RemoteShell:
    """
    Runs commands on cluster nodes through the system ``ssh`` client.

    Host keys are not checked and password prompts are disabled
    (``BatchMode``), so a missing key fails fast instead of hanging.
    """

    def __init__(self, settings: Settings) -> None:
        self._ssh_user = settings.ssh_user
        self._connect_timeout = settings.ssh_connect_timeout
        self._default_timeout = settings.remote_command_timeout

    def build_argv(self, host: str, command: str, sudo: bool = True) -> list[str]:
        """Build the ssh argument vector for a command."""
        remote = f"sudo {command}" if sudo else command
        return [
            "ssh",
            "-o",
            "StrictHostKeyChecking=no",
            "-o",
            f"ConnectTimeout={self._connect_timeout}",
            "-o",
            "BatchMode=yes",
            f"{self._ssh_user}@{host}",
            remote,
        ]

    async def run(
        self,
        host: str,
        command: str,
        *,
        sudo: bool = True,
        timeout: float | None = None,
        check: bool = True,
    ) -> CommandResult:
        """
        Run a command on a remote host.

        Args:
            host: Node address
            command: Shell command to run remotely
            sudo: Prefix the command with sudo
            timeout: Seconds before the ssh process is killed
            check: Raise on non-zero exit status

        Returns:
            CommandResult with decoded output

        Raises:
            RemoteCommandError: On spawn failure, timeout, or (with check)
                non-zero exit
        """
        timeout = timeout if timeout is not None else self._default_timeout
        argv = self.build_argv(host, command, sudo=sudo)

        logger.debug("ssh %s: %s", host, command)
        start_time = time.perf_counter()

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise RemoteCommandError(f"Cannot spawn ssh for {host}: {e}", host=host) from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise RemoteCommandTimeout(
                f"Command timed out after {timeout:.0f}s on {host}", host=host
            ) from None
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise

        result = CommandResult(
            host=host,
            command=command,
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            duration_ms=int((time.perf_counter() - start_time) * 1000),
        )

        logger.debug(
            "ssh %s: exit=%d in %dms", host, result.exit_code, result.duration_ms
        )

        if check and not result.ok:
            raise RemoteCommandError(
                f"Command failed on {host} with exit {result.exit_code}: "
                f"{result.stderr.strip()[:200]}",
                host=host,
                exit_code=result.exit_code,
                stderr=result.stderr,
            )
        return result

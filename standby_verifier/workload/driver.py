"""
Workload driver.

Thin wrapper around the external ``perf-test`` load generator: builds its
command line, runs it as a subprocess, and extracts the few numbers the
scenarios need from its output. Load generation itself is not reimplemented.
"""

import asyncio
import re
import time
from dataclasses import dataclass
from pathlib import Path

from standby_verifier.errors import WorkloadError
from standby_verifier.logging import get_logger, redact_text

logger = get_logger(__name__)

_SEND_RATE = re.compile(r"sending rate avg:\s*(\d+)")
_RECEIVE_RATE = re.compile(r"receiving rate avg:\s*(\d+)")

FAILURE_KEYWORDS = ("error", "exception", "refused")


@dataclass(frozen=True)
class WorkloadSpec:
    """
    One perf-test invocation.

    Exactly one of ``duration_s`` and ``message_count`` bounds the run.
    """

    uri: str
    queue: str
    run_id: str
    producers: int = 1
    consumers: int = 0
    message_size: int = 5000
    rate: int | None = None
    duration_s: int | None = None
    message_count: int | None = None
    confirm: int | None = 50
    quorum_queue: bool = True

    def __post_init__(self) -> None:
        if (self.duration_s is None) == (self.message_count is None):
            raise ValueError("Exactly one of duration_s and message_count must be set")

    def to_args(self) -> list[str]:
        """perf-test arguments, without the binary."""
        args = ["--uri", self.uri]
        if self.quorum_queue:
            args.append("--quorum-queue")
        args += [
            "--queue",
            self.queue,
            "--producers",
            str(self.producers),
            "--consumers",
            str(self.consumers),
        ]
        if self.duration_s is not None:
            args += ["--time", str(self.duration_s)]
        if self.message_count is not None:
            args += ["--pmessages", str(self.message_count)]
        args += ["--size", str(self.message_size)]
        if self.rate is not None:
            args += ["--rate", str(self.rate)]
        if self.confirm is not None:
            args += ["--confirm", str(self.confirm)]
        args += ["--id", self.run_id]
        return args


def amqp_uri(user: str, password: str, host: str, port: int = 5672) -> str:
    """Build the AMQP URI perf-test connects with."""
    return f"amqp://{user}:{password}@{host}:{port}"


def parse_rates(output: str) -> tuple[int, int]:
    """
    Extract the last reported average send and receive rates.

    A missing figure is 0, meaning unknown. Never raises.
    """
    sends = _SEND_RATE.findall(output)
    receives = _RECEIVE_RATE.findall(output)
    return (int(sends[-1]) if sends else 0, int(receives[-1]) if receives else 0)


def looks_failed(output: str) -> bool:
    """True if the output mentions an error, exception or refused connection."""
    lowered = output.lower()
    return any(keyword in lowered for keyword in FAILURE_KEYWORDS)


@dataclass(frozen=True)
class WorkloadReport:
    """Summary of a finished workload run."""

    exit_code: int | None
    send_rate: int
    receive_rate: int
    failed: bool
    timed_out: bool
    duration_s: float
    output_tail: str

    @classmethod
    def from_output(
        cls,
        output: str,
        exit_code: int | None,
        duration_s: float,
        timed_out: bool = False,
    ) -> "WorkloadReport":
        send_rate, receive_rate = parse_rates(output)
        tail = "\n".join(output.strip().splitlines()[-5:])
        return cls(
            exit_code=exit_code,
            send_rate=send_rate,
            receive_rate=receive_rate,
            failed=timed_out or looks_failed(output) or (exit_code not in (0, None)),
            timed_out=timed_out,
            duration_s=duration_s,
            output_tail=redact_text(tail),
        )


class WorkloadHandle:
    """A running perf-test process with its output captured in memory."""

    def __init__(self, spec: WorkloadSpec, process: asyncio.subprocess.Process) -> None:
        self.spec = spec
        self._process = process
        self._chunks: list[str] = []
        self._started = time.monotonic()
        self._reader = asyncio.create_task(self._read_output(), name=f"workload-{spec.run_id}")

    async def _read_output(self) -> None:
        assert self._process.stdout is not None
        while True:
            line = await self._process.stdout.readline()
            if not line:
                break
            self._chunks.append(line.decode("utf-8", errors="replace"))

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def output(self) -> str:
        return "".join(self._chunks)

    def is_running(self) -> bool:
        return self._process.returncode is None

    async def wait(self, timeout: float | None = None) -> WorkloadReport:
        """
        Wait for the process to exit and summarize its output.

        A process still running at ``timeout`` is killed and reported as
        timed out.
        """
        timed_out = False
        try:
            await asyncio.wait_for(self._process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Workload %s overran %.0fs, killing", self.spec.run_id, timeout or 0)
            timed_out = True
            await self.stop()
        await self._reader

        report = WorkloadReport.from_output(
            self.output,
            exit_code=self._process.returncode,
            duration_s=time.monotonic() - self._started,
            timed_out=timed_out,
        )
        logger.info(
            "Workload %s finished: exit=%s send=%d msg/s receive=%d msg/s",
            self.spec.run_id,
            report.exit_code,
            report.send_rate,
            report.receive_rate,
        )
        return report

    async def stop(self) -> None:
        """Kill the process if it is still running."""
        if self.is_running():
            self._process.kill()
            await self._process.wait()


class WorkloadDriver:
    """Starts perf-test runs."""

    def __init__(self, binary: Path, grace_s: float = 30.0) -> None:
        """
        Initialize driver.

        Args:
            binary: Path to the perf-test executable
            grace_s: Extra time allowed past a timed run before it is killed
        """
        self._binary = binary
        self._grace_s = grace_s

    def build_argv(self, spec: WorkloadSpec) -> list[str]:
        return [str(self._binary), *spec.to_args()]

    async def start(self, spec: WorkloadSpec) -> WorkloadHandle:
        """
        Spawn perf-test in the background.

        Raises:
            WorkloadError: If the binary cannot be started
        """
        argv = self.build_argv(spec)
        logger.info(
            "Starting workload %s on queue %s: %s",
            spec.run_id,
            spec.queue,
            redact_text(" ".join(argv)),
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise WorkloadError(f"Cannot start {self._binary}: {e}") from e
        return WorkloadHandle(spec, process)

    async def run(self, spec: WorkloadSpec, timeout: float | None = None) -> WorkloadReport:
        """Run perf-test to completion."""
        if timeout is None and spec.duration_s is not None:
            timeout = spec.duration_s + self._grace_s
        handle = await self.start(spec)
        try:
            return await handle.wait(timeout)
        finally:
            await handle.stop()

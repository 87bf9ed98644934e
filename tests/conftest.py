"""
Pytest configuration and shared fixtures.
"""

import copy
import os
from collections.abc import Generator
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest

from standby_verifier.config import Settings, get_settings
from standby_verifier.management.client import ManagementClient
from standby_verifier.remote.control import ControlPlane
from standby_verifier.remote.shell import RemoteShell
from standby_verifier.replication import (
    ActiveLinkDiscoverer,
    LagSampler,
    NodeProber,
    PromotionStateMachine,
)
from standby_verifier.scenarios.base import ScenarioContext
from standby_verifier.topology.registry import TopologyRegistry, parse_topology
from standby_verifier.workload.driver import WorkloadDriver

TOPOLOGY_DOC: dict[str, Any] = {
    "ports": {"management": 15672, "amqp": 5672, "stream": 5552},
    "clusters": [
        {
            "id": "az-1",
            "name": "AZ-Cluster-1",
            "role": "upstream",
            "nodes": ["10.0.1.1", "10.0.1.2", "10.0.1.3"],
        },
        {
            "id": "az-2",
            "name": "AZ-Cluster-2",
            "role": "downstream",
            "peer_class": "regional",
            "nodes": ["10.0.2.1", "10.0.2.2", "10.0.2.3"],
        },
        {
            "id": "tx-1",
            "name": "TX-Cluster-1",
            "role": "downstream",
            "peer_class": "cross-region",
            "nodes": ["10.0.3.1", "10.0.3.2", "10.0.3.3"],
        },
    ],
}


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Ensure no real credentials or overrides leak into tests from the shell."""
    for var in list(os.environ):
        if var.startswith("SV_"):
            monkeypatch.delenv(var)
    monkeypatch.delenv("RMQ_PASSWORD", raising=False)


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Generator[None, None, None]:
    """get_settings is cached per process; start every test fresh."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def topology_doc() -> dict[str, Any]:
    """A fresh, mutable copy of the test topology."""
    return copy.deepcopy(TOPOLOGY_DOC)


@pytest.fixture
def registry(topology_doc: dict[str, Any]) -> TopologyRegistry:
    return TopologyRegistry(parse_topology(topology_doc))


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with a password and no real waiting."""
    return Settings(
        password="test-password",
        topology_file=tmp_path / "topology.yaml",
        results_dir=tmp_path / "results",
        http_max_retries=0,
        probe_timeout=1.0,
        schema_wait_s=3.0,
        schema_poll_interval_s=1.0,
        lag_startup_delay_s=0,
        promotion_sync_wait_s=0,
        promotion_settle_s=0,
        restore_ready_attempts=3,
        restore_ready_interval_s=0,
        restore_settle_s=0,
        chaos_observation_s=0,
        chaos_recovery_s=0,
    )


@pytest.fixture
def control() -> AsyncMock:
    """Control plane double; every operation is an AsyncMock."""
    return AsyncMock(spec=ControlPlane)


@pytest.fixture
def no_sleep() -> AsyncMock:
    """Sleep replacement that returns immediately and records calls."""
    return AsyncMock(return_value=None)


@pytest.fixture
def ctx(
    settings: Settings,
    registry: TopologyRegistry,
    control: AsyncMock,
    no_sleep: AsyncMock,
) -> ScenarioContext:
    """
    Scenario context with every collaborator mocked.

    The promotion state machine is real, driven by the mocked control plane,
    management client and discoverer.
    """
    management = AsyncMock(spec=ManagementClient)
    discoverer = AsyncMock(spec=ActiveLinkDiscoverer)
    return ScenarioContext(
        settings=settings,
        registry=registry,
        shell=AsyncMock(spec=RemoteShell),
        control=control,
        management=management,
        prober=AsyncMock(spec=NodeProber),
        discoverer=discoverer,
        sampler=AsyncMock(spec=LagSampler),
        driver=AsyncMock(spec=WorkloadDriver),
        promotions=PromotionStateMachine(
            registry, control, management, discoverer, settings, sleep=no_sleep
        ),
        run_id="test-run",
        sleep=no_sleep,
    )

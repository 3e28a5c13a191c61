"""Shared fixtures for build fleet tests."""

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from buildfleet.cluster.registry import NodeRegistry
from buildfleet.config import FleetSettings


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def node_info(node_id: str = "node-1", **overrides: Any) -> dict[str, Any]:
    """Build a node registration payload."""
    info = {
        "node_id": node_id,
        "architecture": "linux-x64",
        "endpoint": f"http://{node_id}.local:9000",
        "capabilities": ["tailwind-v3", "tailwind-v4"],
        "max_concurrent": 2,
    }
    info.update(overrides)
    return info


@pytest.fixture
def clock() -> FakeClock:
    """Create a manually advanced clock."""
    return FakeClock()


@pytest.fixture
def settings() -> FleetSettings:
    """Create settings pointing at the fake coordinator."""
    return FleetSettings(
        coordinator_url="http://coordinator.test/api/v1",
        api_key="test-key",
        heartbeat_timeout_seconds=60,
        health_check_interval_seconds=30,
    )


@pytest.fixture
def registry(settings: FleetSettings, clock: FakeClock) -> NodeRegistry:
    """Create a NodeRegistry on the fake clock."""
    return NodeRegistry(settings, clock=clock)

"""Periodic health sweep over the node registry.

Purely heartbeat-driven: nodes are never polled. Each tick calls
``NodeRegistry.sweep_stale`` (which takes the registry lock) and then
schedules the next tick, so the sweep is just another serialized command.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import structlog

from buildfleet.cluster.registry import NodeRegistry

logger = structlog.get_logger(__name__)


class HealthMonitor:
    """Runs the stale-node sweep every ``health_check_interval_seconds``.

    Args:
        registry: The registry to sweep.
        interval: Override of the settings' sweep period, in seconds.
    """

    def __init__(self, registry: NodeRegistry, interval: Optional[float] = None) -> None:
        self.registry = registry
        self.interval = interval or registry.settings.health_check_interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.sweeps = 0

    @property
    def running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        await logger.ainfo("health_monitor_started", interval=self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        await logger.ainfo("health_monitor_stopped", sweeps=self.sweeps)

    async def run_once(self) -> list[str]:
        """Run a single sweep. Returns ids newly marked offline."""
        offline = await self.registry.sweep_stale()
        self.sweeps += 1
        return offline

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)
                await self.run_once()
            except asyncio.CancelledError:
                return
            except Exception as e:
                # A broken tick must not end the schedule.
                await logger.aerror("health_sweep_error", error=str(e))

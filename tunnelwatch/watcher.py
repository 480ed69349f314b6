"""
Continuous supervision.

Runs one asyncio loop per tunnel that triggers a supervision cycle on a
fixed interval. Cycles execute in worker threads, so tunnels are supervised
independently; a failed cycle is logged and the loop carries on.
"""

import asyncio
import logging
from typing import Callable

from .config import config
from .supervisor import TunnelSupervisor
from .tunnels import TunnelSpec

logger = logging.getLogger(__name__)


class TunnelWatcher:
    """Periodically runs supervision cycles for a set of tunnels."""

    def __init__(
        self,
        supervisor: TunnelSupervisor,
        interval: float = None,
        housekeeping: Callable[[], None] = None,
    ):
        self.supervisor = supervisor
        self.interval = interval if interval is not None else config.check_interval
        self._housekeeping = housekeeping
        self._tasks: dict[str, asyncio.Task] = {}
        self._stopping: asyncio.Event = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def watched(self) -> list[str]:
        return list(self._tasks.keys())

    async def start(self, specs: list[TunnelSpec]):
        """Start a loop for every tunnel."""
        if self._running:
            return

        self._running = True
        self._stopping = asyncio.Event()
        self.supervisor.reset()
        for spec in specs:
            self.add(spec)
        logger.info(f"Tunnel watcher started for {len(specs)} tunnel(s), interval {self.interval}s")

    def add(self, spec: TunnelSpec):
        """Start watching one more tunnel; no-op if it is already watched."""
        if not self._running or spec.name in self._tasks:
            return
        self._tasks[spec.name] = asyncio.create_task(self._watch_loop(spec), name=f"watch:{spec.name}")

    async def remove(self, name: str):
        task = self._tasks.pop(name, None)
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def stop(self):
        """
        Stop all loops. In-flight cycles are asked to abort at their next
        step boundary and are awaited, not killed.
        """
        if not self._running:
            return
        self._running = False
        self.supervisor.abort()
        self._stopping.set()

        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()
        logger.info("Tunnel watcher stopped")

    async def wait(self):
        """Block until stop() has been called and all loops finished."""
        if self._stopping:
            await self._stopping.wait()
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    async def _watch_loop(self, spec: TunnelSpec):
        """Main loop for one tunnel."""
        loop = asyncio.get_running_loop()
        while self._running:
            try:
                await loop.run_in_executor(None, self.supervisor.run_cycle, spec)
            except Exception as e:
                logger.error(f"Error in watch loop for {spec.name}: {e}")

            if self._housekeeping:
                try:
                    await loop.run_in_executor(None, self._housekeeping)
                except Exception as e:
                    logger.error(f"Error in housekeeping: {e}")

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

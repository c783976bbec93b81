import asyncio
from typing import Optional

from jupyter_engine.frameworks_drivers.kernel_pool import KernelPool
from jupyter_engine.shared.logger import Logger

logger = Logger.get(__name__)


class HeartbeatMonitor:
    """
    Periodically checks every cached kernel and evicts the ones the server no longer knows.

    The loop outlives sweep errors; only ``stop()`` (called when the process shuts
    down) ends it.
    """

    def __init__(self, pool: KernelPool, interval: float = 5.0):
        self.pool = pool
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    async def sweep(self) -> list[str]:
        """Run one liveness pass over the kernel cache and return the evicted keys."""
        removed = []
        for key in list(self.pool.cached_kernels):
            try:
                await self.pool.check_alive(key)
            except Exception as e:
                logger.info(f"Removing dead kernel {key} from cache: {e}")
                self.pool.evict(key, persist=False)
                removed.append(key)
        self.pool.save()
        return removed

    async def run_forever(self) -> None:
        while True:
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Heartbeat sweep failed: {e}")
            await asyncio.sleep(self.interval)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            logger.info(f"Starting kernel heartbeat every {self.interval}s")
            self._task = asyncio.create_task(self.run_forever())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

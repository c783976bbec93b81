from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI

from jupyter_engine.frameworks_drivers.config import Config
from jupyter_engine.frameworks_drivers.connection import Connection
from jupyter_engine.frameworks_drivers.heartbeat_monitor import HeartbeatMonitor
from jupyter_engine.frameworks_drivers.kernel_pool import KernelPool
from jupyter_engine.frameworks_drivers.server_registry import ServerRegistry
from jupyter_engine.interface_adapters.engine_controller import EngineController
from jupyter_engine.interface_adapters.health_controller import HealthController
from jupyter_engine.shared.logger import Logger
from jupyter_engine.shared.status import LoggingStatusSink

logger = Logger.get(__name__)


class API:
    def __init__(self, config: Config, registry: ServerRegistry, pool: KernelPool,
                 heartbeat: Optional[HeartbeatMonitor] = None, status: Optional[LoggingStatusSink] = None,
                 connections: Optional[dict[str, Connection]] = None):
        self.config = config
        self.registry = registry
        self.pool = pool
        self.heartbeat = heartbeat
        self.status = status
        self.connections: dict[str, Connection] = connections if connections is not None else {}
        self.app = FastAPI(title="Jupyter Engine Manager", version="0.1.0", lifespan=self._lifespan)

        # Dependency functions for per-request instances
        self.get_engine_controller = lambda: self._create_engine_controller()
        self.get_health_controller = lambda: HealthController(self.registry)

        self._register_routes()

    async def startup(self) -> None:
        """Load the caches, drop dead servers and start the kernel heartbeat."""
        self.registry.load()
        self.pool.load()
        removed = await self.registry.prune_dead()
        if removed:
            logger.info(f"Dropped {len(removed)} unreachable cached server(s)")
        if self.heartbeat is not None:
            self.heartbeat.start()

    async def shutdown(self) -> None:
        if self.heartbeat is not None:
            await self.heartbeat.stop()

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        await self.startup()
        try:
            yield
        finally:
            await self.shutdown()

    def _register_routes(self):
        async def health_handler(controller=Depends(self.get_health_controller)):
            return await controller.health()

        def engine_status_handler(controller=Depends(self.get_engine_controller)):
            return controller.engine_status()

        def servers_handler(controller=Depends(self.get_engine_controller)):
            return controller.servers()

        async def list_files_handler(url: str, root: str = "", controller=Depends(self.get_engine_controller)):
            return await controller.list_files(url, root)

        async def start_plugin_handler(request: dict, controller=Depends(self.get_engine_controller)):
            return await controller.start_plugin(request)

        async def execute_handler(plugin_id: str, request: dict, controller=Depends(self.get_engine_controller)):
            return await controller.execute(plugin_id, request)

        async def kill_plugin_handler(plugin_id: str, controller=Depends(self.get_engine_controller)):
            return await controller.kill_plugin(plugin_id)

        async def kill_process_handler(pid: str, controller=Depends(self.get_engine_controller)):
            return await controller.kill_process(pid)

        self.app.get("/health")(health_handler)
        self.app.get("/engine/status")(engine_status_handler)
        self.app.get("/servers")(servers_handler)
        self.app.get("/servers/files")(list_files_handler)
        self.app.post("/plugins")(start_plugin_handler)
        self.app.post("/plugins/{plugin_id}/execute")(execute_handler)
        self.app.delete("/plugins/{plugin_id}")(kill_plugin_handler)
        self.app.delete("/processes/{pid}")(kill_process_handler)

    def _create_engine_controller(self) -> EngineController:
        from jupyter_engine.use_cases.execute_plugin import ExecutePlugin
        from jupyter_engine.use_cases.get_engine_status import GetEngineStatus
        from jupyter_engine.use_cases.kill_plugin import KillPlugin
        from jupyter_engine.use_cases.start_plugin import StartPlugin

        return EngineController(
            StartPlugin(self.registry, self.pool, self.connections, self.config, self.status),
            ExecutePlugin(self.connections),
            KillPlugin(self.pool, self.connections),
            GetEngineStatus(self.registry, self.pool, self.connections, self.status),
            self.registry,
        )

from typing import Any, Optional

from jupyter_engine.frameworks_drivers.connection import Connection
from jupyter_engine.frameworks_drivers.kernel_pool import KernelPool
from jupyter_engine.frameworks_drivers.server_registry import ServerRegistry
from jupyter_engine.shared.status import LoggingStatusSink


class GetEngineStatus:
    def __init__(self, registry: ServerRegistry, pool: KernelPool, connections: dict[str, Connection],
                 status: Optional[LoggingStatusSink] = None):
        self.registry = registry
        self.pool = pool
        self.connections = connections
        self.status = status

    def execute(self) -> dict[str, Any]:
        response: dict[str, Any] = {
            "plugin_processes": self.pool.plugin_processes(),
            "cached_servers": len(self.registry.cached_servers),
            "cached_kernels": len(self.pool.cached_kernels),
            "connections": {plugin_id: c.state.value for plugin_id, c in self.connections.items()},
        }
        if self.status is not None:
            response["status"] = self.status.current
            response["log"] = list(self.status.history)
        return response

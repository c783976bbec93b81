from typing import Any

from jupyter_engine.frameworks_drivers.connection import Connection
from jupyter_engine.shared.errors import PluginNotFoundError


class ExecutePlugin:
    def __init__(self, connections: dict[str, Connection]):
        self.connections = connections

    async def execute(self, plugin_id: str, code: Any) -> dict:
        connection = self.connections.get(plugin_id)
        if connection is None:
            raise PluginNotFoundError(f"Plugin {plugin_id} is not running")
        return await connection.execute(code)

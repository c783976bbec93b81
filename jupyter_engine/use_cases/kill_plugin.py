from jupyter_engine.frameworks_drivers.connection import Connection
from jupyter_engine.frameworks_drivers.kernel_pool import KernelPool
from jupyter_engine.shared.errors import KernelNotFoundError, PluginNotFoundError
from jupyter_engine.shared.logger import Logger

logger = Logger.get(__name__)


class KillPlugin:
    def __init__(self, pool: KernelPool, connections: dict[str, Connection]):
        self.pool = pool
        self.connections = connections

    async def execute(self, plugin_id: str) -> list[str]:
        """Disconnect a plugin and shut down every kernel it runs in. Returns the killed kernel ids."""
        connection = self.connections.pop(plugin_id, None)
        sessions = self.pool.sessions_for_plugin(plugin_id)
        if connection is None and not sessions:
            raise PluginNotFoundError(f"Plugin {plugin_id} is not running")

        killed = []
        if connection is not None:
            killed.append(connection.session.id)
            await connection.disconnect()
        for session in sessions:
            if session.id in killed:
                continue
            try:
                await self.pool.kill(session)
            except Exception as e:
                logger.warning(f"Failed to shut down kernel {session.id} of plugin {plugin_id}: {e}")
            killed.append(session.id)
        return killed

    async def kill_process(self, pid: str) -> None:
        """Shut down one kernel by id, disconnecting the plugin running in it."""
        for plugin_id, connection in list(self.connections.items()):
            if connection.session.id == pid:
                del self.connections[plugin_id]
                await connection.disconnect()
                return
        if not await self.pool.kill_by_id(pid):
            raise KernelNotFoundError(f"No running kernel {pid}")

import asyncio
from typing import Optional

from jupyter_engine.entities.plugin import PluginConfig
from jupyter_engine.frameworks_drivers.config import Config, JupyterServerConfig
from jupyter_engine.frameworks_drivers.connection import Connection
from jupyter_engine.frameworks_drivers.kernel_pool import KernelPool
from jupyter_engine.frameworks_drivers.server_registry import ServerRegistry
from jupyter_engine.shared.logger import Logger
from jupyter_engine.shared.protocols import StatusSinkProtocol

logger = Logger.get(__name__)


class StartPlugin:
    """
    Brings a plugin up on a Jupyter server: server, kernel, requirements, worker
    handshake and plugin scripts, in that order.
    """

    def __init__(self, registry: ServerRegistry, pool: KernelPool, connections: dict[str, Connection],
                 config: Config, status: Optional[StatusSinkProtocol] = None):
        self.registry = registry
        self.pool = pool
        self.connections = connections
        self.config = config
        self.status = status

    async def execute(self, plugin: PluginConfig, engine: Optional[JupyterServerConfig] = None) -> Connection:
        engine = engine or self.config.engine

        previous = self.connections.pop(plugin.id, None)
        if previous is not None:
            logger.info(f"Plugin {plugin.id} is already running, restarting it")
            await previous.disconnect()

        kernel_spec_name = None
        if not engine.nb_url:
            if plugin.wants_gpu:
                self._log(f"Plugin {plugin.name} is tagged GPU, but servers provisioned by "
                          f"{engine.base_url} do not provide GPUs")
            spec, kernel_spec_name = plugin.binder_selection()
            if spec:
                engine = engine.model_copy(update={"spec": spec})
            logger.info(f"Starting server with binder spec {engine.spec}")

        settings = await self.registry.get_or_provision(engine)
        self._log(f"Connected to Jupyter server: {settings.base_url}")

        session = await self.pool.get_or_start(plugin.name, settings, plugin.requirements,
                                               kernel_spec_name=kernel_spec_name,
                                               conda_available=self.config.conda_available)
        session.plugin_id = plugin.id
        session.plugin_name = plugin.name
        logger.info(f"Kernel {session.id} runs plugin {plugin.name} ({plugin.id})")

        connection = Connection(plugin.id, session, self.config.worker, self.config.reconnect,
                                status=self.status, session_killer=self.pool.kill)
        connection.on_logging(lambda details: self._log(f"[{plugin.name}] {details}"))
        connection.on_disconnect(lambda details: self._release(plugin.id, connection))
        session.on_close(lambda: self._release(plugin.id, connection))
        self.connections[plugin.id] = connection

        try:
            await connection.connect()
            await connection.wait_ready()
            self._show_status(f"Executing plugin script for {plugin.name}...")
            for script in plugin.scripts:
                await connection.execute(script.to_payload())
        except Exception as e:
            logger.error(f"Failed to start plugin {plugin.name} ({plugin.id}): {e}")
            if self.connections.get(plugin.id) is connection:
                del self.connections[plugin.id]
            await connection.disconnect()
            raise

        self._log(f"Plugin {plugin.name} is ready.")
        self._show_status(f"Plugin {plugin.name} is ready.")
        return connection

    def _release(self, plugin_id: str, connection: Connection) -> None:
        if self.connections.get(plugin_id) is connection:
            del self.connections[plugin_id]
            logger.info(f"Plugin {plugin_id} disconnected")
            asyncio.ensure_future(connection.disconnect())

    def _log(self, message: str) -> None:
        if self.status is not None:
            self.status.log(message)
        else:
            logger.info(message)

    def _show_status(self, message: str) -> None:
        if self.status is not None:
            self.status.show_status(message)

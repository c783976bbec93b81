from typing import Optional

from jupyter_engine.entities.server_entry import ServerEntry
from jupyter_engine.entities.server_settings import ServerSettings
from jupyter_engine.frameworks_drivers.config import JupyterServerConfig
from jupyter_engine.frameworks_drivers.file_manager import ServerFileManager
from jupyter_engine.shared.health_checker import HealthChecker
from jupyter_engine.shared.logger import Logger
from jupyter_engine.shared.protocols import (
    CacheStoreProtocol,
    KernelTransportProtocol,
    ProvisionerProtocol,
    StatusSinkProtocol,
)

logger = Logger.get(__name__)


class ServerRegistry:
    """
    Cache of known Jupyter servers keyed by the fingerprint of their configuration.

    Cached servers are reused after a liveness probe; dead ones are evicted and a new
    server is requested from the provisioner.
    """

    def __init__(self, store: CacheStoreProtocol, provisioner: ProvisionerProtocol,
                 transport: KernelTransportProtocol, status: Optional[StatusSinkProtocol] = None,
                 probe_timeout: float = 5.0):
        self.store = store
        self.provisioner = provisioner
        self.transport = transport
        self.status = status
        self.probe_timeout = probe_timeout
        self.cached_servers: dict[str, ServerEntry] = {}
        self.file_managers: dict[str, ServerFileManager] = {}

    def load(self) -> None:
        self.cached_servers = {}
        for fingerprint, record in self.store.load().items():
            try:
                self.cached_servers[fingerprint] = ServerEntry(**record)
            except (TypeError, ValueError) as e:
                logger.warning(f"Dropping malformed server cache entry {fingerprint}: {e}")
        logger.info(f"cached servers: {list(self.cached_servers)}")

    def save(self) -> None:
        self.store.save({k: entry.model_dump() for k, entry in self.cached_servers.items()})

    async def prune_dead(self) -> list[str]:
        """Probe every cached server once and drop the ones that do not answer."""
        removed = []
        for fingerprint, entry in list(self.cached_servers.items()):
            if not await HealthChecker.check_jupyter_server(entry.settings(), self.probe_timeout):
                logger.info(f"Removing unreachable cached server {entry.url}")
                del self.cached_servers[fingerprint]
                removed.append(fingerprint)
        if removed:
            self.save()
        return removed

    async def get_or_provision(self, config: JupyterServerConfig) -> ServerSettings:
        """
        Return settings of a live server for ``config``, provisioning one when needed.

        Raises:
            ProvisioningError: propagated unchanged from the provisioner.
        """
        fingerprint = config.fingerprint()
        settings = await self._reuse(fingerprint)

        if settings is None:
            credentials = await self.provisioner.provision(config, self._progress)
            self.cached_servers[fingerprint] = ServerEntry(url=credentials["url"], token=credentials["token"])
            self.save()
            settings = self.cached_servers[fingerprint].settings()
            self._log(f"New server started: {settings.base_url}")

        self._register_file_manager(settings)
        return settings

    async def _reuse(self, fingerprint: str) -> Optional[ServerSettings]:
        entry = self.cached_servers.get(fingerprint)
        if entry is None:
            return None
        settings = entry.settings()
        try:
            specs = await self.transport.get_specs(settings)
        except Exception as e:
            logger.info(f"failed to reuse an existing server ({e}), will start another one.")
            self.cached_servers.pop(fingerprint, None)
            self.save()
            return None
        logger.debug(f"reusing an existing server: {settings.base_url} {list(specs.get('kernelspecs', {}))}")
        self._log(f"Connected to an existing server: {settings.base_url}")
        return settings

    def _register_file_manager(self, settings: ServerSettings) -> None:
        if settings.base_url in self.file_managers:
            return
        manager = ServerFileManager(settings)
        self.file_managers[settings.base_url] = manager
        logger.info(f"Registered file manager {manager.name} for {settings.base_url}")

    def get_file_manager(self, url: str) -> Optional[ServerFileManager]:
        return self.file_managers.get(url) or self.file_managers.get(url + "/")

    def _progress(self, message: str) -> None:
        self._log(message)
        if self.status is not None:
            self.status.show_status(message)

    def _log(self, message: str) -> None:
        if self.status is not None:
            self.status.log(message)
        else:
            logger.info(message)

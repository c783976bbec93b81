from __future__ import annotations

from typing import Optional

from jupyter_engine.entities.kernel_entry import KernelEntry, KernelStatus
from jupyter_engine.entities.server_settings import ServerSettings
from jupyter_engine.frameworks_drivers.requirement_installer import RequirementInstaller
from jupyter_engine.shared.errors import KernelNotFoundError, StaleMappingError
from jupyter_engine.shared.logger import Logger
from jupyter_engine.shared.protocols import (
    CacheStoreProtocol,
    KernelSessionProtocol,
    KernelTransportProtocol,
    PluginProcessDTO,
    StatusSinkProtocol,
)

logger = Logger.get(__name__)


class KernelPool:
    """
    Cache of kernel sessions keyed by a logical key (typically a plugin name).

    ``cached_kernels`` is the persisted key -> {baseUrl, token, kernelId} map;
    ``kernels`` holds the live handles, at most one per kernel id.
    """

    def __init__(self, store: CacheStoreProtocol, transport: KernelTransportProtocol,
                 installer: RequirementInstaller, status: Optional[StatusSinkProtocol] = None):
        self.store = store
        self.transport = transport
        self.installer = installer
        self.status = status
        self.cached_kernels: dict[str, KernelEntry] = {}
        self.kernels: dict[str, KernelSessionProtocol] = {}

    def load(self) -> None:
        self.cached_kernels = {}
        for key, record in self.store.load().items():
            try:
                self.cached_kernels[key] = KernelEntry(**record)
            except (TypeError, ValueError) as e:
                logger.warning(f"Dropping malformed kernel cache entry {key}: {e}")
        logger.info(f"kernels loaded: {list(self.cached_kernels)}")

    def save(self) -> None:
        self.store.save({k: entry.model_dump(by_alias=True) for k, entry in self.cached_kernels.items()})

    def evict(self, key: str, persist: bool = True) -> None:
        if self.cached_kernels.pop(key, None) is not None and persist:
            self.save()

    async def get_or_start(self, key: str, settings: ServerSettings, requirements: str | list[str] | None = None,
                           kernel_spec_name: Optional[str] = None,
                           conda_available: bool = True) -> KernelSessionProtocol:
        """Reuse the cached kernel for ``key`` or start (and prepare) a new one."""
        try:
            session = await self.reuse(key, settings)
            logger.info(f"Connected to cached kernel {session.id} for {key}")
            return session
        except Exception as e:
            logger.info(f"No cached kernel, starting a new kernel: {e}")
        session = await self.start(key, settings, kernel_spec_name)
        await self.installer.install(session, requirements, conda_available)
        return session

    async def reuse(self, key: str, settings: Optional[ServerSettings] = None) -> KernelSessionProtocol:
        """
        Resolve the cached kernel for ``key``.

        Raises:
            KernelNotFoundError: no cache entry, or the server no longer knows the kernel.
            StaleMappingError: the entry belongs to other server settings than ``settings``.
        """
        entry = self.cached_kernels.get(key)
        if entry is None:
            raise KernelNotFoundError(f"kernel not found: {key}")
        if settings is not None and not entry.matches(settings):
            raise StaleMappingError(f"server settings mismatch for {key}: cached {entry.base_url}, "
                                    f"requested {settings.base_url}")

        live = self.kernels.get(entry.kernel_id)
        if live is not None and live.status == KernelStatus.IDLE:
            logger.debug(f"reusing a running kernel {entry.kernel_id}")
            return live

        server_settings = entry.settings()
        model = await self.transport.find_by_id(entry.kernel_id, server_settings)
        session = await self.transport.connect_to(model, server_settings)
        await self._install_handle(session)
        return session

    async def check_alive(self, key: str) -> None:
        """
        Confirm that the server still knows the cached kernel for ``key``.

        A live handle that is not dead is never replaced here: the kernel is only
        looked up over REST so running executes and comms keep their channels.
        Without such a handle the kernel is resolved through ``reuse``.
        """
        entry = self.cached_kernels.get(key)
        if entry is None:
            raise KernelNotFoundError(f"kernel not found: {key}")
        live = self.kernels.get(entry.kernel_id)
        if live is not None and live.status != KernelStatus.DEAD:
            await self.transport.find_by_id(entry.kernel_id, entry.settings())
            return
        await self.reuse(key)

    async def start(self, key: str, settings: ServerSettings,
                    kernel_spec_name: Optional[str] = None) -> KernelSessionProtocol:
        if not kernel_spec_name:
            specs = await self.transport.get_specs(settings)
            kernel_spec_name = specs["default"]
        logger.info(f"Starting kernel with spec: {kernel_spec_name}")
        try:
            session = await self.transport.start_new(kernel_spec_name, settings)
        except Exception as e:
            logger.error(f"Error in kernel initialization: {e}")
            raise
        await self._install_handle(session)
        self.cached_kernels[key] = KernelEntry.for_kernel(settings, session.id)
        self.save()
        self._log(f"Kernel started: {session.id}")
        return session

    async def _install_handle(self, session: KernelSessionProtocol) -> None:
        stale = self.kernels.get(session.id)
        if stale is not None and stale is not session:
            logger.info(f"Replacing the live handle of kernel {session.id}")
            await self._dispose_quietly(stale)
        self.kernels[session.id] = session
        session.on_close(lambda: self._forget(session))

    def _forget(self, session: KernelSessionProtocol) -> None:
        if self.kernels.get(session.id) is session:
            del self.kernels[session.id]

    async def _dispose_quietly(self, session: KernelSessionProtocol) -> None:
        try:
            await session.dispose()
        except Exception as e:
            logger.warning(f"Failed to dispose stale handle of kernel {session.id}: {e}")

    async def kill(self, session: KernelSessionProtocol) -> None:
        """Shut a kernel down; the live handle is dropped even if the server call fails."""
        logger.info(f"shutting down kernel: {session.id}")
        try:
            await session.shutdown()
        finally:
            self._forget(session)

    async def kill_by_id(self, kernel_id: str) -> bool:
        session = self.kernels.get(kernel_id)
        if session is None:
            return False
        await self.kill(session)
        return True

    def sessions_for_plugin(self, plugin_id: str) -> list[KernelSessionProtocol]:
        return [s for s in self.kernels.values() if s.plugin_id == plugin_id]

    def plugin_processes(self) -> list[PluginProcessDTO]:
        return [{"name": s.plugin_name or s.name, "pid": s.id} for s in self.kernels.values()]

    def _log(self, message: str) -> None:
        if self.status is not None:
            self.status.log(message)
        else:
            logger.info(message)

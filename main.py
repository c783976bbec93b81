import os

import uvicorn

from jupyter_engine.frameworks_drivers.binder_provisioner import BinderProvisioner
from jupyter_engine.frameworks_drivers.cache_store import create_cache_stores
from jupyter_engine.frameworks_drivers.config import Config
from jupyter_engine.frameworks_drivers.heartbeat_monitor import HeartbeatMonitor
from jupyter_engine.frameworks_drivers.jupyter_transport import JupyterKernelTransport
from jupyter_engine.frameworks_drivers.kernel_pool import KernelPool
from jupyter_engine.frameworks_drivers.requirement_installer import RequirementInstaller
from jupyter_engine.frameworks_drivers.server_registry import ServerRegistry
from jupyter_engine.interface_adapters.api import API
from jupyter_engine.shared.logger import Logger
from jupyter_engine.shared.status import LoggingStatusSink

NB_URL_ENV = "JUPYTER_ENGINE_NB_URL"

if __name__ == "__main__":
    logger = Logger.get(__name__)

    try:
        config = Config.load()

        # Use a running notebook server instead of provisioning one
        if NB_URL_ENV in os.environ:
            config.engine.nb_url = os.environ[NB_URL_ENV]

        # Instantiate dependencies
        status = LoggingStatusSink()
        server_store, kernel_store = create_cache_stores(config.cache_dir)
        transport = JupyterKernelTransport(timeout=config.request_timeout)
        provisioner = BinderProvisioner(timeout=config.request_timeout)
        registry = ServerRegistry(server_store, provisioner, transport, status)
        installer = RequirementInstaller(status)
        pool = KernelPool(kernel_store, transport, installer, status)
        heartbeat = HeartbeatMonitor(pool, config.heartbeat_interval)

        # Instantiate API
        api = API(config, registry, pool, heartbeat, status)

        logger.info("Starting Jupyter Engine Manager...")
        # Start the uvicorn server
        uvicorn.run(api.app, host=config.server.host, port=config.server.port)
    except Exception as e:
        logger.error(f"Failed to start server: {e}")
        raise

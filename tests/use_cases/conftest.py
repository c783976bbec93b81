"""
Fixtures wiring the use cases onto in-memory fakes of the Jupyter server.
"""
import pytest

from jupyter_engine.entities.plugin import PluginConfig
from jupyter_engine.frameworks_drivers.config import Config
from jupyter_engine.frameworks_drivers.kernel_pool import KernelPool
from jupyter_engine.frameworks_drivers.requirement_installer import RequirementInstaller
from jupyter_engine.frameworks_drivers.server_registry import ServerRegistry
from jupyter_engine.use_cases.start_plugin import StartPlugin


@pytest.fixture
def engine_config():
    return Config(cache_dir=None, conda_available=False)


@pytest.fixture
def registry(server_store, fake_provisioner, worker_transport, status_sink):
    return ServerRegistry(server_store, fake_provisioner, worker_transport, status_sink)


@pytest.fixture
def pool(kernel_store, worker_transport, status_sink):
    return KernelPool(kernel_store, worker_transport, RequirementInstaller(status_sink), status_sink)


@pytest.fixture
def connections():
    return {}


@pytest.fixture
def start_plugin(registry, pool, connections, engine_config, status_sink):
    return StartPlugin(registry, pool, connections, engine_config, status_sink)


@pytest.fixture
def plugin():
    return PluginConfig(
        id="p1",
        name="Demo",
        requirements=["numpy", "conda: scipy"],
        scripts=[{"content": "api.export(Demo())"}],
    )

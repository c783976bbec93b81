"""
Test configuration and fixtures for jupyter engine tests.

The fakes below stand in for the Jupyter server: ``FakeTransport`` plays the REST API,
``FakeSession`` a kernel handle and ``FakeChannel`` a comm.
"""
import asyncio
import itertools
import json
import shutil
import tempfile
from pathlib import Path

import pytest

from jupyter_engine.entities.kernel_entry import KernelStatus
from jupyter_engine.entities.server_settings import ServerSettings
from jupyter_engine.frameworks_drivers.cache_store import MemoryCacheStore
from jupyter_engine.shared.errors import ChannelLost, ExecutionFailure, KernelNotFoundError, LivenessFailure
from jupyter_engine.shared.status import LoggingStatusSink


class FakeChannel:
    def __init__(self, target_name: str = "imjoy_comm_test"):
        self.target_name = target_name
        self.sent = []
        self.closed = False
        self._disposed = False
        self._msg_handler = None
        self._close_handler = None

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def on_msg(self, handler):
        self._msg_handler = handler

    def on_close(self, handler):
        self._close_handler = handler

    async def send(self, data):
        if self._disposed:
            raise ChannelLost(f"{self.target_name} is closed")
        self.sent.append(data)

    async def close(self):
        self._disposed = True
        self.closed = True

    def emit(self, data):
        """Deliver a message from the worker."""
        self._msg_handler(data)

    def remote_close(self, msg=None):
        """Simulate the comm being closed by the kernel."""
        self._disposed = True
        if self._close_handler is not None:
            self._close_handler(msg)


class FakeSession:
    def __init__(self, kernel_id: str = "kernel-1", name: str = "python3", status: KernelStatus = KernelStatus.IDLE):
        self.id = kernel_id
        self.name = name
        self.status = status
        self.plugin_id = None
        self.plugin_name = None
        self.executed = []
        self.outputs = []
        self.fail_on = None
        self.open_comm_on_start = True
        self.comm_targets = {}
        self.comm_requests = []
        self.channels = []
        self.reconnect_count = 0
        self.reconnect_error = None
        self.dispose_count = 0
        self.shutdown_count = 0
        self.close_handlers = []

    async def execute(self, code, on_output=None):
        self.executed.append(code)
        if self.fail_on is not None and self.fail_on in code:
            raise ExecutionFailure(f"failed: {code}", ename="Error", evalue="boom")
        if on_output is not None:
            for msg in self.outputs:
                on_output(msg)
        if "add_plugin" in code and self.open_comm_on_start:
            for target_name, callback in list(self.comm_targets.items()):
                channel = FakeChannel(target_name)
                self.channels.append(channel)
                callback(channel, {})
        return {"status": "ok"}

    def register_comm_target(self, target_name, callback):
        self.comm_targets[target_name] = callback

    async def connect_to_comm(self, target_name):
        self.comm_requests.append(target_name)
        channel = FakeChannel(target_name)
        self.channels.append(channel)
        return channel

    async def reconnect(self):
        self.reconnect_count += 1
        if self.reconnect_error is not None:
            raise self.reconnect_error

    async def dispose(self):
        self.dispose_count += 1

    async def shutdown(self):
        self.shutdown_count += 1
        self.status = KernelStatus.DEAD
        handlers, self.close_handlers = self.close_handlers, []
        for handler in handlers:
            handler()

    def on_close(self, handler):
        self.close_handlers.append(handler)


class WorkerChannel(FakeChannel):
    """Comm of a worker that answers every execute request."""

    def __init__(self, target_name: str = "imjoy_comm_test", fail_on: str = None):
        super().__init__(target_name)
        self.fail_on = fail_on

    async def send(self, data):
        await super().send(data)
        request = data.get("data") or {}
        if request.get("type") == "execute":
            if self.fail_on is not None and self.fail_on in str(request["code"]):
                reply = {"type": "executeFailure", "id": request["id"], "error": "script error"}
            else:
                reply = {"type": "executeSuccess", "id": request["id"]}
            asyncio.get_running_loop().call_soon(self.emit, reply)


class WorkerSession(FakeSession):
    """Kernel whose worker opens its comm and completes the handshake on its own."""

    script_fail_on = None

    async def execute(self, code, on_output=None):
        self.executed.append(code)
        if self.fail_on is not None and self.fail_on in code:
            raise ExecutionFailure(f"failed: {code}", ename="Error", evalue="boom")
        if "add_plugin" in code:
            for target_name, callback in list(self.comm_targets.items()):
                channel = WorkerChannel(target_name, self.script_fail_on)
                self.channels.append(channel)
                callback(channel, {})
                asyncio.get_running_loop().call_soon(channel.emit, {"type": "initialized"})
        return {"status": "ok"}


class FakeTransport:
    """In-memory Jupyter server: ``kernels`` holds the kernels the server knows about."""

    def __init__(self, default_spec: str = "python3", session_class=FakeSession):
        self.default_spec = default_spec
        self.session_class = session_class
        self.kernels = {}
        self.sessions = []
        self.start_calls = []
        self.find_calls = []
        self.connect_calls = []
        self.spec_calls = 0
        self.specs_error = None
        self._ids = itertools.count(1)

    async def get_specs(self, settings):
        self.spec_calls += 1
        if self.specs_error is not None:
            raise self.specs_error
        return {"default": self.default_spec, "kernelspecs": {self.default_spec: {}}}

    async def find_by_id(self, kernel_id, settings):
        self.find_calls.append(kernel_id)
        if kernel_id not in self.kernels:
            raise KernelNotFoundError(f"Kernel {kernel_id} not found")
        return self.kernels[kernel_id]

    async def connect_to(self, model, settings):
        self.connect_calls.append(model["id"])
        session = self.session_class(model["id"], model.get("name", ""))
        self.sessions.append(session)
        return session

    async def start_new(self, name, settings):
        kernel_id = f"kernel-{next(self._ids)}"
        self.start_calls.append(name)
        self.kernels[kernel_id] = {"id": kernel_id, "name": name, "execution_state": "idle"}
        session = self.session_class(kernel_id, name)
        self.sessions.append(session)
        return session


class FakeProvisioner:
    def __init__(self, url: str = "https://hub.example.org/user/abc/", token: str = "tok"):
        self.url = url
        self.token = token
        self.calls = []
        self.error = None

    async def provision(self, config, on_progress=None):
        self.calls.append(config)
        if self.error is not None:
            raise self.error
        if on_progress is not None:
            on_progress("Launching server...")
        return {"url": self.url, "token": self.token}


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    temp_path = tempfile.mkdtemp()
    yield Path(temp_path)
    shutil.rmtree(temp_path)


@pytest.fixture
def sample_config_data():
    """Sample configuration data for testing."""
    return {
        "server": {
            "host": "127.0.0.1",
            "port": 9000
        },
        "engine": {
            "name": "Test Engine",
            "spec": "org/repo/main",
            "base_url": "https://binder.example.org",
            "provider": "gh"
        },
        "reconnect": {
            "max_attempts": 3,
            "backoff": 0.5
        },
        "heartbeat_interval": 2.0,
        "cache_dir": None,
        "conda_available": False
    }


@pytest.fixture
def config_file(temp_dir, sample_config_data):
    """Create a temporary config file."""
    config_path = temp_dir / "config.json"
    with open(config_path, 'w') as f:
        json.dump(sample_config_data, f, indent=2)
    return str(config_path)


@pytest.fixture
def settings():
    return ServerSettings(base_url="http://localhost:8888/", token="secret")


@pytest.fixture
def other_settings():
    return ServerSettings(base_url="http://otherhost:8888/", token="secret")


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def fake_provisioner():
    return FakeProvisioner()


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def fake_session_factory():
    return FakeSession


@pytest.fixture
def server_store():
    return MemoryCacheStore()


@pytest.fixture
def kernel_store():
    return MemoryCacheStore()


@pytest.fixture
def status_sink():
    return LoggingStatusSink()


@pytest.fixture
def liveness_failure():
    return LivenessFailure("server did not answer")


@pytest.fixture
def worker_session_class():
    return WorkerSession


@pytest.fixture
def worker_transport():
    """Transport whose kernels run a responsive worker."""
    return FakeTransport(session_class=WorkerSession)

from typing import Any, Awaitable, Callable, Optional, Protocol, TypedDict, TYPE_CHECKING

if TYPE_CHECKING:
    from jupyter_engine.entities.kernel_entry import KernelStatus
    from jupyter_engine.entities.server_settings import ServerSettings
    from jupyter_engine.frameworks_drivers.config import JupyterServerConfig


class ServerCredentials(TypedDict):
    url: str
    token: str


class KernelSpecsDTO(TypedDict):
    default: str
    kernelspecs: dict


class KernelModelDTO(TypedDict, total=False):
    id: str
    name: str
    execution_state: str


class PluginProcessDTO(TypedDict):
    name: str
    pid: str


OutputCallback = Callable[[dict], None]


class StatusSinkProtocol(Protocol):
    def log(self, message: str) -> None: ...

    def show_status(self, message: str) -> None: ...


class ChannelProtocol(Protocol):
    """A named, bidirectional message pipe multiplexed over one kernel session."""

    @property
    def is_disposed(self) -> bool: ...

    async def send(self, data: Any) -> None: ...

    def on_msg(self, handler: Callable[[Any], None]) -> None: ...

    def on_close(self, handler: Callable[[Any], None]) -> None: ...

    async def close(self) -> None: ...


class KernelSessionProtocol(Protocol):
    """A live handle on one remote kernel."""

    id: str
    name: str
    status: 'KernelStatus'
    plugin_id: Optional[str]
    plugin_name: Optional[str]

    async def execute(self, code: str, on_output: Optional[OutputCallback] = None) -> dict: ...

    def register_comm_target(self, target_name: str,
                             callback: Callable[[ChannelProtocol, dict], None]) -> None: ...

    async def connect_to_comm(self, target_name: str) -> ChannelProtocol: ...

    async def reconnect(self) -> None: ...

    async def dispose(self) -> None: ...

    async def shutdown(self) -> None: ...

    def on_close(self, handler: Callable[[], Any]) -> None: ...


class KernelTransportProtocol(Protocol):
    async def get_specs(self, settings: 'ServerSettings') -> KernelSpecsDTO: ...

    async def find_by_id(self, kernel_id: str, settings: 'ServerSettings') -> KernelModelDTO: ...

    async def connect_to(self, model: KernelModelDTO, settings: 'ServerSettings') -> KernelSessionProtocol: ...

    async def start_new(self, name: str, settings: 'ServerSettings') -> KernelSessionProtocol: ...


class ProvisionerProtocol(Protocol):
    async def provision(self, config: 'JupyterServerConfig',
                        on_progress: Optional[Callable[[str], None]] = None) -> ServerCredentials: ...


class CacheStoreProtocol(Protocol):
    def load(self) -> dict[str, dict]: ...

    def save(self, records: dict[str, dict]) -> None: ...


SessionKiller = Callable[[KernelSessionProtocol], Awaitable[None]]

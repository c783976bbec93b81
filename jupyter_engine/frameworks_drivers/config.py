import json
from pathlib import Path
from typing import Iterator, Optional

from pydantic import BaseModel, Field

DEFAULT_BASE_URL = "https://mybinder.org"
DEFAULT_PROVIDER = "gh"
DEFAULT_SPEC = "oeway/imjoy-binder-image/master"


class ServerConfig(BaseModel):
    """Configuration for the engine's HTTP API.

    Attributes:
        host: Host for the API server.
        port: Port for the API server.
    """

    host: str = Field("0.0.0.0", description="Host for the API server")
    port: int = Field(8000, ge=1, le=65535, description="Port for the API server")


class JupyterServerConfig(BaseModel):
    """Logical configuration of a Jupyter server, either provisioned by a BinderHub or reached directly.

    Attributes:
        name: Display name of the engine.
        spec: Binder specification (GITHUB_USER/GITHUB_REPO/BRANCH).
        base_url: BinderHub URL.
        provider: BinderHub repository provider.
        nb_url: Direct notebook URL with token; skips provisioning when set.
    """

    name: Optional[str] = Field(None, description="Display name of the engine")
    spec: str = Field(DEFAULT_SPEC, description="Binder specification (GITHUB_USER/GITHUB_REPO/BRANCH)")
    base_url: str = Field(DEFAULT_BASE_URL, description="BinderHub URL")
    provider: str = Field(DEFAULT_PROVIDER, description="BinderHub repository provider")
    nb_url: Optional[str] = Field(None, description="Direct notebook URL with token; skips provisioning when set")

    def fingerprint(self) -> str:
        """Stable serialization used as the server cache key."""
        return json.dumps(
            {
                "name": self.name,
                "spec": self.spec,
                "baseUrl": self.base_url,
                "provider": self.provider,
                "nbUrl": self.nb_url,
            },
            separators=(",", ":"),
        )


class ReconnectPolicy(BaseModel):
    """Retry policy for re-opening a lost plugin channel.

    Attributes:
        max_attempts: Attempts per reconnection (1 = a single retry, no backoff).
        backoff: Delay in seconds before the second attempt.
        factor: Multiplier applied to the delay after each further attempt.
        max_delay: Upper bound for a single delay in seconds.
    """

    max_attempts: int = Field(1, ge=1, description="Attempts per reconnection")
    backoff: float = Field(1.0, ge=0, description="Delay in seconds before the second attempt")
    factor: float = Field(2.0, ge=1, description="Multiplier applied to the delay after each further attempt")
    max_delay: float = Field(30.0, ge=0, description="Upper bound for a single delay in seconds")

    def delays(self) -> Iterator[float]:
        """Seconds to wait before each attempt; the first attempt is immediate."""
        delay = self.backoff
        for attempt in range(self.max_attempts):
            if attempt == 0:
                yield 0.0
                continue
            yield min(delay, self.max_delay)
            delay *= self.factor


class WorkerConfig(BaseModel):
    """Configuration of the protocol worker installed into every kernel.

    Attributes:
        package: pip package providing the worker.
        comm_prefix: Prefix of the comm target name registered per client id.
    """

    package: str = Field("imjoy", description="pip package providing the worker")
    comm_prefix: str = Field("imjoy_comm_", description="Prefix of the comm target name registered per client id")


class Config(BaseModel):
    """Main configuration class.

    Attributes:
        server: Configuration for the HTTP API.
        engine: The Jupyter server the engine runs plugins on.
        worker: Protocol worker settings.
        reconnect: Channel reconnection policy.
        heartbeat_interval: Seconds between two kernel cache sweeps.
        cache_dir: Directory of the persisted server/kernel caches (None keeps them in memory).
        request_timeout: Timeout for REST requests to Jupyter servers and BinderHub.
        conda_available: Whether conda requirements are installed in new kernels.
    """

    server: ServerConfig = Field(default_factory=ServerConfig)
    engine: JupyterServerConfig = Field(default_factory=JupyterServerConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    reconnect: ReconnectPolicy = Field(default_factory=ReconnectPolicy)
    heartbeat_interval: float = Field(5.0, gt=0, description="Seconds between two kernel cache sweeps")
    cache_dir: Optional[str] = Field("~/.jupyter_engine", description="Directory of the persisted caches")
    request_timeout: float = Field(30.0, gt=0, description="Timeout for REST requests")
    conda_available: bool = Field(True, description="Whether conda requirements are installed in new kernels")

    @classmethod
    def load(cls, config_path: str = "config.json") -> "Config":
        """Load and validate configuration from JSON file."""
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(path) as f:
            data = json.load(f)

        return cls(**data)

import json
from typing import Callable, Optional
from urllib.parse import parse_qs, urlparse

import httpx

from jupyter_engine.frameworks_drivers.config import JupyterServerConfig
from jupyter_engine.shared.errors import ProvisioningError
from jupyter_engine.shared.logger import Logger
from jupyter_engine.shared.protocols import ServerCredentials

logger = Logger.get(__name__)

UI_SEGMENTS = {"tree", "lab", "notebooks"}


class BinderProvisioner:
    """
    Allocates Jupyter servers from a BinderHub, or resolves a direct notebook URL.

    Args:
        timeout: Connect/write timeout in seconds; reads are unbounded while the image builds.
        http_transport: Optional httpx transport (tests inject an httpx.MockTransport).
    """

    def __init__(self, timeout: float = 30.0, http_transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self.http_transport = http_transport

    async def provision(self, config: JupyterServerConfig,
                        on_progress: Optional[Callable[[str], None]] = None) -> ServerCredentials:
        if config.nb_url:
            return self.parse_notebook_url(config.nb_url)
        return await self._build(config, on_progress or (lambda message: None))

    @staticmethod
    def parse_notebook_url(nb_url: str) -> ServerCredentials:
        """Split ``http://host:8888/lab?token=abc`` into its server URL and token."""
        parsed = urlparse(nb_url)
        if not parsed.scheme or not parsed.netloc:
            raise ProvisioningError(f"Invalid notebook URL: {nb_url}")
        token = parse_qs(parsed.query).get("token", [""])[0]
        if not token:
            raise ProvisioningError("The notebook URL needs to contain the connection token, e.g. ?token=...")
        segments = [s for s in parsed.path.split("/") if s]
        if segments and segments[-1] in UI_SEGMENTS:
            segments.pop()
        path = "/" + "/".join(segments) + ("/" if segments else "")
        return {"url": f"{parsed.scheme}://{parsed.netloc}{path}", "token": token}

    def build_url(self, config: JupyterServerConfig) -> str:
        return f"{config.base_url.rstrip('/')}/build/{config.provider}/{config.spec}"

    async def _build(self, config: JupyterServerConfig, on_progress: Callable[[str], None]) -> ServerCredentials:
        url = self.build_url(config)
        logger.info(f"Requesting a server from {url}")
        timeout = httpx.Timeout(self.timeout, read=None)
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self.http_transport) as client:
                async with client.stream("GET", url, headers={"Accept": "text/event-stream"}) as response:
                    response.raise_for_status()
                    async for line in response.aiter_lines():
                        event = self._parse_event(line)
                        if event is None:
                            continue
                        phase = event.get("phase")
                        if event.get("message"):
                            on_progress(event["message"].rstrip())
                        else:
                            logger.debug(f"binder event: {event}")
                        if phase == "ready":
                            if not event.get("url"):
                                raise ProvisioningError(f"BinderHub reported {config.spec} ready without a server url")
                            return {"url": event["url"], "token": event.get("token", "")}
                        if phase == "failed":
                            raise ProvisioningError(f"Binder build failed for {config.spec}: "
                                                    f"{event.get('message', 'no details')}")
        except httpx.HTTPError as e:
            raise ProvisioningError(f"Could not reach BinderHub at {config.base_url}: {e}") from e
        raise ProvisioningError(f"BinderHub closed the event stream before {config.spec} was ready")

    @staticmethod
    def _parse_event(line: str) -> Optional[dict]:
        if not line.startswith("data:"):
            return None
        try:
            event = json.loads(line[len("data:"):].strip())
        except json.JSONDecodeError:
            logger.warning(f"Ignoring malformed binder event: {line}")
            return None
        return event if isinstance(event, dict) else None

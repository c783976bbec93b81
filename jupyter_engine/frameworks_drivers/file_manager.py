from typing import Any, Optional
from urllib.parse import quote, urlparse

import httpx

from jupyter_engine.entities.server_settings import ServerSettings
from jupyter_engine.shared.errors import OperationNotSupportedError
from jupyter_engine.shared.health_checker import HealthChecker
from jupyter_engine.shared.logger import Logger

logger = Logger.get(__name__)


def _encode(path: str) -> str:
    return quote(path, safe="~()*!.'")


class ServerFileManager:
    """Read-only file browsing capability derived from an acquired server."""

    def __init__(self, settings: ServerSettings, timeout: float = 30.0,
                 http_transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.url = settings.base_url
        self.timeout = timeout
        self.http_transport = http_transport
        parsed = urlparse(self.url)
        self.name = parsed.hostname if parsed.path in ("", "/") else parsed.path

    def describe(self) -> dict[str, str]:
        return {"type": "file-manager", "name": self.name, "url": self.url}

    def _with_token(self, url: str) -> str:
        return f"{url}?token={quote(self.settings.token, safe='')}"

    async def list_files(self, root: str = "", type: Optional[str] = None, recursive: bool = False) -> dict[str, Any]:
        file_url = self._with_token(f"{self.url}api/contents/{_encode(root)}")
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.http_transport) as client:
            response = await client.get(file_url)
            response.raise_for_status()
            files = response.json()
        files["children"] = files.get("content")
        logger.debug(f"Listed files under '{root}' on {self.url}")
        return files

    def get_file_url(self, path: str) -> str:
        return self._with_token(f"{self.url}view/{_encode(path)}")

    async def heartbeat(self) -> bool:
        return await HealthChecker.check_jupyter_server(self.settings, self.timeout)

    def put_file(self, *args, **kwargs):
        raise OperationNotSupportedError("File upload is not supported")

    def request_upload_url(self, *args, **kwargs):
        raise OperationNotSupportedError("File upload is not supported")

    def remove_files(self, *args, **kwargs):
        raise OperationNotSupportedError("Removing files is not supported")

import asyncio
from typing import Optional

import requests

from jupyter_engine.entities.server_settings import ServerSettings
from jupyter_engine.shared.logger import Logger

logger = Logger.get(__name__)


class HealthChecker:
    """
    Utility class for performing liveness probes on Jupyter servers.
    The probe fetches the kernel-spec listing, which every live server answers cheaply.
    """

    @staticmethod
    async def check_http_endpoint(url: str, headers: Optional[dict] = None, timeout: float = 5.0) -> bool:
        """
        Check if an HTTP endpoint is responding with a successful status code.

        Args:
            url: The full URL to probe
            headers: Optional request headers (e.g. the authorization token)
            timeout: Request timeout in seconds

        Returns:
            True if the endpoint responds with 200 status, False otherwise
        """
        try:
            response = await asyncio.to_thread(
                requests.get, url, headers=headers or {}, timeout=timeout,
            )
            if response.status_code == 200:
                logger.debug(f"Health check passed for {url}")
                return True
            else:
                logger.warning(f"Health check failed for {url}: status {response.status_code}")
                return False
        except Exception as e:
            logger.debug(f"Health check failed for {url}: {e}")
            return False

    @staticmethod
    async def check_jupyter_server(settings: ServerSettings, timeout: float = 5.0) -> bool:
        """
        Probe a Jupyter server by listing its kernel specs.

        Args:
            settings: Connection settings of the server
            timeout: Request timeout in seconds

        Returns:
            True if the server answered, False otherwise
        """
        return await HealthChecker.check_http_endpoint(
            settings.api_url("api/kernelspecs"), settings.headers, timeout,
        )

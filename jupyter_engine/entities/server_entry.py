from pydantic import BaseModel

from .server_settings import ServerSettings


class ServerEntry(BaseModel):
    """A cached server, stored under the fingerprint of its configuration."""

    url: str
    token: str = ""

    def settings(self) -> ServerSettings:
        return ServerSettings(base_url=self.url, token=self.token)

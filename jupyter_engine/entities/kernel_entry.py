from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from .server_settings import ServerSettings


class KernelStatus(str, Enum):
    STARTING = "starting"
    IDLE = "idle"
    BUSY = "busy"
    DEAD = "dead"


class KernelEntry(BaseModel):
    """
    A cached kernel session, stored under a caller-supplied logical key.
    Serialized with the camelCase field names of the persisted kernel map.
    """

    model_config = ConfigDict(populate_by_name=True)

    base_url: str = Field(alias="baseUrl")
    token: str = ""
    kernel_id: str = Field(alias="kernelId", min_length=1)

    @classmethod
    def for_kernel(cls, settings: ServerSettings, kernel_id: str) -> "KernelEntry":
        return cls(base_url=settings.base_url, token=settings.token, kernel_id=kernel_id)

    def settings(self) -> ServerSettings:
        return ServerSettings(base_url=self.base_url, token=self.token)

    def matches(self, settings: ServerSettings) -> bool:
        return settings.matches(self.base_url, self.token)

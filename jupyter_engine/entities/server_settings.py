from pydantic import BaseModel, ConfigDict, Field, field_validator


def base_to_ws_url(base_url: str) -> str:
    """Map an http(s) base URL onto the matching ws(s) URL."""
    scheme = "wss:" if base_url.startswith("https:") else "ws:"
    return scheme + base_url.split(":", 1)[1]


class ServerSettings(BaseModel):
    """Connection settings of one Jupyter server (base URL always ends with '/')."""

    model_config = ConfigDict(frozen=True)

    base_url: str = Field(min_length=1)
    token: str = ""

    @field_validator("base_url")
    @classmethod
    def ensure_trailing_slash(cls, v: str) -> str:
        return v if v.endswith("/") else v + "/"

    @property
    def ws_url(self) -> str:
        return base_to_ws_url(self.base_url)

    @property
    def headers(self) -> dict[str, str]:
        return {"Authorization": f"token {self.token}"} if self.token else {}

    def api_url(self, path: str) -> str:
        return self.base_url + path.lstrip("/")

    def matches(self, base_url: str, token: str) -> bool:
        return self.base_url == base_url and self.token == token

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EnvEntry(BaseModel):
    """One entry of a plugin's ``env`` list; ``binder`` entries select the server image."""

    model_config = ConfigDict(extra="allow")

    type: str
    spec: Optional[str] = None
    kernel: Optional[str] = None


class PluginScript(BaseModel):
    content: str
    lang: str = "python"
    attrs: dict[str, Any] = Field(default_factory=dict)
    src: Optional[str] = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": "script",
            "content": self.content,
            "lang": self.attrs.get("lang", self.lang),
            "attrs": self.attrs,
            "src": self.attrs.get("src", self.src),
        }


class PluginConfig(BaseModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    requirements: list[str] = Field(default_factory=list)
    env: list[EnvEntry] = Field(default_factory=list)
    scripts: list[PluginScript] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)

    @field_validator("requirements", mode="before")
    @classmethod
    def wrap_single_requirement(cls, v):
        if v is None:
            return []
        return [v] if isinstance(v, str) else v

    @field_validator("env", mode="before")
    @classmethod
    def ignore_non_list_env(cls, v):
        # Plain-text env declarations carry no binder selection.
        return v if isinstance(v, list) else []

    def binder_selection(self) -> tuple[Optional[str], Optional[str]]:
        """The (spec, kernel name) of the last ``binder`` env entry that names a spec."""
        spec, kernel = None, None
        for entry in self.env:
            if entry.type == "binder" and entry.spec:
                spec, kernel = entry.spec, entry.kernel
        return spec, kernel

    @property
    def wants_gpu(self) -> bool:
        return any("GPU" in tag for tag in self.tags)

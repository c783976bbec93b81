"""
Requirement declarations and their translation into kernel shell commands.

A requirement is one text line of the form ``[type ":"] libs`` where ``libs`` is a
space-separated token list, e.g. ``"conda: numpy scipy"``, ``"repo: https://host/org/tool.git"``
or a bare ``"requests"`` for a plain pip package.
"""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from jupyter_engine.shared.errors import RequirementError, UnsupportedRequirementType


class RequirementType(str, Enum):
    CONDA = "conda"
    PIP = "pip"
    REPO = "repo"
    CMD = "cmd"
    URL_SPEC = "urlSpec"
    PLAIN_PIP = "plainPip"


class Requirement(BaseModel):
    type: RequirementType
    libs: list[str] = Field(default_factory=list)
    raw: str

    @classmethod
    def parse(cls, line: str) -> "Requirement":
        """
        Parse one requirement line.

        Raises:
            UnsupportedRequirementType: if the ``type:`` prefix is not recognized.
            RequirementError: if a typed requirement carries no arguments.
        """
        if ":" not in line:
            return cls(type=RequirementType.PLAIN_PIP, libs=[line.strip()], raw=line)

        typ, _, rest = line.partition(":")
        typ = typ.strip()
        libs = [lib.strip() for lib in rest.strip().split(" ") if lib.strip()]

        if typ in (RequirementType.CONDA.value, RequirementType.PIP.value,
                   RequirementType.REPO.value, RequirementType.CMD.value):
            if not libs:
                raise RequirementError(f"Requirement '{line}' has no arguments")
            return cls(type=RequirementType(typ), libs=libs, raw=line)
        if "+" in typ or "http" in typ:
            # e.g. git+https://..., https://.../pkg.whl
            return cls(type=RequirementType.URL_SPEC, libs=[line.strip()], raw=line)
        raise UnsupportedRequirementType(typ)

    @staticmethod
    def repo_name(url: str) -> str:
        name = url.rstrip("/").split("/")[-1]
        return name[: -len(".git")] if name.endswith(".git") else name

    def to_command(self, conda_available: bool = True) -> Optional[str]:
        """Render the shell command installing this requirement, or None when it is skipped."""
        if self.type == RequirementType.CONDA:
            if not conda_available:
                return None
            return "!conda install -y " + " ".join(self.libs)
        if self.type == RequirementType.PIP:
            return "!pip install " + " ".join(self.libs)
        if self.type == RequirementType.REPO:
            target = self.libs[1] if len(self.libs) > 1 else self.repo_name(self.libs[0])
            return f"!git clone --progress --depth=1 {self.libs[0]} {target}"
        if self.type == RequirementType.CMD:
            return " ".join(self.libs)
        return f"!pip install {self.raw.strip()}"


def normalize_requirements(requirements: str | list[str] | None) -> list[str]:
    if requirements is None:
        return []
    if isinstance(requirements, str):
        requirements = [requirements]
    return [req for req in requirements if req and req.strip()]

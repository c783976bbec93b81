from typing import Optional

from jupyter_engine.entities.requirement import Requirement, normalize_requirements
from jupyter_engine.shared.console_text import normalize_stream_text
from jupyter_engine.shared.logger import Logger
from jupyter_engine.shared.protocols import KernelSessionProtocol, StatusSinkProtocol

logger = Logger.get(__name__)


class RequirementInstaller:
    """Installs declared requirements into a kernel as one batch of shell commands."""

    def __init__(self, status: Optional[StatusSinkProtocol] = None):
        self.status = status

    @staticmethod
    def build_commands(requirements: str | list[str] | None, conda_available: bool = True) -> list[str]:
        """
        Translate requirement lines into kernel commands, in input order.

        Every line is parsed before any command is produced, so one malformed entry
        rejects the whole list.
        """
        parsed = [Requirement.parse(line) for line in normalize_requirements(requirements)]
        commands = []
        for requirement in parsed:
            command = requirement.to_command(conda_available)
            if command is None:
                logger.info(f"Skipping '{requirement.raw}': conda is not available")
                continue
            commands.append(command)
        return commands

    async def install(self, session: KernelSessionProtocol, requirements: str | list[str] | None,
                      conda_available: bool = True) -> None:
        """
        Run the install commands for ``requirements`` in ``session``.

        Raises:
            UnsupportedRequirementType: before anything is sent to the kernel.
            ExecutionFailure: if the kernel reports an error while installing.
        """
        commands = self.build_commands(requirements, conda_available)
        if not commands:
            logger.debug(f"No requirements to install for kernel {session.id}")
            return
        self._log(f"Installing requirements for kernel {session.id}: {commands}")
        await session.execute("\n".join(commands), on_output=self._on_output)

    def _on_output(self, msg: dict) -> None:
        if msg.get("msg_type", (msg.get("header") or {}).get("msg_type")) != "stream":
            return
        content = msg.get("content") or {}
        if content.get("name") != "stdout":
            return
        text = normalize_stream_text(content.get("text", ""))
        if self.status is not None:
            self.status.show_status(text)
        else:
            logger.debug(text)

    def _log(self, message: str) -> None:
        if self.status is not None:
            self.status.log(message)
        else:
            logger.info(message)

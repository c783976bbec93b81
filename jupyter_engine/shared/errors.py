class EngineError(Exception):
    """Base class for every error raised by the engine."""


class ProvisioningError(EngineError):
    """The provisioning service could not allocate a server."""


class StaleMappingError(EngineError):
    """A cached kernel entry points at different server settings than requested."""


class KernelNotFoundError(EngineError):
    """No cached entry for a key, or the server no longer knows the kernel id."""


class LivenessFailure(EngineError):
    """A cached server or kernel did not answer its liveness probe."""


class RequirementError(EngineError):
    """A requirement declaration could not be turned into a command."""


class UnsupportedRequirementType(RequirementError):
    def __init__(self, requirement_type: str):
        super().__init__(f"Unsupported requirement type: {requirement_type}")
        self.requirement_type = requirement_type


class ExecutionFailure(EngineError):
    """Code submitted to a kernel (or to a plugin worker) reported an error."""

    def __init__(self, message: str, ename: str | None = None, evalue: str | None = None,
                 traceback: list[str] | None = None):
        super().__init__(message)
        self.ename = ename
        self.evalue = evalue
        self.traceback = traceback or []


class ChannelLost(EngineError):
    """The logical channel to the plugin worker closed unexpectedly."""


class ConnectionSetupError(EngineError):
    """The worker handshake could not be completed."""


class ConnectionClosedError(EngineError):
    """The connection has been disconnected or failed and cannot be used anymore."""


class OperationNotSupportedError(EngineError):
    """The requested operation is not available for this server."""


class PluginNotFoundError(EngineError):
    """No running plugin with the given id."""

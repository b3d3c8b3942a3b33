"""Exceptions raised at the container runtime boundary."""


class SandboxError(Exception):
    """Base class for sandbox failures."""


class RuntimeUnavailableError(SandboxError):
    """The container runtime client could not be built."""


class ContainerCreateError(SandboxError):
    """The runtime rejected the container create request."""


class ContainerStartError(SandboxError):
    """A created container could not be started."""


class ExecError(SandboxError):
    """An exec session could not be created, attached or inspected."""


class SandboxTimeoutError(ExecError):
    """The exec deadline expired before the command finished."""


class StreamCopyError(SandboxError):
    """The multiplexed output stream was malformed or broke mid-copy."""


class LogsError(SandboxError):
    """Container logs could not be retrieved."""

# execbox - short-lived sandbox containers for running commands
"""
execbox - Sandboxed command execution in throwaway containers.

Create an isolated container, run bounded-time commands in it with
separated output streams, and tear it down deterministically.
"""

from execbox.exceptions import (
    ContainerCreateError,
    ContainerStartError,
    ExecError,
    LogsError,
    RuntimeUnavailableError,
    SandboxError,
    SandboxTimeoutError,
    StreamCopyError,
)
from execbox.models import (
    MASKED_PATHS,
    ContainerHandle,
    ContainerState,
    ExecResult,
    MountSpec,
    SandboxRequest,
)
from execbox.runtime_client import RuntimeClient
from execbox.sandbox_config import build_create_parameters
from execbox.sandbox_manager import LaunchOutcome, SandboxManager

__all__ = [
    "SandboxManager",
    "RuntimeClient",
    "SandboxRequest",
    "MountSpec",
    "ContainerHandle",
    "ContainerState",
    "ExecResult",
    "LaunchOutcome",
    "MASKED_PATHS",
    "build_create_parameters",
    "SandboxError",
    "RuntimeUnavailableError",
    "ContainerCreateError",
    "ContainerStartError",
    "ExecError",
    "SandboxTimeoutError",
    "StreamCopyError",
    "LogsError",
]

__version__ = "0.1.0"

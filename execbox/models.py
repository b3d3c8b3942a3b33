"""Data model for sandbox requests, handles and exec results."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from execbox.exceptions import SandboxError

# Paths replaced with restricted mounts when a request asks for masking.
MASKED_PATHS = (
    "/etc",
    "/sys",
    "/proc/tty",
    "/proc/sys",
    "/proc/sysrq-trigger",
    "/proc/cmdline",
    "/proc/config.gz",
    "/proc/mounts",
    "/proc/fs",
    "/proc/device-tree",
    "/proc/bus",
)


@dataclass(frozen=True)
class MountSpec:
    """Bind mount from the host into the sandbox."""
    source: str
    target: str
    mode: str = "rw"

    @property
    def read_only(self) -> bool:
        return self.mode == "ro"


@dataclass(frozen=True)
class SandboxRequest:
    """Everything needed to create one sandbox container."""

    name: str
    image: str
    user: str = ""
    hostname: str = ""
    working_dir: str = ""
    mounts: tuple[MountSpec, ...] = ()
    mask_sensitive_paths: bool = False
    read_only_rootfs: bool = False
    disable_network: bool = False
    use_host_network: bool = False
    stop_timeout: Optional[int] = None
    environment: tuple[str, ...] = ()
    # Overrides the image command, e.g. ["sleep", "infinity"] for short-lived images
    command: Optional[tuple[str, ...]] = None
    labels: dict[str, str] = field(default_factory=dict, hash=False)


class ContainerState(str, Enum):
    """Lifecycle state of a sandbox container."""
    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass
class ContainerHandle:
    """A sandbox container owned by whoever holds this handle."""

    container_id: str
    request: SandboxRequest
    state: ContainerState = ContainerState.CREATED
    created_at: float = field(default_factory=time.time)

    @property
    def short_id(self) -> str:
        return self.container_id[:12]


@dataclass
class ExecResult:
    """Outcome of one command run inside a sandbox."""
    exit_code: int
    transcript: bytes = b""
    error: Optional[SandboxError] = None
    timed_out: bool = False

    @property
    def output(self) -> str:
        return self.transcript.decode("utf-8", errors="replace")

    @property
    def ok(self) -> bool:
        return self.error is None and self.exit_code == 0

"""Translate a SandboxRequest into Docker Engine API create parameters.

The builder is pure: it never talks to the daemon and cannot fail. The
resulting dictionaries use the Engine API field names so the runtime client
can post them unchanged.
"""

from dataclasses import dataclass
from typing import Any

from execbox.models import MASKED_PATHS, SandboxRequest

HOST_NETWORK = "host"

# memlock soft=hard=unlimited so swap-locking workloads don't get OOM-killed
MEMLOCK_UNLIMITED = {"Name": "memlock", "Soft": -1, "Hard": -1}


@dataclass(frozen=True)
class CreateParameters:
    """Container config, host config and name for one create call."""
    name: str
    config: dict[str, Any]
    host_config: dict[str, Any]


def masked_paths(request: SandboxRequest) -> list[str]:
    """Paths to mask for this request (empty when masking is off)."""
    if request.mask_sensitive_paths:
        return list(MASKED_PATHS)
    return []


def network_mode(request: SandboxRequest) -> str:
    """Network mode: "host" when requested, otherwise the daemon default.

    ``disable_network`` is not consulted here. It travels separately as the
    container-level ``NetworkDisabled`` switch, so a request with both flags
    set gets host mode with networking disabled on top.
    """
    if request.use_host_network:
        return HOST_NETWORK
    return ""


def build_host_config(request: SandboxRequest) -> dict[str, Any]:
    host_config: dict[str, Any] = {
        "AutoRemove": True,
        "ReadonlyRootfs": request.read_only_rootfs,
        "NetworkMode": network_mode(request),
        "Ulimits": [dict(MEMLOCK_UNLIMITED)],
        "Mounts": [
            {
                "Type": "bind",
                "Source": mount.source,
                "Target": mount.target,
                "ReadOnly": mount.read_only,
            }
            for mount in request.mounts
        ],
    }

    # Omitted rather than [] so the daemon keeps its own default masks
    masked = masked_paths(request)
    if masked:
        host_config["MaskedPaths"] = masked

    return host_config


def build_container_config(request: SandboxRequest) -> dict[str, Any]:
    config: dict[str, Any] = {
        "Image": request.image,
        "User": request.user,
        "Hostname": request.hostname,
        "WorkingDir": request.working_dir,
        "NetworkDisabled": request.disable_network,
        "Env": list(request.environment),
        "Labels": dict(request.labels),
    }
    if request.stop_timeout is not None:
        config["StopTimeout"] = request.stop_timeout
    if request.command is not None:
        config["Cmd"] = list(request.command)
    return config


def build_create_parameters(request: SandboxRequest) -> CreateParameters:
    """Build everything the runtime needs to create the container."""
    return CreateParameters(
        name=request.name,
        config=build_container_config(request),
        host_config=build_host_config(request),
    )

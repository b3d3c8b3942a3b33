"""Thin adapter over the Docker Engine API.

One RuntimeClient is shared by every sandbox in the process. It holds no
per-container state; callers pass container and exec ids explicitly.
"""

import logging
import socket
from typing import Any, Optional

import docker
from docker.errors import DockerException

from execbox.exceptions import RuntimeUnavailableError

logger = logging.getLogger(__name__)


class ExecStream:
    """Raw multiplexed output of an attached exec session."""

    def __init__(self, sock: Any):
        self._sock = sock
        self._closed = False

    @property
    def sock(self) -> Any:
        """The socket as returned by ``exec_start(socket=True)``."""
        return self._sock

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Close the connection, waking up a reader blocked in another thread."""
        if self._closed:
            return
        self._closed = True
        raw = getattr(self._sock, "_sock", self._sock)
        try:
            raw.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # peer already hung up
        self._sock.close()


class RuntimeClient:
    """Container runtime operations used by the sandbox manager."""

    def __init__(self, api: docker.APIClient, owner: Optional[docker.DockerClient] = None):
        self._api = api
        self._owner = owner

    @classmethod
    def from_env(cls, timeout: int = 60) -> "RuntimeClient":
        """Connect using DOCKER_HOST / DOCKER_TLS_VERIFY / DOCKER_CERT_PATH."""
        try:
            client = docker.from_env(timeout=timeout)
        except DockerException as e:
            raise RuntimeUnavailableError(f"Cannot connect to container runtime: {e}") from e
        logger.debug(f"Connected to container runtime at {client.api.base_url}")
        return cls(client.api, owner=client)

    def close(self) -> None:
        if self._owner is not None:
            self._owner.close()
        else:
            self._api.close()

    def create_container(self, config: dict, host_config: dict, name: str) -> str:
        body = dict(config)
        body["HostConfig"] = host_config
        resp = self._api.create_container_from_config(body, name=name)
        for warning in resp.get("Warnings") or []:
            logger.warning(f"Container {name}: {warning}")
        return resp["Id"]

    def start_container(self, container_id: str) -> None:
        self._api.start(container_id)

    def stop_container(self, container_id: str, grace_period: int) -> None:
        self._api.stop(container_id, timeout=grace_period)

    def remove_container(self, container_id: str) -> None:
        self._api.remove_container(container_id, force=True)

    def inspect_container(self, container_id: str) -> dict:
        return self._api.inspect_container(container_id)

    def create_exec(
        self,
        container_id: str,
        cmd: list[str],
        environment: Optional[list[str]] = None,
        privileged: bool = False,
    ) -> str:
        resp = self._api.exec_create(
            container_id,
            cmd,
            stdout=True,
            stderr=True,
            environment=environment or None,
            privileged=privileged,
        )
        return resp["Id"]

    def attach_exec(self, exec_id: str) -> ExecStream:
        sock = self._api.exec_start(exec_id, socket=True)
        return ExecStream(sock)

    def inspect_exec(self, exec_id: str) -> int:
        exit_code = self._api.exec_inspect(exec_id).get("ExitCode")
        # None while the process is still running
        return -1 if exit_code is None else exit_code

    def fetch_logs(self, container_id: str) -> bytes:
        return self._api.logs(container_id, stdout=True, stderr=True, stream=False)

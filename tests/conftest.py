"""Shared fixtures: an in-memory stand-in for the container runtime."""

import asyncio
import itertools
import time

import pytest
from docker.errors import NotFound

from execbox.models import SandboxRequest
from execbox.runtime_client import ExecStream
from execbox.sandbox_manager import SandboxManager
from framing import exec_stream


class FakeRuntime:
    """Records every call and simulates the daemon's container bookkeeping.

    Exec output is served over a socket pair, so the manager reads it the
    same way it reads a real attach socket.
    """

    def __init__(self):
        self.calls: list[str] = []
        self.fail: dict[str, BaseException] = {}
        self.delay: dict[str, float] = {}
        self.containers: dict[str, dict] = {}
        self.created: list[dict] = []
        self.execs: list[dict] = []
        self.streams: list[ExecStream] = []
        self.peers: list = []
        self.stop_grace_periods: list[int] = []
        self.exec_output = b""
        self.exec_blocks = False
        self.exit_code = 0
        self.inspect_info = {"NetworkSettings": {"IPAddress": "172.17.0.2", "Networks": {}}}
        self.logs = b""
        self.closed = False
        self._ids = itertools.count(1)

    def _call(self, op: str) -> None:
        self.calls.append(op)
        if op in self.delay:
            time.sleep(self.delay[op])
        if op in self.fail:
            raise self.fail[op]

    def _require(self, container_id: str) -> dict:
        if container_id not in self.containers:
            raise NotFound(f"No such container: {container_id}")
        return self.containers[container_id]

    def create_container(self, config, host_config, name):
        self._call("create_container")
        container_id = f"{next(self._ids):064x}"
        self.containers[container_id] = {
            "config": config,
            "host_config": host_config,
            "name": name,
            "state": "created",
        }
        # Kept after the container is stopped and auto-removed
        self.created.append({"id": container_id, **self.containers[container_id]})
        return container_id

    def start_container(self, container_id):
        self._call("start_container")
        self._require(container_id)["state"] = "running"

    def stop_container(self, container_id, grace_period):
        self._call("stop_container")
        self.stop_grace_periods.append(grace_period)
        self._require(container_id)
        # AutoRemove: gone as soon as it stops
        del self.containers[container_id]

    def remove_container(self, container_id):
        self._call("remove_container")
        self._require(container_id)
        del self.containers[container_id]

    def inspect_container(self, container_id):
        self._call("inspect_container")
        self._require(container_id)
        return self.inspect_info

    def create_exec(self, container_id, cmd, environment=None, privileged=False):
        self._call("create_exec")
        self._require(container_id)
        self.execs.append(
            {"container_id": container_id, "cmd": cmd, "environment": environment, "privileged": privileged}
        )
        return f"exec-{len(self.execs)}"

    def attach_exec(self, exec_id):
        self._call("attach_exec")
        stream, peer = exec_stream(self.exec_output, keep_open=self.exec_blocks)
        self.streams.append(stream)
        self.peers.append(peer)
        return stream

    def inspect_exec(self, exec_id):
        self._call("inspect_exec")
        return self.exit_code

    def fetch_logs(self, container_id):
        self._call("fetch_logs")
        self._require(container_id)
        return self.logs

    def close(self):
        self.closed = True

    def hang_up(self):
        """Drop the daemon side of every exec stream."""
        for peer in self.peers:
            peer.close()
        for stream in self.streams:
            stream.close()


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def runtime():
    runtime = FakeRuntime()
    yield runtime
    runtime.hang_up()


@pytest.fixture
def manager(runtime):
    return SandboxManager(runtime=runtime)


@pytest.fixture
def sandbox_request():
    return SandboxRequest(name="transfer-1", image="alpine", mask_sensitive_paths=True)


@pytest.fixture
def handle(manager, sandbox_request):
    """A running sandbox on the fake runtime."""
    return run(manager.create_sandbox(sandbox_request))

"""
HTTP front end for the sandbox manager.

Endpoints:
    GET    /health                   - Health check
    POST   /sandboxes                - Create and start a sandbox
    POST   /sandboxes/{id}/exec      - Run a command, return exit code and output
    GET    /sandboxes/{id}/address   - Container IP address ("" if unknown)
    GET    /sandboxes/{id}/logs      - Container logs since start
    DELETE /sandboxes/{id}           - Stop the sandbox

Usage:
    execbox-server --addr 127.0.0.1:8080 --default-timeout 30
"""

import argparse
import io
import json
import logging
import os
from http import HTTPStatus
from typing import Any, Optional

from aiohttp import web

from execbox.exceptions import LogsError
from execbox.models import ContainerHandle, MountSpec, SandboxRequest
from execbox.sandbox_manager import SandboxManager

logger = logging.getLogger(__name__)

_BOOL_FIELDS = (
    "mask_sensitive_paths",
    "read_only_rootfs",
    "disable_network",
    "use_host_network",
)
_STR_FIELDS = ("user", "hostname", "working_dir")


def _string_list(body: dict, key: str) -> tuple[str, ...]:
    value = body.get(key)
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError(f"'{key}' must be a list of strings")
    return tuple(value)


def _flag(body: dict, key: str) -> bool:
    value = body[key]
    if not isinstance(value, bool):
        raise ValueError(f"'{key}' must be true or false")
    return value


def parse_sandbox_request(body: Any) -> SandboxRequest:
    """Build a SandboxRequest from a JSON body, raising ValueError if invalid."""
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")

    name = body.get("name")
    image = body.get("image")
    if not name or not image:
        raise ValueError("Missing 'name' or 'image' field")
    if not isinstance(name, str) or not isinstance(image, str):
        raise ValueError("'name' and 'image' must be strings")

    kwargs: dict[str, Any] = {"name": name, "image": image}
    for key in _STR_FIELDS:
        if key in body:
            if not isinstance(body[key], str):
                raise ValueError(f"'{key}' must be a string")
            kwargs[key] = body[key]
    for key in _BOOL_FIELDS:
        if key in body:
            kwargs[key] = _flag(body, key)

    stop_timeout = body.get("stop_timeout")
    if stop_timeout is not None:
        # bool is an int subclass
        if isinstance(stop_timeout, bool) or not isinstance(stop_timeout, int) or stop_timeout < 0:
            raise ValueError("'stop_timeout' must be a non-negative integer")
        kwargs["stop_timeout"] = stop_timeout

    mounts = body.get("mounts") or []
    if not isinstance(mounts, list):
        raise ValueError("'mounts' must be a list")
    parsed_mounts = []
    for mount in mounts:
        if not isinstance(mount, dict) or not mount.get("source") or not mount.get("target"):
            raise ValueError("Each mount needs 'source' and 'target'")
        if not isinstance(mount["source"], str) or not isinstance(mount["target"], str):
            raise ValueError("Mount 'source' and 'target' must be strings")
        mode = mount.get("mode", "rw")
        if mode not in ("rw", "ro"):
            raise ValueError(f"Invalid mount mode: {mode}")
        parsed_mounts.append(MountSpec(source=mount["source"], target=mount["target"], mode=mode))
    kwargs["mounts"] = tuple(parsed_mounts)

    kwargs["environment"] = _string_list(body, "environment")
    if body.get("command") is not None:
        command = _string_list(body, "command")
        if not command:
            raise ValueError("'command' must not be empty")
        kwargs["command"] = command

    labels = body.get("labels")
    if labels is not None:
        if not isinstance(labels, dict) or not all(isinstance(v, str) for v in labels.values()):
            raise ValueError("'labels' must be an object of strings")
        kwargs["labels"] = dict(labels)

    return SandboxRequest(**kwargs)


class SandboxAPI:
    """aiohttp handlers over a SandboxManager.

    Keeps the handles of the sandboxes it created so clients can refer to
    them by id; anything still running is stopped on shutdown.
    """

    def __init__(
        self,
        manager: SandboxManager,
        allow_mounts: bool = False,
        default_timeout: float = 30,
    ):
        self.manager = manager
        self.allow_mounts = allow_mounts
        self.default_timeout = default_timeout
        self.sandboxes: dict[str, ContainerHandle] = {}

    async def _json_body(self, request: web.Request) -> Optional[Any]:
        try:
            return await request.json()
        except json.JSONDecodeError:
            return None

    def _handle_or_404(self, request: web.Request) -> ContainerHandle:
        handle = self.sandboxes.get(request.match_info["sandbox_id"])
        if handle is None:
            raise web.HTTPNotFound(
                text=json.dumps({"error": "Sandbox not found"}),
                content_type="application/json",
            )
        return handle

    async def health(self, request: web.Request) -> web.Response:
        """Health check endpoint."""
        return web.json_response({"status": "ok", "sandboxes": len(self.sandboxes)})

    async def create_sandbox(self, request: web.Request) -> web.Response:
        body = await self._json_body(request)
        if body is None:
            return web.json_response({"error": "Invalid JSON"}, status=HTTPStatus.BAD_REQUEST)

        try:
            sandbox_request = parse_sandbox_request(body)
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=HTTPStatus.BAD_REQUEST)

        if sandbox_request.mounts and not self.allow_mounts:
            return web.json_response(
                {"error": "Mounts are not allowed"}, status=HTTPStatus.FORBIDDEN
            )

        outcome = await self.manager.launch(sandbox_request)
        if not outcome.ok:
            return web.json_response(
                {"error": str(outcome.error)}, status=HTTPStatus.BAD_GATEWAY
            )

        handle = outcome.handle
        self.sandboxes[handle.container_id] = handle
        logger.info(f"Created sandbox {sandbox_request.name} ({handle.short_id})")
        return web.json_response(
            {"id": handle.container_id, "name": sandbox_request.name, "state": handle.state.value},
            status=HTTPStatus.CREATED,
        )

    async def exec_command(self, request: web.Request) -> web.Response:
        """Execute a command and return the result."""
        handle = self._handle_or_404(request)

        body = await self._json_body(request)
        if not isinstance(body, dict):
            return web.json_response({"error": "Invalid JSON"}, status=HTTPStatus.BAD_REQUEST)

        command = body.get("command")
        if not command or not isinstance(command, str):
            return web.json_response(
                {"error": "Missing 'command' field"}, status=HTTPStatus.BAD_REQUEST
            )

        timeout = body.get("timeout", self.default_timeout)
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            return web.json_response(
                {"error": "'timeout' must be a positive number"}, status=HTTPStatus.BAD_REQUEST
            )

        try:
            environment = _string_list(body, "environment")
            privileged = _flag(body, "privileged") if "privileged" in body else False
            split_streams = _flag(body, "split_streams") if "split_streams" in body else False
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=HTTPStatus.BAD_REQUEST)

        stdout = stderr = None
        if split_streams:
            stdout, stderr = io.BytesIO(), io.BytesIO()

        result = await self.manager.exec_command(
            handle,
            command,
            timeout,
            stdout=stdout,
            stderr=stderr,
            environment=list(environment),
            privileged=privileged,
        )

        payload = {
            "exit_code": result.exit_code,
            "output": result.output,
            "timed_out": result.timed_out,
            "error": str(result.error) if result.error else None,
        }
        if stdout is not None:
            payload["stdout"] = stdout.getvalue().decode("utf-8", errors="replace")
            payload["stderr"] = stderr.getvalue().decode("utf-8", errors="replace")
        return web.json_response(payload)

    async def get_address(self, request: web.Request) -> web.Response:
        handle = self._handle_or_404(request)
        return web.json_response({"address": await self.manager.get_address(handle)})

    async def get_logs(self, request: web.Request) -> web.Response:
        handle = self._handle_or_404(request)
        try:
            logs = await self.manager.get_logs(handle)
        except LogsError as e:
            return web.json_response({"error": str(e)}, status=HTTPStatus.BAD_GATEWAY)
        return web.json_response({"logs": logs})

    async def destroy_sandbox(self, request: web.Request) -> web.Response:
        handle = self._handle_or_404(request)
        self.sandboxes.pop(handle.container_id, None)
        await self.manager.cleanup(handle)
        logger.info(f"Destroyed sandbox {handle.request.name} ({handle.short_id})")
        return web.json_response({"success": True})

    async def shutdown(self, app: web.Application) -> None:
        """Stop every sandbox still tracked and release the runtime client."""
        for container_id in list(self.sandboxes):
            await self.manager.cleanup(self.sandboxes.pop(container_id))
        self.manager.close()
        logger.info("Sandbox API stopped")

    def create_app(self) -> web.Application:
        """Create the aiohttp application."""
        app = web.Application()
        app.router.add_get("/health", self.health)
        app.router.add_post("/sandboxes", self.create_sandbox)
        app.router.add_post("/sandboxes/{sandbox_id}/exec", self.exec_command)
        app.router.add_get("/sandboxes/{sandbox_id}/address", self.get_address)
        app.router.add_get("/sandboxes/{sandbox_id}/logs", self.get_logs)
        app.router.add_delete("/sandboxes/{sandbox_id}", self.destroy_sandbox)
        app.on_cleanup.append(self.shutdown)
        return app


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").lower() in ("1", "true", "yes")


def main():
    parser = argparse.ArgumentParser(description="Sandbox execution API")
    parser.add_argument(
        "--addr",
        default=os.getenv("EXECBOX_ADDR", "127.0.0.1:8080"),
        help="Address to listen on (default: 127.0.0.1:8080)",
    )
    parser.add_argument(
        "--default-timeout",
        type=float,
        default=float(os.getenv("EXECBOX_DEFAULT_TIMEOUT", "30")),
        help="Exec timeout in seconds when a request gives none",
    )
    parser.add_argument(
        "--allow-mounts",
        action="store_true",
        default=_env_flag("EXECBOX_ALLOW_MOUNTS"),
        help="Accept bind mounts in create requests",
    )
    parser.add_argument(
        "--stop-on-timeout",
        action="store_true",
        default=_env_flag("EXECBOX_STOP_ON_TIMEOUT"),
        help="Stop the sandbox when a command overruns its timeout",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("EXECBOX_LOG_LEVEL", "INFO"),
        help="Logging level (default: INFO)",
    )
    args = parser.parse_args()

    logging.basicConfig(level=args.log_level.upper())

    host, port = args.addr.rsplit(":", 1)
    port = int(port)

    manager = SandboxManager(stop_on_timeout=args.stop_on_timeout)
    api = SandboxAPI(
        manager,
        allow_mounts=args.allow_mounts,
        default_timeout=args.default_timeout,
    )

    logger.info(f"Sandbox API listening on {host}:{port}")
    web.run_app(api.create_app(), host=host, port=port, print=None)


if __name__ == "__main__":
    main()

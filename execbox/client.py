"""Async client for the sandbox HTTP API."""

import logging
from dataclasses import asdict
from typing import Optional, Sequence

import httpx

from execbox.exceptions import ContainerCreateError, LogsError, SandboxError
from execbox.models import ExecResult, SandboxRequest

logger = logging.getLogger(__name__)


class SandboxClient:
    """Talks to a running ``execbox-server``.

    One httpx client is shared across calls for connection reuse.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create a shared httpx client for connection reuse."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._http_client

    async def close(self) -> None:
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()
            self._http_client = None

    async def create_sandbox(self, request: SandboxRequest) -> str:
        """Create a sandbox and return its container id."""
        body = asdict(request)
        if body["command"] is None:
            del body["command"]
        if body["stop_timeout"] is None:
            del body["stop_timeout"]

        client = await self._get_http_client()
        response = await client.post("/sandboxes", json=body)
        data = response.json()
        if response.status_code != 201:
            raise ContainerCreateError(data.get("error", f"HTTP {response.status_code}"))
        logger.debug(f"Created remote sandbox {request.name} ({data['id'][:12]})")
        return data["id"]

    async def exec_command(
        self,
        sandbox_id: str,
        command: str,
        timeout: Optional[float] = None,
        environment: Optional[Sequence[str]] = None,
        privileged: bool = False,
    ) -> ExecResult:
        payload = {"command": command, "privileged": privileged}
        if timeout is not None:
            payload["timeout"] = timeout
        if environment:
            payload["environment"] = list(environment)

        client = await self._get_http_client()
        # Server-side deadline plus slack for the HTTP round trip
        request_timeout = timeout + 5 if timeout is not None else self.timeout
        try:
            response = await client.post(
                f"/sandboxes/{sandbox_id}/exec", json=payload, timeout=request_timeout
            )
        except httpx.TimeoutException:
            return ExecResult(
                exit_code=-1,
                error=SandboxError("Request to sandbox API timed out"),
                timed_out=True,
            )

        data = response.json()
        if response.status_code != 200:
            return ExecResult(exit_code=-1, error=SandboxError(data.get("error", "Unknown error")))

        error = data.get("error")
        return ExecResult(
            exit_code=data.get("exit_code", -1),
            transcript=data.get("output", "").encode("utf-8"),
            error=SandboxError(error) if error else None,
            timed_out=data.get("timed_out", False),
        )

    async def get_address(self, sandbox_id: str) -> str:
        client = await self._get_http_client()
        response = await client.get(f"/sandboxes/{sandbox_id}/address")
        if response.status_code != 200:
            return ""
        return response.json().get("address", "")

    async def get_logs(self, sandbox_id: str) -> str:
        client = await self._get_http_client()
        response = await client.get(f"/sandboxes/{sandbox_id}/logs")
        data = response.json()
        if response.status_code != 200:
            raise LogsError(data.get("error", "Unknown error"))
        return data["logs"]

    async def destroy_sandbox(self, sandbox_id: str) -> bool:
        client = await self._get_http_client()
        response = await client.delete(f"/sandboxes/{sandbox_id}")
        return response.status_code == 200 and response.json().get("success", False)

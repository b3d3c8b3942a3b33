import asyncio
import io
import logging
import threading
from dataclasses import dataclass
from functools import partial
from typing import Any, BinaryIO, Callable, Optional, Sequence

from docker.errors import DockerException, NotFound

from execbox.exceptions import (
    ContainerCreateError,
    ContainerStartError,
    ExecError,
    LogsError,
    SandboxError,
    SandboxTimeoutError,
    StreamCopyError,
)
from execbox.models import ContainerHandle, ContainerState, ExecResult, SandboxRequest
from execbox.runtime_client import ExecStream, RuntimeClient
from execbox.sandbox_config import build_create_parameters
from execbox.stdcopy import TeeWriter, Writable, stdcopy

logger = logging.getLogger(__name__)

# Engine API errors, plus connection failures surfacing from requests as OSError
RUNTIME_ERRORS = (DockerException, OSError)


@dataclass
class LaunchOutcome:
    """Result of create + start, keeping the failure cause for logging."""
    handle: Optional[ContainerHandle] = None
    error: Optional[SandboxError] = None

    @property
    def ok(self) -> bool:
        return self.handle is not None


def _chain(error: SandboxError, cause: BaseException) -> SandboxError:
    error.__cause__ = cause
    return error


class _StreamSlot:
    """Hands an attached stream from the worker thread to exec_command.

    If exec_command already gave up waiting when the stream arrives, the
    stream is closed right away instead of being left open.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._abandoned = False
        self.stream: Optional[ExecStream] = None

    def fill(self, stream: ExecStream) -> ExecStream:
        with self._lock:
            self.stream = stream
            abandoned = self._abandoned
        if abandoned:
            stream.close()
        return stream

    def abandon(self) -> None:
        with self._lock:
            self._abandoned = True
            stream = self.stream
        if stream is not None:
            stream.close()


def primary_address(info: dict) -> str:
    """Pick the container's address from an inspect payload."""
    settings = info.get("NetworkSettings") or {}
    if settings.get("IPAddress"):
        return settings["IPAddress"]
    # User-defined networks leave the top-level address empty
    for network in (settings.get("Networks") or {}).values():
        if network.get("IPAddress"):
            return network["IPAddress"]
    return ""


class SandboxManager:
    """Creates sandbox containers, runs commands in them and tears them down.

    Every runtime call is a blocking Engine API request, so it runs in the
    default executor; callers simply await each operation.

    Handles are owned by the caller. The manager tracks nothing between
    calls, so one manager can serve any number of sandboxes concurrently.
    A single handle should not be used by several concurrent exec_command
    calls without external coordination.
    """

    def __init__(
        self,
        runtime: Optional[RuntimeClient] = None,
        stop_grace_period: int = 1,
        reclaim_unstarted: bool = True,
        stop_on_timeout: bool = False,
    ):
        """
        Args:
            runtime: Runtime client to use. Built from the environment (and
                closed by close()) when not given.
            stop_grace_period: Seconds a stop request waits before killing.
            reclaim_unstarted: Force-remove containers that were created but
                failed to start.
            stop_on_timeout: Stop the whole container when an exec overruns
                its deadline. The daemon has no way to kill a single exec.
        """
        self._owns_runtime = runtime is None
        self.runtime = runtime if runtime is not None else RuntimeClient.from_env()
        self.stop_grace_period = stop_grace_period
        self.reclaim_unstarted = reclaim_unstarted
        self.stop_on_timeout = stop_on_timeout

    def close(self) -> None:
        """Release the runtime client if this manager created it."""
        if self._owns_runtime:
            self.runtime.close()

    async def _run(self, func: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.get_running_loop().run_in_executor(None, partial(func, *args))

    async def _run_until(self, deadline: float, func: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking call, giving up (not cancelling it) at ``deadline``."""
        remaining = max(deadline - asyncio.get_running_loop().time(), 0)
        return await asyncio.wait_for(self._run(func, *args), remaining)

    async def create_sandbox(self, request: SandboxRequest) -> Optional[ContainerHandle]:
        """Create and start a sandbox container.

        Returns a running handle, or None when the container could not be
        created or started. Failures are logged, never raised.
        """
        outcome = await self.launch(request)
        return outcome.handle

    async def launch(self, request: SandboxRequest) -> LaunchOutcome:
        """Like create_sandbox, but also reports why the launch failed."""
        params = build_create_parameters(request)

        try:
            container_id = await self._run(
                self.runtime.create_container, params.config, params.host_config, params.name
            )
        except RUNTIME_ERRORS as e:
            logger.error(f"Failed to create container {request.name} from image {request.image}: {e}")
            return LaunchOutcome(error=_chain(ContainerCreateError(str(e)), e))

        handle = ContainerHandle(container_id=container_id, request=request)
        logger.debug(f"Created container {request.name} ({handle.short_id}) from image {request.image}")

        try:
            await self._run(self.runtime.start_container, container_id)
        except RUNTIME_ERRORS as e:
            logger.error(
                f"Failed to start container {request.name} ({handle.short_id}) "
                f"from image {request.image}: {e}"
            )
            if self.reclaim_unstarted:
                await self._reclaim(handle)
            return LaunchOutcome(error=_chain(ContainerStartError(str(e)), e))

        handle.state = ContainerState.RUNNING
        logger.debug(f"Started container {request.name} ({handle.short_id})")
        return LaunchOutcome(handle=handle)

    async def _reclaim(self, handle: ContainerHandle) -> None:
        """Remove a container that never started (auto-remove only fires on stop)."""
        try:
            await self._run(self.runtime.remove_container, handle.container_id)
            logger.debug(f"Removed unstarted container {handle.short_id}")
        except RUNTIME_ERRORS as e:
            logger.warning(f"Failed to remove unstarted container {handle.short_id}: {e}")

    async def cleanup(self, handle: ContainerHandle) -> None:
        """Stop the container; auto-remove deletes it afterwards.

        Safe to call unconditionally during teardown: failures, including a
        container that is already gone, are logged and swallowed.
        """
        try:
            await self._run(
                self.runtime.stop_container, handle.container_id, self.stop_grace_period
            )
        except NotFound:
            logger.warning(f"Container {handle.short_id} already gone")
        except Exception as e:
            logger.error(f"Failed to stop container {handle.short_id}: {e}")
        else:
            logger.debug(f"Stopped container {handle.short_id}")
        handle.state = ContainerState.STOPPED

    def _copy_output(
        self,
        stream: ExecStream,
        transcript: BinaryIO,
        stdout: Optional[Writable],
        stderr: Optional[Writable],
    ) -> None:
        """Drain the exec stream (runs in a worker thread)."""
        if stdout is not None and stderr is not None:
            stdcopy(TeeWriter(stdout, transcript), TeeWriter(stderr, transcript), stream)
        else:
            stdcopy(transcript, transcript, stream)

    def _attach(self, exec_id: str, slot: _StreamSlot) -> ExecStream:
        return slot.fill(self.runtime.attach_exec(exec_id))

    async def exec_command(
        self,
        handle: ContainerHandle,
        command: str,
        timeout: float,
        stdout: Optional[Writable] = None,
        stderr: Optional[Writable] = None,
        environment: Optional[Sequence[str]] = None,
        privileged: bool = False,
    ) -> ExecResult:
        """Run ``sh -c command`` in the container within ``timeout`` seconds.

        With both ``stdout`` and ``stderr`` given, output is split between them
        and also recorded in the transcript; otherwise everything goes to the
        transcript only. The exit code is -1 whenever the exec could not be
        created, attached, inspected or finished in time, and ``error`` then
        says why.

        On timeout the stream is closed and the copy stops writing to the
        sinks, though a chunk already being written when the deadline hit
        may still land after this returns. A sink that raises only ends the
        copy; the exit code is still inspected.
        """
        deadline = asyncio.get_running_loop().time() + timeout
        transcript = io.BytesIO()
        short_id = handle.short_id
        exec_id = None
        slot = _StreamSlot()
        stage = "create"

        try:
            exec_id = await self._run_until(
                deadline,
                self.runtime.create_exec,
                handle.container_id,
                ["sh", "-c", command],
                list(environment or ()),
                privileged,
            )
            logger.debug(f"Created exec {exec_id} in container {short_id}")

            stage = "attach"
            stream = await self._run_until(deadline, self._attach, exec_id, slot)
            logger.debug(f"Started exec {exec_id} in container {short_id}")

            stage = "copy"
            try:
                await self._run_until(
                    deadline, self._copy_output, stream, transcript, stdout, stderr
                )
            except asyncio.TimeoutError:
                raise
            except (StreamCopyError, *RUNTIME_ERRORS) as e:
                logger.error(f"Output copy failed for exec {exec_id} in container {short_id}: {e}")

            stage = "inspect"
            exit_code = await self._run_until(deadline, self.runtime.inspect_exec, exec_id)

        except asyncio.TimeoutError:
            slot.abandon()
            logger.error(
                f"Exec {exec_id} in container {short_id} timed out after {timeout}s ({stage})"
            )
            if self.stop_on_timeout:
                await self.cleanup(handle)
            return ExecResult(
                exit_code=-1,
                transcript=transcript.getvalue(),
                error=SandboxTimeoutError(f"command timed out after {timeout}s"),
                timed_out=True,
            )
        except RUNTIME_ERRORS as e:
            logger.error(f"Exec {stage} failed in container {short_id} (exec {exec_id}): {e}")
            return ExecResult(
                exit_code=-1,
                transcript=transcript.getvalue(),
                error=_chain(ExecError(f"exec {stage} failed: {e}"), e),
            )
        finally:
            slot.abandon()

        logger.debug(f"Exec {exec_id} in container {short_id} exited with {exit_code}")
        return ExecResult(exit_code=exit_code, transcript=transcript.getvalue())

    async def get_address(self, handle: ContainerHandle) -> str:
        """Container IP address, or "" when it can't be determined."""
        try:
            info = await self._run(self.runtime.inspect_container, handle.container_id)
        except RUNTIME_ERRORS as e:
            logger.error(f"Failed to get address of container {handle.short_id}: {e}")
            return ""
        return primary_address(info)

    async def get_logs(self, handle: ContainerHandle) -> str:
        """Combined stdout/stderr logged by the container since it started."""
        try:
            data = await self._run(self.runtime.fetch_logs, handle.container_id)
        except RUNTIME_ERRORS as e:
            logger.error(f"Failed to read logs of container {handle.short_id}: {e}")
            raise LogsError(f"could not read logs of {handle.short_id}: {e}") from e
        return data.decode("utf-8", errors="replace")

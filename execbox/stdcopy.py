"""Demultiplex Docker's attached exec output stream.

Without a TTY the daemon sends stdout and stderr over a single connection as
frames tagged with a stream id. docker-py's ``frames_iter`` parses the
frames; this module routes each payload chunk to where it belongs.
"""

from typing import BinaryIO, Protocol

from docker.utils.socket import STDERR, STDOUT, frames_iter

from execbox.exceptions import StreamCopyError
from execbox.runtime_client import ExecStream

STDIN = 0
SYSTEMERR = 3


class Writable(Protocol):
    def write(self, data: bytes) -> object: ...


class TeeWriter:
    """Write every byte range to the transcript buffer and to a sink.

    The transcript is written first, so it stays complete even when the
    sink rejects the data. Sink failures surface as StreamCopyError.
    """

    def __init__(self, sink: Writable, buffer: BinaryIO):
        self.sink = sink
        self.buffer = buffer

    def write(self, data: bytes) -> int:
        self.buffer.write(data)
        try:
            self.sink.write(data)
        except Exception as e:
            raise StreamCopyError(f"output sink rejected write: {e}") from e
        return len(data)


def stdcopy(stdout: Writable, stderr: Writable, stream: ExecStream) -> tuple[int, int]:
    """Copy frames from ``stream`` to ``stdout``/``stderr`` until EOF.

    Returns the number of payload bytes written to each destination. A
    truncated trailing frame ends the copy like EOF, keeping the part that
    arrived. Once ``stream`` is closed nothing more is written and the copy
    returns.
    """
    written = {STDOUT: 0, STDERR: 0}

    try:
        for stream_id, chunk in frames_iter(stream.sock, tty=False):
            if stream.closed:
                break
            if stream_id in (STDIN, STDOUT):
                stdout.write(chunk)
                written[STDOUT] += len(chunk)
            elif stream_id == STDERR:
                stderr.write(chunk)
                written[STDERR] += len(chunk)
            elif stream_id == SYSTEMERR:
                message = chunk.decode("utf-8", errors="replace")
                raise StreamCopyError(f"error from daemon in stream: {message}")
            else:
                raise StreamCopyError(f"unrecognized stream id: {stream_id}")
    except (OSError, ValueError):
        # Reading a socket that was closed from another thread
        if not stream.closed:
            raise

    return written[STDOUT], written[STDERR]

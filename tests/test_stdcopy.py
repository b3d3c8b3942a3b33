"""Tests for demultiplexing the attached exec stream."""

import io
import socket
import threading

import pytest

from execbox.exceptions import StreamCopyError
from execbox.runtime_client import ExecStream
from execbox.stdcopy import STDERR, STDIN, STDOUT, SYSTEMERR, TeeWriter, stdcopy
from framing import exec_stream, frame


def copy(data: bytes, out=None, err=None):
    out = io.BytesIO() if out is None else out
    err = io.BytesIO() if err is None else err
    stream, _ = exec_stream(data)
    try:
        written = stdcopy(out, err, stream)
    finally:
        stream.close()
    return out.getvalue(), err.getvalue(), written


class ClosingSink(io.BytesIO):
    """Closes the stream after its first write, like a caller giving up."""

    def __init__(self):
        super().__init__()
        self.stream = None

    def write(self, data):
        n = super().write(data)
        self.stream.close()
        return n


class TestStdCopy:
    """Frame splitting."""

    def test_splits_streams_in_order(self):
        data = frame(STDOUT, b"one\n") + frame(STDERR, b"oops\n") + frame(STDOUT, b"two\n")

        out, err, written = copy(data)

        assert out == b"one\ntwo\n"
        assert err == b"oops\n"
        assert written == (8, 5)

    def test_stdin_frames_go_to_stdout(self):
        out, _, _ = copy(frame(STDIN, b"x"))
        assert out == b"x"

    def test_empty_stream(self):
        assert copy(b"")[2] == (0, 0)

    def test_large_frames_arrive_in_pieces(self):
        payload = bytes(range(256)) * 1200
        ours, theirs = socket.socketpair()

        def daemon():
            theirs.sendall(frame(STDERR, payload) + frame(STDOUT, b"end"))
            theirs.close()

        writer = threading.Thread(target=daemon)
        writer.start()
        out, err = io.BytesIO(), io.BytesIO()
        stream = ExecStream(ours)
        try:
            stdcopy(out, err, stream)
        finally:
            writer.join(timeout=5)
            stream.close()

        assert err.getvalue() == payload
        assert out.getvalue() == b"end"

    def test_empty_frame(self):
        out, _, _ = copy(frame(STDOUT, b"") + frame(STDOUT, b"ok"))
        assert out == b"ok"

    def test_system_error_frame(self):
        data = frame(STDOUT, b"before") + frame(SYSTEMERR, b"exec failed")
        out = io.BytesIO()

        with pytest.raises(StreamCopyError, match="exec failed"):
            copy(data, out=out)
        assert out.getvalue() == b"before"

    def test_unknown_stream_id(self):
        with pytest.raises(StreamCopyError, match="unrecognized stream"):
            copy(frame(7, b"??"))

    def test_partial_trailing_header_ends_copy(self):
        out, _, written = copy(frame(STDOUT, b"ok") + b"\x01\x00")
        assert out == b"ok"
        assert written == (2, 0)

    def test_truncated_payload_keeps_partial_data(self):
        out, _, _ = copy(frame(STDOUT, b"complete")[:-3])
        assert out == b"compl"

    def test_nothing_is_written_after_close(self):
        stream, _ = exec_stream(frame(STDOUT, b"first") + frame(STDOUT, b"second"))
        out = ClosingSink()
        out.stream = stream

        written = stdcopy(out, io.BytesIO(), stream)

        assert out.getvalue() == b"first"
        assert written == (5, 0)
        assert stream.closed


class TestTeeWriter:
    """Fan-out to sink and transcript."""

    def test_tee_records_interleaved_transcript(self):
        transcript = io.BytesIO()
        out, err = io.BytesIO(), io.BytesIO()
        stream, _ = exec_stream(frame(STDOUT, b"a") + frame(STDERR, b"b") + frame(STDOUT, b"c"))

        stdcopy(TeeWriter(out, transcript), TeeWriter(err, transcript), stream)
        stream.close()

        assert out.getvalue() == b"ac"
        assert err.getvalue() == b"b"
        assert transcript.getvalue() == b"abc"

    def test_failing_sink_raises_stream_copy_error(self):
        transcript = io.BytesIO()
        tee = TeeWriter(io.StringIO(), transcript)

        with pytest.raises(StreamCopyError, match="sink") as excinfo:
            tee.write(b"bytes into a text sink")

        assert isinstance(excinfo.value.__cause__, TypeError)
        assert transcript.getvalue() == b"bytes into a text sink"

"""
Container log forwarding.

Streams a container's combined output to a sink. TTY containers produce plain
text which is forwarded line by line; other containers produce multiplexed
frames which are split into separate stdout and stderr channels.
"""

import asyncio
import logging
import struct
import threading
from typing import Dict, Iterable, Iterator, Optional, Protocol, Tuple, TYPE_CHECKING

from docker.utils.socket import STDERR, STDOUT

from .exceptions import LogStreamError
from .logging_config import CONTAINER_LOGGER, get_logger

if TYPE_CHECKING:
    from .container import ContainerHandle

logger = get_logger(__name__)

TAIL_LINES = 10
FRAME_HEADER = struct.Struct(">BxxxL")


class LogSink(Protocol):
    """Destination for container output."""

    def out(self, data: bytes) -> None:
        ...

    def err(self, data: bytes) -> None:
        ...


class LoggingSink:
    """Forwards container output to a per-container logger, one record per line."""

    def __init__(self, name: str):
        self.name = name
        self._logger = logging.getLogger(f"{CONTAINER_LOGGER}.{name}")
        self._buffers: Dict[str, bytes] = {"stdout": b"", "stderr": b""}

    def out(self, data: bytes) -> None:
        self._write("stdout", data)

    def err(self, data: bytes) -> None:
        self._write("stderr", data)

    def _write(self, stream: str, data: bytes) -> None:
        *lines, rest = (self._buffers[stream] + data).split(b"\n")
        self._buffers[stream] = rest
        for line in lines:
            self._emit(stream, line.decode("utf-8", errors="replace").rstrip("\r"))

    def _emit(self, stream: str, text: str) -> None:
        level = logging.WARNING if stream == "stderr" else logging.INFO
        self._logger.log(level, text, extra={"stream": stream})

    def flush(self) -> None:
        for stream, rest in self._buffers.items():
            if rest:
                self._emit(stream, rest.decode("utf-8", errors="replace"))
            self._buffers[stream] = b""


def iter_lines(chunks: Iterable[bytes]) -> Iterator[bytes]:
    """Yield newline-terminated lines from arbitrarily split chunks."""
    pending = b""
    for chunk in chunks:
        pending += chunk
        *lines, pending = pending.split(b"\n")
        for line in lines:
            yield line + b"\n"
    if pending:
        yield pending + b"\n"


def demultiplex(chunks: Iterable[bytes]) -> Iterator[Tuple[int, bytes]]:
    """
    Split a multiplexed log stream into (stream, payload) pairs.

    Each frame starts with an 8-byte header: the stream type (1 stdout,
    2 stderr), three padding bytes and a big-endian payload length. Frames
    may be split across chunks.

    Raises:
        LogStreamError: If the stream ends inside a frame or carries an unknown stream type
    """
    buffer = b""
    for chunk in chunks:
        buffer += chunk
        while len(buffer) >= FRAME_HEADER.size:
            stream, length = FRAME_HEADER.unpack_from(buffer)
            end = FRAME_HEADER.size + length
            if len(buffer) < end:
                break
            if stream not in (0, STDOUT, STDERR):
                raise LogStreamError(f"Unrecognized stream type {stream} in log stream")
            payload, buffer = buffer[FRAME_HEADER.size:end], buffer[end:]
            # Stream 0 is stdin, which the engine only echoes for attached TTYs
            yield (STDERR if stream == STDERR else STDOUT), payload

    if buffer:
        raise LogStreamError(f"Log stream ended inside a frame ({len(buffer)} bytes left)")


class LogTask:
    """Handle for a detached log streamer."""

    def __init__(self, task: asyncio.Task, stop_event: threading.Event, streamer: "LogStreamer"):
        self._task = task
        self._stop_event = stop_event
        self._streamer = streamer

    @property
    def name(self) -> str:
        return self._streamer.name

    def done(self) -> bool:
        return self._task.done()

    def cancel(self) -> None:
        """Stop forwarding and close the underlying stream."""
        self._stop_event.set()
        self._streamer.close()
        self._task.cancel()

    async def wait(self) -> None:
        """Wait until the stream has ended or the task was cancelled."""
        try:
            await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise

    @property
    def exception(self) -> Optional[BaseException]:
        """The error that ended the stream, if any."""
        return self._streamer.error


class LogStreamer:
    """
    Best-effort forwarder of one container's output.

    Errors never propagate out of a spawned task; they are recorded on the
    streamer and logged at debug level.
    """

    def __init__(self, handle: "ContainerHandle", sink: Optional[LogSink] = None, tail: int = TAIL_LINES):
        self._handle = handle
        self._sink = sink
        self._tail = tail
        self._stream = None
        self.error: Optional[BaseException] = None

    @property
    def name(self) -> str:
        return self._handle.name

    def _make_sink(self) -> LogSink:
        if self._sink is not None:
            return self._sink
        factory = self._handle.service.context.logger_factory
        return factory(self.name) if factory else LoggingSink(self.name)

    def run(self, stop_event: Optional[threading.Event] = None) -> None:
        """
        Forward output until the stream closes. Blocking.

        Raises:
            BackendError: If the container cannot be inspected or its logs opened
        """
        stop_event = stop_event or threading.Event()
        client = self._handle.service.context.client

        container = self._handle.find()
        if container is None:
            logger.debug(f"Container {self.name} does not exist, nothing to stream")
            return

        info = client.inspect(container.id)
        sink = self._make_sink()
        self._stream = client.stream_logs(
            container.id, follow=True, stdout=True, stderr=True, tail=self._tail
        )

        try:
            # Cancelled while the stream was being opened
            if stop_event.is_set():
                return
            if info.tty:
                for line in iter_lines(self._stream):
                    if stop_event.is_set():
                        break
                    sink.out(line)
            else:
                for stream, payload in demultiplex(self._stream):
                    if stop_event.is_set():
                        break
                    if stream == STDERR:
                        sink.err(payload)
                    else:
                        sink.out(payload)
        finally:
            if hasattr(sink, "flush"):
                sink.flush()
            self.close()

        logger.debug(f"Log stream for {self.name} ended")

    def close(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None and hasattr(stream, "close"):
            try:
                stream.close()
            except Exception as e:
                logger.debug(f"Error closing log stream for {self.name}: {e}")

    async def _run_quietly(self, stop_event: threading.Event) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self.run, stop_event)
        except asyncio.CancelledError:
            logger.debug(f"Log streaming cancelled for {self.name}")
            raise
        except Exception as e:
            if not stop_event.is_set():
                self.error = e
                logger.debug(f"Log streaming for {self.name} failed: {e}")

    def spawn(self) -> LogTask:
        """Start forwarding in the background and return its handle."""
        stop_event = threading.Event()
        task = asyncio.get_running_loop().create_task(
            self._run_quietly(stop_event), name=f"berth-logs-{self.name}"
        )
        return LogTask(task, stop_event, self)

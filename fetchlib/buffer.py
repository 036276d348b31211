import logging
import threading
import time
from typing import Iterator, Optional, Tuple

from .types import WriteStatus


logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 1024 * 1024


class StreamBuffer:
    """Bounded in-process byte buffer with one writer and one reader.

    A blocking writer waits (up to its timeout) for the reader to make room,
    which is how a slow consumer pushes back on the producer.
    """

    def __init__(self, name: str, capacity: int = DEFAULT_CAPACITY, word_size: int = 1) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if word_size <= 0 or capacity % word_size:
            raise ValueError("capacity must be a positive multiple of word_size")
        self.name = name
        self.capacity = capacity
        self.word_size = word_size
        self._data = bytearray()
        self._cond = threading.Condition()
        self._writer: Optional["StreamWriter"] = None
        self._reader: Optional["StreamReader"] = None
        self._writer_closed = False
        self._reader_closed = False

    def create_writer(self, blocking: bool = True) -> "StreamWriter":
        with self._cond:
            if self._writer is not None:
                raise ValueError(f"stream {self.name!r} already has a writer")
            self._writer = StreamWriter(self, blocking)
            return self._writer

    def create_reader(self) -> "StreamReader":
        with self._cond:
            if self._reader is not None:
                raise ValueError(f"stream {self.name!r} already has a reader")
            self._reader = StreamReader(self)
            return self._reader

    def __len__(self) -> int:
        with self._cond:
            return len(self._data)

    def _free(self) -> int:
        return self.capacity - len(self._data)

    def _write(self, data: bytes, timeout: float, blocking: bool) -> Tuple[int, WriteStatus]:
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise TypeError("data must be bytes-like")
        if len(data) < self.word_size:
            return 0, WriteStatus.ERROR_TOO_SMALL
        deadline = time.monotonic() + max(0.0, timeout)
        with self._cond:
            while True:
                if self._writer_closed or self._reader_closed:
                    return 0, WriteStatus.CLOSED
                if self._free() >= self.word_size:
                    break
                if not blocking:
                    return 0, WriteStatus.OK_BUFFER_FULL
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    # A blocking write reports a timeout, never a full buffer.
                    return 0, WriteStatus.TIMEDOUT
                self._cond.wait(remaining)
            n = min(len(data), self._free())
            n -= n % self.word_size
            try:
                self._data.extend(data[:n])
            except (BufferError, MemoryError):
                logger.exception("write to stream %r failed", self.name)
                return 0, WriteStatus.ERROR_INTERNAL
            self._cond.notify_all()
            return n, WriteStatus.OK

    def _close_writer(self) -> None:
        with self._cond:
            self._writer_closed = True
            self._cond.notify_all()

    def _read(self, size: int, timeout: Optional[float]) -> bytes:
        deadline = None if timeout is None else time.monotonic() + max(0.0, timeout)
        with self._cond:
            while not self._data:
                if self._writer_closed or self._reader_closed:
                    return b""
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TimeoutError(f"no data on stream {self.name!r} within {timeout}s")
                self._cond.wait(remaining)
            n = len(self._data) if size is None or size < 0 else min(size, len(self._data))
            chunk = bytes(self._data[:n])
            del self._data[:n]
            self._cond.notify_all()
            return chunk

    def _close_reader(self) -> None:
        with self._cond:
            self._reader_closed = True
            self._data.clear()
            self._cond.notify_all()


class StreamWriter:
    def __init__(self, stream: StreamBuffer, blocking: bool) -> None:
        self.stream = stream
        self.blocking = blocking

    def write(self, data: bytes, timeout: float) -> Tuple[int, WriteStatus]:
        """Write as much of ``data`` as fits, waiting at most ``timeout`` seconds for room."""
        return self.stream._write(data, timeout, self.blocking)

    def close(self) -> None:
        self.stream._close_writer()

    @property
    def closed(self) -> bool:
        return self.stream._writer_closed


class StreamReader:
    def __init__(self, stream: StreamBuffer) -> None:
        self.stream = stream

    def read(self, size: int = -1, timeout: Optional[float] = None) -> bytes:
        """Return up to ``size`` buffered bytes, or ``b""`` once the writer closed and the buffer drained.

        Raises ``TimeoutError`` if ``timeout`` elapses with nothing to read.
        """
        return self.stream._read(size, timeout)

    def readall(self, timeout: Optional[float] = None) -> bytes:
        parts = []
        while True:
            chunk = self.read(timeout=timeout)
            if not chunk:
                return b"".join(parts)
            parts.append(chunk)

    def __iter__(self) -> Iterator[bytes]:
        while True:
            chunk = self.read()
            if not chunk:
                return
            yield chunk

    def close(self) -> None:
        self.stream._close_reader()

    @property
    def closed(self) -> bool:
        return self.stream._reader_closed

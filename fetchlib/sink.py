import logging
from typing import Callable

from .types import StreamWriterProtocol, WriteStatus


logger = logging.getLogger(__name__)

_STOP_STATUSES = (WriteStatus.CLOSED, WriteStatus.ERROR_TOO_SMALL, WriteStatus.ERROR_INTERNAL)
_RETRY_STATUSES = (WriteStatus.OK, WriteStatus.TIMEDOUT)


class BodySink:
    """Body callback pushing chunks into a stream writer with backpressure.

    The return value is the number of bytes consumed; anything short of the
    chunk size makes the transfer engine abort the transfer.
    """

    def __init__(self, writer: StreamWriterProtocol, is_finished: Callable[[], bool], write_timeout: float = 0.1):
        self.writer = writer
        self._is_finished = is_finished
        self._write_timeout = write_timeout
        self.bytes_written = 0

    def __call__(self, data: bytes) -> int:
        # Live streams never end on their own; refusing the chunk is how they stop.
        if self._is_finished():
            return 0
        target = len(data)
        total = 0
        while total < target and not self._is_finished():
            written, status = self.writer.write(data[total:], self._write_timeout)
            total += written
            self.bytes_written += written
            if status in _STOP_STATUSES:
                return total
            if status in _RETRY_STATUSES:
                continue
            if status is WriteStatus.OK_BUFFER_FULL:
                logger.error("unexpected write status %s from blocking write", status.name)
                return 0
            logger.error("unexpected write status %r", status)
            return 0
        return total

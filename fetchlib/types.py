from concurrent.futures import Future, wait
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional, Protocol, Tuple

if TYPE_CHECKING:
    from .buffer import StreamReader


SUCCESS_START_CODE = 200
SUCCESS_END_CODE = 299
REDIRECTION_START_CODE = 300
REDIRECTION_END_CODE = 399


def is_redirect(code: int) -> bool:
    return REDIRECTION_START_CODE <= code <= REDIRECTION_END_CODE


class FetchOption(Enum):
    CONTENT_TYPE = "content_type"
    ENTIRE_BODY = "entire_body"


class WriteStatus(Enum):
    OK = "ok"
    OK_BUFFER_FULL = "ok_buffer_full"
    TIMEDOUT = "timedout"
    CLOSED = "closed"
    ERROR_TOO_SMALL = "error_too_small"
    ERROR_INTERNAL = "error_internal"


class WorkerState(Enum):
    CONFIGURING = "configuring"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class MultiCode(Enum):
    OK = "ok"
    # Progress was made and more is ready now; call perform() again before waiting.
    CALL_AGAIN = "call_again"
    ERROR = "error"


class TransferError(Exception):
    """A transfer handle rejected a configuration step."""


HeaderCallback = Callable[[bytes], int]
BodyCallback = Callable[[bytes], int]


class StreamWriterProtocol(Protocol):
    def write(self, data: bytes, timeout: float) -> Tuple[int, WriteStatus]: ...

    def close(self) -> None: ...


class TransferProtocol(Protocol):
    def set_url(self, url: str) -> None: ...

    def set_follow_redirects(self, enabled: bool) -> None: ...

    def set_auto_referer(self, enabled: bool) -> None: ...

    def enable_cookies(self) -> None: ...

    def set_connect_timeout(self, seconds: float) -> None: ...

    def set_user_agent(self, user_agent: str) -> None: ...

    def set_header_callback(self, callback: HeaderCallback) -> None: ...

    def set_body_callback(self, callback: BodyCallback) -> None: ...

    @property
    def response_code(self) -> int: ...

    @property
    def content_type(self) -> Optional[str]: ...


class MultiProtocol(Protocol):
    def add_handle(self, transfer: TransferProtocol) -> None: ...

    def remove_handle(self, transfer: TransferProtocol) -> None: ...

    def perform(self) -> Tuple[MultiCode, int]: ...

    def wait(self, timeout: float) -> Tuple[MultiCode, int]: ...


@dataclass(frozen=True)
class FetchResult:
    """Handle returned by ``ContentFetcher.get_content``.

    Both futures are resolved exactly once by the fetch worker, before it
    exits. ``body`` is only set for an entire-body fetch that created its own
    buffer.
    """

    status_code: "Future[int]"
    content_type: "Future[str]"
    body: Optional["StreamReader"] = None

    def get_status_code(self, timeout: Optional[float] = None) -> int:
        return self.status_code.result(timeout=timeout)

    def get_content_type(self, timeout: Optional[float] = None) -> str:
        return self.content_type.result(timeout=timeout)

    def is_ready(self, timeout: Optional[float] = None) -> bool:
        _, pending = wait([self.status_code, self.content_type], timeout=timeout)
        return not pending

    def is_status_code_success(self, timeout: Optional[float] = None) -> bool:
        code = self.get_status_code(timeout)
        return SUCCESS_START_CODE <= code <= SUCCESS_END_CODE

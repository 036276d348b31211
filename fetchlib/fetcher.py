import logging
import threading
import time
from concurrent.futures import Future
from typing import Callable, Optional, Tuple

from .buffer import StreamBuffer, StreamReader
from .config import FetchConfig
from .headers import HeaderParser, parse_content_type
from .metrics import Metrics
from .net import Multi, Transfer
from .sink import BodySink
from .types import (
    SUCCESS_END_CODE,
    SUCCESS_START_CODE,
    FetchOption,
    FetchResult,
    MultiCode,
    MultiProtocol,
    StreamWriterProtocol,
    TransferError,
    TransferProtocol,
    WorkerState,
    is_redirect,
)


logger = logging.getLogger(__name__)


def _discard_body(data: bytes) -> int:
    # Consuming nothing makes the engine stop once the body starts.
    return 0


class ContentFetcher:
    """Fetches one URL in the background; usable for a single ``get_content`` call.

    ``get_content`` configures the transfer, starts a worker thread and returns
    at once. The worker drives the transfer engine until the transfer ends or
    the fetcher is cancelled, then resolves both futures of the result.
    ``close()`` stops the worker and joins it.
    """

    def __init__(
        self,
        url: str,
        config: Optional[FetchConfig] = None,
        transfer: Optional[TransferProtocol] = None,
        multi_factory: Optional[Callable[[], Optional[MultiProtocol]]] = None,
        metrics: Optional[Metrics] = None,
    ) -> None:
        self.url = url
        self.config = config or FetchConfig()
        self._transfer = transfer or Transfer(
            chunk_size=self.config.chunk_size,
            max_redirects=self.config.max_redirects,
            read_timeout=self.config.read_timeout,
        )
        self._multi_factory = multi_factory or Multi.create
        self.metrics = metrics

        self._used = False
        self._used_lock = threading.Lock()
        self._done = threading.Event()
        self._shutdown = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._state = WorkerState.CONFIGURING

        self._status_code: "Future[int]" = Future()
        self._content_type: "Future[str]" = Future()
        self._headers = HeaderParser()
        self._sink: Optional[BodySink] = None
        self._writer: Optional[StreamWriterProtocol] = None
        self._owns_writer = False

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def bytes_streamed(self) -> int:
        return self._sink.bytes_written if self._sink is not None else 0

    def _is_finished(self) -> bool:
        return self._done.is_set() or self._shutdown.is_set()

    def get_content(
        self, option: FetchOption, writer: Optional[StreamWriterProtocol] = None
    ) -> Optional[FetchResult]:
        """Start fetching; return ``None`` if the fetch could not be set up.

        With ``FetchOption.ENTIRE_BODY`` and no ``writer``, the body goes to a
        new in-process buffer whose reader is ``FetchResult.body``; that buffer
        is closed when the transfer ends. A caller-supplied writer is never
        closed here.
        """
        with self._used_lock:
            if self._used:
                logger.error("getContent failed: fetcher has already been used")
                return None
            self._used = True

        transfer = self._transfer
        try:
            transfer.set_url(self.url)
            transfer.set_follow_redirects(True)
            transfer.set_auto_referer(True)
            transfer.enable_cookies()
            transfer.set_connect_timeout(self.config.connect_timeout)
            transfer.set_user_agent(self.config.user_agent)
        except TransferError as exc:
            logger.error("getContent failed: configuring transfer: %s", exc)
            return None

        body: Optional[StreamReader] = None
        if option is FetchOption.CONTENT_TYPE:
            try:
                transfer.set_body_callback(_discard_body)
            except TransferError as exc:
                logger.error("getContent failed: setting body callback: %s", exc)
                return None
        elif option is FetchOption.ENTIRE_BODY:
            owns_writer = writer is None
            if owns_writer:
                try:
                    # The url names the stream, for tracing.
                    stream = StreamBuffer(self.url, capacity=self.config.buffer_size)
                    writer = stream.create_writer(blocking=True)
                    body = stream.create_reader()
                except ValueError as exc:
                    logger.error("getContent failed: creating stream: %s", exc)
                    return None
            sink = BodySink(writer, self._is_finished, self.config.write_timeout)
            try:
                transfer.set_body_callback(sink)
                transfer.set_header_callback(self._headers)
            except TransferError as exc:
                logger.error("getContent failed: setting callbacks: %s", exc)
                return None
            self._writer = writer
            self._owns_writer = owns_writer
            self._sink = sink
        else:
            logger.error("getContent failed: unknown fetch option %r", option)
            return None

        # Running futures can no longer be cancelled by the caller.
        self._status_code.set_running_or_notify_cancel()
        self._content_type.set_running_or_notify_cancel()
        self._thread = threading.Thread(target=self._run, args=(option,), name="content-fetcher", daemon=True)
        self._thread.start()
        return FetchResult(status_code=self._status_code, content_type=self._content_type, body=body)

    def _run(self, option: FetchOption) -> None:
        started = time.perf_counter()
        status_code, content_type = 0, ""
        multi: Optional[MultiProtocol] = None
        added = False
        try:
            multi = self._multi_factory()
            if multi is None:
                logger.error("getContent failed: could not create transfer multiplexer")
                return
            multi.add_handle(self._transfer)
            added = True
            status_code, content_type = self._loop(multi, option)
        except Exception:
            logger.exception("content fetch worker failed")
            status_code, content_type = 0, ""
        finally:
            self._finalize_step("resolving status code", self._status_code.set_result, status_code)
            self._finalize_step("resolving content type", self._content_type.set_result, content_type)
            if option is FetchOption.ENTIRE_BODY and self._owns_writer and self._writer is not None:
                self._finalize_step("closing stream", self._writer.close)
            cancelled = self._is_finished()
            self._done.set()
            if added:
                self._finalize_step("removing transfer", multi.remove_handle, self._transfer)
            self._state = WorkerState.CANCELLED if cancelled else WorkerState.COMPLETED
            self._record(status_code, (time.perf_counter() - started) * 1000.0)

    def _finalize_step(self, what: str, fn: Callable, *args) -> None:
        try:
            fn(*args)
        except Exception:
            logger.exception("content fetch worker: %s failed", what)

    def _loop(self, multi: MultiProtocol, option: FetchOption) -> Tuple[int, str]:
        self._state = WorkerState.RUNNING
        transfer = self._transfer
        response_code = 0
        remaining = 1
        while remaining and not self._is_finished():
            result, remaining = multi.perform()
            if result is MultiCode.CALL_AGAIN:
                continue
            if result is not MultiCode.OK:
                logger.error("getContent failed: perform failed with %s", result.name)
                return 0, ""

            if option is FetchOption.CONTENT_TYPE:
                response_code = transfer.response_code
                if response_code and not is_redirect(response_code):
                    content_type = parse_content_type(transfer.content_type)
                    logger.debug("getContent: %s answered %d %r", self.url, response_code, content_type)
                    return response_code, content_type

            result, _ = multi.wait(self.config.wait_timeout)
            if result is not MultiCode.OK:
                logger.error("getContent failed: wait failed with %s", result.name)
                return 0, ""

        if option is FetchOption.CONTENT_TYPE:
            return response_code, ""
        return self._headers.status_code, self._headers.content_type

    def _record(self, status_code: int, fetch_ms: float) -> None:
        if self.metrics is None:
            return
        ok = SUCCESS_START_CODE <= status_code <= SUCCESS_END_CODE
        self.metrics.record_fetch(ok, self.bytes_streamed, fetch_ms)

    def cancel(self) -> None:
        """Stop consuming the body; the worker exits within one wait interval."""
        self._done.set()

    def close(self) -> None:
        self._done.set()
        self._shutdown.set()
        thread = self._thread
        if thread is None or thread is threading.current_thread():
            return
        thread.join(timeout=self.config.join_timeout)
        if thread.is_alive():
            logger.warning("content fetcher worker for %s did not stop within %.1fs", self.url, self.config.join_timeout)

    def __enter__(self) -> "ContentFetcher":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __del__(self) -> None:
        try:
            self.close()
        except Exception:
            logger.debug("closing content fetcher for %s on collection failed", self.url, exc_info=True)


class ContentFetcherFactory:
    """Creates a fresh single-use ``ContentFetcher`` per URL with shared settings."""

    def __init__(
        self,
        config: Optional[FetchConfig] = None,
        multi_factory: Optional[Callable[[], Optional[MultiProtocol]]] = None,
        metrics: Optional[Metrics] = None,
    ) -> None:
        self.config = config or FetchConfig()
        self.multi_factory = multi_factory
        self.metrics = metrics

    def create(self, url: str) -> ContentFetcher:
        return ContentFetcher(url, config=self.config, multi_factory=self.multi_factory, metrics=self.metrics)

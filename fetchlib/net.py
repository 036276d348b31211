import logging
import queue
import threading
from http.cookiejar import CookieJar
from typing import List, Optional, Tuple
from urllib.parse import urljoin
from urllib.request import Request

import urllib3
from urllib3 import exceptions as urllib3_exc
from urllib3.util import parse_url

from .config import DEFAULT_CHUNK_SIZE
from .types import BodyCallback, HeaderCallback, MultiCode, TransferError


logger = logging.getLogger(__name__)

REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})
MAX_EVENTS_PER_PERFORM = 64
EVENT_QUEUE_SIZE = 16
# How often a blocked pump thread re-checks for an abort.
PUT_INTERVAL = 0.1

_HTTP_VERSIONS = {9: "0.9", 10: "1.0", 11: "1.1", 20: "2"}

_HEADERS = "headers"
_BODY = "body"
_DONE = "done"


class _CookieResponse:
    """Exposes urllib3 headers the way http.cookiejar expects a response."""

    def __init__(self, headers) -> None:
        self._headers = headers

    def info(self) -> "_CookieResponse":
        return self

    def get_all(self, name: str, default=None):
        values = self._headers.getlist(name)
        return values or default


class Transfer:
    """A single GET transfer, configured up front and driven by a ``Multi``.

    Network I/O happens on a pump thread owned by the transfer. Header lines
    and body chunks are queued there and handed to the callbacks from
    ``Multi.perform()``, on whichever thread drives the multi.
    """

    def __init__(
        self,
        pool: Optional[urllib3.PoolManager] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_redirects: int = 10,
        read_timeout: Optional[float] = None,
    ) -> None:
        self._pool = pool
        self.chunk_size = chunk_size
        self.max_redirects = max_redirects
        self.read_timeout = read_timeout
        self.url: Optional[str] = None
        self.follow_redirects = False
        self.auto_referer = False
        self.cookies: Optional[CookieJar] = None
        self.connect_timeout: Optional[float] = None
        self.user_agent: Optional[str] = None
        self._header_callback: Optional[HeaderCallback] = None
        self._body_callback: Optional[BodyCallback] = None

        self.response_code = 0
        self.content_type: Optional[str] = None
        self.error: Optional[str] = None

        self._events: "queue.Queue[tuple]" = queue.Queue(maxsize=EVENT_QUEUE_SIZE)
        self._activity = threading.Event()
        self._aborted = threading.Event()
        self._finished = False
        self._thread: Optional[threading.Thread] = None

    def set_url(self, url: str) -> None:
        try:
            parsed = parse_url(url)
        except urllib3_exc.LocationParseError as exc:
            raise TransferError(f"invalid url {url!r}") from exc
        if parsed.scheme not in ("http", "https") or not parsed.host:
            raise TransferError(f"unsupported url {url!r}")
        self.url = url

    def set_follow_redirects(self, enabled: bool) -> None:
        self.follow_redirects = bool(enabled)

    def set_auto_referer(self, enabled: bool) -> None:
        self.auto_referer = bool(enabled)

    def enable_cookies(self) -> None:
        if self.cookies is None:
            self.cookies = CookieJar()

    def set_connect_timeout(self, seconds: float) -> None:
        if seconds <= 0:
            raise TransferError(f"connect timeout must be positive, got {seconds}")
        self.connect_timeout = seconds

    def set_user_agent(self, user_agent: str) -> None:
        if not user_agent or "\r" in user_agent or "\n" in user_agent:
            raise TransferError(f"invalid user agent {user_agent!r}")
        self.user_agent = user_agent

    def set_header_callback(self, callback: HeaderCallback) -> None:
        if not callable(callback):
            raise TransferError("header callback must be callable")
        self._header_callback = callback

    def set_body_callback(self, callback: BodyCallback) -> None:
        if not callable(callback):
            raise TransferError("body callback must be callable")
        self._body_callback = callback

    @property
    def finished(self) -> bool:
        return self._finished

    def abort(self) -> None:
        self._aborted.set()
        self._finished = True

    # Pump thread

    def _put(self, event: tuple) -> bool:
        while not self._aborted.is_set():
            try:
                self._events.put(event, timeout=PUT_INTERVAL)
            except queue.Full:
                continue
            self._activity.set()
            return True
        return False

    def _request_headers(self, url: str, referer: Optional[str]) -> dict:
        headers = {}
        if self.user_agent:
            headers["User-Agent"] = self.user_agent
        if referer:
            headers["Referer"] = referer
        if self.cookies is not None:
            request = Request(url)
            self.cookies.add_cookie_header(request)
            cookie = request.get_header("Cookie")
            if cookie:
                headers["Cookie"] = cookie
        return headers

    @staticmethod
    def _header_lines(response) -> List[bytes]:
        version = _HTTP_VERSIONS.get(response.version, "1.1")
        status_line = f"HTTP/{version} {response.status} {response.reason or ''}".rstrip()
        lines = [status_line.encode("latin-1", errors="replace") + b"\r\n"]
        for name, value in response.headers.items():
            lines.append(f"{name}: {value}\r\n".encode("latin-1", errors="replace"))
        lines.append(b"\r\n")
        return lines

    def _pump(self) -> None:
        pool = self._pool or urllib3.PoolManager()
        timeout = urllib3.Timeout(connect=self.connect_timeout, read=self.read_timeout)
        url = self.url
        referer = None
        hops = 0
        response = None
        completed = False
        try:
            while not self._aborted.is_set():
                response = pool.request(
                    "GET",
                    url,
                    headers=self._request_headers(url, referer),
                    redirect=False,
                    retries=False,
                    preload_content=False,
                    timeout=timeout,
                )
                if self.cookies is not None:
                    self.cookies.extract_cookies(_CookieResponse(response.headers), Request(url))
                content_type = response.headers.get("Content-Type")
                if not self._put((_HEADERS, (response.status, content_type, self._header_lines(response)))):
                    return
                location = response.get_redirect_location()
                if self.follow_redirects and response.status in REDIRECT_STATUSES and location:
                    if hops >= self.max_redirects:
                        self._put((_DONE, f"maximum of {self.max_redirects} redirects followed"))
                        return
                    response.drain_conn()
                    response.release_conn()
                    response = None
                    referer = url if self.auto_referer else None
                    url = urljoin(url, location)
                    hops += 1
                    continue
                for chunk in response.stream(self.chunk_size):
                    if not self._put((_BODY, chunk)):
                        return
                completed = True
                self._put((_DONE, None))
                return
        except (urllib3_exc.HTTPError, OSError) as exc:
            logger.debug("transfer of %s failed: %s", url, exc)
            self._put((_DONE, str(exc) or exc.__class__.__name__))
        except Exception as exc:
            logger.exception("transfer pump crashed")
            self._put((_DONE, repr(exc)))
        finally:
            if response is not None:
                if completed:
                    response.release_conn()
                else:
                    response.close()
            if self._pool is None:
                pool.clear()

    # Driven by Multi, on the caller's thread

    def _fail(self, reason: str) -> None:
        self.error = reason
        self.abort()

    def _has_events(self) -> bool:
        return not self._events.empty()

    def _advance(self, budget: int) -> Tuple[bool, bool]:
        """Deliver up to ``budget`` queued events; return (running, more_queued)."""
        if self._finished:
            return False, False
        if self._thread is None:
            self._thread = threading.Thread(target=self._pump, name="transfer-pump", daemon=True)
            self._thread.start()
        for _ in range(budget):
            try:
                kind, payload = self._events.get_nowait()
            except queue.Empty:
                return True, False
            if kind == _HEADERS:
                status, content_type, lines = payload
                self.response_code = status
                self.content_type = content_type
                for line in lines:
                    if self._header_callback is not None and self._header_callback(line) != len(line):
                        self._fail("header callback aborted the transfer")
                        return False, False
            elif kind == _BODY:
                if self._body_callback is not None and self._body_callback(payload) != len(payload):
                    self._fail("failed writing received data")
                    return False, False
            else:
                self.error = payload
                self._finished = True
                return False, False
        return True, self._has_events()


class Multi:
    """Advances and polls a set of transfers without blocking on any of them."""

    def __init__(self, max_events_per_perform: int = MAX_EVENTS_PER_PERFORM) -> None:
        self._transfers: List[Transfer] = []
        self._activity = threading.Event()
        self._budget = max(1, max_events_per_perform)

    @classmethod
    def create(cls) -> "Multi":
        return cls()

    def add_handle(self, transfer: Transfer) -> None:
        if transfer in self._transfers:
            raise TransferError("transfer already added")
        if transfer.url is None:
            raise TransferError("transfer has no url")
        transfer._activity = self._activity
        self._transfers.append(transfer)

    def remove_handle(self, transfer: Transfer) -> None:
        if transfer in self._transfers:
            self._transfers.remove(transfer)
        transfer.abort()

    def perform(self) -> Tuple[MultiCode, int]:
        remaining = 0
        call_again = False
        for transfer in list(self._transfers):
            try:
                running, more = transfer._advance(self._budget)
            except Exception:
                logger.exception("transfer callback raised")
                transfer._fail("callback raised")
                return MultiCode.ERROR, 0
            if running:
                remaining += 1
            call_again = call_again or more
        return (MultiCode.CALL_AGAIN if call_again else MultiCode.OK), remaining

    def wait(self, timeout: float) -> Tuple[MultiCode, int]:
        if timeout < 0:
            return MultiCode.ERROR, 0
        self._activity.clear()
        ready = sum(1 for t in self._transfers if t._has_events())
        if ready or not any(not t.finished for t in self._transfers):
            return MultiCode.OK, ready
        self._activity.wait(timeout)
        return MultiCode.OK, sum(1 for t in self._transfers if t._has_events())

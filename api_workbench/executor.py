"""Executor - Sends prepared requests and captures normalized responses.

The Executor performs exactly one HTTP call per execute() and never retries.
Transport failures (timeout, refused connection, TLS, cancellation) are
returned as failed ExecutionResponse objects; only requests that cannot be
built at all raise, before any network I/O.
"""

from __future__ import annotations

import logging
import socket
import ssl
import threading
import time
from typing import Any

import httpx

from api_workbench.errors import InvalidRequestError
from api_workbench.models import ErrorKind, ExecutionResponse, PreparedRequest
from api_workbench.normalizer import failure_response, normalize_response

logger = logging.getLogger(__name__)

TOOL_VERSION = "0.1.0"
DEFAULT_TIMEOUT = 30.0
DEFAULT_USER_AGENT = f"api-workbench/{TOOL_VERSION}"

_TLS_MARKERS = ("ssl", "certificate", "tls", "handshake")
_DNS_MARKERS = ("name or service not known", "nodename nor servname", "getaddrinfo", "name resolution")


class Executor:
    """Executes prepared requests through one shared httpx client.

    The client is the only shared state and httpx.Client is thread-safe, so
    one Executor can serve concurrent execute() calls from a worker pool.
    Connections are not kept alive between calls: each call owns its
    socket, which lets a CallWatcher abort it mid-flight.

    Usage:
        with Executor(timeout=10.0) as executor:
            response = executor.execute(prepared_request)
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        follow_redirects: bool = True,
        user_agent: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            timeout: Seconds bounding both connection and total response time.
            follow_redirects: Whether 3xx responses are followed.
            user_agent: User-Agent sent unless a request sets its own.
            transport: Custom httpx transport (tests use httpx.MockTransport).
        """
        if timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")
        self._timeout = timeout
        self._follow_redirects = follow_redirects
        self._client = httpx.Client(**self._build_client_kwargs(user_agent, transport))

    def __enter__(self) -> "Executor":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        self.close()

    def close(self) -> None:
        """Close the HTTP client and its pooled connections."""
        self._client.close()

    @property
    def timeout(self) -> float:
        return self._timeout

    def _build_client_kwargs(
        self, user_agent: str | None, transport: httpx.BaseTransport | None
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "timeout": httpx.Timeout(self._timeout),
            "limits": httpx.Limits(max_keepalive_connections=0),
            "follow_redirects": self._follow_redirects,
            "headers": {"User-Agent": user_agent or DEFAULT_USER_AGENT},
        }
        if transport is not None:
            kwargs["transport"] = transport
        return kwargs

    def execute(
        self,
        request: PreparedRequest,
        cancel_event: threading.Event | None = None,
        deadline: float | None = None,
    ) -> ExecutionResponse:
        """Execute a prepared request.

        Args:
            request: The request to send.
            cancel_event: Set by the caller to abort the call; reported as
                          error kind 'cancelled'.
            deadline: Absolute time.monotonic() value after which the call is
                      abandoned; reported as error kind 'timeout'.

        Returns:
            ExecutionResponse; success=False when no response was obtained.

        Raises:
            InvalidRequestError: If the request cannot be built (nothing sent).
        """
        timeout = self._effective_timeout(deadline)

        if cancel_event is not None and cancel_event.is_set():
            return self._fail(request, ErrorKind.CANCELLED, "Cancelled before dispatch", 0)
        if timeout <= 0:
            return self._fail(request, ErrorKind.TIMEOUT, "Deadline expired before dispatch", 0)

        http_request = self._build_http_request(request, timeout)

        start_time = time.perf_counter()
        watcher = CallWatcher(cancel_event, start_time + timeout)
        http_request.extensions["trace"] = watcher.trace
        chunks: list[bytes] = []

        try:
            with watcher:
                http_response = self._client.send(
                    http_request, stream=True, follow_redirects=self._follow_redirects
                )
                try:
                    for chunk in http_response.iter_bytes():
                        chunks.append(chunk)
                        if cancel_event is not None and cancel_event.is_set():
                            return self._fail(
                                request, ErrorKind.CANCELLED, "Cancelled while receiving response",
                                _elapsed_ms(start_time),
                            )
                        if watcher.expired():
                            break
                finally:
                    http_response.close()

        except httpx.UnsupportedProtocol as e:
            raise InvalidRequestError(f"Unsupported protocol: {e}") from e
        except httpx.HTTPError as e:
            if watcher.reason == ErrorKind.CANCELLED:
                return self._fail(
                    request, ErrorKind.CANCELLED, "Cancelled while in flight", _elapsed_ms(start_time)
                )
            if watcher.reason == ErrorKind.TIMEOUT:
                return self._fail(
                    request, ErrorKind.TIMEOUT,
                    f"Response not received within {timeout:g}s", _elapsed_ms(start_time),
                )
            error_type, message = classify_transport_error(e, timeout)
            return self._fail(request, error_type, message, _elapsed_ms(start_time))

        if watcher.expired():
            return self._fail(
                request, ErrorKind.TIMEOUT,
                f"Response not received within {timeout:g}s", _elapsed_ms(start_time),
            )
        if cancel_event is not None and cancel_event.is_set():
            return self._fail(
                request, ErrorKind.CANCELLED, "Cancelled while receiving response",
                _elapsed_ms(start_time),
            )

        elapsed_ms = _elapsed_ms(start_time)
        logger.info(
            "%s %s -> %d (%d ms)",
            request.method.value, _loggable_url(request.url), http_response.status_code, elapsed_ms,
        )
        return normalize_response(http_response, b"".join(chunks), request, elapsed_ms)

    def _effective_timeout(self, deadline: float | None) -> float:
        if deadline is None:
            return self._timeout
        return min(self._timeout, deadline - time.monotonic())

    def _build_http_request(self, request: PreparedRequest, timeout: float) -> httpx.Request:
        """Build the httpx request. Failures here mean nothing was sent."""
        try:
            return self._client.build_request(
                method=request.method.value,
                url=request.url,
                headers=list(request.headers),
                content=request.body,
                timeout=timeout,
            )
        except httpx.InvalidURL as e:
            raise InvalidRequestError(f"Malformed URL: {e}") from e
        except UnicodeEncodeError as e:
            # HTTP requires ASCII in header names/values and the request target
            raise InvalidRequestError(
                f"Encoding error: non-ASCII characters in request "
                f"(header or URL). Character: {e.object[e.start:e.end]!r} "
                f"at position {e.start}."
            ) from e

    def _fail(
        self,
        request: PreparedRequest,
        error_type: ErrorKind,
        message: str,
        elapsed_ms: int,
    ) -> ExecutionResponse:
        logger.info(
            "%s %s failed: %s (%d ms)",
            request.method.value, _loggable_url(request.url), error_type.value, elapsed_ms,
        )
        return failure_response(request, error_type, message, elapsed_ms)


class CallWatcher:
    """Aborts one in-flight call once it is cancelled or runs past its limit.

    Sockets opened for the call are collected through httpx's ``trace``
    request extension. Firing shuts them down, which wakes a read blocked
    on the status line or body so the call fails promptly instead of
    waiting for the server or the read timeout. The watcher thread is
    joined when the call returns.

    Usage:
        watcher = CallWatcher(cancel_event, time.perf_counter() + 5.0)
        http_request.extensions["trace"] = watcher.trace
        with watcher:
            response = client.send(http_request)
    """

    POLL_INTERVAL = 0.02

    def __init__(self, cancel_event: threading.Event | None, limit: float) -> None:
        """Initialize the watcher.

        Args:
            cancel_event: Optional event that cancels the call when set.
            limit: time.perf_counter() value after which the call times out.
        """
        self._cancel_event = cancel_event
        self._limit = limit
        self._sockets: list[socket.socket] = []
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._thread = threading.Thread(target=self._run, name="call-watcher", daemon=True)
        self.reason: ErrorKind | None = None

    def __enter__(self) -> "CallWatcher":
        self._thread.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        with self._lock:
            self._done.set()
        self._thread.join()

    def expired(self) -> bool:
        return time.perf_counter() > self._limit

    def trace(self, event_name: str, info: dict[str, Any]) -> None:
        """httpx trace hook: remember each new TCP connection's socket."""
        if event_name != "connection.connect_tcp.complete":
            return
        stream = info.get("return_value")
        sock = stream.get_extra_info("socket") if stream is not None else None
        if sock is None:
            return
        with self._lock:
            self._sockets.append(sock)
            fired = self.reason is not None
        if fired:
            _shutdown(sock)

    def _run(self) -> None:
        while not self._done.wait(self.POLL_INTERVAL):
            if self._cancel_event is not None and self._cancel_event.is_set():
                self._fire(ErrorKind.CANCELLED)
                return
            if self.expired():
                self._fire(ErrorKind.TIMEOUT)
                return

    def _fire(self, reason: ErrorKind) -> None:
        with self._lock:
            if self._done.is_set():
                return
            self.reason = reason
            sockets = list(self._sockets)
        logger.debug("Aborting in-flight call: %s", reason.value)
        for sock in sockets:
            _shutdown(sock)


def _shutdown(sock: socket.socket) -> None:
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError as e:
        # Already closed by the transport
        logger.debug("Socket shutdown skipped: %s", e)


def classify_transport_error(error: httpx.HTTPError, timeout: float) -> tuple[ErrorKind, str]:
    """Map an httpx error to (error kind, human-readable message)."""
    if isinstance(error, httpx.TimeoutException):
        return ErrorKind.TIMEOUT, f"Request timed out after {timeout:g}s: {error}"

    causes = list(_cause_chain(error))
    text = " ".join(str(c) for c in causes).lower()

    if any(isinstance(c, ssl.SSLError) for c in causes) or any(m in text for m in _TLS_MARKERS):
        return ErrorKind.TLS_ERROR, f"TLS error: {error}"
    if any(isinstance(c, ConnectionRefusedError) for c in causes) or "refused" in text:
        return ErrorKind.CONNECTION_REFUSED, f"Connection refused: {error}"
    if any(isinstance(c, socket.gaierror) for c in causes) or any(m in text for m in _DNS_MARKERS):
        return ErrorKind.UNKNOWN, f"DNS resolution failed: {error}"
    if isinstance(error, httpx.ConnectError):
        return ErrorKind.UNKNOWN, f"Connection error: {error}"
    return ErrorKind.UNKNOWN, f"Request error: {error}"


def _cause_chain(error: BaseException):
    """Yield error and its causes/contexts, each once."""
    seen: set[int] = set()
    current: BaseException | None = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def _elapsed_ms(start_time: float) -> int:
    return int(round((time.perf_counter() - start_time) * 1000))


def _loggable_url(url: str) -> str:
    """Drop the query string, which may carry an API key."""
    return url.split("?", 1)[0]

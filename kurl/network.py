"""Network backend - the socket layer under the httpx transport.

httpcore opens every connection through a NetworkBackend. TimedBackend wraps
the default synchronous backend to:

- answer name resolution from the static DNS overrides before asking the
  system resolver,
- record DNS, connect and TLS boundaries on a PhaseClock,
- enforce the total deadline by clamping the timeout of every socket
  operation to the time that is left.

TimedTransport is the httpx transport over an httpcore pool that opens its
connections through such a backend.
"""

from __future__ import annotations

import contextlib
import ipaddress
import logging
import socket
import ssl
import time
import typing
from typing import Callable, Iterator, Mapping

import httpcore
import httpx

from kurl.timing import CONNECT, DNS, TLS, PhaseClock

logger = logging.getLogger(__name__)

# A socket timeout fires at or slightly after the clamped value.
_EXPIRY_TOLERANCE = 0.005


class Deadline:
    """A point in time after which no socket operation may start or continue."""

    def __init__(
        self,
        seconds: float | None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.seconds = seconds
        self._clock = clock
        self._expires_at = None if seconds is None else clock() + seconds

    def remaining(self) -> float | None:
        if self._expires_at is None:
            return None
        return self._expires_at - self._clock()

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= _EXPIRY_TOLERANCE

    def clamp(
        self,
        timeout: float | None,
        exc_class: type[Exception] = httpcore.ReadTimeout,
    ) -> float | None:
        """Shorten timeout to the time left. Raises exc_class if none is left."""
        remaining = self.remaining()
        if remaining is None:
            return timeout
        if remaining <= 0:
            raise exc_class(f"total time limit of {self.seconds:g}s exceeded")
        return remaining if timeout is None else min(timeout, remaining)


class _TimedStream(httpcore.NetworkStream):
    """Delegates to the real stream, reading clock and deadline from the backend.

    A kept-alive connection outlives one call, so the stream must not hold
    on to the clock and deadline it was opened with.
    """

    def __init__(self, stream: httpcore.NetworkStream, backend: TimedBackend) -> None:
        self._stream = stream
        self._backend = backend

    def read(self, max_bytes: int, timeout: float | None = None) -> bytes:
        timeout = self._backend.deadline.clamp(timeout, httpcore.ReadTimeout)
        return self._stream.read(max_bytes, timeout)

    def write(self, buffer: bytes, timeout: float | None = None) -> None:
        timeout = self._backend.deadline.clamp(timeout, httpcore.WriteTimeout)
        self._stream.write(buffer, timeout)

    def close(self) -> None:
        self._stream.close()

    def start_tls(
        self,
        ssl_context: ssl.SSLContext,
        server_hostname: str | None = None,
        timeout: float | None = None,
    ) -> httpcore.NetworkStream:
        clock = self._backend.clock
        clock.begin(TLS)
        stream = self._stream.start_tls(
            ssl_context,
            server_hostname=server_hostname,
            timeout=self._backend.deadline.clamp(timeout, httpcore.ConnectTimeout),
        )
        clock.mark(TLS)
        return _TimedStream(stream, self._backend)

    def get_extra_info(self, info: str) -> typing.Any:
        return self._stream.get_extra_info(info)


class TimedBackend(httpcore.NetworkBackend):
    """Synchronous backend with DNS overrides, phase marks and a deadline.

    Call start() at the beginning of every transfer; it installs a fresh
    PhaseClock and Deadline that all connections, new or reused, report to.
    """

    def __init__(
        self,
        dns_overrides: Mapping[str, str] | None = None,
        inner: httpcore.NetworkBackend | None = None,
    ) -> None:
        self._overrides = dict(dns_overrides or {})
        self._inner = inner or httpcore.SyncBackend()
        self.clock = PhaseClock()
        self.deadline = Deadline(None)

    def start(self, total: float | None) -> PhaseClock:
        self.clock = PhaseClock()
        self.deadline = Deadline(total)
        return self.clock

    def resolve(self, host: str, port: int) -> list[str]:
        """Addresses to try for host:port, in order.

        Raises:
            httpcore.ConnectError: If the system resolver has no answer.
        """
        override = self._overrides.get(f"{host.lower()}:{port}")
        if override is not None:
            logger.debug("resolved %s:%d to %s (static override)", host, port, override)
            return [override]
        try:
            ipaddress.ip_address(host)
        except ValueError:
            pass
        else:
            return [host]

        try:
            infos = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)
        except socket.gaierror as e:
            raise httpcore.ConnectError(f"Could not resolve host: {host}") from e

        addresses: list[str] = []
        for _family, _type, _proto, _canonname, sockaddr in infos:
            if sockaddr[0] not in addresses:
                addresses.append(sockaddr[0])
        if not addresses:
            raise httpcore.ConnectError(f"Could not resolve host: {host}")
        logger.debug("resolved %s to %s", host, ", ".join(addresses))
        return addresses

    def connect_tcp(
        self,
        host: str,
        port: int,
        timeout: float | None = None,
        local_address: str | None = None,
        socket_options: typing.Iterable[httpcore.SOCKET_OPTION] | None = None,
    ) -> httpcore.NetworkStream:
        self.clock.begin(DNS)
        self.deadline.clamp(timeout, httpcore.ConnectTimeout)
        addresses = self.resolve(host, port)
        self.clock.mark(DNS)

        self.clock.begin(CONNECT)
        last_error: httpcore.ConnectError | None = None
        for address in addresses:
            try:
                stream = self._inner.connect_tcp(
                    address,
                    port,
                    timeout=self.deadline.clamp(timeout, httpcore.ConnectTimeout),
                    local_address=local_address,
                    socket_options=socket_options,
                )
            except httpcore.ConnectError as e:
                logger.debug("connect to %s:%d failed: %s", address, port, e)
                last_error = e
                continue
            self.clock.mark(CONNECT)
            logger.debug("connected to %s:%d", address, port)
            return _TimedStream(stream, self)

        if last_error is None:
            raise httpcore.ConnectError(f"Could not resolve host: {host}")
        raise last_error

    def connect_unix_socket(
        self,
        path: str,
        timeout: float | None = None,
        socket_options: typing.Iterable[httpcore.SOCKET_OPTION] | None = None,
    ) -> httpcore.NetworkStream:
        raise httpcore.UnsupportedProtocol("unix sockets are not supported")

    def sleep(self, seconds: float) -> None:
        self._inner.sleep(seconds)


# Most specific first: the first isinstance match wins.
_HTTPCORE_EXCEPTIONS: dict[type[Exception], type[httpx.TransportError]] = {
    httpcore.ConnectTimeout: httpx.ConnectTimeout,
    httpcore.ReadTimeout: httpx.ReadTimeout,
    httpcore.WriteTimeout: httpx.WriteTimeout,
    httpcore.PoolTimeout: httpx.PoolTimeout,
    httpcore.TimeoutException: httpx.TimeoutException,
    httpcore.ConnectError: httpx.ConnectError,
    httpcore.ReadError: httpx.ReadError,
    httpcore.WriteError: httpx.WriteError,
    httpcore.NetworkError: httpx.NetworkError,
    httpcore.ProxyError: httpx.ProxyError,
    httpcore.UnsupportedProtocol: httpx.UnsupportedProtocol,
    httpcore.LocalProtocolError: httpx.LocalProtocolError,
    httpcore.RemoteProtocolError: httpx.RemoteProtocolError,
    httpcore.ProtocolError: httpx.ProtocolError,
}


@contextlib.contextmanager
def map_httpcore_exceptions() -> Iterator[None]:
    """Re-raise httpcore exceptions as their httpx counterparts."""
    try:
        yield
    except Exception as exc:
        for from_exc, to_exc in _HTTPCORE_EXCEPTIONS.items():
            if isinstance(exc, from_exc):
                raise to_exc(str(exc)) from exc
        raise


class _ResponseStream(httpx.SyncByteStream):
    def __init__(self, stream: typing.Iterable[bytes]) -> None:
        self._stream = stream

    def __iter__(self) -> Iterator[bytes]:
        with map_httpcore_exceptions():
            for part in self._stream:
                yield part

    def close(self) -> None:
        if hasattr(self._stream, "close"):
            self._stream.close()


class TimedTransport(httpx.BaseTransport):
    """httpx transport over an httpcore connection pool.

    The pool (a ConnectionPool, or an HTTPProxy for a forwarding proxy) is
    built by the caller with the network backend it should open connections
    through.
    """

    def __init__(self, pool: httpcore.ConnectionPool) -> None:
        self.pool = pool

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        core_request = httpcore.Request(
            method=request.method,
            url=httpcore.URL(
                scheme=request.url.raw_scheme,
                host=request.url.raw_host,
                port=request.url.port,
                target=request.url.raw_path,
            ),
            headers=request.headers.raw,
            content=request.stream,
            extensions=request.extensions,
        )
        with map_httpcore_exceptions():
            core_response = self.pool.handle_request(core_request)

        return httpx.Response(
            status_code=core_response.status,
            headers=core_response.headers,
            stream=_ResponseStream(core_response.stream),
            extensions=core_response.extensions,
        )

    def close(self) -> None:
        self.pool.close()

"""Proxy tunnel - CONNECT through a proxy that wants Negotiate or NTLM.

httpcore's own tunnel sends CONNECT once with fixed headers and gives up on
a 407, so a challenge-response handshake cannot run there. ProxyTunnelBackend
is a NetworkBackend instead: asked for a connection to host:port, it
connects to the proxy, negotiates ``CONNECT host:port`` until the proxy
answers 2xx, and hands the tunneled stream back. httpcore then treats it as
a direct connection, TLS to the origin included.

The handshake legs run on one connection as long as the proxy keeps it
open; NTLM depends on that.
"""

from __future__ import annotations

import logging
import ssl
import typing

import h11
import httpcore
import httpx

from kurl.auth import HEADER_SCHEMES, MAX_LEGS, SpnegoHandshake, find_challenge
from kurl.errors import FailureKind, TransferError
from kurl.models import ProxySettings

logger = logging.getLogger(__name__)

_READ_SIZE = 64 * 1024


class _ConnectReply(typing.NamedTuple):
    status: int
    reason: str
    challenges: list[str]
    reusable: bool


def connect_target(host: str, port: int) -> bytes:
    """The request target of CONNECT: host:port, IPv6 literals in brackets."""
    if ":" in host:
        host = f"[{host}]"
    return f"{host}:{port}".encode("ascii")


class _ProxyConnection:
    """One connection to the proxy and the h11 state that goes with it."""

    def __init__(self, stream: httpcore.NetworkStream) -> None:
        self.stream = stream
        self._h11 = h11.Connection(h11.CLIENT)

    def connect(
        self,
        target: bytes,
        authorization: str | None,
        timeout: float | None,
    ) -> _ConnectReply:
        headers = [(b"Host", target)]
        if authorization is not None:
            headers.append((b"Proxy-Authorization", authorization.encode("ascii")))
        try:
            self._send(h11.Request(method=b"CONNECT", target=target, headers=headers), timeout)
            self._send(h11.EndOfMessage(), timeout)
            return self._receive(timeout)
        except h11.RemoteProtocolError as e:
            raise httpcore.RemoteProtocolError(f"proxy sent an invalid response: {e}") from e
        except h11.LocalProtocolError as e:
            raise httpcore.LocalProtocolError(str(e)) from e

    def _send(self, event: h11.Event, timeout: float | None) -> None:
        data = self._h11.send(event)
        if data:
            self.stream.write(data, timeout)

    def _next_event(self, timeout: float | None) -> typing.Any:
        while True:
            event = self._h11.next_event()
            if event is not h11.NEED_DATA:
                return event
            self._h11.receive_data(self.stream.read(_READ_SIZE, timeout))

    def _receive(self, timeout: float | None) -> _ConnectReply:
        event = self._next_event(timeout)
        while isinstance(event, h11.InformationalResponse):
            event = self._next_event(timeout)
        if not isinstance(event, h11.Response):
            raise httpcore.RemoteProtocolError("proxy closed the connection during CONNECT")

        status = event.status_code
        reason = event.reason.decode("ascii", errors="ignore")
        challenges = [
            value.decode("latin-1")
            for name, value in event.headers
            if name == b"proxy-authenticate"
        ]
        if 200 <= status < 300:
            return _ConnectReply(status, reason, challenges, reusable=True)

        # Drain the error body so the next leg can use the same connection.
        while not isinstance(event, (h11.EndOfMessage, h11.ConnectionClosed)):
            event = self._next_event(timeout)
        reusable = self._h11.our_state is h11.DONE and self._h11.their_state is h11.DONE
        if reusable:
            self._h11.start_next_cycle()
        return _ConnectReply(status, reason, challenges, reusable)

    def close(self) -> None:
        self.stream.close()


class ProxyTunnelBackend(httpcore.NetworkBackend):
    """Opens every connection as a CONNECT tunnel through an authenticating proxy.

    Args:
        backend: Opens the TCP connection to the proxy itself.
        proxy: Proxy URL, credentials and auth scheme ("negotiate" or "ntlm").
        proxy_ssl_context: TLS context for an https:// proxy, else None.
    """

    def __init__(
        self,
        backend: httpcore.NetworkBackend,
        proxy: ProxySettings,
        proxy_ssl_context: ssl.SSLContext | None = None,
    ) -> None:
        url = httpx.URL(proxy.url)
        self._backend = backend
        self._proxy = proxy
        self.proxy_host = url.host
        self.proxy_port = url.port or (443 if url.scheme == "https" else 80)
        self._ssl_context = proxy_ssl_context

    def _open(
        self,
        timeout: float | None,
        local_address: str | None,
        socket_options: typing.Iterable[httpcore.SOCKET_OPTION] | None,
    ) -> _ProxyConnection:
        stream = self._backend.connect_tcp(
            self.proxy_host,
            self.proxy_port,
            timeout=timeout,
            local_address=local_address,
            socket_options=socket_options,
        )
        if self._ssl_context is not None:
            try:
                stream = stream.start_tls(
                    self._ssl_context, server_hostname=self.proxy_host, timeout=timeout
                )
            except Exception:
                stream.close()
                raise
        return _ProxyConnection(stream)

    def connect_tcp(
        self,
        host: str,
        port: int,
        timeout: float | None = None,
        local_address: str | None = None,
        socket_options: typing.Iterable[httpcore.SOCKET_OPTION] | None = None,
    ) -> httpcore.NetworkStream:
        target = connect_target(host, port)
        handshake: SpnegoHandshake | None = None
        authorization: str | None = None

        connection = self._open(timeout, local_address, socket_options)
        try:
            for leg in range(MAX_LEGS + 1):
                logger.debug(
                    "CONNECT %s via %s:%d (leg %d)",
                    target.decode("ascii"),
                    self.proxy_host,
                    self.proxy_port,
                    leg,
                )
                reply = connection.connect(target, authorization, timeout)
                if 200 <= reply.status < 300:
                    if handshake is not None:
                        logger.debug("proxy %s: authenticated", self.proxy_host)
                    return connection.stream
                handshake, authorization = self._answer(reply, handshake)
                if not reply.reusable:
                    logger.debug("proxy closed the connection between legs; reconnecting")
                    connection.close()
                    connection = self._open(timeout, local_address, socket_options)
        except Exception:
            connection.close()
            raise

        connection.close()
        raise TransferError(
            f"proxy {HEADER_SCHEMES[self._proxy.auth_scheme]} handshake "
            f"did not complete in {MAX_LEGS} legs",
            FailureKind.AUTH,
        )

    def _answer(
        self,
        reply: _ConnectReply,
        handshake: SpnegoHandshake | None,
    ) -> tuple[SpnegoHandshake, str]:
        """Step the handshake for a refused CONNECT.

        Returns:
            The handshake and the next Proxy-Authorization value.

        Raises:
            httpcore.ProxyError: If the reply is not a 407 this handshake can answer.
        """
        refused = f"{reply.status} {reply.reason}".strip()
        if reply.status != 407:
            raise httpcore.ProxyError(refused)

        header_scheme = HEADER_SCHEMES[self._proxy.auth_scheme]
        offered, in_token = find_challenge(reply.challenges, header_scheme)
        if not offered:
            logger.warning("proxy did not offer %s authentication", header_scheme)
            raise httpcore.ProxyError(refused)
        if handshake is None:
            handshake = SpnegoHandshake(
                self._proxy.auth_scheme,
                self.proxy_host,
                self._proxy.username,
                self._proxy.password,
            )
        elif in_token is None or handshake.complete:
            logger.debug("proxy %s: credentials rejected", self.proxy_host)
            raise httpcore.ProxyError(refused)

        authorization = handshake.header_value(in_token)
        if authorization is None:
            raise httpcore.ProxyError(refused)
        return handshake, authorization

    def connect_unix_socket(
        self,
        path: str,
        timeout: float | None = None,
        socket_options: typing.Iterable[httpcore.SOCKET_OPTION] | None = None,
    ) -> httpcore.NetworkStream:
        raise httpcore.UnsupportedProtocol("unix sockets are not supported")

    def sleep(self, seconds: float) -> None:
        self._backend.sleep(seconds)

"""Request Executor - performs one transfer described by a RequestConfig.

The Executor owns one httpx client configured from the RequestConfig (TLS
trust, proxy route, timeouts, redirects, cookies, auth) and returns the
final Response together with its phase Timing. Every failure leaves as a
KurlError; httpx exceptions never escape.

Usage:
    with Executor(config) as executor:
        response, timing = executor.execute()

Or in one call:
    response, timing = perform_request(config)
"""

from __future__ import annotations

import http.cookiejar
import json
import logging
import ssl
from pathlib import Path
from typing import Any

import certifi
import httpcore
import httpx

from kurl.auth import httpx_auth_for
from kurl.errors import ConfigError, FailureKind, LocalIOError, TransferError
from kurl.models import (
    BytesBody,
    JsonBody,
    NoBody,
    RequestConfig,
    Response,
    TextBody,
    Timing,
)
from kurl.network import TimedBackend, TimedTransport
from kurl.proxy import resolve_route
from kurl.timing import CONNECT, DNS, TLS, TOTAL, PhaseClock
from kurl.tunnel import ProxyTunnelBackend

logger = logging.getLogger(__name__)

# Auth round-trips also land in httpx's redirect history; redirect hops are
# counted separately in _on_response.
_HISTORY_SLACK = 8

_KEEPALIVE_EXPIRY = 5.0

_SECRET_HEADERS = {"authorization", "proxy-authorization", "cookie"}


def build_ssl_context(insecure: bool, ca_bundle: Path | None) -> ssl.SSLContext:
    """SSL context trusting certifi's roots plus an optional PEM bundle.

    Raises:
        LocalIOError: If ca_bundle cannot be read or holds no certificates.
    """
    context = ssl.create_default_context(cafile=certifi.where())
    if ca_bundle is not None:
        try:
            context.load_verify_locations(cafile=str(ca_bundle))
        except ssl.SSLError as e:
            raise LocalIOError(f"cannot load CA bundle {ca_bundle}: {e}", ca_bundle) from e
        except OSError as e:
            raise LocalIOError(
                f"cannot read CA bundle {ca_bundle}: {e.strerror or e}", ca_bundle
            ) from e
    if insecure:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def load_cookie_jar(path: Path | None) -> http.cookiejar.MozillaCookieJar:
    """Load a Netscape-format cookie jar, or return an empty one.

    Raises:
        LocalIOError: If the file cannot be read or is not a cookie jar.
    """
    jar = http.cookiejar.MozillaCookieJar()
    if path is None:
        return jar
    try:
        jar.load(str(path), ignore_discard=True, ignore_expires=True)
    except http.cookiejar.LoadError as e:
        raise LocalIOError(f"invalid cookie file {path}: {e}", path) from e
    except OSError as e:
        raise LocalIOError(f"cannot read cookie file {path}: {e.strerror or e}", path) from e
    logger.debug("loaded %d cookies from %s", len(jar), path)
    return jar


def save_cookie_jar(jar: http.cookiejar.MozillaCookieJar, path: Path) -> None:
    """Write every cookie, session cookies included, the way curl -c does.

    Raises:
        LocalIOError: If the file cannot be written.
    """
    try:
        jar.save(str(path), ignore_discard=True, ignore_expires=True)
    except OSError as e:
        raise LocalIOError(f"cannot write cookie file {path}: {e.strerror or e}", path) from e
    logger.debug("saved %d cookies to %s", len(jar), path)


def _os_error_code(exc: BaseException) -> int | None:
    """errno of the first OSError in the exception chain, if any."""
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, OSError) and current.errno is not None:
            return current.errno
        current = current.__cause__ or current.__context__
    return None


def _encode_body(config: RequestConfig) -> bytes | None:
    body = config.body
    if isinstance(body, NoBody):
        return None
    if isinstance(body, TextBody):
        return body.text.encode("utf-8")
    if isinstance(body, JsonBody):
        return json.dumps(body.value).encode("utf-8")
    if isinstance(body, BytesBody):
        return body.data
    raise AssertionError(f"unhandled body kind {body.kind!r}")


class Executor:
    """Executes one RequestConfig.

    Construction does all local work (TLS contexts, cookie jar, proxy route)
    so local failures surface before any network activity.
    """

    def __init__(self, config: RequestConfig) -> None:
        self._config = config
        self._route = resolve_route(config.target_host, config.proxy, config.no_proxy)
        self._cookie_jar = load_cookie_jar(config.cookies.read_path)
        self._backend = TimedBackend(dns_overrides=config.dns_overrides)
        self._redirect_hops = 0
        self._pool = self._build_pool(build_ssl_context(config.tls.insecure, config.tls.ca_bundle))
        self._client = httpx.Client(**self._build_client_kwargs())

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
        self._client.close()

    def _build_pool(self, ssl_context: ssl.SSLContext) -> httpcore.ConnectionPool:
        """The httpcore pool for the route, opening connections through the timed backend.

        A negotiate/ntlm proxy is reached through ProxyTunnelBackend under a
        plain pool; any other proxy is an httpcore HTTPProxy that forwards
        http:// requests and tunnels https:// ones.
        """
        proxy = self._route.proxy
        if proxy is None:
            return httpcore.ConnectionPool(
                ssl_context=ssl_context,
                keepalive_expiry=_KEEPALIVE_EXPIRY,
                network_backend=self._backend,
            )

        proxy_ssl_context = None
        if httpx.URL(proxy.url).scheme == "https":
            proxy_ssl_context = build_ssl_context(proxy.insecure, proxy.ca_bundle)
        if proxy.tunnels:
            return httpcore.ConnectionPool(
                ssl_context=ssl_context,
                keepalive_expiry=_KEEPALIVE_EXPIRY,
                network_backend=ProxyTunnelBackend(self._backend, proxy, proxy_ssl_context),
            )

        proxy_auth = None
        if proxy.username is not None:
            proxy_auth = (proxy.username.encode("utf-8"), (proxy.password or "").encode("utf-8"))
        return httpcore.HTTPProxy(
            proxy_url=proxy.url,
            proxy_auth=proxy_auth,
            ssl_context=ssl_context,
            proxy_ssl_context=proxy_ssl_context,
            keepalive_expiry=_KEEPALIVE_EXPIRY,
            network_backend=self._backend,
        )

    def _build_client_kwargs(self) -> dict[str, Any]:
        """Build kwargs for httpx.Client from the RequestConfig.

        The client never looks at the environment (trust_env=False): proxy
        variables were already folded into the config by the builder.
        """
        config = self._config

        headers = {"User-Agent": config.user_agent.encode("utf-8")}
        if not config.accept_compression:
            headers["Accept-Encoding"] = b"identity"

        return {
            "transport": TimedTransport(self._pool),
            "headers": headers,
            "cookies": self._cookie_jar,
            "auth": httpx_auth_for(config.auth),
            "timeout": httpx.Timeout(None, connect=config.timeouts.connect),
            "follow_redirects": config.redirects.follow,
            "max_redirects": config.redirects.max_hops + _HISTORY_SLACK,
            "trust_env": False,
            "event_hooks": {
                "request": [self._on_request],
                "response": [self._on_response],
            },
        }

    def _on_request(self, request: httpx.Request) -> None:
        logger.debug("> %s %s", request.method, request.url)
        for name, value in request.headers.multi_items():
            shown = "<redacted>" if name.lower() in _SECRET_HEADERS else value
            logger.debug("> %s: %s", name, shown)

    def _on_response(self, response: httpx.Response) -> None:
        logger.debug(
            "< %s %d %s", response.http_version, response.status_code, response.reason_phrase
        )
        redirects = self._config.redirects
        if not (redirects.follow and response.has_redirect_location):
            return
        self._redirect_hops += 1
        if self._redirect_hops > redirects.max_hops:
            raise httpx.TooManyRedirects(
                f"Maximum ({redirects.max_hops}) redirects followed", request=response.request
            )
        logger.debug(
            "following redirect %d/%d to %s",
            self._redirect_hops,
            redirects.max_hops,
            response.headers.get("location"),
        )

    def _request_url(self) -> httpx.URL:
        url = httpx.URL(self._config.url)
        for name, value in self._config.query:
            url = url.copy_add_param(name, value)
        return url

    def execute(self) -> tuple[Response, Timing]:
        """Perform the transfer.

        Returns:
            (Response, Timing) for the final response.

        Raises:
            ConfigError: If the request cannot be assembled from the config.
            TransferError: If the transfer fails; kind says where.
            LocalIOError: If the cookie jar cannot be saved.
        """
        config = self._config
        clock = self._backend.start(config.timeouts.total)
        self._redirect_hops = 0

        try:
            request = self._client.build_request(
                method=config.method,
                url=self._request_url(),
                headers=[(name, value.encode("utf-8")) for name, value in config.headers],
                content=_encode_body(config),
                extensions={"trace": clock.trace},
            )
        except Exception as e:
            raise ConfigError(f"cannot build the request: {e}") from e

        try:
            http_response = self._client.send(request)
        except httpx.HTTPError as e:
            raise self._classify(e, clock) from e

        clock.mark(TOTAL)
        timing = clock.snapshot()
        response = self._convert_response(http_response)

        if config.cookies.write_path is not None:
            save_cookie_jar(self._cookie_jar, config.cookies.write_path)

        logger.debug(
            "completed %s %s -> %d after %d redirect(s) in %.3fs",
            config.method,
            response.url,
            response.status_code,
            response.redirects,
            timing.total,
        )
        return response, timing

    def _classify(self, exc: httpx.HTTPError, clock: PhaseClock) -> TransferError:
        """Map an httpx exception to a TransferError with the right kind."""
        config = self._config
        code = _os_error_code(exc)

        if isinstance(exc, httpx.TooManyRedirects):
            return TransferError(
                f"Maximum ({config.redirects.max_hops}) redirects followed",
                FailureKind.REDIRECT_LIMIT,
            )
        if isinstance(exc, httpx.ProxyError):
            return TransferError(f"proxy error: {exc}", FailureKind.PROXY, code)
        if isinstance(exc, httpx.TimeoutException):
            if self._backend.deadline.expired:
                return TransferError(
                    f"Operation timed out after {config.timeouts.total:g} seconds (--max-time)",
                    FailureKind.TIMEOUT,
                    code,
                )
            if isinstance(exc, httpx.ConnectTimeout) and config.timeouts.connect is not None:
                return TransferError(
                    f"Connection timed out after {config.timeouts.connect:g} seconds",
                    FailureKind.TIMEOUT,
                    code,
                )
            return TransferError(f"timed out: {exc}", FailureKind.TIMEOUT, code)

        phase = clock.in_progress
        if phase == DNS:
            if self._route.proxy is not None:
                proxy_host = httpx.URL(self._route.proxy.url).host
                return TransferError(f"Could not resolve proxy: {proxy_host}", FailureKind.DNS, code)
            return TransferError(str(exc), FailureKind.DNS, code)
        if phase == TLS:
            return TransferError(f"TLS handshake failed: {exc}", FailureKind.TLS, code)
        if phase == CONNECT or isinstance(exc, httpx.NetworkError):
            return TransferError(f"Failed to connect: {exc}", FailureKind.CONNECT, code)
        return TransferError(f"protocol error: {exc}", FailureKind.PROTOCOL, code)

    def _convert_response(self, response: httpx.Response) -> Response:
        encoding = response.headers.encoding
        headers = tuple(
            (name.decode(encoding), value.decode(encoding))
            for name, value in response.headers.raw
        )
        return Response(
            status_code=response.status_code,
            reason=response.reason_phrase,
            http_version=response.http_version,
            url=str(response.url),
            headers=headers,
            body=response.content,
            redirects=sum(1 for r in response.history if r.has_redirect_location),
        )


def perform_request(config: RequestConfig) -> tuple[Response, Timing]:
    """Execute config with a fresh Executor and release it afterwards."""
    with Executor(config) as executor:
        return executor.execute()

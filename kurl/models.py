"""Internal data models for kurl.

All models use Pydantic v2 and are frozen: a RequestConfig is built once per
invocation and never edited afterwards. Auth and body are discriminated
unions (on ``scheme`` and ``kind``) so every consumer can dispatch on the
variant exhaustively.
"""

from __future__ import annotations

import ipaddress
import re
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Literal, Self, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# RFC 7230 "token" characters, the only ones allowed in method and header names.
_TOKEN = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")

DEFAULT_MAX_REDIRECTS = 30
DEFAULT_USER_AGENT = "kurl/0.1"


class HttpMethod(str, Enum):
    """The standard methods. Anything else is sent as a custom verb."""

    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"
    PATCH = "PATCH"
    HEAD = "HEAD"
    OPTIONS = "OPTIONS"


_FROZEN = ConfigDict(extra="forbid", frozen=True)


def check_header_text(value: str, what: str) -> str:
    """Reject control characters in text that ends up in a header line.

    Anything else, non-ASCII included, is sent as UTF-8 bytes the way curl
    passes its arguments through.

    Raises:
        ValueError: If value holds CR, LF, NUL or another control character.
    """
    for char in value:
        if (char < " " and char != "\t") or char == "\x7f":
            raise ValueError(f"{what} contains a control character: {value!r}")
    return value


# =============================================================================
# Authentication variants
# =============================================================================


class NoAuth(BaseModel):
    """No authentication."""

    model_config = _FROZEN

    scheme: Literal["none"] = "none"


class NegotiateAuth(BaseModel):
    """Kerberos/SPNEGO via the platform security context.

    username/password are only set when KURL_USER/KURL_PASSWORD were present
    at build time; otherwise the ticket cache (or SSPI logon session) is used.
    """

    model_config = _FROZEN

    scheme: Literal["negotiate"] = "negotiate"
    username: str | None = None
    password: str | None = None


class NtlmAuth(BaseModel):
    """NTLM challenge-response via the platform security context."""

    model_config = _FROZEN

    scheme: Literal["ntlm"] = "ntlm"
    username: str | None = None
    password: str | None = None


class BasicAuth(BaseModel):
    model_config = _FROZEN

    scheme: Literal["basic"] = "basic"
    username: str
    password: str


class BearerAuth(BaseModel):
    model_config = _FROZEN

    scheme: Literal["bearer"] = "bearer"
    token: str = Field(min_length=1)

    @field_validator("token")
    @classmethod
    def check_token(cls, v: str) -> str:
        return check_header_text(v, "bearer token")


Auth = Annotated[
    Union[NoAuth, NegotiateAuth, NtlmAuth, BasicAuth, BearerAuth],
    Field(discriminator="scheme"),
]


# =============================================================================
# Body variants
# =============================================================================


class NoBody(BaseModel):
    model_config = _FROZEN

    kind: Literal["none"] = "none"


class TextBody(BaseModel):
    model_config = _FROZEN

    kind: Literal["text"] = "text"
    text: str


class JsonBody(BaseModel):
    """A JSON document, serialized at send time."""

    model_config = _FROZEN

    kind: Literal["json"] = "json"
    value: Any


class BytesBody(BaseModel):
    model_config = _FROZEN

    kind: Literal["bytes"] = "bytes"
    data: bytes


Body = Annotated[
    Union[NoBody, TextBody, JsonBody, BytesBody],
    Field(discriminator="kind"),
]


# =============================================================================
# Settings groups
# =============================================================================


class ProxySettings(BaseModel):
    """An explicitly configured proxy.

    Credentials live here and nowhere else, so they can only be attached when
    a proxy URL exists. With negotiate or ntlm they are optional; without
    them the platform credentials are used.
    """

    model_config = _FROZEN

    url: str = Field(description="Normalized proxy URL (scheme://host[:port])")
    username: str | None = None
    password: str | None = None
    auth_scheme: Literal["basic", "negotiate", "ntlm"] = Field(
        default="basic",
        description="basic sends the credentials up front; negotiate/ntlm answer 407 challenges",
    )
    insecure: bool = Field(default=False, description="Skip TLS checks for an https proxy")
    ca_bundle: Path | None = Field(default=None, description="CA bundle for an https proxy")

    @model_validator(mode="after")
    def check_password_needs_username(self) -> Self:
        if self.password is not None and self.username is None:
            raise ValueError("proxy password given without a proxy username")
        return self

    @property
    def tunnels(self) -> bool:
        """Challenge auth runs on the CONNECT request, so every target is tunneled."""
        return self.auth_scheme != "basic"


class TlsSettings(BaseModel):
    model_config = _FROZEN

    insecure: bool = Field(default=False, description="Skip certificate and hostname checks")
    ca_bundle: Path | None = Field(default=None, description="Extra PEM trust roots")


class Timeouts(BaseModel):
    """Timeouts in seconds. None means unbounded."""

    model_config = _FROZEN

    connect: float | None = Field(default=None, ge=0, description="TCP connect + TLS handshake")
    total: float | None = Field(default=None, ge=0, description="Whole call, redirects included")


class RedirectPolicy(BaseModel):
    model_config = _FROZEN

    follow: bool = False
    max_hops: int = Field(default=DEFAULT_MAX_REDIRECTS, ge=0)


class CookieFiles(BaseModel):
    model_config = _FROZEN

    read_path: Path | None = Field(default=None, description="Cookie jar loaded before sending")
    write_path: Path | None = Field(default=None, description="Cookie jar saved after completion")


# =============================================================================
# Request configuration
# =============================================================================


class RequestConfig(BaseModel):
    """The validated description of one request.

    Build it through kurl.builder.build_request_config, which runs the
    credential and proxy resolvers and turns validation failures into
    ConfigError.
    """

    model_config = _FROZEN

    method: str = Field(default="GET", description="Upper-cased method token")
    url: str = Field(description="Absolute http(s) URL")
    headers: tuple[tuple[str, str], ...] = Field(
        default=(), description="Ordered headers; names may repeat"
    )
    query: tuple[tuple[str, str], ...] = Field(
        default=(), description="Ordered query pairs merged into the URL"
    )
    body: Body = Field(default_factory=NoBody)
    auth: Auth = Field(default_factory=NoAuth)
    proxy: ProxySettings | None = None
    no_proxy: tuple[str, ...] = Field(default=(), description="Lower-cased bypass patterns")
    tls: TlsSettings = Field(default_factory=TlsSettings)
    timeouts: Timeouts = Field(default_factory=Timeouts)
    redirects: RedirectPolicy = Field(default_factory=RedirectPolicy)
    cookies: CookieFiles = Field(default_factory=CookieFiles)
    dns_overrides: dict[str, str] = Field(
        default_factory=dict, description="'host:port' -> literal IP address"
    )
    user_agent: str = DEFAULT_USER_AGENT
    accept_compression: bool = False
    verbose: bool = False
    silent: bool = False

    @field_validator("method")
    @classmethod
    def check_method(cls, v: str) -> str:
        if not _TOKEN.match(v):
            raise ValueError(f"invalid HTTP method: {v!r}")
        return v.upper()

    @field_validator("headers")
    @classmethod
    def check_headers(cls, v: tuple[tuple[str, str], ...]) -> tuple[tuple[str, str], ...]:
        for name, value in v:
            if not _TOKEN.match(name):
                raise ValueError(f"invalid header name {name!r}")
            check_header_text(value, f"header {name!r}")
        return v

    @field_validator("user_agent")
    @classmethod
    def check_user_agent(cls, v: str) -> str:
        return check_header_text(v, "user agent")

    @field_validator("url")
    @classmethod
    def check_url(cls, v: str) -> str:
        try:
            url = httpx.URL(v)
        except httpx.InvalidURL as e:
            raise ValueError(f"malformed URL {v!r}: {e}") from e
        if url.scheme not in ("http", "https"):
            raise ValueError(f"unsupported URL scheme {url.scheme!r} (expected http or https)")
        if not url.host:
            raise ValueError(f"URL has no host: {v!r}")
        return v

    @field_validator("dns_overrides")
    @classmethod
    def check_dns_overrides(cls, v: dict[str, str]) -> dict[str, str]:
        for key, address in v.items():
            host, sep, port = key.rpartition(":")
            if not sep or not host or not port.isdigit():
                raise ValueError(f"DNS override key must be 'host:port', got {key!r}")
            try:
                ipaddress.ip_address(address)
            except ValueError as e:
                raise ValueError(f"DNS override for {key!r} is not an IP address: {address!r}") from e
        return v

    @model_validator(mode="after")
    def check_display_modes(self) -> Self:
        if self.verbose and self.silent:
            raise ValueError("verbose and silent are mutually exclusive")
        return self

    @property
    def is_custom_method(self) -> bool:
        return self.method not in HttpMethod.__members__

    @property
    def target_host(self) -> str:
        return httpx.URL(self.url).host


# =============================================================================
# Results
# =============================================================================


class Timing(BaseModel):
    """Phase boundaries in seconds, each measured from request start."""

    model_config = _FROZEN

    dns: float = Field(ge=0, description="Name resolution complete")
    connect: float = Field(ge=0, description="TCP connection established")
    tls_handshake: float = Field(ge=0, description="TLS handshake complete")
    time_to_first_byte: float = Field(ge=0, description="Response headers received")
    total: float = Field(ge=0, description="Transfer complete")

    @model_validator(mode="after")
    def check_monotonic(self) -> Self:
        points = [self.dns, self.connect, self.tls_handshake, self.time_to_first_byte, self.total]
        if any(later < earlier for earlier, later in zip(points, points[1:])):
            raise ValueError(f"timing boundaries out of order: {points}")
        return self


class Response(BaseModel):
    """One HTTP response as received (after any followed redirects)."""

    model_config = _FROZEN

    status_code: int
    reason: str = ""
    http_version: str = "HTTP/1.1"
    url: str = Field(description="Final URL after redirects")
    headers: tuple[tuple[str, str], ...] = ()
    body: bytes = b""
    redirects: int = Field(default=0, description="Redirect hops followed")

    def header(self, name: str) -> str | None:
        """First value of a header, case-insensitively."""
        values = self.header_list(name)
        return values[0] if values else None

    def header_list(self, name: str) -> list[str]:
        lower = name.lower()
        return [value for key, value in self.headers if key.lower() == lower]

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

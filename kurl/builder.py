"""Request Configuration builder.

build_request_config() is the single validating constructor for a
RequestConfig. It takes the raw, user-facing options, runs the credential
and proxy resolvers, folds in the defaults file and the environment, and
returns a frozen RequestConfig. Anything invalid or contradictory becomes a
ConfigError before any network activity happens.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

import httpx
from pydantic import ValidationError

from kurl.config_loader import ClientDefaults
from kurl.credentials import parse_credential_string, resolve_credentials
from kurl.errors import ConfigError
from kurl.models import (
    DEFAULT_MAX_REDIRECTS,
    DEFAULT_USER_AGENT,
    Body,
    BytesBody,
    CookieFiles,
    JsonBody,
    NoBody,
    ProxySettings,
    RedirectPolicy,
    RequestConfig,
    TextBody,
    Timeouts,
    TlsSettings,
    check_header_text,
)
from kurl.proxy import no_proxy_from_env, normalize_proxy_url, parse_no_proxy, proxy_from_env

logger = logging.getLogger(__name__)

_HEADER_NAME = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
JSON_CONTENT_TYPE = "application/json"


@dataclass
class RequestOptions:
    """Raw request options, as typed by the user.

    Every field mirrors a command-line option. None means "not given", so
    the defaults file and the environment can fill it in.
    """

    url: str
    method: str | None = None
    headers: list[str] = field(default_factory=list)
    query: list[str] = field(default_factory=list)
    data: str | None = None
    data_binary: bytes | None = None
    json: str | None = None
    head: bool = False
    user: str | None = None
    bearer: str | None = None
    negotiate: bool = False
    ntlm: bool = False
    proxy: str | None = None
    proxy_user: str | None = None
    proxy_negotiate: bool = False
    proxy_ntlm: bool = False
    proxy_insecure: bool = False
    proxy_cacert: Path | None = None
    noproxy: str | None = None
    insecure: bool = False
    cacert: Path | None = None
    connect_timeout: float | None = None
    max_time: float | None = None
    follow: bool = False
    max_redirs: int | None = None
    cookie: Path | None = None
    cookie_jar: Path | None = None
    resolve: list[str] = field(default_factory=list)
    user_agent: str | None = None
    compressed: bool = False
    verbose: bool = False
    silent: bool = False


def parse_header(raw: str) -> tuple[str, str]:
    """Parse "Name: value". "Name;" sends the header with an empty value (curl).

    Raises:
        ConfigError: If there is no separator, the name is not a token or the
                     value holds a control character.
    """
    if ":" in raw:
        name, _, value = raw.partition(":")
        value = value.strip()
    elif raw.rstrip().endswith(";"):
        name, value = raw.rstrip()[:-1], ""
    else:
        raise ConfigError(f"header must look like 'Name: value', got {raw!r}")
    name = name.strip()
    if not _HEADER_NAME.match(name):
        raise ConfigError(f"invalid header name {name!r}")
    try:
        check_header_text(value, f"header {name!r}")
    except ValueError as e:
        raise ConfigError(str(e)) from e
    return name, value


def parse_query_param(raw: str) -> tuple[str, str]:
    """Parse "name=value". A missing '=' means an empty value."""
    name, _, value = raw.partition("=")
    if not name:
        raise ConfigError(f"query parameter must look like 'name=value', got {raw!r}")
    return name, value


def parse_resolve_entry(raw: str) -> tuple[str, str]:
    """Parse a "host:port:address" DNS override into ("host:port", address).

    The address may be an IPv6 literal, optionally in brackets.

    Raises:
        ConfigError: If the entry is malformed or the port is out of range.
    """
    parts = raw.split(":", 2)
    if len(parts) != 3 or not all(p.strip() for p in parts):
        raise ConfigError(f"--resolve expects 'host:port:address', got {raw!r}")
    host, port, address = (p.strip() for p in parts)
    if not port.isdigit() or not 0 < int(port) < 65536:
        raise ConfigError(f"--resolve has an invalid port in {raw!r}")
    if address.startswith("[") and address.endswith("]"):
        address = address[1:-1]
    return f"{host.lower()}:{int(port)}", address


def _has_header(headers: list[tuple[str, str]], name: str) -> bool:
    lower = name.lower()
    return any(key.lower() == lower for key, _ in headers)


def _build_body(options: RequestOptions, headers: list[tuple[str, str]]) -> Body:
    given = [
        flag
        for flag, value in (
            ("--data", options.data),
            ("--data-binary", options.data_binary),
            ("--json", options.json),
        )
        if value is not None
    ]
    if len(given) > 1:
        raise ConfigError(f"only one request body may be given, got {', '.join(given)}")

    if options.json is not None:
        try:
            value = json.loads(options.json)
        except json.JSONDecodeError as e:
            raise ConfigError(f"--json is not valid JSON: {e}") from e
        if not _has_header(headers, "Content-Type"):
            headers.append(("Content-Type", JSON_CONTENT_TYPE))
        return JsonBody(value=value)
    if options.data is not None:
        if not _has_header(headers, "Content-Type"):
            headers.append(("Content-Type", FORM_CONTENT_TYPE))
        return TextBody(text=options.data)
    if options.data_binary is not None:
        return BytesBody(data=options.data_binary)
    return NoBody()


def _resolve_method(options: RequestOptions, body: Body) -> str:
    if options.method:
        return options.method.upper()
    if options.head:
        return "HEAD"
    if not isinstance(body, NoBody):
        return "POST"
    return "GET"


def _seconds(value: float | None, option: str) -> float | None:
    if value is None:
        return None
    if value < 0:
        raise ConfigError(f"{option} must not be negative, got {value}")
    # 0 means "no limit", as in curl
    return value or None


def _proxy_auth_scheme(options: RequestOptions) -> str:
    requested = [
        flag
        for flag, given in (
            ("--proxy-negotiate", options.proxy_negotiate),
            ("--proxy-ntlm", options.proxy_ntlm),
        )
        if given
    ]
    if len(requested) > 1:
        raise ConfigError(f"conflicting proxy authentication options: {', '.join(requested)}")
    if options.proxy_negotiate:
        return "negotiate"
    if options.proxy_ntlm:
        return "ntlm"
    return "basic"


def _resolve_proxy(
    options: RequestOptions,
    defaults: ClientDefaults,
    scheme: str,
    env: Mapping[str, str],
) -> ProxySettings | None:
    auth_scheme = _proxy_auth_scheme(options)
    raw_url = options.proxy or defaults.proxy
    if raw_url:
        normalized = normalize_proxy_url(raw_url)
    else:
        raw_url = proxy_from_env(scheme, env)
        normalized = _env_proxy_url(raw_url) if raw_url else None
    if normalized is None:
        if options.proxy_user is not None:
            raise ConfigError("--proxy-user given but no proxy is configured")
        if auth_scheme != "basic":
            raise ConfigError(f"--proxy-{auth_scheme} given but no proxy is configured")
        return None

    url = httpx.URL(normalized)
    username = url.username or None
    password = url.password or None
    if username is not None:
        password = password or ""

    proxy_user = options.proxy_user or defaults.proxy_user
    if proxy_user is not None:
        username, password = parse_credential_string(proxy_user, "--proxy-user")

    cleaned = str(url.copy_with(username=None, password=None)).rstrip("/")
    return ProxySettings(
        url=cleaned,
        username=username,
        password=password,
        auth_scheme=auth_scheme,
        insecure=options.proxy_insecure,
        ca_bundle=options.proxy_cacert,
    )


def _env_proxy_url(raw_url: str) -> str | None:
    # Only an explicitly configured proxy is fatal when unusable.
    try:
        return normalize_proxy_url(raw_url)
    except ConfigError as e:
        logger.warning("ignoring proxy from the environment: %s", e.message)
        return None


def _resolve_no_proxy(
    options: RequestOptions,
    defaults: ClientDefaults,
    env: Mapping[str, str],
) -> tuple[str, ...]:
    # An explicit value replaces the environment, it is never merged with it.
    if options.noproxy is not None:
        return parse_no_proxy(options.noproxy)
    if defaults.no_proxy is not None:
        return parse_no_proxy(defaults.no_proxy)
    return parse_no_proxy(no_proxy_from_env(env))


def _summarize_validation_error(e: ValidationError) -> str:
    parts = []
    for error in e.errors():
        location = ".".join(str(item) for item in error["loc"])
        message = error["msg"].removeprefix("Value error, ")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts)


def build_request_config(
    options: RequestOptions,
    env: Mapping[str, str] | None = None,
    defaults: ClientDefaults | None = None,
) -> RequestConfig:
    """Validate raw options and assemble a frozen RequestConfig.

    Args:
        options: Raw options from the command line (or a caller).
        env: Environment for proxy and Negotiate/NTLM defaults. Defaults to
             os.environ; tests pass a plain dict.
        defaults: Values from the defaults file, used where options are unset.

    Returns:
        The validated RequestConfig.

    Raises:
        ConfigError: If any option is invalid or options contradict each other.
    """
    env = os.environ if env is None else env
    defaults = defaults or ClientDefaults()

    try:
        scheme = httpx.URL(options.url).scheme
    except httpx.InvalidURL as e:
        raise ConfigError(f"malformed URL {options.url!r}: {e}") from e

    headers = [parse_header(h) for h in [*defaults.headers, *options.headers]]
    query = [parse_query_param(q) for q in options.query]
    body = _build_body(options, headers)

    auth = resolve_credentials(
        user=options.user,
        bearer=options.bearer,
        negotiate=options.negotiate,
        ntlm=options.ntlm,
        env=env,
    )

    dns_overrides = dict(parse_resolve_entry(entry) for entry in options.resolve)

    max_redirs = options.max_redirs if options.max_redirs is not None else defaults.max_redirects
    connect_timeout = (
        options.connect_timeout if options.connect_timeout is not None else defaults.connect_timeout
    )
    max_time = options.max_time if options.max_time is not None else defaults.max_time

    try:
        config = RequestConfig(
            method=_resolve_method(options, body),
            url=options.url,
            headers=tuple(headers),
            query=tuple(query),
            body=body,
            auth=auth,
            proxy=_resolve_proxy(options, defaults, scheme, env),
            no_proxy=_resolve_no_proxy(options, defaults, env),
            tls=TlsSettings(
                insecure=options.insecure or defaults.insecure,
                ca_bundle=options.cacert or defaults.ca_bundle,
            ),
            timeouts=Timeouts(
                connect=_seconds(connect_timeout, "--connect-timeout"),
                total=_seconds(max_time, "--max-time"),
            ),
            redirects=RedirectPolicy(
                follow=options.follow,
                max_hops=DEFAULT_MAX_REDIRECTS if max_redirs is None else max_redirs,
            ),
            cookies=CookieFiles(read_path=options.cookie, write_path=options.cookie_jar),
            dns_overrides=dns_overrides,
            user_agent=options.user_agent or defaults.user_agent or DEFAULT_USER_AGENT,
            accept_compression=options.compressed or defaults.compressed,
            verbose=options.verbose,
            silent=options.silent,
        )
    except ValidationError as e:
        raise ConfigError(_summarize_validation_error(e)) from e

    logger.debug("request: %s %s (auth=%s)", config.method, config.url, config.auth.scheme)
    return config

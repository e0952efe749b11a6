"""Proxy Resolver - decides, per target host, whether to go through a proxy.

The decision is pure: it looks only at the target host, the configured
proxy and the no_proxy patterns. Environment variables are read once, at
build time, by proxy_from_env/no_proxy_from_env; the executor never consults
them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Mapping

import httpx

from kurl.errors import ConfigError
from kurl.models import ProxySettings

logger = logging.getLogger(__name__)

_SUPPORTED_PROXY_SCHEMES = ("http", "https")
_FORBIDDEN_PATTERN_CHARS = set(" \t/@")


@dataclass(frozen=True)
class ProxyRoute:
    """Outcome of the routing decision for one target host."""

    host: str
    proxy: ProxySettings | None
    reason: str

    @property
    def direct(self) -> bool:
        return self.proxy is None


def normalize_proxy_url(url: str) -> str:
    """Validate a proxy URL, defaulting the scheme to http:// like curl does.

    Raises:
        ConfigError: If the URL is malformed, has no host or uses a scheme
                     other than http/https.
    """
    candidate = url.strip()
    if not candidate:
        raise ConfigError("proxy URL must not be empty")
    if "://" not in candidate:
        candidate = f"http://{candidate}"
    try:
        parsed = httpx.URL(candidate)
    except httpx.InvalidURL as e:
        raise ConfigError(f"malformed proxy URL {url!r}: {e}") from e
    if parsed.scheme not in _SUPPORTED_PROXY_SCHEMES:
        raise ConfigError(
            f"unsupported proxy scheme {parsed.scheme!r} in {url!r} (expected http or https)"
        )
    if not parsed.host:
        raise ConfigError(f"proxy URL has no host: {url!r}")
    return candidate


def parse_no_proxy(value: str | Iterable[str] | None) -> tuple[str, ...]:
    """Parse no_proxy patterns from a comma-separated string or an iterable.

    Patterns are trimmed and lower-cased; a single leading dot is dropped
    (".example.com" and "example.com" mean the same thing). Empty entries
    are ignored.

    Raises:
        ConfigError: If a pattern contains whitespace, '/', '@', or a '*'
                     that is not the whole pattern.
    """
    if value is None:
        return ()
    raw = value.split(",") if isinstance(value, str) else list(value)

    patterns: list[str] = []
    for entry in raw:
        pattern = entry.strip().lower()
        if pattern.startswith("."):
            pattern = pattern[1:]
        if not pattern:
            continue
        if _FORBIDDEN_PATTERN_CHARS & set(pattern):
            raise ConfigError(f"invalid no_proxy pattern {entry.strip()!r}")
        if "*" in pattern and pattern != "*":
            raise ConfigError(
                f"invalid no_proxy pattern {entry.strip()!r}: '*' is only allowed on its own"
            )
        if pattern not in patterns:
            patterns.append(pattern)
    return tuple(patterns)


def _normalize_host(host: str) -> str:
    host = host.strip().lower()
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host.rstrip(".")


def bypasses_proxy(host: str, patterns: Iterable[str]) -> bool:
    """True if host matches a no_proxy pattern.

    A host matches a pattern when it equals it or ends with "." + pattern,
    case-insensitively. The lone pattern "*" matches every host.
    """
    target = _normalize_host(host)
    for pattern in patterns:
        candidate = pattern.lower()
        if candidate == "*":
            return True
        candidate = _normalize_host(candidate)
        if target == candidate or target.endswith("." + candidate):
            return True
    return False


def resolve_route(
    host: str,
    proxy: ProxySettings | None,
    no_proxy: Iterable[str] = (),
) -> ProxyRoute:
    """Decide how to reach host. Makes no network calls."""
    if proxy is None:
        route = ProxyRoute(host=host, proxy=None, reason="no proxy configured")
    elif bypasses_proxy(host, no_proxy):
        route = ProxyRoute(host=host, proxy=None, reason="host matches no_proxy")
    else:
        route = ProxyRoute(host=host, proxy=proxy, reason="via proxy")
    logger.debug(
        "route for %s: %s (%s)",
        host,
        "direct" if route.direct else route.proxy.url,
        route.reason,
    )
    return route


def proxy_from_env(scheme: str, env: Mapping[str, str]) -> str | None:
    """Pick the proxy URL the environment defines for a target scheme.

    https targets look at HTTPS_PROXY, http targets at HTTP_PROXY; both fall
    back to ALL_PROXY. Upper-case names win over lower-case ones.
    """
    names = ["HTTPS_PROXY", "https_proxy"] if scheme == "https" else ["HTTP_PROXY", "http_proxy"]
    names += ["ALL_PROXY", "all_proxy"]
    for name in names:
        value = env.get(name)
        if value:
            return value
    return None


def no_proxy_from_env(env: Mapping[str, str]) -> str | None:
    for name in ("NO_PROXY", "no_proxy"):
        value = env.get(name)
        if value is not None:
            return value
    return None

"""Error taxonomy shared by every kurl component.

Three failure kinds, each mapped to its own process exit code:

- ConfigError: invalid or contradictory configuration, detected before any
  network activity.
- LocalIOError: a local file (cookie jar, CA bundle, body or output file)
  could not be read or written.
- TransferError: the network transfer failed (DNS, connect, TLS, timeout,
  redirect limit, ...). Carries a FailureKind and, when available, the
  underlying OS error code.

Nothing retries. Every error is terminal for the invocation.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path

EXIT_CONFIG = 2
EXIT_IO = 3
EXIT_TRANSFER = 4


class KurlError(Exception):
    """Base class for all kurl failures."""

    label = "error"
    exit_code = 1

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.label}: {self.message}"


class ConfigError(KurlError):
    """Raised when options are invalid or contradict each other."""

    label = "config error"
    exit_code = EXIT_CONFIG


class LocalIOError(KurlError):
    """Raised when a local file cannot be read or written."""

    label = "io error"
    exit_code = EXIT_IO

    def __init__(self, message: str, path: str | Path | None = None) -> None:
        super().__init__(message)
        self.path = Path(path) if path is not None else None


class FailureKind(str, Enum):
    """Which part of the transfer failed."""

    DNS = "dns"
    CONNECT = "connect"
    TLS = "tls"
    TIMEOUT = "timeout"
    REDIRECT_LIMIT = "redirect_limit"
    PROXY = "proxy"
    AUTH = "auth"
    PROTOCOL = "protocol"


_HINTS: dict[FailureKind, str] = {
    FailureKind.DNS: (
        "DNS resolution failed. If behind a corporate proxy, set HTTPS_PROXY "
        "or use -x <proxy-url>"
    ),
    FailureKind.TLS: (
        "TLS error. Try --insecure (-k) or --cacert <path>"
    ),
    FailureKind.TIMEOUT: (
        "The server did not answer in time. Raise --max-time or --connect-timeout"
    ),
    FailureKind.AUTH: (
        "Authentication handshake failed. Check your Kerberos ticket (klist) "
        "or set KURL_USER/KURL_PASSWORD"
    ),
}


class TransferError(KurlError):
    """Raised when the network transfer fails."""

    label = "transfer error"
    exit_code = EXIT_TRANSFER

    def __init__(
        self,
        message: str,
        kind: FailureKind,
        code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.code = code

    @property
    def hint(self) -> str | None:
        """A short remediation hint for the user, if one applies."""
        if self.kind == FailureKind.PROXY:
            if "407" in self.message:
                return (
                    "Proxy requires authentication (407). Try --proxy-negotiate "
                    "for Kerberos/SPNEGO or --proxy-user <user:pass>"
                )
            return "Could not use the proxy. Check your proxy URL or --noproxy"
        return _HINTS.get(self.kind)

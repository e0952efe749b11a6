"""Challenge authentication - Negotiate and NTLM over pyspnego.

The server answers the first request with 401 and a
``WWW-Authenticate: Negotiate`` (or ``NTLM``) challenge. SpnegoAuth then
drives a pyspnego client context, sending each token in an Authorization
header and feeding the server's reply tokens back, until the context is
complete or the server stops challenging. httpx keeps the connection open
between legs, which NTLM requires.

SpnegoHandshake is the token exchange on its own. The proxy tunnel uses it
for 407 challenges on CONNECT, with Proxy-Authenticate and
Proxy-Authorization in place of the origin headers.
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Generator, Iterable, assert_never

import httpx
import spnego
from spnego.exceptions import FeatureMissingError, SpnegoError

from kurl.errors import FailureKind, TransferError
from kurl.models import Auth, BasicAuth, BearerAuth, NegotiateAuth, NoAuth, NtlmAuth

logger = logging.getLogger(__name__)

# Kerberos finishes in one leg, NTLM in two; anything beyond is a loop.
MAX_LEGS = 4

HEADER_SCHEMES = {"negotiate": "Negotiate", "ntlm": "NTLM"}


def find_challenge(values: Iterable[str], scheme: str) -> tuple[bool, bytes | None]:
    """Look for scheme among challenge header values.

    Returns:
        (offered, token): whether the peer offered the scheme, and the
        decoded token that came with it (None for a bare offer).

    Raises:
        TransferError: If the token is not valid base64.
    """
    wanted = scheme.lower()
    for value in values:
        for part in value.split(","):
            name, _, data = part.strip().partition(" ")
            if name.lower() != wanted:
                continue
            data = data.strip()
            if not data:
                return True, None
            try:
                return True, base64.b64decode(data, validate=True)
            except binascii.Error as e:
                raise TransferError(
                    f"server sent a malformed {scheme} token", FailureKind.AUTH
                ) from e
    return False, None


def parse_challenge(response: httpx.Response, scheme: str) -> tuple[bool, bytes | None]:
    """find_challenge over the WWW-Authenticate headers of response."""
    return find_challenge(response.headers.get_list("www-authenticate"), scheme)


class SpnegoHandshake:
    """One pyspnego client context and the header values it produces.

    Without username/password the platform credentials are used: the
    Kerberos ticket cache on Unix, the logon session through SSPI on Windows.
    """

    def __init__(
        self,
        protocol: str,
        hostname: str,
        username: str | None = None,
        password: str | None = None,
        service: str = "HTTP",
    ) -> None:
        if protocol not in HEADER_SCHEMES:
            raise ValueError(f"unsupported protocol {protocol!r}")
        self.header_scheme = HEADER_SCHEMES[protocol]
        try:
            self._context = spnego.client(
                username,
                password,
                hostname=hostname,
                service=service,
                protocol=protocol,
            )
        except (SpnegoError, FeatureMissingError) as e:
            raise TransferError(
                f"{self.header_scheme}: cannot create security context for {hostname}: {e}",
                FailureKind.AUTH,
            ) from e

    @property
    def complete(self) -> bool:
        return self._context.complete

    def step(self, in_token: bytes | None) -> bytes | None:
        try:
            return self._context.step(in_token)
        except (SpnegoError, FeatureMissingError) as e:
            raise TransferError(
                f"{self.header_scheme} handshake failed: {e}", FailureKind.AUTH
            ) from e

    def header_value(self, in_token: bytes | None) -> str | None:
        """Step the context and format the token for an authorization header."""
        out_token = self.step(in_token)
        if out_token is None:
            return None
        return f"{self.header_scheme} {base64.b64encode(out_token).decode('ascii')}"


class SpnegoAuth(httpx.Auth):
    """Negotiate (Kerberos/SPNEGO) or NTLM against the origin server."""

    requires_response_body = True

    def __init__(
        self,
        protocol: str,
        username: str | None = None,
        password: str | None = None,
        service: str = "HTTP",
    ) -> None:
        if protocol not in HEADER_SCHEMES:
            raise ValueError(f"unsupported protocol {protocol!r}")
        self.protocol = protocol
        self.header_scheme = HEADER_SCHEMES[protocol]
        self.username = username
        self.password = password
        self.service = service

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        response = yield request
        if response.status_code != 401:
            return

        offered, in_token = parse_challenge(response, self.header_scheme)
        if not offered:
            logger.warning(
                "server did not offer %s authentication; returning the 401 as-is",
                self.header_scheme,
            )
            return

        handshake = SpnegoHandshake(
            self.protocol, request.url.host, self.username, self.password, self.service
        )
        for leg in range(1, MAX_LEGS + 1):
            value = handshake.header_value(in_token)
            if value is None:
                logger.debug("%s: context produced no token", self.header_scheme)
                return
            logger.debug("%s leg %d: sending token", self.header_scheme, leg)
            request.headers["Authorization"] = value
            response = yield request

            offered, in_token = parse_challenge(response, self.header_scheme)
            if response.status_code != 401:
                # Kerberos mutual authentication: the final token rides on the success.
                if in_token is not None and not handshake.complete:
                    handshake.step(in_token)
                logger.debug("%s: authenticated (status %d)", self.header_scheme, response.status_code)
                return
            if in_token is None or handshake.complete:
                logger.debug("%s: server rejected the credentials", self.header_scheme)
                return

        raise TransferError(
            f"{self.header_scheme} handshake did not complete in {MAX_LEGS} legs",
            FailureKind.AUTH,
        )


class BearerTokenAuth(httpx.Auth):
    def __init__(self, token: str) -> None:
        self._header = f"Bearer {token}"

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        request.headers["Authorization"] = self._header
        yield request


def httpx_auth_for(auth: Auth) -> httpx.Auth | None:
    """Map an auth variant to the httpx auth that implements it."""
    if isinstance(auth, NoAuth):
        return None
    if isinstance(auth, BasicAuth):
        return httpx.BasicAuth(auth.username, auth.password)
    if isinstance(auth, BearerAuth):
        return BearerTokenAuth(auth.token)
    if isinstance(auth, NegotiateAuth):
        return SpnegoAuth("negotiate", auth.username, auth.password)
    if isinstance(auth, NtlmAuth):
        return SpnegoAuth("ntlm", auth.username, auth.password)
    assert_never(auth)

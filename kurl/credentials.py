"""Credential Resolver - turns raw auth inputs into exactly one auth mode.

Raw inputs are what the user typed: an optional "user:pass" string, an
optional bearer token, and the --negotiate / --ntlm flags. Requesting more
than one scheme is a ConfigError; there is no precedence order.
"""

from __future__ import annotations

import logging
import os
from typing import Mapping

from kurl.errors import ConfigError
from kurl.models import (
    Auth,
    BasicAuth,
    BearerAuth,
    NegotiateAuth,
    NoAuth,
    NtlmAuth,
    check_header_text,
)

logger = logging.getLogger(__name__)

ENV_USER = "KURL_USER"
ENV_PASSWORD = "KURL_PASSWORD"


def parse_credential_string(value: str, option: str = "--user") -> tuple[str, str]:
    """Split "user:pass" on the first colon.

    The password may itself contain colons. A string without any colon is
    rejected: it is impossible to tell whether it was meant as a user name
    or a password.

    Raises:
        ConfigError: If there is no colon or the user part is empty.
    """
    user, sep, password = value.partition(":")
    if not sep:
        raise ConfigError(f"{option} expects 'user:password', got a value without ':'")
    if not user:
        raise ConfigError(f"{option} has an empty user name")
    return user, password


def resolve_credentials(
    user: str | None = None,
    bearer: str | None = None,
    negotiate: bool = False,
    ntlm: bool = False,
    env: Mapping[str, str] | None = None,
) -> Auth:
    """Resolve raw auth inputs to a single auth variant.

    Args:
        user: "user:pass" string for Basic auth.
        bearer: Bearer token, sent as-is.
        negotiate: Use Kerberos/SPNEGO.
        ntlm: Use NTLM.
        env: Environment used for the optional KURL_USER/KURL_PASSWORD
             principal of Negotiate/NTLM. Defaults to os.environ.

    Returns:
        Exactly one of NoAuth, BasicAuth, BearerAuth, NegotiateAuth, NtlmAuth.

    Raises:
        ConfigError: On conflicting schemes, an empty bearer token or a
                     malformed credential string.
    """
    requested = []
    if bearer is not None:
        requested.append("--bearer")
    if user is not None:
        requested.append("--user")
    if negotiate:
        requested.append("--negotiate")
    if ntlm:
        requested.append("--ntlm")

    if len(requested) > 1:
        raise ConfigError(
            f"conflicting authentication options: {', '.join(requested)} "
            "(choose exactly one)"
        )

    if bearer is not None:
        if not bearer:
            raise ConfigError("--bearer token must not be empty")
        try:
            check_header_text(bearer, "--bearer token")
        except ValueError as e:
            raise ConfigError(str(e)) from e
        logger.debug("auth: bearer token")
        return BearerAuth(token=bearer)

    if user is not None:
        username, password = parse_credential_string(user)
        logger.debug("auth: basic as %s", username)
        return BasicAuth(username=username, password=password)

    if negotiate or ntlm:
        source = os.environ if env is None else env
        principal = source.get(ENV_USER) or None
        secret = source.get(ENV_PASSWORD) or None
        if secret is not None and principal is None:
            raise ConfigError(f"{ENV_PASSWORD} is set but {ENV_USER} is not")
        if negotiate:
            logger.debug("auth: negotiate (%s)", principal or "platform credentials")
            return NegotiateAuth(username=principal, password=secret)
        logger.debug("auth: ntlm (%s)", principal or "platform credentials")
        return NtlmAuth(username=principal, password=secret)

    return NoAuth()

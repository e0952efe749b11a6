"""CLI entry point for kurl.

Parses curl-style arguments, builds a RequestConfig, performs the request
and prints the result. Exit codes: 0 for any HTTP response (whatever its
status), 2 for configuration errors, 3 for local file errors, 4 for
transfer failures.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path

from kurl.builder import RequestOptions, build_request_config
from kurl.config_loader import ClientDefaults, find_config_path, load_defaults
from kurl.errors import KurlError, LocalIOError
from kurl.executor import perform_request
from kurl.models import Response, Timing

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(verbose: bool = False) -> logging.Logger:
    """Send kurl's log records to stderr.

    With verbose, DEBUG records from kurl and from httpx/httpcore are shown;
    otherwise only warnings and errors.
    """
    level = logging.DEBUG if verbose else logging.WARNING
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT))

    names = ["kurl", "httpx", "httpcore"] if verbose else ["kurl"]
    for name in names:
        named = logging.getLogger(name)
        named.handlers.clear()
        named.setLevel(level)
        named.addHandler(handler)
    return logging.getLogger("kurl")


def non_negative_float(value: str) -> float:
    """Parse a number of seconds; 0 means no limit.

    Raises:
        argparse.ArgumentTypeError: If value is not a non-negative number.
    """
    try:
        result = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid number '{value}'.")
    if result < 0:
        raise argparse.ArgumentTypeError(f"Value must not be negative, got {result}.")
    return result


def non_negative_int(value: str) -> int:
    """Parse a non-negative integer.

    Raises:
        argparse.ArgumentTypeError: If value is not a non-negative integer.
    """
    try:
        result = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid integer '{value}'.")
    if result < 0:
        raise argparse.ArgumentTypeError(f"Value must not be negative, got {result}.")
    return result


@dataclass
class KurlArgs:
    """Parsed command-line arguments."""

    url: str
    method: str | None = None
    headers: list[str] = field(default_factory=list)
    query: list[str] = field(default_factory=list)
    data: str | None = None
    data_binary: str | None = None
    json: str | None = None
    output: Path | None = None
    head: bool = False
    silent: bool = False
    verbose: bool = False
    user_agent: str | None = None
    cookie: Path | None = None
    cookie_jar: Path | None = None
    negotiate: bool = False
    ntlm: bool = False
    user: str | None = None
    bearer: str | None = None
    insecure: bool = False
    cacert: Path | None = None
    proxy: str | None = None
    proxy_user: str | None = None
    proxy_negotiate: bool = False
    proxy_ntlm: bool = False
    proxy_insecure: bool = False
    proxy_cacert: Path | None = None
    noproxy: str | None = None
    connect_timeout: float | None = None
    max_time: float | None = None
    location: bool = False
    max_redirs: int | None = None
    compressed: bool = False
    timing: bool = False
    resolve: list[str] = field(default_factory=list)
    config: Path | None = None


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser. Option names follow curl where curl has one."""
    parser = argparse.ArgumentParser(
        prog="kurl",
        description="HTTP client for single requests with Kerberos/NTLM authentication, "
        "proxy routing and per-phase timing.",
    )
    parser.add_argument("url", help="Absolute http:// or https:// URL")

    request = parser.add_argument_group("request")
    request.add_argument("-X", "--request", dest="method", metavar="METHOD", help="HTTP method")
    request.add_argument(
        "-H",
        "--header",
        dest="headers",
        action="append",
        default=[],
        metavar="'NAME: VALUE'",
        help="Extra header (can be repeated; 'Name;' sends an empty header)",
    )
    request.add_argument(
        "--query",
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Query parameter appended to the URL (can be repeated)",
    )
    body = request.add_mutually_exclusive_group()
    body.add_argument("-d", "--data", metavar="DATA", help="Text body; @file reads it from a file")
    body.add_argument(
        "--data-binary", dest="data_binary", metavar="DATA", help="Raw body; @file sends a file as-is"
    )
    body.add_argument("--json", metavar="JSON", help="JSON body (sets Content-Type)")
    request.add_argument("-I", "--head", action="store_true", help="Send HEAD and show headers only")
    request.add_argument("-A", "--user-agent", dest="user_agent", metavar="NAME")
    request.add_argument("--compressed", action="store_true", help="Request a compressed response")

    output = parser.add_argument_group("output")
    output.add_argument("-o", "--output", type=Path, metavar="FILE", help="Write the body to FILE")
    display = output.add_mutually_exclusive_group()
    display.add_argument("-s", "--silent", action="store_true", help="Only print the body")
    display.add_argument("-v", "--verbose", action="store_true", help="Log the exchange to stderr")
    output.add_argument("--timing", action="store_true", help="Print phase timing to stderr")

    auth = parser.add_argument_group("authentication")
    auth.add_argument("--negotiate", action="store_true", help="Kerberos/SPNEGO authentication")
    auth.add_argument("--ntlm", action="store_true", help="NTLM authentication")
    auth.add_argument("-u", "--user", metavar="USER:PASSWORD", help="Basic authentication")
    auth.add_argument("--bearer", metavar="TOKEN", help="Bearer token")

    tls = parser.add_argument_group("TLS")
    tls.add_argument("-k", "--insecure", action="store_true", help="Skip certificate checks")
    tls.add_argument("--cacert", type=Path, metavar="FILE", help="Extra PEM trust roots")

    proxy = parser.add_argument_group("proxy")
    proxy.add_argument("-x", "--proxy", metavar="URL", help="Proxy URL (http:// assumed)")
    proxy.add_argument("--proxy-user", dest="proxy_user", metavar="USER:PASSWORD")
    proxy.add_argument(
        "--proxy-negotiate",
        dest="proxy_negotiate",
        action="store_true",
        help="Kerberos/SPNEGO to the proxy (platform credentials unless --proxy-user)",
    )
    proxy.add_argument(
        "--proxy-ntlm", dest="proxy_ntlm", action="store_true", help="NTLM to the proxy"
    )
    proxy.add_argument("--proxy-insecure", dest="proxy_insecure", action="store_true")
    proxy.add_argument("--proxy-cacert", dest="proxy_cacert", type=Path, metavar="FILE")
    proxy.add_argument(
        "--noproxy",
        metavar="HOSTS",
        help="Comma-separated hosts that bypass the proxy; replaces NO_PROXY",
    )

    connection = parser.add_argument_group("connection")
    connection.add_argument(
        "--connect-timeout",
        dest="connect_timeout",
        type=non_negative_float,
        metavar="SECONDS",
        help="Limit for TCP connect plus TLS handshake (0 = none)",
    )
    connection.add_argument(
        "-m",
        "--max-time",
        dest="max_time",
        type=non_negative_float,
        metavar="SECONDS",
        help="Limit for the whole transfer (0 = none)",
    )
    connection.add_argument("-L", "--location", action="store_true", help="Follow redirects")
    connection.add_argument(
        "--max-redirs", dest="max_redirs", type=non_negative_int, metavar="NUM"
    )
    connection.add_argument(
        "--resolve",
        action="append",
        default=[],
        metavar="HOST:PORT:ADDR",
        help="Use ADDR for HOST:PORT instead of DNS (can be repeated)",
    )

    cookies = parser.add_argument_group("cookies")
    cookies.add_argument("-b", "--cookie", type=Path, metavar="FILE", help="Read cookies from FILE")
    cookies.add_argument(
        "-c", "--cookie-jar", dest="cookie_jar", type=Path, metavar="FILE", help="Save cookies to FILE"
    )

    parser.add_argument("--config", type=Path, metavar="FILE", help="YAML defaults file")
    return parser


def parse_args(args: list[str] | None = None) -> KurlArgs:
    """Parse command-line arguments into KurlArgs.

    Raises:
        SystemExit: If arguments are invalid (argparse behavior, exit code 2).
    """
    namespace = build_parser().parse_args(args)
    return KurlArgs(**vars(namespace))


def _read_body_arg(value: str, binary: bool) -> str | bytes:
    """Resolve curl's @file convention for --data and --data-binary.

    Raises:
        LocalIOError: If the file cannot be read.
    """
    if not value.startswith("@"):
        return value.encode("utf-8") if binary else value
    path = Path(value[1:])
    try:
        if binary:
            return path.read_bytes()
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise LocalIOError(f"cannot read body file {path}: {e.strerror or e}", path) from e
    except UnicodeDecodeError as e:
        raise LocalIOError(f"body file {path} is not UTF-8 text; use --data-binary", path) from e
    # curl drops line breaks from --data @file
    return text.replace("\r", "").replace("\n", "")


def to_request_options(args: KurlArgs) -> RequestOptions:
    """Turn parsed arguments into RequestOptions, reading @file bodies."""
    return RequestOptions(
        url=args.url,
        method=args.method,
        headers=list(args.headers),
        query=list(args.query),
        data=_read_body_arg(args.data, binary=False) if args.data is not None else None,
        data_binary=(
            _read_body_arg(args.data_binary, binary=True) if args.data_binary is not None else None
        ),
        json=args.json,
        head=args.head,
        user=args.user,
        bearer=args.bearer,
        negotiate=args.negotiate,
        ntlm=args.ntlm,
        proxy=args.proxy,
        proxy_user=args.proxy_user,
        proxy_negotiate=args.proxy_negotiate,
        proxy_ntlm=args.proxy_ntlm,
        proxy_insecure=args.proxy_insecure,
        proxy_cacert=args.proxy_cacert,
        noproxy=args.noproxy,
        insecure=args.insecure,
        cacert=args.cacert,
        connect_timeout=args.connect_timeout,
        max_time=args.max_time,
        follow=args.location,
        max_redirs=args.max_redirs,
        cookie=args.cookie,
        cookie_jar=args.cookie_jar,
        resolve=list(args.resolve),
        user_agent=args.user_agent,
        compressed=args.compressed,
        verbose=args.verbose,
        silent=args.silent,
    )


def format_status_line(response: Response) -> str:
    line = f"{response.http_version} {response.status_code}"
    return f"{line} {response.reason}" if response.reason else line


def format_headers(response: Response) -> str:
    """Status line and headers, one per line, the way curl -I shows them."""
    lines = [format_status_line(response)]
    lines.extend(f"{name}: {value}" for name, value in response.headers)
    return "\n".join(lines) + "\n"


def format_timing(timing: Timing) -> str:
    rows = [
        ("DNS lookup:", timing.dns),
        ("Connect:", timing.connect),
        ("TLS handshake:", timing.tls_handshake),
        ("First byte:", timing.time_to_first_byte),
        ("Total:", timing.total),
    ]
    lines = ["Timing:"]
    lines.extend(f"  {label:<15}{seconds * 1000:>8.3f}ms" for label, seconds in rows)
    return "\n".join(lines) + "\n"


def write_output(path: Path, body: bytes) -> None:
    """Write the response body to path.

    Raises:
        LocalIOError: If the file cannot be written.
    """
    try:
        path.write_bytes(body)
    except OSError as e:
        raise LocalIOError(f"cannot write output file {path}: {e.strerror or e}", path) from e


def _write_stdout(body: bytes) -> None:
    sys.stdout.flush()
    sys.stdout.buffer.write(body)
    sys.stdout.buffer.flush()


def load_client_defaults(explicit: Path | None) -> ClientDefaults:
    path = find_config_path(explicit)
    if path is None:
        return ClientDefaults()
    return load_defaults(path)


def run(args: KurlArgs) -> int:
    """Perform the request described by args and print the outcome.

    Raises:
        KurlError: On any configuration, local I/O or transfer failure.
    """
    defaults = load_client_defaults(args.config)
    config = build_request_config(to_request_options(args), env=os.environ, defaults=defaults)
    response, timing = perform_request(config)

    if args.verbose:
        for line in format_headers(response).splitlines():
            print(f"< {line}", file=sys.stderr)

    if args.head:
        print(format_headers(response), end="")
    elif args.output is not None:
        write_output(args.output, response.body)
        logger.debug("wrote %d bytes to %s", len(response.body), args.output)
    else:
        _write_stdout(response.body)

    if args.timing and not args.silent:
        print(format_timing(timing), end="", file=sys.stderr)
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parsed = parse_args(argv)
    setup_logging(parsed.verbose)
    try:
        return run(parsed)
    except KurlError as e:
        print(f"kurl: {e}", file=sys.stderr)
        hint = getattr(e, "hint", None)
        if hint and not parsed.silent:
            print(f"  hint: {hint}", file=sys.stderr)
        return e.exit_code
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())

"""Tests for the proxy resolver: URL normalization, no_proxy, routing."""

import pytest

from kurl.errors import ConfigError
from kurl.models import ProxySettings
from kurl.proxy import (
    bypasses_proxy,
    no_proxy_from_env,
    normalize_proxy_url,
    parse_no_proxy,
    proxy_from_env,
    resolve_route,
)

PROXY = ProxySettings(url="http://proxy.corp:8080", username="u", password="p")


class TestNormalizeProxyUrl:
    def test_scheme_defaults_to_http(self) -> None:
        assert normalize_proxy_url("proxy.corp:8080") == "http://proxy.corp:8080"

    def test_https_kept(self) -> None:
        assert normalize_proxy_url("https://proxy.corp:443") == "https://proxy.corp:443"

    def test_surrounding_whitespace_stripped(self) -> None:
        assert normalize_proxy_url("  http://proxy:3128 ") == "http://proxy:3128"

    @pytest.mark.parametrize("url", ["socks5://proxy:1080", "ftp://proxy:21"])
    def test_unsupported_scheme_rejected(self, url: str) -> None:
        with pytest.raises(ConfigError, match="unsupported proxy scheme"):
            normalize_proxy_url(url)

    def test_empty_rejected(self) -> None:
        with pytest.raises(ConfigError, match="must not be empty"):
            normalize_proxy_url("   ")


class TestParseNoProxy:
    def test_comma_separated(self) -> None:
        assert parse_no_proxy("localhost, .Example.COM,10.0.0.1") == (
            "localhost",
            "example.com",
            "10.0.0.1",
        )

    def test_iterable(self) -> None:
        assert parse_no_proxy(["a.com", "B.com"]) == ("a.com", "b.com")

    def test_empty_entries_dropped(self) -> None:
        assert parse_no_proxy(",,a.com, ,") == ("a.com",)

    def test_duplicates_dropped(self) -> None:
        assert parse_no_proxy("a.com,.a.com,A.COM") == ("a.com",)

    def test_none_is_empty(self) -> None:
        assert parse_no_proxy(None) == ()

    def test_lone_star(self) -> None:
        assert parse_no_proxy("*") == ("*",)

    @pytest.mark.parametrize("value", ["*.example.com", "exa mple.com", "10.0.0.0/8", "user@host"])
    def test_invalid_patterns_rejected(self, value: str) -> None:
        with pytest.raises(ConfigError, match="invalid no_proxy pattern"):
            parse_no_proxy(value)


class TestBypassesProxy:
    @pytest.mark.parametrize(
        "host,patterns,expected",
        [
            ("example.com", ["example.com"], True),
            ("api.example.com", ["example.com"], True),
            ("API.EXAMPLE.COM", ["example.com"], True),
            ("api.example.com", ["EXAMPLE.com"], True),
            ("notexample.com", ["example.com"], False),
            ("example.com.evil.net", ["example.com"], False),
            ("example.org", ["example.com"], False),
            ("anything.at.all", ["*"], True),
            ("example.com.", ["example.com"], True),
            ("[::1]", ["::1"], True),
            ("example.com", [], False),
        ],
    )
    def test_suffix_matching(self, host: str, patterns: list[str], expected: bool) -> None:
        assert bypasses_proxy(host, patterns) is expected


class TestResolveRoute:
    def test_no_proxy_configured_is_direct(self) -> None:
        route = resolve_route("example.com", None, ())
        assert route.direct
        assert route.reason == "no proxy configured"

    def test_proxy_used(self) -> None:
        route = resolve_route("example.com", PROXY, ("other.com",))
        assert not route.direct
        assert route.proxy is PROXY
        assert route.proxy.username == "u"

    def test_bypass_wins_over_proxy(self) -> None:
        route = resolve_route("example.com", PROXY, ("example.com",))
        assert route.direct
        assert route.reason == "host matches no_proxy"

    def test_star_never_proxies(self) -> None:
        for host in ("example.com", "10.1.2.3", "localhost"):
            assert resolve_route(host, PROXY, ("*",)).direct


class TestEnvironment:
    def test_https_target_uses_https_proxy(self) -> None:
        env = {"HTTPS_PROXY": "http://secure:1", "HTTP_PROXY": "http://plain:2"}
        assert proxy_from_env("https", env) == "http://secure:1"

    def test_http_target_uses_http_proxy(self) -> None:
        env = {"HTTPS_PROXY": "http://secure:1", "http_proxy": "http://plain:2"}
        assert proxy_from_env("http", env) == "http://plain:2"

    def test_upper_case_wins(self) -> None:
        env = {"HTTPS_PROXY": "http://upper:1", "https_proxy": "http://lower:2"}
        assert proxy_from_env("https", env) == "http://upper:1"

    def test_all_proxy_fallback(self) -> None:
        assert proxy_from_env("https", {"all_proxy": "http://all:3"}) == "http://all:3"

    def test_empty_value_ignored(self) -> None:
        env = {"HTTPS_PROXY": "", "ALL_PROXY": "http://all:3"}
        assert proxy_from_env("https", env) == "http://all:3"

    def test_nothing_set(self) -> None:
        assert proxy_from_env("http", {}) is None

    def test_no_proxy_from_env(self) -> None:
        assert no_proxy_from_env({"no_proxy": "a.com"}) == "a.com"
        assert no_proxy_from_env({"NO_PROXY": "b.com", "no_proxy": "a.com"}) == "b.com"
        assert no_proxy_from_env({}) is None

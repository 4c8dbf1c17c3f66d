"""Tests for crawl source URL safety checks."""

import socket
from unittest.mock import patch

import pytest

from servers.event_discovery.sources.url_validator import UnsafeURLError, validate_source_url


class TestValidateSourceUrl:
    """Tests for validate_source_url."""

    # --- Scheme ---

    @pytest.mark.parametrize("url", ["https://parks.example.com/events", "http://parks.example.com/events"])
    def test_accepts_http_and_https(self, url):
        assert validate_source_url(url, resolve_dns=False) == url

    def test_strips_whitespace(self):
        assert validate_source_url("  https://parks.example.com  ", resolve_dns=False) == "https://parks.example.com"

    @pytest.mark.parametrize("url", ["ftp://example.com/file", "file:///etc/passwd", "parks.example.com/events"])
    def test_rejects_other_schemes(self, url):
        with pytest.raises(UnsafeURLError) as exc:
            validate_source_url(url, resolve_dns=False)
        assert "Only HTTP(S) URLs are allowed" in str(exc.value)

    def test_rejects_empty(self):
        with pytest.raises(UnsafeURLError):
            validate_source_url("", resolve_dns=False)

    def test_requires_hostname(self):
        with pytest.raises(UnsafeURLError) as exc:
            validate_source_url("https:///events", resolve_dns=False)
        assert "hostname" in str(exc.value)

    # --- Loopback and private addresses ---

    @pytest.mark.parametrize("url", [
        "http://localhost:8080/",
        "http://LOCALHOST/",
        "http://api.localhost/",
    ])
    def test_blocks_localhost_names(self, url):
        with pytest.raises(UnsafeURLError) as exc:
            validate_source_url(url, resolve_dns=False)
        assert "loopback" in str(exc.value)

    @pytest.mark.parametrize("url", [
        "http://127.0.0.1/",
        "http://10.0.0.1/admin",
        "http://172.16.5.4/",
        "http://192.168.1.1/",
        "http://169.254.169.254/latest/meta-data",
        "http://0.0.0.0/",
        "http://[::1]/",
        "http://[fe80::1]/",
        "http://224.0.0.1/",
    ])
    def test_blocks_private_literals(self, url):
        with pytest.raises(UnsafeURLError) as exc:
            validate_source_url(url, resolve_dns=False)
        assert "private address" in str(exc.value)

    def test_allows_public_literal(self):
        assert validate_source_url("http://93.184.216.34/", resolve_dns=False) == "http://93.184.216.34/"

    # --- DNS resolution ---

    def test_blocks_hostname_resolving_to_private(self):
        with patch(
            "servers.event_discovery.sources.url_validator._resolve",
            return_value={"10.1.2.3"},
        ):
            with pytest.raises(UnsafeURLError) as exc:
                validate_source_url("https://intranet.example.com/")
        assert "resolves to private address 10.1.2.3" in str(exc.value)

    def test_allows_hostname_resolving_to_public(self):
        with patch(
            "servers.event_discovery.sources.url_validator._resolve",
            return_value={"93.184.216.34"},
        ):
            assert validate_source_url("https://parks.example.com/") == "https://parks.example.com/"

    def test_resolution_failure_left_to_fetch(self):
        with patch(
            "servers.event_discovery.sources.url_validator._resolve",
            side_effect=socket.gaierror("no such host"),
        ):
            assert validate_source_url("https://nowhere.invalid/") == "https://nowhere.invalid/"

    def test_no_resolution_when_disabled(self):
        with patch("servers.event_discovery.sources.url_validator._resolve") as resolve:
            validate_source_url("https://parks.example.com/", resolve_dns=False)
        resolve.assert_not_called()

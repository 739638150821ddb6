"""Unit tests for resolve_ipv4."""

import socket
from unittest.mock import patch

import pytest

from traefik_unbound.cli import ResolveError, resolve_ipv4


def addrinfo(*addresses: str):
    result = []
    for address in addresses:
        if ":" in address:
            result.append((socket.AF_INET6, socket.SOCK_STREAM, 6, "", (address, 0, 0, 0)))
        else:
            result.append((socket.AF_INET, socket.SOCK_STREAM, 6, "", (address, 0)))
    return result


class TestResolveIPv4:
    """Tests for resolving a Traefik URL to an IPv4 address."""

    def test_uses_first_address_and_strips_port(self) -> None:
        with patch("socket.getaddrinfo") as mock_lookup:
            mock_lookup.return_value = addrinfo("10.0.0.5", "10.0.0.6")

            assert resolve_ipv4("http://traefik.lan:8080") == "10.0.0.5"
            mock_lookup.assert_called_once_with("traefik.lan", None)

    def test_unwraps_ipv4_mapped_address(self) -> None:
        with patch("socket.getaddrinfo") as mock_lookup:
            mock_lookup.return_value = addrinfo("::ffff:10.0.0.7")

            assert resolve_ipv4("https://traefik.lan") == "10.0.0.7"

    def test_ipv6_only_address_is_fatal(self) -> None:
        with patch("socket.getaddrinfo") as mock_lookup:
            mock_lookup.return_value = addrinfo("2001:db8::1")

            with pytest.raises(ResolveError):
                resolve_ipv4("https://traefik.lan")

    def test_lookup_failure_is_fatal(self) -> None:
        with patch("socket.getaddrinfo") as mock_lookup:
            mock_lookup.side_effect = socket.gaierror(-2, "Name or service not known")

            with pytest.raises(ResolveError, match="traefik.invalid"):
                resolve_ipv4("http://traefik.invalid:8080")

    def test_empty_lookup_result_is_fatal(self) -> None:
        with patch("socket.getaddrinfo") as mock_lookup:
            mock_lookup.return_value = []

            with pytest.raises(ResolveError, match="No IPs found"):
                resolve_ipv4("http://traefik.lan")

    def test_url_without_host_is_fatal(self) -> None:
        with pytest.raises(ResolveError, match="No host"):
            resolve_ipv4("traefik.lan")

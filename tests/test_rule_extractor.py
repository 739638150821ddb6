"""Unit tests for hostname extraction from Traefik router rules."""

import pytest

from traefik_unbound.cli import extract_hostname


class TestExtractHostname:
    """Tests for extract_hostname."""

    @pytest.mark.parametrize(
        "rule,expected",
        [
            ("Host(`app.example.com`)", "app.example.com"),
            ("HostSNI(`db.example.com`)", "db.example.com"),
            ("Host(`app.example.com`) && PathPrefix(`/api`)", "app.example.com"),
            ("PathPrefix(`/api`) && Host(`api.example.com`)", "api.example.com"),
            ("Host(`first.example.com`) || Host(`second.example.com`)", "first.example.com"),
        ],
    )
    def test_returns_hostname_for_matching_rules(self, rule: str, expected: str) -> None:
        """Host and HostSNI matchers yield the backtick-delimited hostname."""
        assert extract_hostname(rule) == expected

    @pytest.mark.parametrize(
        "rule",
        [
            "",
            "PathPrefix(`/api`)",
            "Host(`app.example.com/path`)",
            'Host("app.example.com")',
            "HostRegexp(`{sub:[a-z]+}.example.com`)",
            "Host(``)",
        ],
    )
    def test_returns_none_for_non_matching_rules(self, rule: str) -> None:
        """Rules without a usable host matcher are skipped."""
        assert extract_hostname(rule) is None

    def test_returns_none_for_non_string(self) -> None:
        """Non-string rule values are ignored."""
        assert extract_hostname(None) is None
        assert extract_hostname(42) is None

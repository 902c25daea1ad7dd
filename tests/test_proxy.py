"""Tests for trusted proxy parsing and client address resolution."""

import pytest

from authgate.service.proxy import UNKNOWN_ADDRESS, TrustedProxyResolver, TrustedProxySet


class TestTrustedProxySet:
    def test_empty_by_default(self):
        assert not TrustedProxySet.parse("")
        assert not TrustedProxySet.parse(None)

    def test_parses_addresses_and_cidrs(self):
        trusted = TrustedProxySet.parse("10.0.0.1, 172.16.0.0/12, ::1")

        assert len(trusted) == 3
        assert trusted.contains("10.0.0.1")
        assert trusted.contains("172.20.1.9")
        assert trusted.contains("::1")
        assert not trusted.contains("10.0.0.2")

    def test_accepts_iterables(self):
        trusted = TrustedProxySet.parse(["192.168.1.0/24"])

        assert trusted.contains("192.168.1.77")

    def test_invalid_entry_raises(self):
        with pytest.raises(ValueError, match="invalid trusted proxy entry 'not-an-ip'"):
            TrustedProxySet.parse("10.0.0.1, not-an-ip")

    def test_non_ip_peer_never_trusted(self):
        trusted = TrustedProxySet.parse("10.0.0.0/8")

        assert not trusted.contains("testclient")
        assert not trusted.contains("")
        assert not trusted.contains(None)


class TestResolveClientAddress:
    """Forwarding headers only count when the direct peer is trusted."""

    @pytest.fixture
    def resolver(self):
        return TrustedProxyResolver(TrustedProxySet.parse("10.0.0.1"))

    def test_untrusted_peer_headers_ignored(self, resolver):
        address = resolver.resolve_client_address(
            "203.0.113.9", forwarded_for="1.2.3.4", real_ip="5.6.7.8"
        )

        assert address == "203.0.113.9"

    def test_empty_trust_set_ignores_headers(self):
        resolver = TrustedProxyResolver(TrustedProxySet.parse(""))

        assert resolver.resolve_client_address("10.0.0.1", forwarded_for="1.2.3.4") == "10.0.0.1"

    def test_trusted_peer_uses_leftmost_forwarded_entry(self, resolver):
        address = resolver.resolve_client_address(
            "10.0.0.1", forwarded_for=" 198.51.100.7 , 10.0.0.9, 10.0.0.1"
        )

        assert address == "198.51.100.7"

    def test_trusted_peer_falls_back_to_real_ip(self, resolver):
        assert resolver.resolve_client_address("10.0.0.1", real_ip="198.51.100.8") == "198.51.100.8"

    def test_unknown_forwarded_entry_skipped(self, resolver):
        address = resolver.resolve_client_address(
            "10.0.0.1", forwarded_for="unknown, 1.2.3.4", real_ip="198.51.100.8"
        )

        assert address == "198.51.100.8"

    def test_trusted_peer_without_headers_is_itself(self, resolver):
        assert resolver.resolve_client_address("10.0.0.1") == "10.0.0.1"
        assert resolver.resolve_client_address("10.0.0.1", forwarded_for="  ") == "10.0.0.1"

    def test_missing_peer_is_unknown(self, resolver):
        assert resolver.resolve_client_address(None, forwarded_for="1.2.3.4") == UNKNOWN_ADDRESS
        assert resolver.resolve_client_address("") == UNKNOWN_ADDRESS

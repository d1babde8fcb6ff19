"""Unit tests for auth/ipscope.py -- address normalization and scope matching."""

import pytest

from auth.ipscope import client_ip, is_valid_scope, matches, normalize_ip


class TestNormalizeIp:
    @pytest.mark.parametrize("address", ["::1", "::ffff:127.0.0.1"])
    def test_loopback_forms_collapse(self, address):
        assert normalize_ip(address) == "127.0.0.1"

    def test_mapped_ipv4_prefix_stripped(self):
        assert normalize_ip("::ffff:192.168.1.10") == "192.168.1.10"

    def test_plain_ipv4_unchanged(self):
        assert normalize_ip("10.0.0.5") == "10.0.0.5"

    def test_non_ip_passes_through(self):
        assert normalize_ip("testclient") == "testclient"
        assert normalize_ip("") == ""
        assert normalize_ip(None) is None


class TestMatches:
    def test_wildcard_segment_matches(self):
        assert matches("192.168.1.42", ["192.168.1.*"]) is True

    def test_wildcard_other_subnet_rejected(self):
        assert matches("192.168.2.1", ["192.168.1.*"]) is False

    def test_exact_literal(self):
        assert matches("127.0.0.1", ["127.0.0.1"]) is True
        assert matches("127.0.0.2", ["127.0.0.1"]) is False

    def test_address_normalized_before_compare(self):
        assert matches("::1", ["127.0.0.1"]) is True
        assert matches("::ffff:10.1.2.3", ["10.1.2.*"]) is True

    def test_dots_are_literal(self):
        """An escaped dot must not match arbitrary characters."""
        assert matches("192x168x1x5", ["192.168.1.*"]) is False

    def test_empty_pattern_list_allows_any(self):
        assert matches("8.8.8.8", []) is True
        assert matches("8.8.8.8", None) is True

    def test_any_pattern_in_list(self):
        scopes = ["10.0.0.1", "172.16.*.*", "192.168.1.*"]
        assert matches("172.16.4.9", scopes) is True
        assert matches("10.0.0.2", scopes) is False

    def test_order_does_not_change_result(self):
        a = ["10.0.0.*", "10.0.0.7"]
        assert matches("10.0.0.7", a) == matches("10.0.0.7", list(reversed(a)))


class TestIsValidScope:
    @pytest.mark.parametrize("pattern", ["10.0.0.1", "192.168.1.*", "10.*.*.*", "::1", "2001:db8::1"])
    def test_valid(self, pattern):
        assert is_valid_scope(pattern)

    @pytest.mark.parametrize("pattern", ["", "not-an-ip", "300.1.1.1", "192.168.1.*.*", "192.168.*", "1.2.3.4*"])
    def test_invalid(self, pattern):
        assert not is_valid_scope(pattern)


class TestClientIp:
    def test_forwarded_for_first_entry_wins(self):
        headers = {"x-forwarded-for": "203.0.113.7, 10.0.0.1", "x-real-ip": "10.9.9.9"}
        assert client_ip(headers, "127.0.0.1") == "203.0.113.7"

    def test_real_ip_second(self):
        assert client_ip({"x-real-ip": "10.9.9.9"}, "127.0.0.1") == "10.9.9.9"

    def test_socket_peer_last(self):
        assert client_ip({}, "127.0.0.1") == "127.0.0.1"
        assert client_ip({}, None) == "unknown"

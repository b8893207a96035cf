import pytest

from analytics.sites import resolve_site_id


def test_explicit_id_wins():
    assert resolve_site_id("a", "https://b.example.com/x", "c.example.com:3000") == "a"
    assert resolve_site_id("a") == "a"


def test_referer_hostname():
    assert resolve_site_id(None, "https://b.example.com/x", "c.example.com") == "b.example.com"
    assert resolve_site_id(referer="https://b.example.com/x") == "b.example.com"


def test_host_header_port_stripped():
    assert resolve_site_id(host="c.example.com:3000") == "c.example.com"
    assert resolve_site_id(host="c.example.com") == "c.example.com"


def test_nothing_resolves():
    assert resolve_site_id() is None
    assert resolve_site_id("", "", "") is None


@pytest.mark.parametrize("referer", ["not a url", "/relative/path", "b.example.com", "https://"])
def test_invalid_referer_falls_through_to_host(referer):
    assert resolve_site_id(None, referer, "c.example.com:8080") == "c.example.com"


def test_invalid_referer_without_host():
    assert resolve_site_id(None, "garbage") is None


def test_ipv6_host_keeps_address():
    assert resolve_site_id(host="[::1]:3000") == "[::1]"

"""Tests for partner return URL validation."""
import pytest

from fenam.core.return_url import validate_return_url

ALLOWED = "enotempo.it,www.enotempo.it"


@pytest.mark.parametrize("raw,expected", [
    ("https://enotempo.it/area-soci", "https://enotempo.it/area-soci"),
    ("https://www.enotempo.it/", "https://www.enotempo.it"),
    ("  https://shop.enotempo.it/cart?x=1  ", "https://shop.enotempo.it/cart?x=1"),
    ("https://ENOTEMPO.IT./login", "https://enotempo.it/login"),
    ("https%3A%2F%2Fenotempo.it%2Fsoci", "https://enotempo.it/soci"),
    ("https://enotempo.it:8443/x", "https://enotempo.it:8443/x"),
])
def test_accepts_allowlisted_https_urls(raw, expected):
    result = validate_return_url(raw, ALLOWED)
    assert result.ok
    assert result.return_url == expected


@pytest.mark.parametrize("raw,reason", [
    (None, "missing"),
    ("   ", "empty"),
    ("http://enotempo.it/", "protocol"),
    ("javascript:alert(1)", "protocol"),
    ("data:text/html,hi", "protocol"),
    ("https://evil.example.com/", "host_not_allowed"),
    ("https://enotempo.it.evil.com/", "host_not_allowed"),
    ("https://notenotempo.it/", "host_not_allowed"),
    ("https://user:pw@enotempo.it/", "host"),
    ("https://enotempo.it/a b", "invalid"),
])
def test_rejects_unsafe_urls(raw, reason):
    result = validate_return_url(raw, ALLOWED)
    assert not result.ok
    assert result.return_url is None
    assert result.reason == reason


def test_decodes_only_once():
    # Double encoded scheme stays encoded after one pass and is refused
    result = validate_return_url("https%253A%252F%252Fenotempo.it", ALLOWED)
    assert not result.ok


def test_uses_configured_hosts_by_default(test_settings):
    test_settings.FENAM_ALLOWED_RETURN_HOSTS = "partner.example"
    assert validate_return_url("https://partner.example/x").ok
    assert not validate_return_url("https://enotempo.it/x").ok

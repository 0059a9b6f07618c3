"""Tests for the URL admission policy."""

import pytest

from sitepress import security
from sitepress.reliability.errors import BlockedHostError, ValidationError
from sitepress.security import assert_url_allowed, is_private_ipv4, is_private_ipv6


@pytest.mark.parametrize("ip", [
    "10.1.2.3", "127.0.0.1", "0.0.0.0", "192.168.1.1",
    "172.16.0.1", "172.31.255.255", "169.254.10.10", "999.1.1.1", "1.2.3",
])
def test_private_ipv4(ip):
    assert is_private_ipv4(ip)


@pytest.mark.parametrize("ip", ["8.8.8.8", "172.32.0.1", "172.15.0.1", "93.184.216.34"])
def test_public_ipv4(ip):
    assert not is_private_ipv4(ip)


def test_ipv6_prefix_rules():
    for ip in ("::", "::1", "fe80::1", "FEB0::1", "fc00::1", "fd12:3456::1", "::ffff:127.0.0.1"):
        assert is_private_ipv6(ip), ip
    for ip in ("2606:4700:4700::1111", "::ffff:8.8.8.8"):
        assert not is_private_ipv6(ip), ip


@pytest.mark.parametrize("url", [
    "http://localhost:3000/",
    "http://app.localhost/",
    "http://127.0.0.1/admin",
    "http://10.0.0.8/",
    "http://169.254.169.254/latest/meta-data/",
    "http://[::1]/",
    "http://[2606:4700::1111]/",
    "ftp://example.com/file",
    "file:///etc/passwd",
])
async def test_blocked_urls(url):
    with pytest.raises(BlockedHostError):
        await assert_url_allowed(url)


async def test_malformed_url_is_a_validation_error():
    with pytest.raises(ValidationError) as excinfo:
        await assert_url_allowed("example.com/no-scheme")
    assert not isinstance(excinfo.value, BlockedHostError)
    assert excinfo.value.message.startswith("Invalid URL")


async def test_public_host_allowed_and_cached(fake_dns):
    await assert_url_allowed("https://example.com/page")
    await assert_url_allowed("https://example.com/other")
    assert fake_dns.calls == ["example.com"]
    assert security.DNS_CACHE["example.com"] is False


async def test_host_resolving_to_private_address_is_blocked(fake_dns):
    fake_dns.table["intranet.example.org"] = ["93.184.216.34", "10.0.0.5"]
    with pytest.raises(BlockedHostError) as excinfo:
        await assert_url_allowed("https://intranet.example.org/")
    assert "resolves to a private address" in excinfo.value.message
    assert security.DNS_CACHE["intranet.example.org"] is True


async def test_host_resolving_to_private_ipv6_is_blocked(fake_dns):
    fake_dns.table["v6.example.org"] = ["fd00::2"]
    with pytest.raises(BlockedHostError):
        await assert_url_allowed("https://v6.example.org/")


async def test_dns_failure_is_blocked_and_not_cached(fake_dns):
    with pytest.raises(BlockedHostError):
        await assert_url_allowed("https://does-not-resolve.invalid/")
    assert "does-not-resolve.invalid" not in security.DNS_CACHE

    fake_dns.table["does-not-resolve.invalid"] = ["93.184.216.34"]
    await assert_url_allowed("https://does-not-resolve.invalid/")

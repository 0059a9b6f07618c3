"""Shared fixtures: deterministic DNS and a fresh configuration per test."""

import pytest

from sitepress import security
from sitepress.config.production import reset_config


class FakeResolver:
    """Stands in for the system resolver; unknown hosts fail to resolve."""

    def __init__(self):
        self.table = {
            "example.com": ["93.184.216.34"],
            "www.example.com": ["93.184.216.34"],
            "cdn.example.com": ["93.184.216.35"],
        }
        self.calls = []

    async def __call__(self, host):
        self.calls.append(host)
        if host not in self.table:
            raise OSError(f"Name or service not known: {host}")
        return list(self.table[host])


@pytest.fixture(autouse=True)
def fake_dns(monkeypatch):
    resolver = FakeResolver()
    monkeypatch.setattr(security, "resolve_addresses", resolver)
    security.DNS_CACHE.clear()
    yield resolver
    security.DNS_CACHE.clear()


@pytest.fixture(autouse=True)
def fresh_config(tmp_path, monkeypatch):
    monkeypatch.setenv("WORK_DIR", str(tmp_path / "work"))
    monkeypatch.setenv("LOG_ROOT", str(tmp_path / "logs"))
    reset_config()
    yield
    reset_config()

"""Tests for the breadth-first site crawler with an in-memory link graph."""

import pytest

from sitepress.crawler import SiteCrawler, clamp_limits, extract_internal_links
from sitepress.reliability.cancellation import CancellationToken
from sitepress.reliability.errors import JobCancelledError

ROOT = "https://example.com/"


def url(path):
    return "https://example.com" + path


GRAPH = {
    ROOT: [url("/a"), url("/b"), "https://other.com/x", url("/a#top")],
    url("/a"): [url("/c"), ROOT, url("/b/")],
    url("/b"): [url("/a"), url("/d")],
    url("/c"): [url("/e")],
    url("/d"): [],
    url("/e"): [],
}


class FakeFetcher:
    def __init__(self, graph, failing=()):
        self.graph = graph
        self.failing = set(failing)
        self.calls = []

    async def __call__(self, page_url):
        self.calls.append(page_url)
        if page_url in self.failing:
            raise RuntimeError("navigation failed")
        return list(self.graph.get(page_url, []))


async def test_breadth_first_order_and_no_revisits():
    fetcher = FakeFetcher(GRAPH)
    pages = await SiteCrawler(fetcher).crawl("https://example.com", max_pages=10, max_depth=2)
    assert pages == [ROOT, url("/a"), url("/b"), url("/c"), url("/d")]
    assert len(fetcher.calls) == len(set(fetcher.calls))
    # depth-2 pages are accepted but not expanded
    assert url("/c") not in fetcher.calls


async def test_max_pages_stops_the_crawl():
    pages = await SiteCrawler(FakeFetcher(GRAPH)).crawl(ROOT, max_pages=2, max_depth=5)
    assert pages == [ROOT, url("/a")]


async def test_depth_zero_returns_start_only():
    fetcher = FakeFetcher(GRAPH)
    pages = await SiteCrawler(fetcher).crawl(ROOT, max_pages=10, max_depth=0)
    assert pages == [ROOT]
    assert fetcher.calls == []


async def test_exclude_patterns_match_paths():
    pages = await SiteCrawler(FakeFetcher(GRAPH)).crawl(ROOT, max_pages=10, max_depth=5, exclude=["/b"])
    assert pages == [ROOT, url("/a"), url("/c"), url("/e")]


async def test_exclude_wins_over_include():
    graph = {
        url("/docs"): [url("/docs/intro"), url("/docs/private/keys"), url("/blog")],
    }
    pages = await SiteCrawler(FakeFetcher(graph)).crawl(
        url("/docs"), max_pages=10, max_depth=3,
        include=["/docs"], exclude=["/private"],
    )
    assert pages == [url("/docs"), url("/docs/intro")]


async def test_link_errors_are_swallowed():
    fetcher = FakeFetcher(GRAPH, failing={url("/a")})
    pages = await SiteCrawler(fetcher).crawl(ROOT, max_pages=10, max_depth=5)
    assert url("/a") in pages
    assert url("/c") not in pages
    assert url("/d") in pages


async def test_progress_reports_each_accepted_page():
    seen = []
    await SiteCrawler(FakeFetcher(GRAPH)).crawl(
        ROOT, max_pages=3, max_depth=5,
        on_progress=lambda current, total, message: seen.append((current, total)),
    )
    assert seen == [(1, 3), (2, 3), (3, 3)]


async def test_queue_is_bounded_on_dense_sites():
    dense = {ROOT: [url(f"/p{i}") for i in range(500)]}
    fetcher = FakeFetcher(dense)
    pages = await SiteCrawler(fetcher).crawl(ROOT, max_pages=4, max_depth=1)
    assert pages == [ROOT, url("/p0"), url("/p1"), url("/p2")]


async def test_cancelled_token_stops_crawl():
    token = CancellationToken()
    token.cancel()
    with pytest.raises(JobCancelledError):
        await SiteCrawler(FakeFetcher(GRAPH), token=token).crawl(ROOT)


async def test_invalid_start_url_yields_nothing():
    assert await SiteCrawler(FakeFetcher(GRAPH)).crawl("mailto:x@example.com") == []


def test_clamp_limits():
    assert clamp_limits(None, None) == (25, 2)
    assert clamp_limits(1000, 99) == (60, 5)
    assert clamp_limits(0, -3) == (1, 0)
    assert clamp_limits("7", "1") == (7, 1)
    assert clamp_limits("lots", None) == (25, 2)


def test_extract_internal_links():
    hrefs = [
        "/about/", "#top", "mailto:a@b.c", "javascript:void(0)", None,
        "https://other.com/", "/files/report.pdf", "contact?x=1#form", "/about",
    ]
    assert extract_internal_links(hrefs, "https://example.com/home") == [
        "https://example.com/about",
        "https://example.com/contact?x=1",
    ]

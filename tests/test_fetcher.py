"""Tests for image downloads and asset fetching over a mocked transport."""

import httpx

from sitepress.fetcher import build_client, download_image, fetch_text_asset

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 2048


def handler(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path == "/photo.png":
        headers = {"content-type": "image/png", "content-length": str(len(PNG))}
        return httpx.Response(200, headers=headers, content=b"" if request.method == "HEAD" else PNG)
    if path == "/page.jpg":
        return httpx.Response(200, headers={"content-type": "text/html"}, content=b"<html></html>")
    if path == "/no-head.png":
        if request.method == "HEAD":
            return httpx.Response(405)
        return httpx.Response(200, headers={"content-type": "image/png"}, content=PNG)
    if path == "/tiny.gif":
        return httpx.Response(200, headers={"content-type": "image/gif"}, content=b"GIF89a")
    if path == "/site.css":
        return httpx.Response(200, headers={"content-type": "text/css"}, content=b".a{background:url(/bg.png)}")
    if path == "/huge.js":
        return httpx.Response(200, headers={"content-type": "text/javascript"}, content=b"x" * 5000)
    return httpx.Response(404)


def _client():
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://example.com")


async def test_downloads_real_images():
    async with _client() as client:
        result = await download_image(client, "https://example.com/photo.png", min_bytes=1024)
    assert result == (PNG, "image/png")


async def test_rejects_non_images_and_missing_files():
    async with _client() as client:
        assert await download_image(client, "https://example.com/page.jpg") is None
        assert await download_image(client, "https://example.com/missing.png") is None


async def test_failed_head_falls_through_to_get():
    async with _client() as client:
        result = await download_image(client, "https://example.com/no-head.png", min_bytes=1024)
    assert result is not None and result[0] == PNG


async def test_images_below_minimum_are_skipped():
    async with _client() as client:
        assert await download_image(client, "https://example.com/tiny.gif", min_bytes=100) is None
        assert await download_image(client, "https://example.com/tiny.gif") == (b"GIF89a", "image/gif")


async def test_fetch_text_asset_respects_size_cap():
    async with _client() as client:
        assert await fetch_text_asset(client, "https://example.com/site.css", max_bytes=1000) == \
            ".a{background:url(/bg.png)}"
        assert await fetch_text_asset(client, "https://example.com/huge.js", max_bytes=1000) is None
        assert await fetch_text_asset(client, "https://example.com/gone.css", max_bytes=1000) is None


def redirecting_handler(request: httpx.Request) -> httpx.Response:
    if request.url.host == "127.0.0.1":
        return httpx.Response(200, headers={"content-type": "image/png"}, content=PNG)
    if request.url.path == "/moved.png":
        return httpx.Response(302, headers={"location": "http://127.0.0.1/secret.png"})
    if request.url.path == "/moved.css":
        return httpx.Response(302, headers={"location": "http://127.0.0.1/internal.css"})
    return handler(request)


async def test_redirects_to_private_addresses_are_refused():
    async with build_client(transport=httpx.MockTransport(redirecting_handler)) as client:
        assert await download_image(client, "https://example.com/moved.png") is None
        assert await fetch_text_asset(client, "https://example.com/moved.css", max_bytes=1000) is None
        assert await download_image(client, "https://example.com/photo.png") == (PNG, "image/png")


async def test_client_refuses_private_targets_outright():
    async with build_client(transport=httpx.MockTransport(redirecting_handler)) as client:
        assert await download_image(client, "http://127.0.0.1/secret.png") is None

"""Tests for canonical image keys, URL scoring and the candidate registry."""

import asyncio
import hashlib

import pytest

from sitepress.registry import (
    MAX_TIED_URLS_PER_KEY,
    ImageCandidateRegistry,
    canonical_image_key,
    score_image_url,
)


@pytest.mark.parametrize("url", [
    "https://CDN.example.com/img/photo.jpg",
    "https://cdn.example.com/img/photo-scaled.jpg",
    "https://cdn.example.com/img/photo@2x.jpg",
    "https://cdn.example.com/img/photo-300x200.jpg",
    "https://cdn.example.com/img/photo_1024x768.jpg",
    "https://cdn.example.com/img/photo.jpg?token=abc&expires=1#frag",
])
def test_variants_share_a_key(url):
    assert canonical_image_key(url) == "https://cdn.example.com/img/photo.jpg?"


def test_key_keeps_sorted_size_params():
    key = canonical_image_key("https://x.com/a.jpg?w=800&sig=zz&Q=80&dpr=2&h=600")
    assert key == "https://x.com/a.jpg?dpr=2&h=600&w=800"


def test_key_of_non_url_is_unchanged():
    assert canonical_image_key("not a url") == "not a url"
    assert canonical_image_key("data:image/png;base64,AAAA") == "data:image/png;base64,AAAA"


def test_url_scores():
    assert score_image_url("https://x.com/a.jpg?w=800&h=600") == 480000
    assert score_image_url("https://x.com/a.webp?w=100") == 100 * 1000 + 30000
    assert score_image_url("https://x.com/a.jpg?fm=avif&q=150") == 50000 + 100 * 200
    assert score_image_url("https://x.com/a.jpg?dpr=9") == 5 * 5000
    assert score_image_url("https://x.com/thumbs/a.jpg") == -15000
    assert score_image_url("garbage") == 0


@pytest.fixture
def registry(tmp_path):
    reg = ImageCandidateRegistry(str(tmp_path))
    yield reg
    reg.cleanup()


def test_add_url_keeps_best_and_respects_cap(tmp_path):
    reg = ImageCandidateRegistry(str(tmp_path), max_url_candidates=2)
    assert reg.add_url("https://x.com/a.jpg")
    assert reg.add_url("https://x.com/b.jpg")
    assert not reg.add_url("https://x.com/c.jpg")
    # same key, higher score: replaces the tracked URL even at the cap
    assert reg.add_url("https://x.com/a.jpg?imgw=800")
    assert not reg.add_url("https://x.com/a-300x200.jpg")
    assert not reg.add_url("ftp://x.com/a.jpg")
    assert reg.url_candidate_count == 2
    assert "https://x.com/a.jpg?imgw=800" in reg.pending_urls()
    reg.cleanup()


def test_pending_urls_skip_fetched(registry):
    registry.add_url("https://x.com/a.jpg?w=100")
    registry.add_url("https://x.com/b.jpg?w=900")
    assert registry.pending_urls() == ["https://x.com/b.jpg?w=900", "https://x.com/a.jpg?w=100"]
    registry.mark_fetched("https://x.com/b.jpg?w=900")
    assert registry.pending_urls() == ["https://x.com/a.jpg?w=100"]


def test_equal_scores_are_all_downloaded(tmp_path):
    reg = ImageCandidateRegistry(str(tmp_path), max_url_candidates=3)
    assert reg.add_url("https://x.com/hero.jpg?v=1")
    assert reg.add_url("https://x.com/hero-1200x800.jpg?v=2")
    assert not reg.add_url("https://x.com/hero.jpg?v=1")
    assert reg.pending_urls() == ["https://x.com/hero.jpg?v=1", "https://x.com/hero-1200x800.jpg?v=2"]
    assert reg.url_candidate_count == 2
    assert reg.logical_count() == 1

    # ties count against the cap
    assert reg.add_url("https://x.com/other.jpg")
    assert not reg.add_url("https://x.com/hero@2x.jpg")

    # a better URL replaces every tie and frees their slots
    assert reg.add_url("https://x.com/hero.jpg?imgw=1600")
    assert reg.url_candidate_count == 2
    assert "https://x.com/hero-1200x800.jpg?v=2" not in reg.pending_urls()
    reg.cleanup()


def test_ties_per_key_are_bounded(registry):
    added = [registry.add_url(f"https://x.com/pic.jpg?v={i}") for i in range(MAX_TIED_URLS_PER_KEY + 2)]
    assert added.count(True) == MAX_TIED_URLS_PER_KEY
    assert len(registry.pending_urls()) == MAX_TIED_URLS_PER_KEY


async def test_logical_count_sees_each_key_once(registry):
    assert await registry.add_buffer("https://cdn.example.com/a/img.jpg", b"i" * 50, "image/jpeg")
    assert registry.add_url("https://cdn.example.com/a/img.jpg?imgw=1600")
    registry.add_url("https://cdn.example.com/a/other.png")
    assert len(registry) == 1
    assert len(registry.pending_urls()) == 2
    assert registry.logical_count() == 2


def test_missing_work_dir_is_created(tmp_path):
    work_dir = tmp_path / "not" / "yet"
    reg = ImageCandidateRegistry(str(work_dir))
    assert reg.directory.parent == work_dir
    assert reg.directory.is_dir()
    reg.cleanup()


async def test_larger_payload_replaces_smaller(registry):
    assert await registry.add_buffer("https://x.com/p-300x200.jpg", b"a" * 100, "image/jpeg")
    first = registry.entries()[0].path
    assert await registry.add_buffer("https://x.com/p.jpg", b"b" * 500, "image/jpeg")

    assert len(registry) == 1
    record = registry.entries()[0]
    assert record.size == 500
    assert record.path.read_bytes() == b"b" * 500
    assert not first.exists()
    assert registry.replacements == 1
    assert [p.name for p in registry.directory.iterdir()] == [record.path.name]


async def test_smaller_payload_is_ignored(registry):
    assert await registry.add_buffer("https://x.com/p.jpg", b"b" * 500, "image/jpeg")
    assert not await registry.add_buffer("https://x.com/p@2x.jpg", b"a" * 100, "image/jpeg")
    assert registry.entries()[0].size == 500


async def test_min_bytes_filter(tmp_path):
    reg = ImageCandidateRegistry(str(tmp_path), min_bytes=1024)
    assert not await reg.add_buffer("https://x.com/tiny.png", b"x" * 10, "image/png")
    assert len(reg) == 0
    assert await reg.add_buffer("https://x.com/big.png", b"x" * 2048, "image/png")
    reg.cleanup()


async def test_data_uri_payloads_are_keyed_by_content(registry):
    data = b"\x89PNG-inline"
    uri = "data:image/png;base64,iVBORw0KGgo="
    assert registry.payload_key(uri, data) == "data:" + hashlib.sha1(data).hexdigest()
    assert await registry.add_buffer(uri, data, "image/png")
    assert not await registry.add_buffer(uri, data, "image/png")
    assert await registry.add_buffer("data:image/png;base64,b3RoZXI=", b"other-bytes", "image/png")
    assert len(registry) == 2


async def test_concurrent_variants_converge_on_largest(registry):
    variants = [
        (f"https://x.com/hero-{w}x{w // 2}.jpg", b"z" * w)
        for w in (120, 480, 960, 240, 720)
    ]
    results = await asyncio.gather(
        *(registry.add_buffer(url, data, "image/jpeg") for url, data in variants)
    )
    assert any(results)
    assert len(registry) == 1
    record = registry.entries()[0]
    assert record.size == 960
    assert record.extension == "jpg"
    files = list(registry.directory.iterdir())
    assert len(files) == 1
    assert not files[0].name.endswith(".part")


async def test_entries_sorted_by_size(registry):
    await registry.add_buffer("https://x.com/small.png", b"s" * 10, "image/png")
    await registry.add_buffer("https://x.com/large.png", b"l" * 30, "image/png")
    await registry.add_buffer("https://x.com/medium.gif", b"m" * 20, "image/gif")
    assert [r.size for r in registry.entries()] == [30, 20, 10]


def test_cleanup_removes_directory(tmp_path):
    reg = ImageCandidateRegistry(str(tmp_path))
    directory = reg.directory
    assert directory.exists()
    reg.cleanup()
    assert not directory.exists()

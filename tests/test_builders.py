"""Tests for the combined document and the image archive."""

import zipfile

import pytest

from sitepress.builders import ArchiveBuilder, build_combined_html
from sitepress.registry import ImageRecord
from sitepress.reliability.errors import ArchiveError
from sitepress.tasks.text import Section


def test_combined_html_keeps_section_order_and_escapes_titles():
    html = build_combined_html([
        Section(title="<b>T&C</b>", url="https://example.com/terms?a=1&b=2", html="<p>first</p>"),
        Section(title="", url="https://example.com/second", html="<p>second</p>"),
    ])
    assert html.index("<p>first</p>") < html.index("<p>second</p>")
    assert "&lt;b&gt;T&amp;C&lt;/b&gt;" in html
    assert "<h1>Page</h1>" in html
    assert 'href="https://example.com/terms?a=1&amp;b=2"' in html
    assert html.count("page-break-after: always") == 2


def _record(tmp_path, name, data, source_url, key=None, extension="jpg"):
    path = tmp_path / name
    path.write_bytes(data)
    return ImageRecord(
        key=key or source_url,
        score=len(data),
        size=len(data),
        path=path,
        source_url=source_url,
        extension=extension,
    )


def test_archive_names_entries_in_order(tmp_path):
    records = [
        _record(tmp_path, "one.bin", b"x" * 300, "https://cdn.example.com/img/photo.jpg?w=800"),
        _record(tmp_path, "two.bin", b"y" * 200, "data:image/png;base64,AAAA",
                key="data:abcdef1234567890abcdef", extension="png"),
        _record(tmp_path, "three.bin", b"z" * 10, "https://cdn.example.com/tiny.gif", extension="gif"),
    ]
    archive = ArchiveBuilder(tmp_path / "out" / "site.zip", "example-com", min_bytes=100).open()
    assert archive.add_all(records) == 2
    archive.close()

    with zipfile.ZipFile(tmp_path / "out" / "site.zip") as zf:
        assert zf.namelist() == [
            "example-com/0000-photo.jpg",
            "example-com/0001-inline-abcdef123456.png",
        ]
        assert zf.read("example-com/0000-photo.jpg") == b"x" * 300


def test_archive_skips_missing_files(tmp_path):
    record = _record(tmp_path, "gone.bin", b"x", "https://cdn.example.com/gone.jpg")
    record.path.unlink()
    archive = ArchiveBuilder(tmp_path / "a.zip", "site").open()
    assert not archive.add(record)
    archive.close()
    assert archive.count == 0


def test_add_before_open_is_an_error(tmp_path):
    archive = ArchiveBuilder(tmp_path / "a.zip", "site")
    with pytest.raises(ArchiveError):
        archive.add(_record(tmp_path, "f.bin", b"x", "https://x.com/f.jpg"))


def test_abort_deletes_partial_archive(tmp_path):
    archive = ArchiveBuilder(tmp_path / "a.zip", "site").open()
    archive.add(_record(tmp_path, "f.bin", b"x", "https://x.com/f.jpg"))
    archive.abort()
    assert not (tmp_path / "a.zip").exists()

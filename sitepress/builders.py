"""Output builders: combined printable HTML -> PDF, and the image ZIP archive."""

from __future__ import annotations

import html
import logging
import pathlib
import zipfile
from typing import Iterable, Optional, Sequence

from playwright.async_api import BrowserContext

from .registry import ImageRecord
from .reliability.errors import ArchiveError
from .utils import safe_entry_name


PRINT_CSS = """
    @page { margin: 22mm 18mm; }
    body { font-family: system-ui, -apple-system, Segoe UI, Roboto, Arial, sans-serif; font-size: 12pt; line-height: 1.55; }
    h1,h2,h3 { line-height: 1.25; margin: 0.6em 0 0.2em; }
    p { margin: 0.6em 0; }
    a { word-break: break-word; }
    pre { padding: 10px; overflow: auto; border-radius: 8px; background: #f4f4f4; }
    code { font-family: ui-monospace, SFMono-Regular, Menlo, Monaco, Consolas, monospace; font-size: 10.5pt; }
    blockquote { padding-left: 12px; border-left: 3px solid #ddd; margin-left: 0; color: #444; }
    table { border-collapse: collapse; width: 100%; }
    td, th { border: 1px solid #ddd; padding: 6px; vertical-align: top; }
    img, svg, video, audio, iframe, canvas { display: none !important; }
    .source { color: #555; font-size: 10pt; }
"""


def render_section(title: str, url: str, body_html: str) -> str:
    safe_url = html.escape(url, quote=True)
    return (
        '<section style="page-break-after: always;">\n'
        f"  <h1>{html.escape(title or 'Page')}</h1>\n"
        f'  <p class="source">Source: <a href="{safe_url}">{html.escape(url)}</a></p>\n'
        "  <hr/>\n"
        f"  {body_html}\n"
        "</section>"
    )


def build_combined_html(sections: Iterable) -> str:
    """One printable document, sections kept in the order given."""
    inner = "\n".join(render_section(s.title, s.url, s.html) for s in sections)
    return (
        "<!doctype html>\n<html>\n<head>\n  <meta charset=\"utf-8\" />\n"
        f"  <style>{PRINT_CSS}</style>\n</head>\n<body>\n{inner}\n</body>\n</html>"
    )


async def render_pdf(context: BrowserContext, document_html: str, *, timeout_ms: int = 60000) -> bytes:
    """Print HTML to an A4 PDF with Chromium."""
    page = await context.new_page()
    try:
        await page.set_content(document_html, wait_until="domcontentloaded", timeout=timeout_ms)
        return await page.pdf(
            format="A4",
            print_background=True,
            margin={"top": "22mm", "bottom": "22mm", "left": "18mm", "right": "18mm"},
        )
    finally:
        await page.close()


class ArchiveBuilder:
    """Streams image files into a ZIP on disk as ``folder/NNNN-name.ext``."""

    def __init__(self, path: pathlib.Path, folder: str, *, min_bytes: int = 0,
                 logger: Optional[logging.Logger] = None):
        self.path = pathlib.Path(path)
        self.folder = folder
        self.min_bytes = min_bytes
        self.logger = logger or logging.getLogger("sitepress.archive")
        self.count = 0
        self._zip: Optional[zipfile.ZipFile] = None

    def open(self) -> "ArchiveBuilder":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._zip = zipfile.ZipFile(self.path, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=6)
        return self

    def add(self, record: ImageRecord) -> bool:
        """Append one stored payload; payloads under ``min_bytes`` are skipped."""
        if self._zip is None:
            raise ArchiveError("Archive is not open")
        if record.size < self.min_bytes:
            return False
        if record.source_url.startswith("data:"):
            name = f"inline-{record.key.rsplit(':', 1)[-1][:12]}.{record.extension}"
        else:
            name = safe_entry_name(record.source_url, record.extension)
        arcname = f"{self.folder}/{self.count:04d}-{name}"
        try:
            self._zip.write(record.path, arcname)
        except OSError as e:
            self.logger.warning(f"Skipping {record.source_url}: {e}")
            return False
        self.count += 1
        return True

    def add_all(self, records: Sequence[ImageRecord]) -> int:
        for record in records:
            self.add(record)
        return self.count

    def close(self) -> None:
        """Finalize the central directory; failure is a job error."""
        if self._zip is None:
            return
        try:
            self._zip.close()
        except (OSError, zipfile.BadZipFile) as e:
            raise ArchiveError(f"Could not finalize archive: {e}", cause=e)
        finally:
            self._zip = None

    def abort(self) -> None:
        """Close without caring about the result and delete the file."""
        if self._zip is not None:
            try:
                self._zip.close()
            except (OSError, zipfile.BadZipFile):
                pass
            self._zip = None
        self.path.unlink(missing_ok=True)

from __future__ import annotations
import os
import pathlib
import re
import tempfile
import urllib.parse
from typing import Iterable, List, Optional, Sequence

# ───────── URL utilities ─────────

_FILE_URL_RE = re.compile(r"\.(pdf|zip|rar|7z|mp4|mp3|css|js)(\?|#|$)", re.IGNORECASE)


def normalize_url(url: str, base_url: Optional[str] = None) -> str:
    """Absolute http(s) URL without fragment or trailing slash; "" if unusable."""
    if not url or not isinstance(url, str):
        return ""
    url = url.strip()
    try:
        if base_url:
            url = urllib.parse.urljoin(base_url, url)
        parsed = urllib.parse.urlsplit(url)
    except ValueError:
        return ""
    if parsed.scheme.lower() not in ("http", "https") or not parsed.netloc:
        return ""
    path = parsed.path or "/"
    if path != "/" and path.endswith("/"):
        path = path[:-1]
    return urllib.parse.urlunsplit(
        (parsed.scheme.lower(), parsed.netloc.lower(), path, parsed.query, "")
    )


def url_origin(url: str) -> str:
    try:
        parsed = urllib.parse.urlsplit(url)
    except ValueError:
        return ""
    if not parsed.scheme or not parsed.netloc:
        return ""
    return f"{parsed.scheme.lower()}://{parsed.netloc.lower()}"


def is_same_origin(url1: str, url2: str) -> bool:
    """Scheme, host and port all match."""
    origin = url_origin(url1)
    return bool(origin) and origin == url_origin(url2)


def url_path(url: str) -> str:
    try:
        return urllib.parse.urlsplit(url).path or "/"
    except ValueError:
        return ""


def matches_any(value: str, patterns: Sequence[str]) -> bool:
    """Plain substring match against any pattern."""
    return any(p in value for p in patterns if p)


def parse_patterns(value) -> List[str]:
    """Path substrings from a list, or from a comma/newline separated string."""
    if isinstance(value, str):
        value = re.split(r"[,\n]", value)
    if not isinstance(value, (list, tuple)):
        return []
    return [str(p).strip() for p in value if str(p).strip()]


def is_probably_file_url(url: str) -> bool:
    return bool(_FILE_URL_RE.search(url or ""))


def dedupe(items: Iterable[str]) -> List[str]:
    """Drop repeats, keep first-seen order."""
    seen = set()
    out = []
    for item in items:
        if item and item not in seen:
            seen.add(item)
            out.append(item)
    return out

# ───────── filename helpers ─────────

def safe_filename(s: str, default: str = "document") -> str:
    s = (s or default).lower()
    s = re.sub(r"[^a-z0-9\-_]+", "-", s)
    s = re.sub(r"-+", "-", s).strip("-")
    return s[:90] or default


def safe_zip_name(site_url: str) -> str:
    """Archive base name from host + path."""
    try:
        parsed = urllib.parse.urlsplit(site_url)
        raw = f"{parsed.hostname or ''}{parsed.path}".lower()
    except ValueError:
        return "site"
    name = re.sub(r"[^a-z0-9]+", "-", raw)
    name = re.sub(r"-+", "-", name).strip("-")[:80]
    return name or "site"


def safe_entry_name(url: str, ext: str) -> str:
    """Archive entry file name from the URL's last path segment."""
    try:
        base = urllib.parse.urlsplit(url).path.rsplit("/", 1)[-1]
    except ValueError:
        base = ""
    base = re.sub(r"[^A-Za-z0-9._\-]+", "-", base).strip("-.")[:80] or "image"
    if "." not in base:
        base = f"{base}.{ext}"
    return base

# ───────── MIME / extension helpers ─────────

_IMAGE_CONTENT_TYPES = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
    "image/svg+xml": "svg",
    "image/avif": "avif",
    "image/bmp": "bmp",
    "image/x-ms-bmp": "bmp",
    "image/tiff": "tiff",
    "image/x-icon": "ico",
    "image/vnd.microsoft.icon": "ico",
    "image/heic": "heic",
    "image/heif": "heif",
    "image/apng": "apng",
}

IMAGE_EXTENSIONS = (
    "jpg", "jpeg", "png", "webp", "gif", "svg", "avif", "bmp",
    "tif", "tiff", "ico", "heic", "heif", "apng",
)


def ext_from_content_type(ct: str | None) -> str:
    """Map an image MIME type to an extension, "" if unknown."""
    ct = (ct or "").split(";")[0].strip().lower()
    return _IMAGE_CONTENT_TYPES.get(ct, "")


def ext_from_url(url: str) -> str:
    """Image extension from the URL path, "" if not a known image type."""
    try:
        path = urllib.parse.urlsplit(url).path.lower()
    except ValueError:
        return ""
    m = re.search(r"\.([a-z0-9]{2,5})$", path)
    if not m or m.group(1) not in IMAGE_EXTENSIONS:
        return ""
    ext = m.group(1)
    return {"jpeg": "jpg", "tif": "tiff"}.get(ext, ext)


def pick_extension(url: str, content_type: str | None) -> str:
    return ext_from_url(url) or ext_from_content_type(content_type) or "img"


def is_image_content_type(ct: str | None) -> bool:
    return "image/" in (ct or "").lower()

# ───────── File operations with atomic saves ─────────

def save_content_atomic(directory: pathlib.Path, content: bytes, suffix: str = "") -> pathlib.Path:
    """Write bytes to a fresh file in ``directory`` via a .part rename.

    Returns the final path. Readers never observe a partially written file.
    """
    directory.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(dir=directory, suffix=f"{suffix}.part")
    temp_path = pathlib.Path(temp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
        final_path = temp_path.with_name(temp_path.name[: -len(".part")])
        temp_path.replace(final_path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise
    return final_path


def remove_quietly(path: Optional[os.PathLike | str]) -> None:
    if not path:
        return
    try:
        pathlib.Path(path).unlink(missing_ok=True)
    except OSError:
        pass

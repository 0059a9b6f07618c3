"""HTML-level extraction shared by the text and image pipelines.

Everything here works on HTML strings with BeautifulSoup, so it can be
exercised without a browser. The browser-driven code in ``tasks`` feeds
rendered page content into these functions.
"""

from __future__ import annotations

import base64
import binascii
import re
import urllib.parse
from typing import Iterable, List, Optional, Tuple

from bs4 import BeautifulSoup, Tag
from markdown_it import MarkdownIt
from markdownify import markdownify as md

from .utils import IMAGE_EXTENSIONS, dedupe, ext_from_url


MAIN_SELECTORS = (
    "article", "main", '[role="main"]', ".content", ".post",
    ".article", "#content", "#main", "body",
)

LAYOUT_TAGS = ("header", "nav", "footer", "aside", "form", "noscript")
LANDMARK_ROLES = ("banner", "navigation", "contentinfo", "complementary")
MEDIA_TAGS = ("img", "video", "audio", "picture", "source", "iframe", "svg", "canvas")
SCRIPT_SELECTORS = ("script", "style", 'link[rel="stylesheet"]')

BOILERPLATE_RE = re.compile(
    r"(nav|menu|header|footer|sidebar|aside|cookie|consent|banner|breadcrumb|newsletter|"
    r"modal|popup|drawer|offcanvas|toolbar|sticky|share|social|ads|advert|promo)",
    re.IGNORECASE,
)

FALLBACK_TEXT_CHARS = 200

INTERSTITIAL_MARKERS = (
    "just a moment",
    "_cf_chl_opt",
    "challenge-platform",
    "cf-browser-verification",
    "checking your browser",
    "attention required! | cloudflare",
    "ddos-guard",
    "please verify you are a human",
)

_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")

_markdown = MarkdownIt("commonmark", {"html": False, "breaks": True}).enable("table")


def text_length(html: str) -> int:
    """Length of the visible text of an HTML fragment, whitespace collapsed."""
    return len(_WS_RE.sub(" ", _TAG_RE.sub(" ", html or "")).strip())


def is_interstitial(html: str, title: str = "") -> bool:
    """True for bot-verification pages (Cloudflare and similar)."""
    haystack = f"{title}\n{(html or '')[:200000]}".lower()
    return any(marker in haystack for marker in INTERSTITIAL_MARKERS)


def _decompose_all(elements: Iterable[Tag]) -> None:
    for el in list(elements):
        if not getattr(el, "decomposed", False):
            el.decompose()


def _strip_media_and_scripts(root: Tag) -> None:
    _decompose_all(root.find_all(MEDIA_TAGS))
    for selector in SCRIPT_SELECTORS:
        _decompose_all(root.select(selector))
    for el in root.find_all(style=True):
        del el["style"]


def _strip_layout(root: Tag) -> None:
    _decompose_all(root.find_all(LAYOUT_TAGS))
    for role in LANDMARK_ROLES:
        _decompose_all(root.select(f'[role="{role}"]'))


def _strip_boilerplate(root: Tag) -> None:
    for el in list(root.find_all(True)):
        if getattr(el, "decomposed", False) or el.attrs is None:
            continue
        classes = el.get("class") or []
        if isinstance(classes, str):
            classes = [classes]
        haystack = (el.get("id") or "", " ".join(classes), el.get("aria-label") or "")
        if any(BOILERPLATE_RE.search(value) for value in haystack if value):
            el.decompose()


def _inner_html(tag: Tag) -> str:
    return "".join(str(child) for child in tag.contents)


def extract_main_content(html: str) -> Tuple[str, str]:
    """Return ``(title, content_html)`` for the main content of a page.

    The first matching main-content selector wins. Layout landmarks, media,
    scripts, inline styles and elements whose id/class/aria-label look like
    boilerplate are removed. When less than 200 characters of text survive,
    the whole body (without layout, media and scripts) is used instead.
    """
    soup = BeautifulSoup(html or "", "html.parser")
    title = soup.title.get_text(strip=True) if soup.title else ""

    root = None
    for selector in MAIN_SELECTORS:
        root = soup.select_one(selector)
        if root is not None:
            break
    if root is None:
        root = soup.body or soup

    _strip_layout(root)
    _strip_media_and_scripts(root)
    _strip_boilerplate(root)
    content = _inner_html(root)

    if text_length(content) < FALLBACK_TEXT_CHARS:
        fallback = BeautifulSoup(html or "", "html.parser")
        body = fallback.body
        if body is not None:
            _decompose_all(body.find_all(LAYOUT_TAGS))
            _strip_media_and_scripts(body)
            content = _inner_html(body) or content

    return title, content


def render_clean_html(content_html: str) -> str:
    """HTML -> Markdown -> HTML, images dropped, raw HTML not passed through."""
    markdown = md(
        content_html or "",
        heading_style="ATX",
        strip=["img"],
    ).strip()
    return _markdown.render(markdown)

# ───────── image references ─────────

SRCSET_ATTRIBUTES = ("data-srcset", "data-lazy-srcset", "data-srcset2", "srcset")
LAZY_ATTRIBUTES = ("data-original", "data-src", "data-lazy-src", "data-url", "src")
ICON_RELS = ("icon", "shortcut icon", "apple-touch-icon", "apple-touch-icon-precomposed")

CSS_URL_RE = re.compile(r"url\(\s*['\"]?([^'\")]+?)['\"]?\s*\)", re.IGNORECASE)
_EXT_ALT = "|".join(sorted(set(IMAGE_EXTENSIONS), key=len, reverse=True))
ABSOLUTE_IMAGE_RE = re.compile(
    r"(?:https?:)?//[^\s'\"()<>\\]+?\.(?:" + _EXT_ALT + r")(?:\?[^\s'\"()<>\\]*)?(?=[\s'\"()<>\\]|$)",
    re.IGNORECASE,
)
QUOTED_IMAGE_RE = re.compile(
    r"['\"]([^'\"\s<>]+?\.(?:" + _EXT_ALT + r")(?:\?[^'\"\s<>]*)?)['\"]",
    re.IGNORECASE,
)
DATA_URI_RE = re.compile(r"data:image/[a-z0-9.+\-]+(?:;[a-z0-9=\-]+)*,[A-Za-z0-9+/=%._\-]+", re.IGNORECASE)
_DATA_URI_PARTS_RE = re.compile(r"^data:(image/[a-z0-9.+\-]+)((?:;[^,]*)?),(.*)$", re.IGNORECASE | re.DOTALL)


def pick_best_from_srcset(srcset: Optional[str]) -> Optional[str]:
    """Largest srcset candidate: ``Nw`` scores N, ``Nx`` scores N*100000, none scores 1."""
    if not srcset or not isinstance(srcset, str):
        return None
    best_url, best_score = None, -1.0
    for item in srcset.split(","):
        parts = item.strip().split()
        if not parts:
            continue
        url = parts[0]
        score = 1.0
        if len(parts) > 1:
            descriptor = parts[1].lower()
            try:
                if descriptor.endswith("w"):
                    score = float(int(descriptor[:-1]))
                elif descriptor.endswith("x"):
                    score = round(float(descriptor[:-1]) * 100000)
                else:
                    score = 0.0
            except ValueError:
                score = 0.0
        if score > best_score:
            best_url, best_score = url, score
    return best_url


def _first_non_empty(values: Iterable[Optional[str]]) -> Optional[str]:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def best_img_url(img: Tag) -> Optional[str]:
    srcset = _first_non_empty(img.get(attr) for attr in SRCSET_ATTRIBUTES)
    return _first_non_empty([pick_best_from_srcset(srcset)] + [img.get(attr) for attr in LAZY_ATTRIBUTES])


def resolve_image_ref(ref: str, base_url: str) -> Optional[str]:
    """Absolute http(s) URL without fragment, data:image URIs unchanged."""
    ref = (ref or "").strip()
    if not ref:
        return None
    if ref.lower().startswith("data:"):
        return ref if ref.lower().startswith("data:image/") else None
    try:
        absolute = urllib.parse.urljoin(base_url, ref)
        parsed = urllib.parse.urlsplit(absolute)
    except ValueError:
        return None
    if parsed.scheme.lower() not in ("http", "https") or not parsed.netloc:
        return None
    return urllib.parse.urlunsplit((parsed.scheme, parsed.netloc, parsed.path, parsed.query, ""))


def extract_image_refs(html: str, base_url: str) -> List[str]:
    """Image references declared in markup, best variant per element."""
    soup = BeautifulSoup(html or "", "html.parser")
    refs: List[str] = []

    for picture in soup.find_all("picture"):
        candidates = [pick_best_from_srcset(s.get("srcset")) for s in picture.find_all("source")]
        img = picture.find("img")
        if img is not None:
            candidates.append(best_img_url(img))
        chosen = _first_non_empty(candidates)
        if chosen:
            refs.append(chosen)

    for img in soup.find_all("img"):
        if img.find_parent("picture") is not None:
            continue
        chosen = best_img_url(img)
        if chosen:
            refs.append(chosen)

    for meta in soup.find_all("meta"):
        key = (meta.get("property") or meta.get("name") or "").lower()
        if key in ("og:image", "og:image:url", "og:image:secure_url", "twitter:image", "twitter:image:src"):
            if meta.get("content"):
                refs.append(meta["content"])

    for link in soup.find_all("link", href=True):
        rel = " ".join(link.get("rel") or []).lower()
        if rel in ICON_RELS or link.get("as") == "image":
            refs.append(link["href"])

    for el in soup.find_all(style=True):
        refs.extend(CSS_URL_RE.findall(el.get("style") or ""))

    resolved = (resolve_image_ref(ref, base_url) for ref in refs)
    return dedupe(r for r in resolved if r)


def extract_asset_image_urls(text: str, base_url: str) -> List[str]:
    """Image URLs mentioned in a stylesheet or script body."""
    text = text or ""
    refs: List[str] = []
    for ref in CSS_URL_RE.findall(text):
        if ref.lower().startswith("data:image/") or ext_from_url(urllib.parse.urljoin(base_url, ref)):
            refs.append(ref)
    refs.extend(ABSOLUTE_IMAGE_RE.findall(text))
    refs.extend(QUOTED_IMAGE_RE.findall(text))
    refs.extend(DATA_URI_RE.findall(text))
    resolved = (resolve_image_ref(ref, base_url) for ref in refs)
    return dedupe(r for r in resolved if r)


def decode_data_uri(uri: str) -> Optional[Tuple[bytes, str]]:
    """``(bytes, content_type)`` for a ``data:image/...`` URI, None if malformed."""
    m = _DATA_URI_PARTS_RE.match(uri or "")
    if not m:
        return None
    content_type, params, payload = m.group(1).lower(), m.group(2).lower(), m.group(3)
    try:
        if ";base64" in params:
            data = base64.b64decode(urllib.parse.unquote(payload), validate=False)
        else:
            data = urllib.parse.unquote_to_bytes(payload)
    except (binascii.Error, ValueError):
        return None
    if not data:
        return None
    return data, content_type

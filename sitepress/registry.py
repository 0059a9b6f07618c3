"""Image candidate registry.

Many observed representations of one logical image (resized variants,
retina suffixes, CDN transform parameters) collapse to one canonical key.
For each key the registry keeps the best-scoring URLs seen (a few when they
tie, since only their bytes can tell them apart) and, once bytes have been
fetched, the best payload on disk.

Scoring is a pure function of the URL. A payload's score is its URL score
plus its byte length, so among otherwise equal URLs the larger file wins.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import pathlib
import re
import shutil
import tempfile
import urllib.parse
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Set

from .utils import pick_extension, remove_quietly, save_content_atomic


_SUFFIX_PATTERNS = (
    re.compile(r"-scaled(?=\.[a-z0-9]{2,5}$)", re.IGNORECASE),
    re.compile(r"@\dx(?=\.[a-z0-9]{2,5}$)", re.IGNORECASE),
    re.compile(r"-\d{2,5}x\d{2,5}(?=\.[a-z0-9]{2,5}$)", re.IGNORECASE),
    re.compile(r"_\d{2,5}x\d{2,5}(?=\.[a-z0-9]{2,5}$)", re.IGNORECASE),
)

KEY_PARAMS = ("w", "width", "h", "height", "q", "quality", "dpr", "fm", "format")

# equal-score URLs downloaded per key
MAX_TIED_URLS_PER_KEY = 4

_THUMB_RE = re.compile(r"(thumb|thumbnail|small|_sm|_xs|/sm/|/thumbs/)", re.IGNORECASE)


class ScoreWeights:
    """Weights of the URL quality heuristic."""
    WIDTH_ONLY_FACTOR = 1000
    FORMAT_BONUS = (("avif", 50000), ("webp", 30000), ("png", 10000))
    QUALITY_FACTOR = 200
    QUALITY_CAP = 100
    DPR_FACTOR = 5000
    DPR_CAP = 5
    THUMB_PENALTY = -15000

    WIDTH_PARAMS = ("w", "width", "dw", "sw", "imgw", "maxw", "mw")
    HEIGHT_PARAMS = ("h", "height", "dh", "sh", "imgh", "maxh", "mh")
    QUALITY_PARAMS = ("q", "quality", "qlt")
    DPR_PARAMS = ("dpr", "devicePixelRatio", "dpi")


def _first_params(query: str) -> Dict[str, str]:
    params: Dict[str, str] = {}
    for k, v in urllib.parse.parse_qsl(query, keep_blank_values=True):
        params.setdefault(k, v)
    return params


def _origin(parsed: urllib.parse.SplitResult) -> str:
    host = (parsed.hostname or "").lower()
    port = parsed.port
    default = {"http": 80, "https": 443}.get(parsed.scheme.lower())
    if port and port != default:
        host = f"{host}:{port}"
    return f"{parsed.scheme.lower()}://{host}"


def canonical_image_key(url: str) -> str:
    """Key shared by every representation of the same logical image.

    Non-URL input is returned unchanged.
    """
    try:
        parsed = urllib.parse.urlsplit(url)
        if parsed.scheme.lower() not in ("http", "https") or not parsed.hostname:
            return url
        path = parsed.path
        for pattern in _SUFFIX_PATTERNS:
            path = pattern.sub("", path)
        params = _first_params(parsed.query)
        keep = sorted(f"{k}={params[k]}" for k in KEY_PARAMS if params.get(k))
        return f"{_origin(parsed)}{path}?{'&'.join(keep)}".lower()
    except ValueError:
        return url


def _numeric_param(params: Dict[str, str], names: Sequence[str]) -> float:
    for name in names:
        value = params.get(name)
        if not value:
            continue
        try:
            number = float(re.sub(r"[^\d.]", "", value))
        except ValueError:
            continue
        if number > 0:
            return number
    return 0


def score_image_url(url: str) -> float:
    """Quality estimate from URL hints; 0 for anything unparseable."""
    try:
        parsed = urllib.parse.urlsplit(url)
        if not parsed.scheme or not parsed.netloc:
            return 0
        params = _first_params(parsed.query)
        w = _numeric_param(params, ScoreWeights.WIDTH_PARAMS)
        h = _numeric_param(params, ScoreWeights.HEIGHT_PARAMS)
        q = _numeric_param(params, ScoreWeights.QUALITY_PARAMS)
        dpr = _numeric_param(params, ScoreWeights.DPR_PARAMS)

        if w and h:
            area = w * h
        elif w:
            area = w * ScoreWeights.WIDTH_ONLY_FACTOR
        else:
            area = 0

        fmt = (params.get("fm") or params.get("format") or "").lower()
        path_ext = parsed.path.rsplit(".", 1)[-1].lower()
        fmt = fmt or path_ext
        format_bonus = 0
        for name, bonus in ScoreWeights.FORMAT_BONUS:
            if name in fmt:
                format_bonus = bonus
                break

        q_bonus = min(ScoreWeights.QUALITY_CAP, q) * ScoreWeights.QUALITY_FACTOR if q else 0
        dpr_bonus = min(ScoreWeights.DPR_CAP, dpr) * ScoreWeights.DPR_FACTOR if dpr else 0
        penalty = ScoreWeights.THUMB_PENALTY if _THUMB_RE.search(parsed.path.lower()) else 0

        return area + format_bonus + q_bonus + dpr_bonus + penalty
    except ValueError:
        return 0


@dataclass
class UrlCandidate:
    key: str
    url: str
    score: float


@dataclass
class ImageRecord:
    key: str
    score: float
    size: int
    path: pathlib.Path
    source_url: str
    extension: str


class ImageCandidateRegistry:
    """Per-job best-of-N store for image candidates."""

    def __init__(
        self,
        work_dir: Optional[str] = None,
        *,
        max_url_candidates: int = 3000,
        min_bytes: int = 0,
        logger: Optional[logging.Logger] = None,
    ):
        if work_dir:
            pathlib.Path(work_dir).mkdir(parents=True, exist_ok=True)
        self.directory = pathlib.Path(tempfile.mkdtemp(prefix="sitepress-img-", dir=work_dir))
        self.max_url_candidates = max_url_candidates
        self.min_bytes = max(0, int(min_bytes))
        self.logger = logger or logging.getLogger("sitepress.registry")
        self._urls: Dict[str, List[UrlCandidate]] = {}
        self._url_total = 0
        self._records: Dict[str, ImageRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._fetched: Set[str] = set()
        self.replacements = 0

    # ── URL candidates ──

    def add_url(self, url: str) -> bool:
        """Track ``url`` if no URL seen for its key scores higher.

        A higher score replaces the key's candidates. An equal score joins
        them, up to ``MAX_TIED_URLS_PER_KEY``, so the downloads decide.
        """
        if not url or not url.lower().startswith(("http://", "https://")):
            return False
        key = canonical_image_key(url)
        candidate = UrlCandidate(key=key, url=url, score=score_image_url(url))
        current = self._urls.get(key)
        if current is None:
            if self._url_total >= self.max_url_candidates:
                return False
            self._urls[key] = [candidate]
            self._url_total += 1
            return True
        best = current[0].score
        if candidate.score > best:
            self._url_total -= len(current) - 1
            self._urls[key] = [candidate]
            return True
        if (
            candidate.score == best
            and len(current) < MAX_TIED_URLS_PER_KEY
            and self._url_total < self.max_url_candidates
            and all(c.url != url for c in current)
        ):
            current.append(candidate)
            self._url_total += 1
            return True
        return False

    def mark_fetched(self, url: str) -> None:
        self._fetched.add(url)

    def pending_urls(self) -> List[str]:
        """Tracked URLs not fetched yet, highest score first."""
        pending = [
            c for candidates in self._urls.values() for c in candidates
            if c.url not in self._fetched
        ]
        pending.sort(key=lambda c: (-c.score, c.key))
        return [c.url for c in pending]

    @property
    def url_candidate_count(self) -> int:
        return self._url_total

    def logical_count(self) -> int:
        """Distinct images known, by URL or by payload."""
        return len(self._urls.keys() | self._records.keys())

    # ── payloads ──

    @staticmethod
    def payload_key(url: str, data: bytes) -> str:
        if url.startswith("data:"):
            return "data:" + hashlib.sha1(data).hexdigest()
        return canonical_image_key(url)

    async def add_buffer(self, url: str, data: bytes, content_type: Optional[str] = None) -> bool:
        """Store ``data`` if it beats the current payload for its key.

        Score check, file write and record swap happen under the key's lock;
        the new payload goes to a fresh file so the current one is never torn.
        """
        self._fetched.add(url)
        if not data or len(data) < self.min_bytes:
            return False

        key = self.payload_key(url, data)
        score = (0 if url.startswith("data:") else score_image_url(url)) + len(data)
        lock = self._locks.setdefault(key, asyncio.Lock())

        async with lock:
            current = self._records.get(key)
            if current is not None and score <= current.score:
                return False

            extension = pick_extension(url, content_type)
            path = await asyncio.to_thread(save_content_atomic, self.directory, data, f".{extension}")
            self._records[key] = ImageRecord(
                key=key,
                score=score,
                size=len(data),
                path=path,
                source_url=url,
                extension=extension,
            )
            if current is not None:
                self.replacements += 1
                remove_quietly(current.path)
            return True

    def get(self, key: str) -> Optional[ImageRecord]:
        return self._records.get(key)

    def entries(self) -> List[ImageRecord]:
        """Stored payloads, largest first."""
        return sorted(self._records.values(), key=lambda r: (-r.size, r.key))

    def __len__(self) -> int:
        return len(self._records)

    def cleanup(self) -> None:
        shutil.rmtree(self.directory, ignore_errors=True)
        self._records.clear()

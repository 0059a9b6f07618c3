from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple

import httpx

from .reliability.errors import ValidationError
from .security import assert_url_allowed
from .utils import is_image_content_type


DEFAULT_HEADERS = {
    "user-agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/139.0.0.0 Safari/537.36"
    ),
    "accept": "image/avif,image/webp,image/apng,image/*,*/*;q=0.8",
    "accept-language": "en-US,en;q=0.9",
    "cache-control": "no-cache",
    "pragma": "no-cache",
}


async def _admit_request(request: httpx.Request) -> None:
    await assert_url_allowed(str(request.url))


def build_client(
    headers: Optional[Dict[str, str]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """Shared per-job client; redirects followed, timeouts set per request.

    Every request, redirect hops included, passes the admission policy.
    """
    return httpx.AsyncClient(
        headers={**DEFAULT_HEADERS, **(headers or {})},
        follow_redirects=True,
        timeout=httpx.Timeout(25.0),
        event_hooks={"request": [_admit_request]},
        transport=transport,
    )


async def download_image(
    client: httpx.AsyncClient,
    url: str,
    *,
    min_bytes: int = 0,
    head_timeout: float = 12.0,
    get_timeout: float = 25.0,
    logger: Optional[logging.Logger] = None,
) -> Optional[Tuple[bytes, str]]:
    """Fetch an image if it is really an image and at least ``min_bytes`` long.

    A HEAD request runs first on a best-effort basis and can reject early on
    content-type or content-length. Returns ``(bytes, content_type)`` or None.
    """
    try:
        head = await client.head(url, timeout=head_timeout)
        ct = head.headers.get("content-type", "")
        cl = head.headers.get("content-length", "")
        if head.status_code < 400:
            if ct and not is_image_content_type(ct):
                return None
            if cl.isdigit() and int(cl) and int(cl) < min_bytes:
                return None
    except (httpx.HTTPError, httpx.InvalidURL, ValidationError):
        pass

    try:
        response = await client.get(url, timeout=get_timeout)
    except (httpx.HTTPError, httpx.InvalidURL, ValidationError) as e:
        if logger:
            logger.debug(f"Image GET failed {url}: {e}")
        return None

    if not response.is_success:
        return None
    content_type = response.headers.get("content-type", "")
    if not is_image_content_type(content_type):
        return None
    data = response.content
    if len(data) < min_bytes:
        return None
    return data, content_type


async def fetch_text_asset(
    client: httpx.AsyncClient,
    url: str,
    *,
    max_bytes: int,
    timeout: float = 15.0,
) -> Optional[str]:
    """Body of a stylesheet or script, None when missing or larger than ``max_bytes``."""
    try:
        async with client.stream("GET", url, timeout=timeout) as response:
            if not response.is_success:
                return None
            declared = response.headers.get("content-length", "")
            if declared.isdigit() and int(declared) > max_bytes:
                return None
            chunks = []
            received = 0
            async for chunk in response.aiter_bytes():
                received += len(chunk)
                if received > max_bytes:
                    return None
                chunks.append(chunk)
            encoding = response.encoding or "utf-8"
    except (httpx.HTTPError, httpx.InvalidURL, ValidationError):
        return None
    return b"".join(chunks).decode(encoding, errors="replace")

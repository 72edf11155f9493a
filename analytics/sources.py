from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import urlencode, urlsplit, urlunsplit

import requests

from analytics.errors import FetchError

logger = logging.getLogger(__name__)

CHUNK_BYTES = 64 * 1024


def is_remote(location: str) -> bool:
    return urlsplit(location).scheme in {"http", "https", "s3"}


def with_cache_buster(url: str, *, now: Optional[float] = None) -> str:
    """Append ``t=<millis>`` so proxies and the HTTP cache hand back a fresh copy."""
    parts = urlsplit(url)
    stamp = urlencode({"t": int((now if now is not None else time.time()) * 1000)})
    query = f"{parts.query}&{stamp}" if parts.query else stamp
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


def _body_encoding(response: requests.Response) -> str:
    content_type = (response.headers.get("content-type") or "").lower()
    if "charset=" in content_type and response.encoding:
        return response.encoding
    return "utf-8"


def _download(
    http: requests.Session,
    url: str,
    location: str,
    read_timeout: float,
    aborted: threading.Event,
) -> Tuple[bytes, str]:
    try:
        response = http.get(url, timeout=read_timeout, stream=True)
    except requests.Timeout as exc:
        raise FetchError(f"Timed out after {read_timeout:.0f}s fetching {location}") from exc
    except requests.RequestException as exc:
        raise FetchError(f"Failed to fetch {location}: {exc}") from exc
    try:
        if not 200 <= response.status_code < 300:
            raise FetchError(f"Failed to fetch {location}: HTTP {response.status_code}")
        chunks = []
        for chunk in response.iter_content(chunk_size=CHUNK_BYTES):
            if aborted.is_set():
                raise FetchError(f"Fetch of {location} was aborted.")
            chunks.append(chunk)
        return b"".join(chunks), _body_encoding(response)
    except requests.RequestException as exc:
        raise FetchError(f"Failed to read {location}: {exc}") from exc
    finally:
        response.close()


def _fetch_remote(location: str, url: str, http: requests.Session, deadline: float, timeout: float) -> str:
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise FetchError(f"Timed out after {timeout:g}s fetching {location}")

    result: Future = Future()
    aborted = threading.Event()

    def run() -> None:
        try:
            result.set_result(_download(http, url, location, min(timeout, remaining), aborted))
        except BaseException as exc:
            result.set_exception(exc)

    threading.Thread(target=run, name="fetch-text", daemon=True).start()
    try:
        body, encoding = result.result(timeout=max(0.0, deadline - time.monotonic()))
    except FutureTimeout:
        # the reader thread stops at its next chunk
        aborted.set()
        raise FetchError(f"Timed out after {timeout:g}s fetching {location}") from None
    return body.decode(encoding, errors="replace")


def fetch_text(
    location: str,
    *,
    timeout: float = 8.0,
    cache_bust: bool = False,
    session: Optional[requests.Session] = None,
    deadline: Optional[float] = None,
) -> str:
    """Return the body of a remote URL or a local file; failures raise FetchError.

    A remote download is abandoned once ``deadline`` (a ``time.monotonic()``
    value, by default ``timeout`` seconds from now) passes, however slowly
    the server keeps sending.
    """
    if not is_remote(location):
        path = Path(location)
        try:
            text = path.read_text(encoding="utf-8-sig")
        except OSError as exc:
            raise FetchError(f"Failed to read {path}: {exc}") from exc
        if not text.strip():
            raise FetchError(f"{path} is empty.")
        return text

    url = with_cache_buster(location) if cache_bust else location
    http = session or requests.Session()
    limit = deadline if deadline is not None else time.monotonic() + timeout
    text = _fetch_remote(location, url, http, limit, timeout).lstrip("\ufeff")
    if not text.strip():
        raise FetchError(f"{location} returned an empty body.")
    logger.debug("fetched %s (%d chars)", location, len(text))
    return text

"""
HTTP fetch layer.

Redirects are followed by hand (``follow_redirects=False`` on the client) so
the full chain is recorded and callers can apply same-domain and robots
decisions to the final URL. Retryable failures (see ``errors.classify_error``)
back off ``retry_delay * 2**attempt`` seconds between attempts; HTTP 429
waits at least ``rate_limit_delay`` seconds.
"""

from __future__ import annotations

import asyncio
import dataclasses
import http.cookiejar
import logging
import mimetypes
import re
import time
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Protocol
from urllib.parse import unquote, urljoin, urlsplit
from urllib.request import url2pathname

import httpx

from .config import CrawlConfig
from .errors import (
    FetchError,
    HTTPStatusFailure,
    TooManyRedirectsError,
    classify_error,
    recovery_action,
)
from .log import get_logger


FALLBACK_ENCODINGS = ("utf-8", "latin-1", "cp1252", "ascii")
CHARSET_RE = re.compile(r"charset\s*=\s*[\"']?([\w.:-]+)", re.I)
TEXTUAL_MARKERS = ("text/", "html", "xml", "json", "javascript")
RATE_LIMIT_RETRY_DELAY = 60.0


@dataclasses.dataclass(frozen=True)
class FetchResult:
    url: str
    final_url: str
    status_code: int
    headers: dict[str, str]
    body: bytes
    text: Optional[str]
    content_type: Optional[str]
    redirect_chain: tuple[str, ...] = ()
    response_time: float = 0.0

    @property
    def is_html(self) -> bool:
        if self.content_type:
            ct = self.content_type.lower()
            return "text/html" in ct or "application/xhtml+xml" in ct
        return bool(re.search(r"\.(?:x?html?)$", urlsplit(self.final_url).path, flags=re.I))

    @property
    def was_redirected(self) -> bool:
        return bool(self.redirect_chain)


# --------------------------- Render collaborator --------------------------- #


@dataclasses.dataclass(frozen=True)
class RenderResult:
    html: str
    final_url: str
    text: Optional[str] = None
    title: Optional[str] = None
    screenshot: Optional[bytes] = None


class Renderer(Protocol):
    """Headless-browser fetch used for pages that need JavaScript."""

    async def render(self, url: str) -> RenderResult: ...


# -------------------------------- Decoding --------------------------------- #


def declared_charset(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    m = CHARSET_RE.search(content_type)
    return m.group(1).lower() if m else None


def is_textual(content_type: Optional[str]) -> bool:
    if not content_type:
        return True
    ct = content_type.lower()
    return any(marker in ct for marker in TEXTUAL_MARKERS)


def decode_body(body: bytes, content_type: Optional[str] = None) -> str:
    """
    Declared charset first, then UTF-8, Latin-1, Windows-1252 and ASCII.
    Latin-1 maps every byte, so a decoded string is always returned.
    """
    candidates: list[str] = []
    charset = declared_charset(content_type)
    if charset:
        candidates.append(charset)
    candidates.extend(e for e in FALLBACK_ENCODINGS if e not in candidates)
    for encoding in candidates:
        try:
            return body.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            continue
    return body.decode("latin-1")


# -------------------------------- Fetcher ---------------------------------- #


class Fetcher:
    def __init__(
        self,
        *,
        headers: Optional[Mapping[str, str]] = None,
        timeout: float = 30.0,
        retry_count: int = 3,
        retry_delay: float = 1.0,
        rate_limit_delay: float = RATE_LIMIT_RETRY_DELAY,
        max_redirects: int = 10,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        client: Optional[httpx.AsyncClient] = None,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self.retry_count = max(1, retry_count)
        self.retry_delay = max(0.0, retry_delay)
        self.rate_limit_delay = max(0.0, rate_limit_delay)
        self.max_redirects = max_redirects
        self.logger = logger or get_logger("fetcher")
        self._owns_client = client is None
        if client is None:
            client = httpx.AsyncClient(
                headers=dict(headers or {}),
                timeout=httpx.Timeout(timeout),
                follow_redirects=False,
                transport=transport,
            )
        self._client = client

    @classmethod
    def from_config(
        cls,
        cfg: CrawlConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> "Fetcher":
        return cls(
            headers=cfg.headers,
            timeout=cfg.timeout,
            retry_count=cfg.retry_count,
            retry_delay=cfg.retry_delay_ms / 1000.0,
            rate_limit_delay=cfg.rate_limit_retry_delay_ms / 1000.0,
            max_redirects=cfg.max_redirects,
            transport=transport,
            logger=logger,
        )

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    async def __aenter__(self) -> "Fetcher":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------ Fetch ---------------------------------- #

    async def fetch(self, url: str, *, retries: Optional[int] = None) -> FetchResult:
        attempts = max(1, retries if retries is not None else self.retry_count)
        for attempt in range(attempts):
            try:
                return await self._fetch_once(url)
            except (FetchError, httpx.HTTPError, OSError) as e:
                action = recovery_action(
                    classify_error(e),
                    transient_delay=self.retry_delay,
                    rate_limit_delay=self.rate_limit_delay,
                    server_error_delay=self.retry_delay,
                )
                limit = min(attempts, action.max_attempts) if action.should_retry else 1
                if attempt + 1 >= limit:
                    if isinstance(e, FetchError):
                        raise
                    raise FetchError(url, f"{type(e).__name__}: {e}") from e
                wait = max(self.retry_delay * (2 ** attempt), action.delay)
                self.logger.warning(f"Attempt {attempt + 1} failed for {url}: {e}. Retrying in {wait:.1f}s")
                await asyncio.sleep(wait)
        raise FetchError(url, "retry limit exceeded")

    async def _fetch_once(self, url: str) -> FetchResult:
        if urlsplit(url).scheme.lower() == "file":
            return await self._read_file(url)

        chain: list[str] = []
        current = url
        started = time.monotonic()
        while True:
            resp = await self._client.get(current, follow_redirects=False)
            location = resp.headers.get("Location")
            if resp.is_redirect and location:
                if len(chain) >= self.max_redirects:
                    raise TooManyRedirectsError(url, self.max_redirects)
                chain.append(current)
                current = urljoin(current, location.strip())
                self.logger.debug(f"Redirect {resp.status_code}: {chain[-1]} -> {current}")
                continue
            break
        elapsed = time.monotonic() - started

        if resp.status_code >= 400:
            raise HTTPStatusFailure(current, resp.status_code)

        content_type = resp.headers.get("Content-Type")
        body = resp.content
        text: Optional[str] = None
        if is_textual(content_type):
            text = decode_body(body, content_type)
        return FetchResult(
            url=url,
            final_url=str(resp.url),
            status_code=resp.status_code,
            headers=dict(resp.headers.items()),
            body=body,
            text=text,
            content_type=content_type,
            redirect_chain=tuple(chain),
            response_time=elapsed,
        )

    async def _read_file(self, url: str) -> FetchResult:
        path = Path(url2pathname(unquote(urlsplit(url).path)))
        started = time.monotonic()
        try:
            body = await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise FetchError(url, "file not found", status_code=404) from e
        except IsADirectoryError:
            index = path / "index.html"
            if not index.exists():
                raise FetchError(url, "directory has no index.html", status_code=404)
            body = await asyncio.to_thread(index.read_bytes)
            path = index
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        text = decode_body(body, content_type) if is_textual(content_type) else None
        return FetchResult(
            url=url,
            final_url=path.as_uri(),
            status_code=200,
            headers={"Content-Type": content_type, "Content-Length": str(len(body))},
            body=body,
            text=text,
            content_type=content_type,
            response_time=time.monotonic() - started,
        )

    # ------------------------------ Cookies -------------------------------- #

    def export_cookies(self) -> list[dict[str, Any]]:
        out = []
        for cookie in self._client.cookies.jar:
            out.append(
                {
                    "name": cookie.name,
                    "value": cookie.value,
                    "domain": cookie.domain,
                    "path": cookie.path,
                    "secure": bool(cookie.secure),
                    "http_only": cookie.has_nonstandard_attr("HttpOnly"),
                    "expires": cookie.expires,
                }
            )
        return out

    def import_cookies(self, cookies: Iterable[Mapping[str, Any]]) -> None:
        jar = self._client.cookies.jar
        for c in cookies:
            domain = c.get("domain") or ""
            jar.set_cookie(
                http.cookiejar.Cookie(
                    version=0,
                    name=c["name"],
                    value=c.get("value", ""),
                    port=None,
                    port_specified=False,
                    domain=domain,
                    domain_specified=bool(domain),
                    domain_initial_dot=domain.startswith("."),
                    path=c.get("path") or "/",
                    path_specified=True,
                    secure=bool(c.get("secure", False)),
                    expires=c.get("expires"),
                    discard=c.get("expires") is None,
                    comment=None,
                    comment_url=None,
                    rest={"HttpOnly": ""} if c.get("http_only") else {},
                )
            )

    def clear_cookies(self) -> None:
        self._client.cookies.clear()

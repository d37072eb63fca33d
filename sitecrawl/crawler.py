"""
Crawl orchestration.

The crawler owns the frontier, the visited set and the crawl state machine:

    idle -> initializing -> running <-> paused -> stopping -> completed | failed

A pool of ``max_concurrent_requests`` workers pulls from the frontier (FIFO
for breadth-first, LIFO for depth-first). For every URL a worker checks depth
and visited state, applies the URL filters, same-domain policy and robots.txt,
waits for a rate-limit slot, fetches (or renders), parses and extracts, emits
the page, and enqueues the links it found. ``pause`` stops dequeuing, ``stop``
is checked before each dequeue; neither interrupts a request in flight.
"""

from __future__ import annotations

import asyncio
import collections
import dataclasses
import logging
import re
import time
from pathlib import Path
from typing import Iterable, Optional
from urllib.parse import urlsplit

import httpx

from .checkpoint import CrawlCheckpoint, save_checkpoint
from .config import CrawlConfig
from .errors import (
    AlreadyRunningError,
    ErrorCategory,
    FetchError,
    InvalidURLError,
    RobotsDisallowedError,
    SitecrawlError,
    classify_error,
)
from .events import CrawlErrorEvent, CrawlListener, EventBus, FileDiscovered
from .extractor import Extractor
from .fetcher import Fetcher, FetchResult, Renderer
from .log import get_logger
from .models import (
    CrawlProgress,
    CrawlStatus,
    CrawlStrategy,
    DiscoveredLink,
    DiscoveredResource,
    LinkType,
    ProcessingStatus,
    QueuedURL,
    ScrapedPage,
    UrlCategory,
    utcnow,
)
from .parser import HTMLDocument
from .politeness import Politeness, RateLimiter
from .robots import RobotsChecker, fetch_sitemap_urls
from .urls import classify, classify_link, in_scope, normalize, resolve, validate
from .utils import derive_site_slug


@dataclasses.dataclass(frozen=True)
class CrawlResult:
    start_url: str
    status: CrawlStatus
    progress: CrawlProgress
    pages: tuple[ScrapedPage, ...] = ()
    external_urls: tuple[str, ...] = ()


class Crawler:
    def __init__(
        self,
        config: Optional[CrawlConfig] = None,
        *,
        fetcher: Optional[Fetcher] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        renderer: Optional[Renderer] = None,
        listeners: Iterable[CrawlListener] = (),
        checkpoint_path: Optional[Path] = None,
        keep_pages: bool = True,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self._config = config or CrawlConfig()
        self._fetcher = fetcher
        self._transport = transport
        self.renderer = renderer
        self.checkpoint_path = checkpoint_path
        self.keep_pages = keep_pages
        self.logger = logger
        self.events = EventBus()
        for listener in listeners:
            self.events.add(listener)

        self._progress = CrawlProgress()
        self._frontier: collections.deque[QueuedURL] = collections.deque()
        self._queued: set[str] = set()
        self._visited: set[str] = set()
        self._external_urls: set[str] = set()
        self._files_seen: set[str] = set()
        self._pages: list[ScrapedPage] = []
        self._root: Optional[str] = None
        self._cond: Optional[asyncio.Condition] = None
        self._in_flight = 0
        self._paused = False
        self._stop_requested = False
        self._politeness: Optional[Politeness] = None
        self._compile_filters()

    # ------------------------------ State ---------------------------------- #

    @property
    def config(self) -> CrawlConfig:
        return self._config

    @property
    def status(self) -> CrawlStatus:
        return self._progress.status

    @property
    def progress(self) -> CrawlProgress:
        return self._progress.copy()

    @property
    def visited(self) -> set[str]:
        return set(self._visited)

    @property
    def external_urls(self) -> set[str]:
        return set(self._external_urls)

    @property
    def frontier(self) -> list[QueuedURL]:
        return list(self._frontier)

    def add_listener(self, listener: CrawlListener) -> None:
        self.events.add(listener)

    def remove_listener(self, listener: CrawlListener) -> None:
        self.events.remove(listener)

    def update_config(self, config: CrawlConfig) -> None:
        if self.status.is_active:
            raise AlreadyRunningError()
        self._config = config
        self._compile_filters()

    def _compile_filters(self) -> None:
        self._whitelist = [re.compile(p) for p in self._config.url_whitelist]
        self._blacklist = [re.compile(p) for p in self._config.url_blacklist]

    def passes_filters(self, url: str) -> bool:
        """Whitelist and blacklist patterns are matched against the normalized URL."""
        key = normalize(url) or url
        if self._whitelist and not any(p.search(key) for p in self._whitelist):
            return False
        return not any(p.search(key) for p in self._blacklist)

    # ----------------------------- Control --------------------------------- #

    async def pause(self) -> None:
        if self.status is not CrawlStatus.RUNNING:
            return
        self._paused = True
        self._progress.status = CrawlStatus.PAUSED
        self._log(logging.INFO, "Crawl paused")
        await self._notify()
        await self.events.emit("on_progress", self.progress)

    async def resume(self) -> None:
        if self.status is not CrawlStatus.PAUSED:
            return
        self._paused = False
        self._progress.status = CrawlStatus.RUNNING
        self._log(logging.INFO, "Crawl resumed")
        await self._notify()
        await self.events.emit("on_progress", self.progress)

    async def stop(self) -> None:
        if not self.status.is_active or self.status is CrawlStatus.STOPPING:
            return
        self._stop_requested = True
        self._paused = False
        self._progress.status = CrawlStatus.STOPPING
        self._log(logging.INFO, "Stop requested")
        await self._notify()
        await self.events.emit("on_progress", self.progress)

    async def _notify(self) -> None:
        if self._cond is not None:
            async with self._cond:
                self._cond.notify_all()

    # ------------------------------- Run ----------------------------------- #

    async def crawl(self, start_url: str, *, resume_from: Optional[CrawlCheckpoint] = None) -> CrawlResult:
        if self.status.is_active:
            raise AlreadyRunningError()
        check = validate(start_url)
        root = normalize(start_url) if check.is_valid else None
        if root is None:
            raise InvalidURLError(start_url, check.reason or "invalid URL")

        cfg = self._config
        self._reset(root)
        if self.logger is None:
            self.logger = get_logger("crawler", derive_site_slug(root))
        if check.warning:
            self._log(logging.WARNING, f"{check.warning}: {root}")
        self._progress.status = CrawlStatus.INITIALIZING
        self._progress.started_at = utcnow()
        await self.events.emit("on_progress", self.progress)

        fetcher = self._fetcher or Fetcher.from_config(cfg, transport=self._transport, logger=self.logger)
        owns_fetcher = self._fetcher is None
        try:
            limiter = RateLimiter(cfg.rate_limit_settings, logger=self.logger)
            robots = RobotsChecker(fetcher, cfg.user_agent, cache_ttl=cfg.robots_cache_ttl, logger=self.logger)
            self._politeness = Politeness(limiter, robots, respect_robots=cfg.respect_robots_txt, logger=self.logger)

            if resume_from is not None:
                self._restore(resume_from)
            else:
                await self._enqueue(root, 0, None)
                if cfg.seed_from_sitemaps:
                    await self._seed_from_sitemaps(fetcher, root)

            self._log(logging.INFO, f"Starting crawl: {root} (strategy={cfg.strategy.value}, max_depth={cfg.max_depth})")
            self._progress.status = CrawlStatus.RUNNING
            await self.events.emit("on_progress", self.progress)

            workers = [asyncio.create_task(self._worker(fetcher)) for _ in range(cfg.max_concurrent_requests)]
            await asyncio.gather(*workers)
        finally:
            if owns_fetcher:
                await fetcher.aclose()

        p = self._progress
        p.stopped_early = self._stop_requested
        p.status = CrawlStatus.FAILED if p.errors > 0 and p.pages_scraped == 0 else CrawlStatus.COMPLETED
        p.finished_at = utcnow()
        p.current_url = None
        p.urls_queued = len(self._frontier)
        if self.checkpoint_path is not None:
            save_checkpoint(self.checkpoint(), self.checkpoint_path)
        self._log(
            logging.INFO,
            f"Crawl {p.status.value}: {p.pages_scraped} page(s), {p.errors} error(s), "
            f"{len(self._external_urls)} external URL(s)",
        )
        await self.events.emit("on_progress", self.progress)
        await self.events.emit("on_complete", self.progress)
        return CrawlResult(
            start_url=root,
            status=p.status,
            progress=self.progress,
            pages=tuple(self._pages),
            external_urls=tuple(sorted(self._external_urls)),
        )

    def _reset(self, root: str) -> None:
        self._root = root
        self._progress = CrawlProgress()
        self._frontier.clear()
        self._queued.clear()
        self._visited.clear()
        self._external_urls.clear()
        self._files_seen.clear()
        self._pages.clear()
        self._cond = asyncio.Condition()
        self._in_flight = 0
        self._paused = False
        self._stop_requested = False

    def _restore(self, checkpoint: CrawlCheckpoint) -> None:
        self._visited.update(checkpoint.visited)
        self._external_urls.update(checkpoint.external_urls)
        for item in checkpoint.pending:
            key = normalize(item.url)
            if key and key not in self._visited and key not in self._queued:
                self._frontier.append(item)
                self._queued.add(key)
        p = self._progress
        p.pages_scraped = checkpoint.pages_scraped
        p.files_discovered = checkpoint.files_discovered
        p.errors = checkpoint.errors
        p.urls_discovered = len(self._visited) + len(self._frontier)
        p.urls_processed = len(self._visited)
        p.urls_queued = len(self._frontier)
        self._log(logging.INFO, f"Resumed from checkpoint: {len(self._frontier)} pending, {len(self._visited)} visited")

    def checkpoint(self) -> CrawlCheckpoint:
        return CrawlCheckpoint(
            start_url=self._root or "",
            pending=list(self._frontier),
            visited=sorted(self._visited),
            external_urls=sorted(self._external_urls),
            pages_scraped=self._progress.pages_scraped,
            files_discovered=self._progress.files_discovered,
            errors=self._progress.errors,
        )

    async def _seed_from_sitemaps(self, fetcher: Fetcher, root: str) -> None:
        if self._politeness is None or urlsplit(root).scheme not in ("http", "https"):
            return
        sitemaps = await self._politeness.sitemaps(root)
        if not sitemaps:
            parts = urlsplit(root)
            sitemaps = [f"{parts.scheme}://{parts.netloc}/sitemap.xml"]
        urls = await fetch_sitemap_urls(fetcher, sitemaps, logger=self.logger)
        seeded = 0
        for url in urls:
            if in_scope(url, root, self._config.use_public_suffix) and await self._enqueue(url, 1, root):
                seeded += 1
        self._log(logging.INFO, f"Seeded {seeded} URL(s) from sitemaps")

    # ----------------------------- Frontier -------------------------------- #

    async def _enqueue(self, url: str, depth: int, parent_url: Optional[str]) -> bool:
        key = normalize(url)
        if key is None or depth > self._config.max_depth:
            return False
        assert self._cond is not None
        async with self._cond:
            if key in self._visited or key in self._queued:
                return False
            queued = QueuedURL(url=key, depth=depth, parent_url=parent_url)
            self._frontier.append(queued)
            self._queued.add(key)
            self._progress.urls_discovered += 1
            self._progress.urls_queued = len(self._frontier)
            self._cond.notify_all()
        await self.events.emit("on_url_queued", queued)
        return True

    async def _claim(self, key: str) -> None:
        """Mark ``key`` visited and drop any frontier entry still waiting for it."""
        assert self._cond is not None
        async with self._cond:
            self._visited.add(key)
            if key in self._queued:
                self._queued.discard(key)
                for entry in [q for q in self._frontier if q.url == key]:
                    self._frontier.remove(entry)
                self._progress.urls_queued = len(self._frontier)

    async def _next(self) -> Optional[QueuedURL]:
        """Block until there is work; ``None`` once the crawl should wind down."""
        assert self._cond is not None
        async with self._cond:
            while True:
                if self._stop_requested:
                    self._cond.notify_all()
                    return None
                if self._paused:
                    await self._cond.wait()
                    continue
                if self._progress.pages_scraped + self._in_flight >= self._config.max_pages:
                    if self._in_flight == 0:
                        self._cond.notify_all()
                        return None
                    await self._cond.wait()
                    continue
                if self._frontier:
                    if self._config.strategy is CrawlStrategy.DEPTH_FIRST:
                        item = self._frontier.pop()
                    else:
                        item = self._frontier.popleft()
                    self._queued.discard(item.url)
                    self._progress.urls_queued = len(self._frontier)
                    self._in_flight += 1
                    return item
                if self._in_flight == 0:
                    self._cond.notify_all()
                    return None
                await self._cond.wait()

    async def _worker(self, fetcher: Fetcher) -> None:
        assert self._cond is not None
        while True:
            item = await self._next()
            if item is None:
                return
            try:
                await self._process(fetcher, item)
            except SitecrawlError as e:
                await self._record_error(item.url, e)
            except Exception as e:
                self._log(logging.ERROR, f"Unhandled error processing {item.url}: {e}", exc_info=True)
                await self._record_error(item.url, e)
            finally:
                async with self._cond:
                    self._in_flight -= 1
                    self._cond.notify_all()
            await self.events.emit("on_progress", self.progress)

    # ----------------------------- Pipeline -------------------------------- #

    async def _process(self, fetcher: Fetcher, item: QueuedURL) -> None:
        cfg = self._config
        url = item.url
        if item.depth > cfg.max_depth:
            await self._skip(url, "depth")
            return
        if url in self._visited:
            return
        self._visited.add(url)
        self._progress.urls_processed += 1
        self._progress.current_url = url

        if not self.passes_filters(url):
            await self._skip(url, "filtered")
            return
        if not cfg.follow_external_links and not self._in_scope(url):
            self._external_urls.add(url)
            await self._skip(url, "external")
            return
        if not await self._robots_allow(url, item):
            return

        result = await self._fetch(fetcher, url)
        if result is None:
            return

        final_key = normalize(result.final_url) or result.final_url
        if final_key != url:
            if final_key in self._visited:
                self._log(logging.DEBUG, f"Redirect target already visited: {url} -> {final_key}")
                return
            await self._claim(final_key)
            if not cfg.follow_external_links and not self._in_scope(final_key):
                self._external_urls.add(final_key)
                await self._skip(url, "external")
                return
            if urlsplit(final_key).netloc != urlsplit(url).netloc and not await self._robots_allow(final_key, item):
                return

        if not result.is_html:
            await self._file_found(result.final_url, classify(result.final_url, result.content_type), item.parent_url, item.depth)
            return

        page, follow = self._build_page(item, result)
        self._progress.pages_scraped += 1
        if self.keep_pages:
            self._pages.append(page)
        self._log(logging.INFO, f"Scraped [{page.status_code}] {page.final_url} (depth {page.depth})")
        await self.events.emit("on_page_scraped", page)

        for link in page.links:
            await self.events.emit("on_link_discovered", link, url, item.depth + 1)
            if link.link_type is LinkType.EXTERNAL and not link.was_followed:
                self._external_urls.add(normalize(link.url) or link.url)
        for link_url in follow:
            await self._enqueue(link_url, item.depth + 1, url)
        for res in (*page.images, *page.scripts, *page.stylesheets):
            await self._file_found(res.url, res.category, url, item.depth + 1)
        for link in page.links:
            if link.link_type is LinkType.DOWNLOAD:
                await self._file_found(link.url, classify(link.url), url, item.depth + 1)

        if self.checkpoint_path is not None and cfg.checkpoint_interval > 0:
            if self._progress.pages_scraped % cfg.checkpoint_interval == 0:
                save_checkpoint(self.checkpoint(), self.checkpoint_path)

    def _in_scope(self, url: str) -> bool:
        return self._root is not None and in_scope(url, self._root, self._config.use_public_suffix)

    async def _robots_allow(self, url: str, item: QueuedURL) -> bool:
        if self._politeness is None or await self._politeness.is_allowed(url):
            return True
        self._log(logging.INFO, f"Disallowed by robots.txt: {url}")
        if item.parent_url is None and item.depth == 0:
            await self._record_error(url, RobotsDisallowedError(url))
        await self._skip(item.url, "robots")
        return False

    async def _fetch(self, fetcher: Fetcher, url: str) -> Optional[FetchResult]:
        assert self._politeness is not None
        use_renderer = self._config.enable_javascript and self.renderer is not None
        if self._config.enable_javascript and self.renderer is None:
            self._log(logging.WARNING, f"JavaScript rendering requested but no renderer configured; fetching {url}")
        await self._politeness.acquire_slot(url)
        status_code: Optional[int] = None
        response_time: Optional[float] = None
        try:
            if use_renderer:
                result = await self._render(url)
            else:
                result = await fetcher.fetch(url)
            status_code, response_time = result.status_code, result.response_time
            return result
        except FetchError as e:
            status_code = e.status_code
            await self._record_error(url, e)
            return None
        finally:
            self._politeness.release_slot(url, status_code, response_time)

    async def _render(self, url: str) -> FetchResult:
        assert self.renderer is not None
        started = time.monotonic()
        try:
            rendered = await self.renderer.render(url)
        except SitecrawlError:
            raise
        except Exception as e:
            raise FetchError(url, f"render failed: {e}") from e
        return FetchResult(
            url=url,
            final_url=rendered.final_url or url,
            status_code=200,
            headers={"Content-Type": "text/html"},
            body=rendered.html.encode("utf-8"),
            text=rendered.html,
            content_type="text/html",
            response_time=time.monotonic() - started,
        )

    def _build_page(self, item: QueuedURL, result: FetchResult) -> tuple[ScrapedPage, list[str]]:
        cfg = self._config
        base = result.final_url
        doc = HTMLDocument(result.text or "", base)

        links: list[DiscoveredLink] = []
        follow: list[str] = []
        next_depth = item.depth + 1
        for el in doc.links:
            link_type = classify_link(el.href, base, self._root or base, cfg.use_public_suffix)
            absolute = resolve(el.href, base) or el.href
            followed = False
            if link_type is LinkType.INTERNAL or (link_type is LinkType.EXTERNAL and cfg.follow_external_links):
                followed = next_depth <= cfg.max_depth and self.passes_filters(absolute)
                if followed:
                    follow.append(absolute)
            links.append(DiscoveredLink(absolute, el.text, el.title, el.rel, link_type, followed))

        images = self._resources(((img.src, img.alt, img.title, None, None) for img in doc.images), base, UrlCategory.IMAGE)
        scripts = self._resources(((s.src, None, None, s.type, None) for s in doc.scripts if s.src), base, UrlCategory.SCRIPT)
        sheets = self._resources(((c.href, None, None, None, c.media) for c in doc.stylesheets), base, UrlCategory.STYLESHEET)

        extractor = Extractor(doc)
        extracted = tuple(extractor.extract_all(list(cfg.extraction_rules)))
        failed = tuple(r.field_name for r in extracted if not r.success)
        keywords = doc.meta("keywords")
        metadata = tuple((m.name or m.property or m.http_equiv or "", m.content or "") for m in doc.meta_tags)

        page = ScrapedPage(
            url=item.url,
            final_url=result.final_url,
            depth=item.depth,
            status_code=result.status_code,
            parent_url=item.parent_url,
            content_type=result.content_type,
            headers=tuple(result.headers.items()),
            html=result.text or "",
            text=doc.text(),
            title=doc.title,
            meta_description=doc.meta("description"),
            meta_keywords=tuple(k.strip() for k in keywords.split(",") if k.strip()) if keywords else (),
            metadata=metadata,
            links=tuple(links),
            images=images,
            scripts=scripts,
            stylesheets=sheets,
            extracted=extracted,
            failed_fields=failed,
            processing_status=ProcessingStatus.COMPLETE,
            redirect_chain=result.redirect_chain,
            response_time=result.response_time,
        )
        return page, follow

    @staticmethod
    def _resources(
        items: Iterable[tuple[str, Optional[str], Optional[str], Optional[str], Optional[str]]],
        base: str,
        default: UrlCategory,
    ) -> tuple[DiscoveredResource, ...]:
        out = []
        for src, alt, title, mime, media in items:
            absolute = resolve(src, base)
            if absolute is None:
                continue
            category = classify(absolute, mime)
            if category is UrlCategory.PAGE:
                category = default
            out.append(DiscoveredResource(absolute, category, alt=alt, title=title, mime_type=mime, media=media))
        return tuple(out)

    # ------------------------------ Events --------------------------------- #

    async def _file_found(self, url: str, category: UrlCategory, source: Optional[str], depth: int) -> None:
        if category not in self._config.download_file_types:
            return
        key = normalize(url) or url
        if key in self._files_seen:
            return
        self._files_seen.add(key)
        self._progress.files_discovered += 1
        await self.events.emit("on_file_discovered", FileDiscovered(url, category, source, depth))

    async def _skip(self, url: str, reason: str) -> None:
        self._log(logging.DEBUG, f"Skipped ({reason}): {url}")
        await self.events.emit("on_url_skipped", url, reason)

    async def _record_error(self, url: str, exc: BaseException) -> None:
        category = classify_error(exc)
        status_code = getattr(exc, "status_code", None)
        self._progress.errors += 1
        if category is ErrorCategory.AUTHENTICATION:
            self._log(logging.WARNING, f"Authentication required for {url}: {exc}")
        else:
            self._log(logging.WARNING, f"Failed {url} ({category.value}): {exc}")
        await self.events.emit("on_error", CrawlErrorEvent(url, str(exc), category, status_code))

    def _log(self, level: int, msg: str, **kwargs: object) -> None:
        logger = self.logger or get_logger("crawler")
        logger.log(level, msg, **kwargs)


async def crawl(
    start_url: str,
    config: Optional[CrawlConfig] = None,
    *,
    listeners: Iterable[CrawlListener] = (),
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> CrawlResult:
    """One-shot convenience wrapper around ``Crawler.crawl``."""
    return await Crawler(config, listeners=listeners, transport=transport).crawl(start_url)



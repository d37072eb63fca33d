"""
Observer interface for crawl events.

Subclass ``CrawlListener`` and override the hooks you need; each hook may be
a plain method or a coroutine. Listeners are called in registration order.
A listener that raises is logged and does not interrupt the crawl or the
other listeners.
"""

from __future__ import annotations

import dataclasses
import inspect
import logging
from typing import Any, Optional

from .log import get_logger
from .models import CrawlProgress, DiscoveredLink, QueuedURL, Record, ScrapedPage, UrlCategory
from .errors import ErrorCategory


@dataclasses.dataclass(frozen=True)
class FileDiscovered(Record):
    url: str
    category: UrlCategory
    source_page_url: Optional[str] = None
    depth: int = 0


@dataclasses.dataclass(frozen=True)
class CrawlErrorEvent(Record):
    url: str
    message: str
    category: ErrorCategory
    status_code: Optional[int] = None


class CrawlListener:
    def on_progress(self, progress: CrawlProgress) -> Any:
        pass

    def on_url_queued(self, queued: QueuedURL) -> Any:
        pass

    def on_page_scraped(self, page: ScrapedPage) -> Any:
        pass

    def on_link_discovered(self, link: DiscoveredLink, source_url: str, depth: int) -> Any:
        pass

    def on_file_discovered(self, event: FileDiscovered) -> Any:
        pass

    def on_url_skipped(self, url: str, reason: str) -> Any:
        pass

    def on_error(self, event: CrawlErrorEvent) -> Any:
        pass

    def on_complete(self, progress: CrawlProgress) -> Any:
        pass


class EventBus:
    def __init__(self, logger: Optional[logging.LoggerAdapter] = None) -> None:
        self._listeners: list[CrawlListener] = []
        self.logger = logger or get_logger("events")

    def add(self, listener: CrawlListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove(self, listener: CrawlListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def listeners(self) -> list[CrawlListener]:
        return list(self._listeners)

    async def emit(self, hook: str, *args: Any) -> None:
        for listener in list(self._listeners):
            method = getattr(listener, hook, None)
            if method is None:
                continue
            try:
                result = method(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.logger.exception(f"Listener {type(listener).__name__}.{hook} failed: {e}")

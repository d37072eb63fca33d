"""
robots.txt parsing, matching and per-host caching, plus sitemap discovery.

Directives are grouped by ``User-agent`` block. Our agent is matched against
the groups exactly first, then by substring in either direction, then the
``*`` group. Within the chosen group any matching ``Allow`` wins over every
``Disallow``. Patterns may use ``*`` wildcards and a trailing ``$`` end
anchor; without those they are plain path prefixes.

A host whose robots.txt answers 404 is allow-all. Any other failure is
logged and treated as allowed (fail-open).
"""

from __future__ import annotations

import asyncio
import dataclasses
import gzip
import logging
import re
import time
import xml.etree.ElementTree as ET
from typing import Optional
from urllib.parse import urlsplit

from .errors import FetchError, RobotsFetchError
from .fetcher import Fetcher
from .log import get_logger


SITEMAP_RE = re.compile(r"(?im)^\s*sitemap:\s*(?P<url>\S+)\s*$")
DIRECTIVE_RE = re.compile(r"^\s*([A-Za-z-]+)\s*:\s*(.*?)\s*$")


def _strip_comment(line: str) -> str:
    i = line.find("#")
    return line if i == -1 else line[:i]


def ua_token(user_agent: str) -> str:
    """Primary product token: ``"MyBot/1.0 (+url)"`` -> ``"mybot"``."""
    token = user_agent.split("/", 1)[0].strip().split(" ", 1)[0].lower()
    return token or "*"


def pattern_matches(pattern: str, path: str) -> bool:
    if not pattern:
        return False
    if "*" in pattern or pattern.endswith("$"):
        anchored = pattern.endswith("$")
        body = pattern[:-1] if anchored else pattern
        regex = "^" + ".*".join(re.escape(piece) for piece in body.split("*"))
        if anchored:
            regex += "$"
        return re.match(regex, path) is not None
    return path.startswith(pattern)


@dataclasses.dataclass
class RobotsGroup:
    user_agents: list[str] = dataclasses.field(default_factory=list)
    allows: list[str] = dataclasses.field(default_factory=list)
    disallows: list[str] = dataclasses.field(default_factory=list)
    crawl_delay: Optional[float] = None

    def is_allowed(self, path: str) -> bool:
        if any(pattern_matches(p, path) for p in self.allows):
            return True
        return not any(pattern_matches(p, path) for p in self.disallows)


@dataclasses.dataclass
class RobotsRules:
    groups: list[RobotsGroup] = dataclasses.field(default_factory=list)
    sitemaps: list[str] = dataclasses.field(default_factory=list)

    @classmethod
    def allow_all(cls) -> "RobotsRules":
        return cls()

    def group_for(self, user_agent: str) -> Optional[RobotsGroup]:
        token = ua_token(user_agent)
        for group in self.groups:
            if token in group.user_agents:
                return group
        for group in self.groups:
            for agent in group.user_agents:
                if agent != "*" and (agent in token or token in agent):
                    return group
        for group in self.groups:
            if "*" in group.user_agents:
                return group
        return None

    def is_allowed(self, user_agent: str, url: str) -> bool:
        group = self.group_for(user_agent)
        if group is None:
            return True
        parts = urlsplit(url)
        path = parts.path or "/"
        if parts.query:
            path = f"{path}?{parts.query}"
        return group.is_allowed(path)

    def crawl_delay(self, user_agent: str) -> Optional[float]:
        group = self.group_for(user_agent)
        return group.crawl_delay if group else None


def parse_robots(text: str) -> RobotsRules:
    rules = RobotsRules()
    current: Optional[RobotsGroup] = None
    in_agent_lines = False
    for raw in text.splitlines():
        line = _strip_comment(raw).strip()
        if not line:
            continue
        m = DIRECTIVE_RE.match(line)
        if not m:
            continue
        key, value = m.group(1).lower(), m.group(2)
        if key == "user-agent":
            if current is None or not in_agent_lines:
                current = RobotsGroup()
                rules.groups.append(current)
            current.user_agents.append(value.lower())
            in_agent_lines = True
            continue
        if key == "sitemap":
            if value:
                rules.sitemaps.append(value)
            continue
        in_agent_lines = False
        if current is None:
            # Directives before any User-agent line apply to everyone.
            current = RobotsGroup(user_agents=["*"])
            rules.groups.append(current)
        if key == "allow":
            current.allows.append(value)
        elif key == "disallow":
            current.disallows.append(value)
        elif key == "crawl-delay":
            try:
                current.crawl_delay = float(value)
            except ValueError:
                pass
    return rules


# ------------------------------- Per-host cache ---------------------------- #


@dataclasses.dataclass
class _CacheEntry:
    rules: RobotsRules
    fetched_at: float


class RobotsChecker:
    def __init__(
        self,
        fetcher: Fetcher,
        user_agent: str,
        *,
        cache_ttl: float = 3600.0,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self.fetcher = fetcher
        self.user_agent = user_agent
        self.cache_ttl = cache_ttl
        self.logger = logger or get_logger("robots")
        self._cache: dict[str, _CacheEntry] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @staticmethod
    def origin(url: str) -> Optional[str]:
        parts = urlsplit(url)
        if parts.scheme.lower() not in ("http", "https") or not parts.netloc:
            return None
        return f"{parts.scheme.lower()}://{parts.netloc.lower()}"

    async def fetch_rules(self, origin: str) -> RobotsRules:
        robots_url = f"{origin}/robots.txt"
        try:
            result = await self.fetcher.fetch(robots_url, retries=1)
        except FetchError as e:
            if e.status_code in (404, 410):
                return RobotsRules.allow_all()
            raise RobotsFetchError(robots_url, str(e), status_code=e.status_code) from e
        return parse_robots(result.text or "")

    async def rules_for(self, url: str) -> Optional[RobotsRules]:
        origin = self.origin(url)
        if origin is None:
            return None
        lock = self._locks.setdefault(origin, asyncio.Lock())
        async with lock:
            entry = self._cache.get(origin)
            if entry and time.monotonic() - entry.fetched_at < self.cache_ttl:
                return entry.rules
            try:
                rules = await self.fetch_rules(origin)
            except RobotsFetchError as e:
                self.logger.warning(f"Could not fetch robots.txt for {origin}: {e}. Assuming allowed")
                rules = RobotsRules.allow_all()
            self._cache[origin] = _CacheEntry(rules, time.monotonic())
            return rules

    async def is_allowed(self, url: str) -> bool:
        rules = await self.rules_for(url)
        if rules is None:
            return True
        return rules.is_allowed(self.user_agent, url)

    async def crawl_delay(self, url: str) -> Optional[float]:
        rules = await self.rules_for(url)
        return rules.crawl_delay(self.user_agent) if rules else None

    async def sitemaps(self, url: str) -> list[str]:
        rules = await self.rules_for(url)
        return list(rules.sitemaps) if rules else []

    def clear_cache(self) -> None:
        self._cache.clear()


# --------------------------------- Sitemaps -------------------------------- #


def _tag_endswith(el: ET.Element, name: str) -> bool:
    return el.tag.lower().endswith(name)


def parse_sitemap(data: bytes) -> tuple[list[str], list[str]]:
    """Return ``(page_urls, nested_sitemap_urls)`` from a urlset or sitemapindex document."""
    root = ET.fromstring(data)
    pages: list[str] = []
    nested: list[str] = []
    if _tag_endswith(root, "sitemapindex"):
        target = nested
    else:
        target = pages
    for loc in root.iter():
        if _tag_endswith(loc, "loc") and (loc.text or "").strip():
            target.append(loc.text.strip())
    return pages, nested


async def fetch_sitemap_urls(
    fetcher: Fetcher,
    sitemap_urls: list[str],
    *,
    logger: Optional[logging.LoggerAdapter] = None,
    max_sitemaps: int = 50,
) -> list[str]:
    logger = logger or get_logger("robots")
    pending = list(sitemap_urls)
    seen: set[str] = set()
    discovered: list[str] = []
    while pending and len(seen) < max_sitemaps:
        sm_url = pending.pop(0)
        if sm_url in seen:
            continue
        seen.add(sm_url)
        try:
            result = await fetcher.fetch(sm_url, retries=1)
        except FetchError as e:
            logger.warning(f"Failed to fetch sitemap {sm_url}: {e}")
            continue
        data = result.body
        ctype = (result.content_type or "").lower()
        if sm_url.lower().endswith(".gz") or "gzip" in ctype:
            try:
                data = gzip.decompress(data)
            except (OSError, EOFError) as e:
                logger.debug(f"Sitemap {sm_url} is not gzip data ({e}); parsing as-is")
        try:
            pages, nested = parse_sitemap(data)
        except ET.ParseError as e:
            logger.warning(f"Could not parse sitemap {sm_url}: {e}")
            continue
        discovered.extend(pages)
        pending.extend(nested)
    return discovered

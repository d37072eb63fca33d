"""
Per-domain adaptive rate limiting and the politeness facade used by the crawler.

Delays grow multiplicatively on 429/5xx/slow responses and shrink slowly on
success, never dropping below the domain's default (or its robots.txt
``Crawl-delay``) and never exceeding ``max_delay_ms``.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import random
import time
from typing import Optional
from urllib.parse import urlsplit

from .config import RateLimitSettings
from .log import get_logger
from .robots import RobotsChecker


@dataclasses.dataclass
class DomainState:
    delay: float
    base_delay: float
    slots: asyncio.Semaphore = dataclasses.field(repr=False)
    floor: float = 0.0
    last_request: Optional[float] = None
    in_flight: int = 0
    consecutive_429: int = 0
    consecutive_errors: int = 0
    total_requests: int = 0
    lock: asyncio.Lock = dataclasses.field(default_factory=asyncio.Lock, repr=False)

    @property
    def effective_delay(self) -> float:
        return max(self.delay, self.floor)


@dataclasses.dataclass(frozen=True)
class DomainStats:
    domain: str
    current_delay: float
    in_flight: int
    consecutive_429: int
    consecutive_errors: int
    total_requests: int


def domain_of(url: str) -> str:
    return (urlsplit(url).hostname or "").lower()


class RateLimiter:
    def __init__(self, settings: Optional[RateLimitSettings] = None, logger: Optional[logging.LoggerAdapter] = None):
        self.settings = settings or RateLimitSettings()
        self.logger = logger or get_logger("politeness")
        self._domains: dict[str, DomainState] = {}

    @property
    def max_delay(self) -> float:
        return self.settings.max_delay_ms / 1000.0

    def default_delay_for(self, domain: str) -> float:
        ms = self.settings.domain_delays_ms.get(domain, self.settings.default_delay_ms)
        return max(0.0, ms / 1000.0)

    def _state(self, domain: str) -> DomainState:
        state = self._domains.get(domain)
        if state is None:
            base = self.default_delay_for(domain)
            slots = asyncio.Semaphore(max(1, self.settings.max_concurrent_per_domain))
            state = DomainState(delay=base, base_delay=base, slots=slots)
            self._domains[domain] = state
        return state

    def current_delay(self, url_or_domain: str) -> float:
        domain = domain_of(url_or_domain) if "://" in url_or_domain else url_or_domain.lower()
        return self._state(domain).effective_delay

    def set_floor(self, domain: str, seconds: Optional[float]) -> None:
        if seconds is None:
            return
        state = self._state(domain.lower())
        state.floor = min(max(0.0, seconds), self.max_delay)

    # ----------------------------- Slots ----------------------------------- #

    async def acquire_slot(self, url: str) -> None:
        domain = domain_of(url)
        if not domain:
            return
        state = self._state(domain)
        await state.slots.acquire()
        try:
            async with state.lock:
                if state.last_request is not None:
                    delay = state.effective_delay
                    if self.settings.jitter > 0 and delay > 0:
                        delay += random.uniform(0, delay * self.settings.jitter)
                    wait_for = state.last_request + delay - time.monotonic()
                    if wait_for > 0:
                        await asyncio.sleep(wait_for)
                state.last_request = time.monotonic()
        except BaseException:
            state.slots.release()
            raise
        state.in_flight += 1
        state.total_requests += 1

    def release_slot(self, url: str, status_code: Optional[int] = None, response_time: Optional[float] = None) -> None:
        domain = domain_of(url)
        if not domain:
            return
        state = self._state(domain)
        if state.in_flight > 0:
            state.in_flight -= 1
            state.slots.release()
        self.record_response(domain, status_code, response_time)

    # ----------------------------- Adaptation ------------------------------ #

    def record_response(self, domain: str, status_code: Optional[int], response_time: Optional[float] = None) -> float:
        s = self.settings
        state = self._state(domain.lower())
        before = state.delay
        if status_code is None:
            state.consecutive_errors += 1
        elif 200 <= status_code < 300:
            state.delay = max(state.base_delay, state.delay * s.success_factor)
            state.consecutive_429 = 0
            state.consecutive_errors = 0
        elif status_code == 429:
            state.consecutive_429 += 1
            state.consecutive_errors += 1
            factor = s.rate_limit_base_factor + s.rate_limit_step * min(state.consecutive_429, s.rate_limit_max_steps)
            state.delay = min(self.max_delay, self._growth_base(state) * factor)
        elif status_code >= 500:
            state.consecutive_errors += 1
            state.delay = min(self.max_delay, self._growth_base(state) * s.server_error_factor)

        if response_time is not None and response_time > s.slow_response_seconds:
            state.delay = min(self.max_delay, self._growth_base(state) * s.slow_response_factor)

        if state.delay != before:
            self.logger.debug(f"Delay for {domain} {before:.2f}s -> {state.delay:.2f}s (status={status_code})")
        return state.delay

    @staticmethod
    def _growth_base(state: DomainState) -> float:
        # A zero default delay would never grow multiplicatively.
        return state.delay if state.delay > 0 else 1.0

    # ------------------------------- Stats --------------------------------- #

    def stats(self) -> dict[str, DomainStats]:
        return {
            domain: DomainStats(
                domain=domain,
                current_delay=state.effective_delay,
                in_flight=state.in_flight,
                consecutive_429=state.consecutive_429,
                consecutive_errors=state.consecutive_errors,
                total_requests=state.total_requests,
            )
            for domain, state in self._domains.items()
        }

    def reset(self, domain: Optional[str] = None) -> None:
        if domain is None:
            self._domains.clear()
        else:
            self._domains.pop(domain.lower(), None)


class Politeness:
    """robots.txt compliance plus rate limiting, as one gate in front of every request."""

    def __init__(
        self,
        limiter: RateLimiter,
        robots: Optional[RobotsChecker] = None,
        *,
        respect_robots: bool = True,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self.limiter = limiter
        self.robots = robots
        self.respect_robots = respect_robots and robots is not None
        self.logger = logger or get_logger("politeness")

    async def is_allowed(self, url: str) -> bool:
        if not self.respect_robots:
            return True
        allowed = await self.robots.is_allowed(url)
        domain = domain_of(url)
        if domain:
            self.limiter.set_floor(domain, await self.robots.crawl_delay(url))
        return allowed

    async def acquire_slot(self, url: str) -> None:
        await self.limiter.acquire_slot(url)

    def release_slot(self, url: str, status_code: Optional[int] = None, response_time: Optional[float] = None) -> None:
        self.limiter.release_slot(url, status_code, response_time)

    async def sitemaps(self, url: str) -> list[str]:
        if self.robots is None:
            return []
        return await self.robots.sitemaps(url)

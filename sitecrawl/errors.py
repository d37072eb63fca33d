"""
Exception hierarchy and failure taxonomy.

Every failure the crawler can observe is sorted into an ``ErrorCategory``;
the category decides whether a request is retried, skipped or surfaced:

- transient (timeouts, connection loss)   -> retry after a short delay
- rate_limited (HTTP 429)                 -> retry after a long delay
- permanent (bad URL, 404/410)            -> skip, never retry
- authentication (401/403)                -> surface for manual intervention
- server_error (5xx)                      -> bounded retries, then skip
- unknown                                 -> log and skip
"""

from __future__ import annotations

import dataclasses
import enum
from typing import Optional

import httpx


class SitecrawlError(Exception):
    """Base class for every error raised by sitecrawl."""


class ConfigError(SitecrawlError):
    pass


class InvalidURLError(SitecrawlError):
    def __init__(self, url: str, reason: str = "invalid URL") -> None:
        super().__init__(f"{reason}: {url}")
        self.url = url
        self.reason = reason


class CrawlerStateError(SitecrawlError):
    """Raised when a control operation does not fit the current crawl status."""


class AlreadyRunningError(CrawlerStateError):
    def __init__(self) -> None:
        super().__init__("crawler is already running")


# ------------------------------- Fetching ---------------------------------- #


class FetchError(SitecrawlError):
    def __init__(self, url: str, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(f"{message}: {url}")
        self.url = url
        self.status_code = status_code


class HTTPStatusFailure(FetchError):
    def __init__(self, url: str, status_code: int) -> None:
        super().__init__(url, f"HTTP {status_code}", status_code=status_code)


class TooManyRedirectsError(FetchError):
    def __init__(self, url: str, limit: int) -> None:
        super().__init__(url, f"more than {limit} redirects")
        self.limit = limit


class RobotsFetchError(FetchError):
    pass


class RobotsDisallowedError(SitecrawlError):
    def __init__(self, url: str) -> None:
        super().__init__(f"disallowed by robots.txt: {url}")
        self.url = url


class DownloadError(SitecrawlError):
    def __init__(self, url: str, message: str) -> None:
        super().__init__(f"{message}: {url}")
        self.url = url


class FileTooLargeError(DownloadError):
    def __init__(self, url: str, limit_bytes: int) -> None:
        super().__init__(url, f"file exceeds {limit_bytes} bytes")
        self.limit_bytes = limit_bytes


class ExtractionError(SitecrawlError):
    pass


# ------------------------------- Taxonomy ---------------------------------- #


class ErrorCategory(str, enum.Enum):
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    PERMANENT = "permanent"
    AUTHENTICATION = "authentication"
    SERVER_ERROR = "server_error"
    UNKNOWN = "unknown"


class RecoveryKind(str, enum.Enum):
    RETRY = "retry"
    SKIP = "skip"
    PAUSE = "pause"


@dataclasses.dataclass(frozen=True)
class RecoveryAction:
    kind: RecoveryKind
    delay: float = 0.0
    max_attempts: int = 0
    reason: str = ""

    @property
    def should_retry(self) -> bool:
        return self.kind is RecoveryKind.RETRY


def category_for_status(status_code: int) -> ErrorCategory:
    if status_code == 429:
        return ErrorCategory.RATE_LIMITED
    if status_code in (401, 403):
        return ErrorCategory.AUTHENTICATION
    if status_code in (404, 410):
        return ErrorCategory.PERMANENT
    if 500 <= status_code <= 599:
        return ErrorCategory.SERVER_ERROR
    return ErrorCategory.UNKNOWN


def classify_error(exc: BaseException) -> ErrorCategory:
    if isinstance(exc, FetchError) and exc.status_code is not None:
        return category_for_status(exc.status_code)
    if isinstance(exc, FetchError) and exc.__cause__ is not None:
        return classify_error(exc.__cause__)
    if isinstance(exc, (InvalidURLError, RobotsDisallowedError, TooManyRedirectsError, httpx.UnsupportedProtocol, httpx.InvalidURL)):
        return ErrorCategory.PERMANENT
    if isinstance(exc, FileNotFoundError):
        return ErrorCategory.PERMANENT
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return ErrorCategory.TRANSIENT
    if isinstance(exc, httpx.HTTPStatusError):
        return category_for_status(exc.response.status_code)
    return ErrorCategory.UNKNOWN


def recovery_action(
    category: ErrorCategory,
    *,
    transient_delay: float = 5.0,
    rate_limit_delay: float = 60.0,
    server_error_delay: float = 10.0,
    max_attempts: int = 5,
    server_error_attempts: int = 3,
) -> RecoveryAction:
    if category is ErrorCategory.TRANSIENT:
        return RecoveryAction(RecoveryKind.RETRY, delay=transient_delay, max_attempts=max_attempts)
    if category is ErrorCategory.RATE_LIMITED:
        return RecoveryAction(RecoveryKind.RETRY, delay=rate_limit_delay, max_attempts=max_attempts)
    if category is ErrorCategory.SERVER_ERROR:
        return RecoveryAction(RecoveryKind.RETRY, delay=server_error_delay, max_attempts=server_error_attempts)
    if category is ErrorCategory.AUTHENTICATION:
        return RecoveryAction(RecoveryKind.PAUSE, reason="authentication required")
    return RecoveryAction(RecoveryKind.SKIP)

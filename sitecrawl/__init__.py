"""Polite async website crawler with rule-based extraction, file downloads and change tracking."""

from .changes import ChangeDetector, ChangeTrackingListener
from .config import AppConfig, CrawlConfig, RateLimitSettings
from .crawler import Crawler, CrawlResult, crawl
from .dedup import DuplicateDetector
from .downloader import FileDownloader
from .errors import ConfigError, FetchError, SitecrawlError
from .events import CrawlErrorEvent, CrawlListener, FileDiscovered
from .extractor import Extractor
from .fetcher import Fetcher, FetchResult, Renderer, RenderResult
from .models import CrawlStatus, CrawlStrategy, ExtractionRule, RuleType, ScrapedPage, UrlCategory
from .parser import HTMLDocument, parse_html
from .politeness import Politeness, RateLimiter
from .robots import RobotsChecker, parse_robots
from .sitegraph import SiteGraph, SiteGraphListener

__version__ = "0.3.0"

__all__ = [
    "AppConfig",
    "ChangeDetector",
    "ChangeTrackingListener",
    "ConfigError",
    "CrawlConfig",
    "CrawlErrorEvent",
    "CrawlListener",
    "CrawlResult",
    "CrawlStatus",
    "CrawlStrategy",
    "Crawler",
    "DuplicateDetector",
    "ExtractionRule",
    "Extractor",
    "FetchError",
    "FetchResult",
    "Fetcher",
    "FileDiscovered",
    "FileDownloader",
    "HTMLDocument",
    "Politeness",
    "RateLimitSettings",
    "RateLimiter",
    "RenderResult",
    "Renderer",
    "RobotsChecker",
    "RuleType",
    "ScrapedPage",
    "SiteGraph",
    "SiteGraphListener",
    "SitecrawlError",
    "UrlCategory",
    "crawl",
    "parse_html",
    "parse_robots",
    "__version__",
]

from __future__ import annotations

import dataclasses
import re
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

import yaml

from .errors import ConfigError
from .models import (
    CrawlStrategy,
    DataTransformation,
    ExtractionRule,
    RuleType,
    TransformKind,
    TransformOperation,
    UrlCategory,
    WatchRule,
)


DEFAULT_USER_AGENT = "SitecrawlBot/1.0 (+https://example.com/bot)"
DOWNLOADABLE_CATEGORIES = tuple(
    c for c in UrlCategory if c not in (UrlCategory.PAGE, UrlCategory.API, UrlCategory.SCRIPT, UrlCategory.STYLESHEET)
)


# ------------------------------ Rate limiting ------------------------------ #


@dataclasses.dataclass(frozen=True)
class RateLimitSettings:
    default_delay_ms: int = 1000
    max_delay_ms: int = 30_000
    max_concurrent_per_domain: int = 4
    success_factor: float = 0.9
    server_error_factor: float = 1.5
    rate_limit_base_factor: float = 1.5
    rate_limit_step: float = 0.5
    rate_limit_max_steps: int = 5
    slow_response_seconds: float = 5.0
    slow_response_factor: float = 1.2
    jitter: float = 0.0
    domain_delays_ms: dict[str, int] = dataclasses.field(default_factory=dict)

    @staticmethod
    def from_dict(data: Mapping[str, Any], default_delay_ms: int = 1000) -> "RateLimitSettings":
        return RateLimitSettings(
            default_delay_ms=int(data.get("default_delay_ms", default_delay_ms)),
            max_delay_ms=int(data.get("max_delay_ms", 30_000)),
            max_concurrent_per_domain=int(data.get("max_concurrent_per_domain", 4)),
            success_factor=float(data.get("success_factor", 0.9)),
            server_error_factor=float(data.get("server_error_factor", 1.5)),
            rate_limit_base_factor=float(data.get("rate_limit_base_factor", 1.5)),
            rate_limit_step=float(data.get("rate_limit_step", 0.5)),
            rate_limit_max_steps=int(data.get("rate_limit_max_steps", 5)),
            slow_response_seconds=float(data.get("slow_response_seconds", 5.0)),
            slow_response_factor=float(data.get("slow_response_factor", 1.2)),
            jitter=float(data.get("jitter", 0.0)),
            domain_delays_ms={str(k).lower(): int(v) for k, v in (data.get("domain_delays_ms") or {}).items()},
        )


# ------------------------------ Crawl policy ------------------------------- #


@dataclasses.dataclass(frozen=True)
class CrawlConfig:
    strategy: CrawlStrategy = CrawlStrategy.BREADTH_FIRST
    max_depth: int = 5
    max_pages: int = 1000
    follow_external_links: bool = False
    respect_robots_txt: bool = True
    enable_javascript: bool = False
    request_delay_ms: int = 1000
    max_concurrent_requests: int = 4
    url_whitelist: tuple[str, ...] = ()
    url_blacklist: tuple[str, ...] = ()
    download_file_types: tuple[UrlCategory, ...] = DOWNLOADABLE_CATEGORIES
    extraction_rules: tuple[ExtractionRule, ...] = ()
    custom_headers: dict[str, str] = dataclasses.field(default_factory=dict)
    user_agent: str = DEFAULT_USER_AGENT
    timeout: float = 30.0
    retry_count: int = 3
    retry_delay_ms: int = 1000
    rate_limit_retry_delay_ms: int = 60_000
    max_redirects: int = 10
    robots_cache_ttl: float = 3600.0
    use_public_suffix: bool = False
    seed_from_sitemaps: bool = False
    checkpoint_interval: int = 25
    rate_limit: Optional[RateLimitSettings] = None

    def __post_init__(self) -> None:
        if self.max_depth < 0:
            raise ConfigError("max_depth must be >= 0")
        if self.max_pages < 1:
            raise ConfigError("max_pages must be >= 1")
        if self.max_concurrent_requests < 1:
            raise ConfigError("max_concurrent_requests must be >= 1")
        if self.retry_count < 1:
            raise ConfigError("retry_count must be >= 1")
        for pattern in (*self.url_whitelist, *self.url_blacklist):
            try:
                re.compile(pattern)
            except re.error as e:
                raise ConfigError(f"invalid URL pattern {pattern!r}: {e}") from e

    @property
    def rate_limit_settings(self) -> RateLimitSettings:
        if self.rate_limit is not None:
            return self.rate_limit
        return RateLimitSettings(default_delay_ms=self.request_delay_ms)

    @property
    def headers(self) -> dict[str, str]:
        headers = {
            "User-Agent": self.user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.9",
        }
        headers.update(self.custom_headers)
        return headers

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "CrawlConfig":
        delay_ms = int(data.get("request_delay_ms", 1000))
        rate_limit = data.get("rate_limit")
        try:
            strategy = CrawlStrategy(data.get("strategy", CrawlStrategy.BREADTH_FIRST.value))
        except ValueError as e:
            raise ConfigError(f"unknown crawl strategy: {data.get('strategy')!r}") from e
        file_types = data.get("download_file_types")
        return CrawlConfig(
            strategy=strategy,
            max_depth=int(data.get("max_depth", 5)),
            max_pages=int(data.get("max_pages", 1000)),
            follow_external_links=bool(data.get("follow_external_links", False)),
            respect_robots_txt=bool(data.get("respect_robots_txt", True)),
            enable_javascript=bool(data.get("enable_javascript", False)),
            request_delay_ms=delay_ms,
            max_concurrent_requests=int(data.get("max_concurrent_requests", 4)),
            url_whitelist=tuple(data.get("url_whitelist", []) or ()),
            url_blacklist=tuple(data.get("url_blacklist", []) or ()),
            download_file_types=_parse_file_types(file_types) if file_types is not None else DOWNLOADABLE_CATEGORIES,
            extraction_rules=tuple(rule_from_dict(r) for r in data.get("extraction_rules", []) or ()),
            custom_headers={str(k): str(v) for k, v in (data.get("custom_headers") or {}).items()},
            user_agent=data.get("user_agent", DEFAULT_USER_AGENT),
            timeout=float(data.get("timeout", 30.0)),
            retry_count=int(data.get("retry_count", 3)),
            retry_delay_ms=int(data.get("retry_delay_ms", 1000)),
            rate_limit_retry_delay_ms=int(data.get("rate_limit_retry_delay_ms", 60_000)),
            max_redirects=int(data.get("max_redirects", 10)),
            robots_cache_ttl=float(data.get("robots_cache_ttl", 3600.0)),
            use_public_suffix=bool(data.get("use_public_suffix", False)),
            seed_from_sitemaps=bool(data.get("seed_from_sitemaps", False)),
            checkpoint_interval=int(data.get("checkpoint_interval", 25)),
            rate_limit=RateLimitSettings.from_dict(rate_limit, delay_ms) if rate_limit else None,
        )


def _parse_file_types(values: Iterable[str]) -> tuple[UrlCategory, ...]:
    try:
        return tuple(UrlCategory(v) for v in values)
    except ValueError as e:
        raise ConfigError(f"unknown file type in download_file_types: {e}") from e


# ----------------------------- Extraction rules ---------------------------- #


def transform_from_dict(item: Any) -> TransformOperation:
    if isinstance(item, str):
        item = {"op": item}
    if not isinstance(item, Mapping):
        raise ConfigError(f"invalid transform entry: {item!r}")
    try:
        kind = TransformKind(item.get("op") or item.get("kind"))
    except ValueError as e:
        raise ConfigError(f"unknown transform: {item.get('op')!r}") from e
    return TransformOperation(
        kind=kind,
        pattern=item.get("pattern"),
        replacement=item.get("replacement"),
        value=item.get("value"),
        separator=item.get("separator"),
        group=int(item.get("group", 1)),
        input_format=item.get("input_format"),
        output_format=item.get("output_format"),
    )


def rule_from_dict(data: Mapping[str, Any]) -> ExtractionRule:
    name = data.get("field_name") or data.get("field")
    selector = data.get("selector")
    if not name or selector is None:
        raise ConfigError(f"extraction rule needs field_name and selector: {dict(data)!r}")
    try:
        rule_type = RuleType(data.get("type", data.get("rule_type", RuleType.CSS_SELECTOR.value)))
    except ValueError as e:
        raise ConfigError(f"unknown rule type for {name!r}") from e
    ops = data.get("transform") or data.get("transformation") or ()
    transformation = DataTransformation(tuple(transform_from_dict(op) for op in ops)) if ops else None
    default = data.get("default", data.get("default_value"))
    return ExtractionRule(
        field_name=str(name),
        rule_type=rule_type,
        selector=str(selector),
        attribute=data.get("attribute"),
        transformation=transformation,
        is_required=bool(data.get("required", data.get("is_required", False))),
        default_value=None if default is None else str(default),
        is_enabled=bool(data.get("enabled", data.get("is_enabled", True))),
    )


# ------------------------------- Watch rules ------------------------------- #


def watch_rule_from_dict(data: Mapping[str, Any]) -> WatchRule:
    page_url = data.get("page_url") or data.get("url")
    if not page_url:
        raise ConfigError(f"watch rule needs page_url: {dict(data)!r}")
    keywords = data.get("keywords") or ()
    if isinstance(keywords, str):
        keywords = [keywords]
    return WatchRule(
        page_url=str(page_url),
        keywords=tuple(str(k) for k in keywords),
        change_threshold=float(data.get("change_threshold", 10.0)),
        is_enabled=bool(data.get("enabled", data.get("is_enabled", True))),
    )


# ------------------------------ Application -------------------------------- #


@dataclasses.dataclass(frozen=True)
class AppConfig:
    results_dir: str = "results"
    log_level: str = "INFO"
    sites: tuple[str, ...] = ()
    download_files: bool = False
    max_concurrent_downloads: int = 4
    max_file_size_mb: int = 500
    organize_by_type: bool = True
    preserve_original_names: bool = True
    snapshot_retention: int = 100
    watch_rules: tuple[WatchRule, ...] = ()
    crawl: CrawlConfig = dataclasses.field(default_factory=CrawlConfig)

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "AppConfig":
        return AppConfig(
            results_dir=data.get("results_dir", "results"),
            log_level=str(data.get("log_level", "INFO")).upper(),
            sites=tuple(data.get("sites", []) or ()),
            download_files=bool(data.get("download_files", False)),
            max_concurrent_downloads=int(data.get("max_concurrent_downloads", 4)),
            max_file_size_mb=int(data.get("max_file_size_mb", 500)),
            organize_by_type=bool(data.get("organize_by_type", True)),
            preserve_original_names=bool(data.get("preserve_original_names", True)),
            snapshot_retention=int(data.get("snapshot_retention", 100)),
            watch_rules=tuple(watch_rule_from_dict(r) for r in data.get("watch_rules", []) or ()),
            crawl=CrawlConfig.from_dict(data.get("crawl", {}) or {}),
        )

    @staticmethod
    def from_yaml(path: Path) -> "AppConfig":
        try:
            with path.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"could not parse {path}: {e}") from e
        if not isinstance(data, Mapping):
            raise ConfigError(f"{path} must contain a mapping at the top level")
        return AppConfig.from_dict(data)

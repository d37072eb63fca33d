"""
Command line entry point.

    sitecrawl --config crawl.yaml [--resume] [--site URL ...]

For every configured site a result directory is created under
``results_dir``::

    results/<site-slug>/
        crawl.log
        pages/<slug>-<hash>.txt
        files/<type>/...          (when download_files is on)
        external_urls.txt
        checkpoint.json
        snapshots.json            (page history for change detection across runs)
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
from pathlib import Path
from typing import Iterable, Optional

from .changes import ChangeDetector, ChangeTrackingListener
from .checkpoint import load_checkpoint
from .config import AppConfig
from .crawler import Crawler, CrawlResult
from .dedup import DuplicateDetector
from .downloader import FileDownloader
from .errors import ConfigError, SitecrawlError
from .events import CrawlListener, FileDiscovered
from .log import ROOT_LOGGER_NAME, close_logger, get_site_logger, setup_root_logger
from .models import CrawlStatus, DownloadStatus, ScrapedPage
from .sitegraph import SiteGraphListener
from .utils import derive_site_slug, ensure_dir, page_filename_from_url


class PageTextWriter(CrawlListener):
    """Writes the visible text of each scraped page to ``pages/``."""

    def __init__(self, pages_dir: Path, logger: logging.LoggerAdapter) -> None:
        self.pages_dir = pages_dir
        self.logger = logger
        ensure_dir(pages_dir)

    def on_page_scraped(self, page: ScrapedPage) -> None:
        if not page.text:
            return
        path = self.pages_dir / page_filename_from_url(page.url)
        path.write_text(page.text, encoding="utf-8")
        self.logger.debug(f"Saved text: {page.url} -> {path.name}")


class DownloadForwarder(CrawlListener):
    """Hands every discovered file to the downloader queue."""

    def __init__(self, downloader: FileDownloader) -> None:
        self.downloader = downloader

    async def on_file_discovered(self, event: FileDiscovered) -> None:
        await self.downloader.enqueue(event.url, event.source_page_url)


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="sitecrawl", description="Polite async website crawler.")
    parser.add_argument("--config", "-c", type=Path, required=True, help="Path to YAML configuration file.")
    parser.add_argument("--site", "-s", action="append", default=[], help="Crawl this URL instead of the configured sites.")
    parser.add_argument("--resume", action="store_true", help="Continue from each site's checkpoint.json if present.")
    return parser.parse_args(argv)


async def run_for_site(site_url: str, cfg: AppConfig, root_results: Path, resume: bool = False) -> CrawlResult:
    slug = derive_site_slug(site_url)
    site_dir = root_results / slug
    ensure_dir(site_dir)
    logger = get_site_logger(site_dir, slug, cfg.log_level)
    checkpoint_path = site_dir / "checkpoint.json"
    snapshots_path = site_dir / "snapshots.json"

    graph_listener = SiteGraphListener()
    change_detector = ChangeDetector(cfg.snapshot_retention, logger=logger)
    change_detector.load(snapshots_path)
    for rule in cfg.watch_rules:
        change_detector.add_watch_rule(dataclasses.replace(rule))
    change_listener = ChangeTrackingListener(change_detector)
    listeners: list[CrawlListener] = [PageTextWriter(site_dir / "pages", logger), graph_listener, change_listener]

    downloader: Optional[FileDownloader] = None
    detector = DuplicateDetector()
    if cfg.download_files:
        downloader = FileDownloader(
            site_dir / "files",
            headers=cfg.crawl.headers,
            timeout=cfg.crawl.timeout,
            max_concurrent=cfg.max_concurrent_downloads,
            max_file_size_mb=cfg.max_file_size_mb,
            organize_by_type=cfg.organize_by_type,
            preserve_original_names=cfg.preserve_original_names,
            detector=detector,
            logger=logger,
        )
        listeners.append(DownloadForwarder(downloader))

    checkpoint = load_checkpoint(checkpoint_path) if resume else None
    crawler = Crawler(
        cfg.crawl,
        listeners=listeners,
        checkpoint_path=checkpoint_path,
        keep_pages=False,
        logger=logger,
    )
    try:
        result = await crawler.crawl(site_url, resume_from=checkpoint)
        if downloader is not None:
            files = await downloader.drain()
            report = detector.report()
            logger.info(
                f"Downloaded {sum(1 for f in files if f.download_status is DownloadStatus.COMPLETED)} of {len(files)} file(s); "
                f"{report.duplicate_files} duplicate(s), {report.potential_savings} bytes reclaimable"
            )
    finally:
        if downloader is not None:
            await downloader.aclose()

    (site_dir / "external_urls.txt").write_text(
        "\n".join(result.external_urls) + ("\n" if result.external_urls else ""), encoding="utf-8"
    )
    stats = graph_listener.graph.stats()
    logger.info(
        f"Site graph: {stats.total_nodes} node(s), {stats.pages} page(s), {stats.resources} resource(s), "
        f"{stats.broken} broken, {stats.external} external, max depth {stats.max_depth}"
    )
    change_detector.save(snapshots_path)
    for page_url, diff in change_listener.changes:
        logger.info(f"Content changed: {page_url} ({diff.change_percentage:.1f}%, {diff.summary})")
    for alert in change_listener.alerts:
        logger.info(f"Watch alert for {alert.page_url}: {alert.reason}")
    close_logger(logger)
    return result


async def main_async(cfg: AppConfig, resume: bool = False) -> int:
    results_root = Path(cfg.results_dir)
    ensure_dir(results_root)
    setup_root_logger(results_root / "sitecrawl.log", cfg.log_level)

    root_adapter = logging.LoggerAdapter(logging.getLogger(ROOT_LOGGER_NAME), extra={"site": "ALL"})
    sites = cfg.sites
    if not sites:
        root_adapter.error("No sites provided in config 'sites:'")
        return 2

    root_adapter.info(f"Starting crawl for {len(sites)} site(s)")
    failures = 0
    for site in sites:
        try:
            result = await run_for_site(site, cfg, results_root, resume=resume)
        except SitecrawlError as e:
            root_adapter.error(f"Error crawling {site}: {e}")
            failures += 1
            continue
        except Exception as e:
            root_adapter.exception(f"Error crawling {site}: {e}")
            failures += 1
            continue
        if result.status is CrawlStatus.FAILED:
            failures += 1
    root_adapter.info("All done.")
    return 1 if failures else 0


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    try:
        cfg = AppConfig.from_yaml(args.config)
    except (ConfigError, OSError) as e:
        print(f"sitecrawl: {e}")
        return 2
    if args.site:
        cfg = dataclasses.replace(cfg, sites=tuple(args.site))
    try:
        return asyncio.run(main_async(cfg, resume=args.resume))
    except KeyboardInterrupt:
        return 130

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional, Union


ROOT_LOGGER_NAME = "sitecrawl"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(site)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class SiteFieldFilter(logging.Filter):
    """Records logged outside a site adapter still need a ``site`` field for the format."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "site"):
            record.site = "-"
        return True


def _formatter() -> logging.Formatter:
    return logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)


def setup_root_logger(log_path: Optional[Path] = None, level: Union[int, str] = logging.INFO) -> logging.Logger:
    root_logger = logging.getLogger(ROOT_LOGGER_NAME)
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(log_path, encoding="utf-8")
        fh.setLevel(level)
        fh.setFormatter(_formatter())
        fh.addFilter(SiteFieldFilter())
        root_logger.addHandler(fh)
    ch = logging.StreamHandler(stream=sys.stdout)
    ch.setLevel(level)
    ch.setFormatter(_formatter())
    ch.addFilter(SiteFieldFilter())
    root_logger.addHandler(ch)
    return root_logger


def get_logger(name: str, site: str = "-") -> logging.LoggerAdapter:
    """Child of the ``sitecrawl`` logger tagged with a site slug."""
    logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
    return logging.LoggerAdapter(logger, extra={"site": site})


def get_site_logger(site_dir: Path, site_slug: str, level: Union[int, str] = logging.INFO) -> logging.LoggerAdapter:
    """Per-site logger that also writes ``crawl.log`` inside the site's result directory."""
    logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.site.{site_slug}")
    logger.setLevel(level)
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    fh = logging.FileHandler(site_dir / "crawl.log", encoding="utf-8")
    fh.setLevel(level)
    fh.setFormatter(_formatter())
    fh.addFilter(SiteFieldFilter())
    logger.addHandler(fh)
    logger.propagate = True
    return logging.LoggerAdapter(logger, extra={"site": site_slug})


def close_logger(adapter: logging.LoggerAdapter) -> None:
    for h in list(adapter.logger.handlers):
        adapter.logger.removeHandler(h)
        h.close()

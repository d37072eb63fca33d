"""Crawl checkpoints: enough frontier and visited state to resume an interrupted crawl."""

from __future__ import annotations

import dataclasses
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from .errors import ConfigError
from .models import QueuedURL, Record, utcnow


CHECKPOINT_VERSION = 1


@dataclasses.dataclass
class CrawlCheckpoint(Record):
    start_url: str
    pending: list[QueuedURL] = dataclasses.field(default_factory=list)
    visited: list[str] = dataclasses.field(default_factory=list)
    external_urls: list[str] = dataclasses.field(default_factory=list)
    pages_scraped: int = 0
    files_discovered: int = 0
    errors: int = 0
    saved_at: datetime = dataclasses.field(default_factory=utcnow)
    version: int = CHECKPOINT_VERSION

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "CrawlCheckpoint":
        if int(data.get("version", 0)) != CHECKPOINT_VERSION:
            raise ConfigError(f"unsupported checkpoint version: {data.get('version')!r}")
        pending = [
            QueuedURL(
                url=item["url"],
                depth=int(item["depth"]),
                parent_url=item.get("parent_url"),
                discovered_at=datetime.fromisoformat(item["discovered_at"]) if item.get("discovered_at") else utcnow(),
            )
            for item in data.get("pending", [])
        ]
        return CrawlCheckpoint(
            start_url=data["start_url"],
            pending=pending,
            visited=list(data.get("visited", [])),
            external_urls=list(data.get("external_urls", [])),
            pages_scraped=int(data.get("pages_scraped", 0)),
            files_discovered=int(data.get("files_discovered", 0)),
            errors=int(data.get("errors", 0)),
            saved_at=datetime.fromisoformat(data["saved_at"]) if data.get("saved_at") else utcnow(),
        )


def save_checkpoint(checkpoint: CrawlCheckpoint, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(json.dumps(checkpoint.to_dict(), indent=2), encoding="utf-8")
    tmp.replace(path)


def load_checkpoint(path: Path) -> Optional[CrawlCheckpoint]:
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"corrupt checkpoint {path}: {e}") from e
    return CrawlCheckpoint.from_dict(data)

"""
Content snapshots, diffs and watch rules.

Snapshots hash the page's normalized text (whitespace collapsed, blank lines
dropped) so markup-only or spacing-only edits do not register as changes.
Each URL keeps an append-only history ordered by ``captured_at`` and capped
at ``retention`` entries, oldest evicted first.
"""

from __future__ import annotations

import base64
import dataclasses
import hashlib
import json
import logging
import re
import zlib
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional

from .errors import ConfigError
from .events import CrawlListener
from .log import get_logger
from .models import ContentDiff, ModifiedLine, ScrapedPage, Snapshot, WatchAlert, WatchRule, utcnow
from .urls import normalize


DEFAULT_RETENTION = 100
SNAPSHOT_FILE_VERSION = 1


def normalize_text(text: str) -> str:
    lines = (re.sub(r"\s+", " ", ln).strip() for ln in (text or "").splitlines())
    return "\n".join(ln for ln in lines if ln)


def content_hash(text: str) -> str:
    return hashlib.sha256(normalize_text(text).encode("utf-8")).hexdigest()


def compress_html(html: Optional[str]) -> Optional[bytes]:
    if not html:
        return None
    return zlib.compress(html.encode("utf-8"))


def decompress_html(data: Optional[bytes]) -> Optional[str]:
    if not data:
        return None
    return zlib.decompress(data).decode("utf-8")


def _snapshot_to_json(snapshot: Snapshot) -> dict[str, Any]:
    data = snapshot.to_dict()
    if snapshot.compressed_content:
        data["compressed_content"] = base64.b64encode(snapshot.compressed_content).decode("ascii")
    return data


def _snapshot_from_json(data: dict[str, Any]) -> Snapshot:
    blob = data.get("compressed_content")
    return Snapshot(
        page_url=data["page_url"],
        captured_at=datetime.fromisoformat(data["captured_at"]),
        content_hash=data["content_hash"],
        text_content=data.get("text_content", ""),
        title=data.get("title"),
        compressed_content=base64.b64decode(blob) if blob else None,
        id=data["id"],
    )


def diff_snapshots(old: Snapshot, new: Snapshot) -> ContentDiff:
    if old.content_hash == new.content_hash:
        return ContentDiff(old.id, new.id)

    old_lines = normalize_text(old.text_content).splitlines()
    new_lines = normalize_text(new.text_content).splitlines()
    old_set, new_set = set(old_lines), set(new_lines)
    added = tuple(ln for ln in new_lines if ln not in old_set)
    removed = tuple(ln for ln in old_lines if ln not in new_set)
    modified = tuple(
        ModifiedLine(i, a, b) for i, (a, b) in enumerate(zip(old_lines, new_lines)) if a != b
    )
    denominator = max(len(old_lines), len(new_lines))
    changed = len(added) + len(removed) + len(modified)
    percentage = min(100.0, changed / denominator * 100.0) if denominator else 0.0
    return ContentDiff(old.id, new.id, added, removed, modified, percentage)


class ChangeDetector:
    def __init__(self, retention: int = DEFAULT_RETENTION, logger: Optional[logging.LoggerAdapter] = None) -> None:
        self.retention = max(1, retention)
        self.logger = logger or get_logger("changes")
        self._history: dict[str, list[Snapshot]] = {}
        self._rules: dict[str, WatchRule] = {}

    @staticmethod
    def _key(url: str) -> str:
        return normalize(url) or url

    # ----------------------------- Snapshots ------------------------------- #

    def create_snapshot(
        self,
        page_url: str,
        text: str,
        *,
        html: Optional[str] = None,
        title: Optional[str] = None,
        captured_at: Optional[datetime] = None,
    ) -> Snapshot:
        history = self._history.setdefault(self._key(page_url), [])
        when = captured_at or utcnow()
        if history and when <= history[-1].captured_at:
            when = history[-1].captured_at + timedelta(microseconds=1)
        snapshot = Snapshot(
            page_url=page_url,
            captured_at=when,
            content_hash=content_hash(text),
            text_content=text,
            title=title,
            compressed_content=compress_html(html),
        )
        history.append(snapshot)
        if len(history) > self.retention:
            del history[: len(history) - self.retention]
        return snapshot

    def snapshots(self, page_url: str) -> list[Snapshot]:
        return list(self._history.get(self._key(page_url), ()))

    def latest(self, page_url: str) -> Optional[Snapshot]:
        history = self._history.get(self._key(page_url))
        return history[-1] if history else None

    def diff(self, old: Snapshot, new: Snapshot) -> ContentDiff:
        return diff_snapshots(old, new)

    def diff_latest(self, page_url: str) -> Optional[ContentDiff]:
        history = self._history.get(self._key(page_url), [])
        if len(history) < 2:
            return None
        return diff_snapshots(history[-2], history[-1])

    def has_changed(self, page_url: str, text: str) -> bool:
        """Would ``text`` differ from the latest stored snapshot? True when none exists."""
        latest = self.latest(page_url)
        return latest is None or latest.content_hash != content_hash(text)

    def prune_snapshots(self, older_than: datetime) -> int:
        removed = 0
        for key in list(self._history):
            history = self._history[key]
            kept = [s for s in history if s.captured_at >= older_than]
            removed += len(history) - len(kept)
            if kept:
                self._history[key] = kept
            else:
                del self._history[key]
        return removed

    # ---------------------------- Persistence ------------------------------ #

    def save(self, path: Path) -> None:
        """Write every snapshot history to ``path`` so the next run can diff against it."""
        data = {
            "version": SNAPSHOT_FILE_VERSION,
            "snapshots": {key: [_snapshot_to_json(s) for s in history] for key, history in self._history.items()},
        }
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(json.dumps(data), encoding="utf-8")
        tmp.replace(path)

    def load(self, path: Path) -> int:
        """Replace the in-memory histories with those saved at ``path``; returns the snapshot count."""
        if not path.exists():
            return 0
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ConfigError(f"corrupt snapshot file {path}: {e}") from e
        if int(data.get("version", 0)) != SNAPSHOT_FILE_VERSION:
            raise ConfigError(f"unsupported snapshot file version: {data.get('version')!r}")
        self._history.clear()
        loaded = 0
        for items in (data.get("snapshots") or {}).values():
            history = sorted((_snapshot_from_json(item) for item in items), key=lambda s: s.captured_at)
            if not history:
                continue
            history = history[-self.retention :]
            self._history[self._key(history[0].page_url)] = history
            loaded += len(history)
        self.logger.debug(f"Loaded {loaded} snapshot(s) from {path}")
        return loaded

    # ---------------------------- Watch rules ------------------------------ #

    def add_watch_rule(self, rule: WatchRule) -> None:
        self._rules[rule.id] = rule

    def remove_watch_rule(self, rule_id: str) -> None:
        self._rules.pop(rule_id, None)

    def watch_rules(self, page_url: Optional[str] = None) -> list[WatchRule]:
        rules = list(self._rules.values())
        if page_url is not None:
            key = self._key(page_url)
            rules = [r for r in rules if self._key(r.page_url) == key]
        return [dataclasses.replace(r) for r in rules]

    def evaluate(self, rule: WatchRule, previous: Optional[Snapshot], current: Snapshot) -> Optional[WatchAlert]:
        """Fire on a keyword new since ``previous`` or a change percentage at or over the threshold."""
        stored = self._rules.get(rule.id, rule)
        stored.last_checked = utcnow()
        if not stored.is_enabled or previous is None:
            return None

        old_text = previous.text_content.lower()
        new_text = current.text_content.lower()
        appeared = tuple(k for k in stored.keywords if k and k.lower() in new_text and k.lower() not in old_text)
        diff = diff_snapshots(previous, current)

        reason = None
        if appeared:
            reason = f"keywords appeared: {', '.join(appeared)}"
        elif diff.has_changes and diff.change_percentage >= stored.change_threshold:
            reason = f"{diff.change_percentage:.1f}% changed ({diff.summary})"
        if reason is None:
            return None
        stored.last_change_detected = stored.last_checked
        self.logger.info(f"Watch rule {stored.id} fired for {current.page_url}: {reason}")
        return WatchAlert(
            rule_id=stored.id,
            page_url=current.page_url,
            reason=reason,
            matched_keywords=appeared,
            change_percentage=diff.change_percentage,
        )

    def record(self, page_url: str, text: str, *, html: Optional[str] = None, title: Optional[str] = None) -> list[WatchAlert]:
        """Snapshot a page and evaluate its watch rules against the previous snapshot."""
        previous = self.latest(page_url)
        current = self.create_snapshot(page_url, text, html=html, title=title)
        alerts = []
        for rule in self.watch_rules(page_url):
            alert = self.evaluate(rule, previous, current)
            if alert is not None:
                alerts.append(alert)
        return alerts


class ChangeTrackingListener(CrawlListener):
    """Snapshots every scraped page, collecting content changes and watch-rule alerts."""

    def __init__(self, detector: Optional[ChangeDetector] = None) -> None:
        self.detector = detector or ChangeDetector()
        self.alerts: list[WatchAlert] = []
        self.changes: list[tuple[str, ContentDiff]] = []

    def on_page_scraped(self, page: ScrapedPage) -> None:
        previous = self.detector.latest(page.url)
        self.alerts.extend(self.detector.record(page.url, page.text, html=page.html, title=page.title))
        current = self.detector.latest(page.url)
        if previous is not None and current is not None:
            diff = self.detector.diff(previous, current)
            if diff.has_changes:
                self.changes.append((page.url, diff))

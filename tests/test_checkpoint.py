from __future__ import annotations

import json

import pytest

from sitecrawl.checkpoint import CrawlCheckpoint, load_checkpoint, save_checkpoint
from sitecrawl.errors import ConfigError
from sitecrawl.models import QueuedURL


def test_save_and_load(tmp_path):
    path = tmp_path / "state" / "checkpoint.json"
    checkpoint = CrawlCheckpoint(
        start_url="https://example.com/",
        pending=[QueuedURL("https://example.com/b", 1, "https://example.com/")],
        visited=["https://example.com/"],
        external_urls=["https://other.org/"],
        pages_scraped=1,
        files_discovered=2,
        errors=0,
    )

    save_checkpoint(checkpoint, path)
    loaded = load_checkpoint(path)

    assert not (tmp_path / "state" / "checkpoint.json.tmp").exists()
    assert loaded.start_url == checkpoint.start_url
    assert loaded.visited == ["https://example.com/"]
    assert loaded.external_urls == ["https://other.org/"]
    assert [(q.url, q.depth, q.parent_url) for q in loaded.pending] == [
        ("https://example.com/b", 1, "https://example.com/")
    ]
    assert loaded.pending[0].discovered_at == checkpoint.pending[0].discovered_at
    assert loaded.saved_at == checkpoint.saved_at
    assert (loaded.pages_scraped, loaded.files_discovered) == (1, 2)


def test_missing_file_loads_as_none(tmp_path):
    assert load_checkpoint(tmp_path / "nope.json") is None


def test_corrupt_file_raises_config_error(tmp_path):
    path = tmp_path / "checkpoint.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_checkpoint(path)


def test_unknown_version_is_rejected(tmp_path):
    path = tmp_path / "checkpoint.json"
    path.write_text(json.dumps({"version": 99, "start_url": "https://example.com/"}), encoding="utf-8")
    with pytest.raises(ConfigError):
        load_checkpoint(path)

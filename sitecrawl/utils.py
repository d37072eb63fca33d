from __future__ import annotations

import hashlib
from pathlib import Path
from urllib.parse import urlsplit

from slugify import slugify


def sha1_short(s: str) -> str:
    return hashlib.sha1(s.encode("utf-8", errors="ignore")).hexdigest()[:10]


def file_safe_slug(text: str, maxlen: int = 80) -> str:
    s = slugify(text, max_length=maxlen, allow_unicode=False).strip("-_.")
    return s or sha1_short(text)


def derive_site_slug(site_url: str) -> str:
    parts = urlsplit(site_url)
    base = parts.netloc or Path(parts.path).parent.name or site_url
    slug = file_safe_slug(base, maxlen=80)
    return slug or sha1_short(site_url)


def page_filename_from_url(url: str, suffix: str = ".txt") -> str:
    parts = urlsplit(url)
    base = parts.path.strip("/") or "index"
    if parts.query:
        base = f"{base}-{sha1_short(parts.query)}"
    slug = file_safe_slug(base, maxlen=90)
    return f"{slug}-{sha1_short(url)}{suffix}"


def ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)

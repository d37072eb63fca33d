"""
URL identity, classification and resolution.

All functions are total: malformed input yields ``None`` (or an ``invalid``
result) instead of raising, and callers treat ``None`` as "skip this URL".
"""

from __future__ import annotations

import dataclasses
import posixpath
import re
from pathlib import PurePosixPath
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

import tldextract

from .models import LinkType, UrlCategory


SUPPORTED_SCHEMES = ("http", "https", "file")
NON_NAVIGABLE_SCHEMES = ("mailto:", "tel:", "javascript:", "data:", "about:", "sms:")


IMAGE_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "gif", "webp", "svg", "bmp", "tiff", "ico"})
DOCUMENT_EXTENSIONS = frozenset({"doc", "docx", "xls", "xlsx", "ppt", "pptx", "txt", "rtf", "odt"})
AUDIO_EXTENSIONS = frozenset({"mp3", "wav", "aac", "flac", "ogg", "m4a"})
VIDEO_EXTENSIONS = frozenset({"mp4", "mov", "avi", "mkv", "webm", "wmv", "m4v"})
ARCHIVE_EXTENSIONS = frozenset({"zip", "rar", "7z", "tar", "gz", "tgz", "bz2"})
DATA_EXTENSIONS = frozenset({"json", "xml", "csv", "rss", "atom"})
PAGE_EXTENSIONS = frozenset({"", "html", "htm", "xhtml", "php", "asp", "aspx", "jsp", "cfm", "shtml"})

API_PATH_RE = re.compile(r"/(?:api|v1|v2)/", re.I)


# ------------------------------ Normalization ------------------------------ #


def normalize(url: str) -> Optional[str]:
    """
    Canonical form used for identity comparison.

    Lowercases scheme and host, drops userinfo, default ports and the fragment,
    sorts query parameters, collapses duplicate slashes and trims a trailing
    slash except on the root path. ``normalize(normalize(u)) == normalize(u)``.
    """
    if not url or not url.strip():
        return None
    try:
        parts = urlsplit(url.strip())
        port = parts.port
    except ValueError:
        return None
    scheme = parts.scheme.lower()
    if scheme not in SUPPORTED_SCHEMES:
        return None

    netloc = parts.netloc.lower()
    if "@" in netloc:
        netloc = netloc.split("@", 1)[-1]
    if scheme in ("http", "https"):
        if not parts.hostname:
            return None
        if (scheme == "http" and port == 80) or (scheme == "https" and port == 443):
            netloc = netloc.rsplit(":", 1)[0]
        elif port is None and netloc.endswith(":"):
            netloc = netloc[:-1]

    path = parts.path or "/"
    path = re.sub(r"/{2,}", "/", path)
    if path != "/" and path.endswith("/"):
        path = path.rstrip("/") or "/"

    query = parts.query
    if query:
        q = parse_qsl(query, keep_blank_values=True)
        q.sort()
        query = urlencode(q, doseq=True)
    return urlunsplit((scheme, netloc, path, query, ""))


# ----------------------------- Classification ------------------------------ #


def url_extension(url: str) -> str:
    try:
        path = urlsplit(url).path
    except ValueError:
        return ""
    return PurePosixPath(path).suffix.lower().lstrip(".")


def _category_for_extension(ext: str) -> Optional[UrlCategory]:
    if ext == "pdf":
        return UrlCategory.PDF
    if ext in IMAGE_EXTENSIONS:
        return UrlCategory.IMAGE
    if ext in DOCUMENT_EXTENSIONS:
        return UrlCategory.DOCUMENT
    if ext in AUDIO_EXTENSIONS:
        return UrlCategory.AUDIO
    if ext in VIDEO_EXTENSIONS:
        return UrlCategory.VIDEO
    if ext in ARCHIVE_EXTENSIONS:
        return UrlCategory.ARCHIVE
    if ext in DATA_EXTENSIONS:
        return UrlCategory.DATA
    if ext in ("js", "mjs"):
        return UrlCategory.SCRIPT
    if ext == "css":
        return UrlCategory.STYLESHEET
    if ext in PAGE_EXTENSIONS:
        return None
    return UrlCategory.OTHER


def _category_for_content_type(content_type: str) -> Optional[UrlCategory]:
    ct = content_type.lower().split(";", 1)[0].strip()
    if not ct:
        return None
    if ct in ("text/html", "application/xhtml+xml"):
        return UrlCategory.PAGE
    if ct.startswith("image/"):
        return UrlCategory.IMAGE
    if ct == "application/pdf":
        return UrlCategory.PDF
    if ct.startswith("audio/"):
        return UrlCategory.AUDIO
    if ct.startswith("video/"):
        return UrlCategory.VIDEO
    if ct in ("application/zip", "application/x-gzip", "application/gzip", "application/x-tar"):
        return UrlCategory.ARCHIVE
    if "javascript" in ct:
        return UrlCategory.SCRIPT
    if ct == "text/css":
        return UrlCategory.STYLESHEET
    if "json" in ct or "xml" in ct or ct == "text/csv":
        return UrlCategory.DATA
    if ct in ("application/msword",) or ct.startswith("application/vnd.openxmlformats") or ct.startswith("application/vnd.ms-"):
        return UrlCategory.DOCUMENT
    return None


def classify(url: str, content_type: Optional[str] = None) -> UrlCategory:
    """Content category by extension first, then declared content type, default page."""
    by_ext = _category_for_extension(url_extension(url))
    if by_ext is not None:
        return by_ext
    if content_type:
        by_ct = _category_for_content_type(content_type)
        if by_ct is not None:
            return by_ct
    try:
        path = urlsplit(url).path
    except ValueError:
        return UrlCategory.OTHER
    if API_PATH_RE.search(path + "/"):
        return UrlCategory.API
    return UrlCategory.PAGE


def is_page(url: str, content_type: Optional[str] = None) -> bool:
    return classify(url, content_type) in (UrlCategory.PAGE, UrlCategory.API)


# ------------------------------- Resolution -------------------------------- #


def _as_base_url(base: str) -> str:
    if "://" in base:
        return base
    # Bare filesystem path: local-file crawl.
    return PurePosixPath(posixpath.abspath(base)).as_uri()


def resolve(relative: str, base: str) -> Optional[str]:
    """
    Absolute URL for ``relative`` found on a page at ``base``.

    Handles absolute, protocol-relative (``//host/x``), root-relative
    (``/x``) and ordinary relative references. ``base`` may be a filesystem
    path, in which case references resolve against the local directory tree.
    Returns ``None`` for fragments-only and non-navigable schemes.
    """
    if relative is None:
        return None
    ref = relative.strip()
    if not ref or ref.startswith("#"):
        return None
    if ref.lower().startswith(NON_NAVIGABLE_SCHEMES):
        return None
    try:
        base_url = _as_base_url(base)
        base_parts = urlsplit(base_url)
        if ref.startswith("//"):
            resolved = f"{base_parts.scheme or 'https'}:{ref}"
        elif re.match(r"^[a-zA-Z][a-zA-Z0-9+.-]*://", ref):
            resolved = ref
        elif base_parts.scheme == "file":
            resolved = _resolve_file(ref, base_parts.path)
        else:
            resolved = urljoin(base_url, ref)
        parts = urlsplit(resolved)
        parts.port
    except ValueError:
        return None
    if parts.scheme.lower() not in SUPPORTED_SCHEMES:
        return None
    if parts.scheme.lower() != "file" and not parts.hostname:
        return None
    return resolved


def _resolve_file(ref: str, base_path: str) -> str:
    path, _, rest = ref.partition("?")
    path = path.split("#", 1)[0]
    if path.startswith("/"):
        joined = posixpath.normpath(path)
    else:
        joined = posixpath.normpath(posixpath.join(posixpath.dirname(base_path) or "/", path))
    uri = PurePosixPath(joined).as_uri()
    return f"{uri}?{rest.split('#', 1)[0]}" if rest else uri


# --------------------------------- Domains --------------------------------- #


_TLD_EXTRACT: Optional[tldextract.TLDExtract] = None


def _tld_extract() -> tldextract.TLDExtract:
    # Offline: use the suffix list snapshot bundled with tldextract.
    global _TLD_EXTRACT
    if _TLD_EXTRACT is None:
        _TLD_EXTRACT = tldextract.TLDExtract(suffix_list_urls=(), cache_dir=None)
    return _TLD_EXTRACT


def host(url: str) -> str:
    try:
        return (urlsplit(url).hostname or "").lower()
    except ValueError:
        return ""


def base_domain(url: str) -> str:
    """Last two labels of the host (``www.a.example.com`` -> ``example.com``)."""
    h = host(url)
    labels = [p for p in h.split(".") if p]
    if len(labels) < 2:
        return h
    return ".".join(labels[-2:])


def registrable_domain(url: str) -> str:
    """Public-suffix aware registrable domain (``a.example.co.uk`` -> ``example.co.uk``)."""
    h = host(url)
    if not h:
        return ""
    ext = _tld_extract()(h)
    if ext.domain and ext.suffix:
        return f"{ext.domain}.{ext.suffix}"
    return h


def is_same_domain(a: str, b: str) -> bool:
    return host(a) == host(b)


def is_same_base_domain(a: str, b: str) -> bool:
    return base_domain(a) == base_domain(b)


def in_scope(url: str, root: str, use_public_suffix: bool = False) -> bool:
    try:
        scheme = urlsplit(url).scheme.lower()
        root_scheme = urlsplit(root).scheme.lower()
    except ValueError:
        return False
    if scheme == "file" or root_scheme == "file":
        return scheme == root_scheme
    if scheme not in ("http", "https"):
        return False
    if use_public_suffix:
        return registrable_domain(url) == registrable_domain(root)
    return is_same_base_domain(url, root)


def classify_link(href: str, page_url: str, root: str, use_public_suffix: bool = False) -> LinkType:
    ref = (href or "").strip()
    lowered = ref.lower()
    if lowered.startswith("mailto:"):
        return LinkType.MAILTO
    if lowered.startswith("tel:"):
        return LinkType.TEL
    if lowered.startswith("javascript:"):
        return LinkType.JAVASCRIPT
    if ref.startswith("#"):
        return LinkType.ANCHOR
    absolute = resolve(ref, page_url)
    if absolute is None:
        return LinkType.OTHER
    if not is_page(absolute):
        return LinkType.DOWNLOAD
    if in_scope(absolute, root, use_public_suffix):
        return LinkType.INTERNAL
    return LinkType.EXTERNAL


# -------------------------------- Validation ------------------------------- #


@dataclasses.dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    url: Optional[str] = None
    reason: Optional[str] = None
    warning: Optional[str] = None


LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "0.0.0.0", "::1"})
PRIVATE_PREFIXES = ("192.168.", "10.", "172.")


def validate(url: str) -> ValidationResult:
    if not url or not url.strip():
        return ValidationResult(False, reason="URL cannot be empty")
    try:
        parts = urlsplit(url.strip())
        parts.port
    except ValueError:
        return ValidationResult(False, reason="Invalid URL format")
    scheme = parts.scheme.lower()
    if not scheme:
        return ValidationResult(False, reason="URL must include a scheme (http:// or https://)")
    if scheme == "file":
        if not parts.path:
            return ValidationResult(False, reason="file URL must include a path")
        return ValidationResult(True, url=url.strip())
    if scheme not in ("http", "https"):
        return ValidationResult(False, reason="Only HTTP and HTTPS URLs are supported")
    hostname = parts.hostname or ""
    if not hostname:
        return ValidationResult(False, reason="URL must include a host")
    if hostname in LOCAL_HOSTS or hostname.startswith(PRIVATE_PREFIXES):
        return ValidationResult(True, url=url.strip(), warning="This appears to be a local address")
    return ValidationResult(True, url=url.strip())

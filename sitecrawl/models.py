"""
Plain data records passed between components and handed to collaborators.

Records that leave the core (pages, files, nodes, rules, snapshots) expose
``to_dict()`` returning JSON-serialisable data with stable ``id``/``url``
identity fields.
"""

from __future__ import annotations

import dataclasses
import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _plain(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bytes):
        return None
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: _plain(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_plain(v) for v in value]
    return value


class Record:
    def to_dict(self) -> dict[str, Any]:
        return _plain(self)


# ------------------------------- Enumerations ------------------------------ #


class CrawlStrategy(str, enum.Enum):
    BREADTH_FIRST = "breadth_first"
    DEPTH_FIRST = "depth_first"


class CrawlStatus(str, enum.Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPING = "stopping"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self in (CrawlStatus.INITIALIZING, CrawlStatus.RUNNING, CrawlStatus.PAUSED, CrawlStatus.STOPPING)


class ProcessingStatus(str, enum.Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    PARSING = "parsing"
    EXTRACTING = "extracting"
    COMPLETE = "complete"
    FAILED = "failed"
    SKIPPED = "skipped"


class LinkType(str, enum.Enum):
    INTERNAL = "internal"
    EXTERNAL = "external"
    ANCHOR = "anchor"
    MAILTO = "mailto"
    TEL = "tel"
    JAVASCRIPT = "javascript"
    DOWNLOAD = "download"
    OTHER = "other"


class UrlCategory(str, enum.Enum):
    PAGE = "page"
    IMAGE = "image"
    PDF = "pdf"
    DOCUMENT = "document"
    AUDIO = "audio"
    VIDEO = "video"
    ARCHIVE = "archive"
    SCRIPT = "script"
    STYLESHEET = "stylesheet"
    DATA = "data"
    API = "api"
    OTHER = "other"


class RuleType(str, enum.Enum):
    CSS_SELECTOR = "css_selector"
    XPATH = "xpath"
    REGEX = "regex"
    JSON_PATH = "json_path"
    META = "meta"


class TransformKind(str, enum.Enum):
    TRIM = "trim"
    LOWERCASE = "lowercase"
    UPPERCASE = "uppercase"
    STRIP_HTML = "strip_html"
    EXTRACT_NUMBERS = "extract_numbers"
    EXTRACT_EMAILS = "extract_emails"
    EXTRACT_URLS = "extract_urls"
    REPLACE = "replace"
    REGEX_CAPTURE = "regex_capture"
    PREFIX = "prefix"
    SUFFIX = "suffix"
    SPLIT = "split"
    JOIN = "join"
    DATE_FORMAT = "date_format"


class DownloadStatus(str, enum.Enum):
    PENDING = "pending"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class NodeStatus(str, enum.Enum):
    DISCOVERED = "discovered"
    QUEUED = "queued"
    FETCHING = "fetching"
    FETCHED = "fetched"
    FAILED = "failed"
    SKIPPED = "skipped"
    BLOCKED = "blocked"
    EXTERNAL = "external"


# --------------------------------- Frontier -------------------------------- #


@dataclasses.dataclass(frozen=True)
class QueuedURL(Record):
    url: str
    depth: int
    parent_url: Optional[str] = None
    discovered_at: datetime = dataclasses.field(default_factory=utcnow)


@dataclasses.dataclass
class CrawlProgress(Record):
    status: CrawlStatus = CrawlStatus.IDLE
    urls_discovered: int = 0
    urls_processed: int = 0
    urls_queued: int = 0
    pages_scraped: int = 0
    files_discovered: int = 0
    errors: int = 0
    current_url: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    stopped_early: bool = False

    def copy(self) -> "CrawlProgress":
        return dataclasses.replace(self)

    @property
    def elapsed(self) -> float:
        if self.started_at is None:
            return 0.0
        end = self.finished_at or utcnow()
        return (end - self.started_at).total_seconds()

    @property
    def pages_per_second(self) -> float:
        elapsed = self.elapsed
        return self.pages_scraped / elapsed if elapsed > 0 else 0.0


# ---------------------------------- Pages ---------------------------------- #


@dataclasses.dataclass(frozen=True)
class DiscoveredLink(Record):
    url: str
    text: str = ""
    title: Optional[str] = None
    rel: Optional[str] = None
    link_type: LinkType = LinkType.INTERNAL
    was_followed: bool = False


@dataclasses.dataclass(frozen=True)
class DiscoveredResource(Record):
    url: str
    category: UrlCategory
    alt: Optional[str] = None
    title: Optional[str] = None
    mime_type: Optional[str] = None
    media: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class ExtractionResult(Record):
    field_name: str
    values: tuple[str, ...] = ()
    success: bool = True
    error: Optional[str] = None

    @property
    def value(self) -> Optional[str]:
        return self.values[0] if self.values else None


@dataclasses.dataclass(frozen=True)
class ScrapedPage(Record):
    url: str
    final_url: str
    depth: int
    status_code: int
    parent_url: Optional[str] = None
    content_type: Optional[str] = None
    headers: tuple[tuple[str, str], ...] = ()
    html: str = ""
    text: str = ""
    title: Optional[str] = None
    meta_description: Optional[str] = None
    meta_keywords: tuple[str, ...] = ()
    metadata: tuple[tuple[str, str], ...] = ()
    links: tuple[DiscoveredLink, ...] = ()
    images: tuple[DiscoveredResource, ...] = ()
    scripts: tuple[DiscoveredResource, ...] = ()
    stylesheets: tuple[DiscoveredResource, ...] = ()
    extracted: tuple[ExtractionResult, ...] = ()
    failed_fields: tuple[str, ...] = ()
    processing_status: ProcessingStatus = ProcessingStatus.COMPLETE
    redirect_chain: tuple[str, ...] = ()
    response_time: float = 0.0
    id: str = dataclasses.field(default_factory=new_id)
    scraped_at: datetime = dataclasses.field(default_factory=utcnow)

    @property
    def extracted_data(self) -> dict[str, tuple[str, ...]]:
        return {r.field_name: r.values for r in self.extracted if r.success}

    @property
    def meta(self) -> dict[str, str]:
        return dict(self.metadata)


# ------------------------------ Extraction rules --------------------------- #


@dataclasses.dataclass(frozen=True)
class TransformOperation(Record):
    kind: TransformKind
    pattern: Optional[str] = None
    replacement: Optional[str] = None
    value: Optional[str] = None
    group: int = 1
    separator: Optional[str] = None
    input_format: Optional[str] = None
    output_format: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class DataTransformation(Record):
    operations: tuple[TransformOperation, ...] = ()


@dataclasses.dataclass(frozen=True)
class ExtractionRule(Record):
    field_name: str
    rule_type: RuleType
    selector: str
    attribute: Optional[str] = None
    transformation: Optional[DataTransformation] = None
    is_required: bool = False
    default_value: Optional[str] = None
    is_enabled: bool = True
    id: str = dataclasses.field(default_factory=new_id)


# ---------------------------------- Files ---------------------------------- #


@dataclasses.dataclass
class DownloadedFile(Record):
    source_url: str
    source_page_url: Optional[str] = None
    local_path: Optional[str] = None
    file_name: str = ""
    size: int = 0
    mime_type: Optional[str] = None
    file_type: UrlCategory = UrlCategory.OTHER
    sha256: Optional[str] = None
    md5: Optional[str] = None
    is_duplicate: bool = False
    duplicate_group_id: Optional[str] = None
    original_file_id: Optional[str] = None
    download_status: DownloadStatus = DownloadStatus.PENDING
    error_message: Optional[str] = None
    downloaded_at: Optional[datetime] = None
    id: str = dataclasses.field(default_factory=new_id)


@dataclasses.dataclass
class DuplicateGroup(Record):
    hash: str
    file_ids: list[str]
    original_file_id: str
    total_size: int = 0
    duplicate_count: int = 0
    id: str = dataclasses.field(default_factory=new_id)


@dataclasses.dataclass(frozen=True)
class DuplicateCheck(Record):
    is_duplicate: bool
    original_file_id: Optional[str] = None
    duplicate_group_id: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class DuplicateReport(Record):
    total_files: int
    unique_files: int
    duplicate_groups: int
    duplicate_files: int
    total_size: int
    potential_savings: int


# -------------------------------- Site graph ------------------------------- #


@dataclasses.dataclass
class SiteNode(Record):
    url: str
    normalized_url: str
    depth: int = 0
    parent_id: Optional[str] = None
    child_ids: list[str] = dataclasses.field(default_factory=list)
    status: NodeStatus = NodeStatus.DISCOVERED
    file_type: UrlCategory = UrlCategory.PAGE
    title: Optional[str] = None
    status_code: Optional[int] = None
    content_type: Optional[str] = None
    discovered_at: datetime = dataclasses.field(default_factory=utcnow)
    fetched_at: Optional[datetime] = None
    id: str = dataclasses.field(default_factory=new_id)

    def copy(self) -> "SiteNode":
        return dataclasses.replace(self, child_ids=list(self.child_ids))


@dataclasses.dataclass(frozen=True)
class SiteMapStats(Record):
    total_nodes: int = 0
    pages: int = 0
    resources: int = 0
    max_depth: int = 0
    orphans: int = 0
    broken: int = 0
    external: int = 0


@dataclasses.dataclass(frozen=True)
class TreeNode(Record):
    node: SiteNode
    children: tuple["TreeNode", ...] = ()


# ----------------------------- Change detection ---------------------------- #


@dataclasses.dataclass(frozen=True)
class Snapshot(Record):
    page_url: str
    captured_at: datetime
    content_hash: str
    text_content: str
    title: Optional[str] = None
    compressed_content: Optional[bytes] = None
    id: str = dataclasses.field(default_factory=new_id)


@dataclasses.dataclass(frozen=True)
class ModifiedLine(Record):
    line_number: int
    old: str
    new: str


@dataclasses.dataclass(frozen=True)
class ContentDiff(Record):
    old_snapshot_id: str
    new_snapshot_id: str
    added_lines: tuple[str, ...] = ()
    removed_lines: tuple[str, ...] = ()
    modified_lines: tuple[ModifiedLine, ...] = ()
    change_percentage: float = 0.0

    @property
    def has_changes(self) -> bool:
        return bool(self.added_lines or self.removed_lines or self.modified_lines)

    @property
    def summary(self) -> str:
        parts = []
        if self.added_lines:
            parts.append(f"{len(self.added_lines)} lines added")
        if self.removed_lines:
            parts.append(f"{len(self.removed_lines)} lines removed")
        if self.modified_lines:
            parts.append(f"{len(self.modified_lines)} lines modified")
        return ", ".join(parts) if parts else "No changes"


@dataclasses.dataclass
class WatchRule(Record):
    page_url: str
    keywords: tuple[str, ...] = ()
    change_threshold: float = 10.0
    is_enabled: bool = True
    last_checked: Optional[datetime] = None
    last_change_detected: Optional[datetime] = None
    id: str = dataclasses.field(default_factory=new_id)


@dataclasses.dataclass(frozen=True)
class WatchAlert(Record):
    rule_id: str
    page_url: str
    reason: str
    matched_keywords: tuple[str, ...] = ()
    change_percentage: float = 0.0
    triggered_at: datetime = dataclasses.field(default_factory=utcnow)

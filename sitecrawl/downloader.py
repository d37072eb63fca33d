"""
Concurrent file downloads with streamed hashing.

Transfers are capped by a semaphore; callers either ``await download(url)``
directly or push URLs onto the bounded queue with ``enqueue`` and collect the
results with ``drain``. Every transfer is written chunk by chunk to a
``.part`` file while SHA-256 and MD5 are updated, then renamed into place.
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import logging
import mimetypes
import re
from pathlib import Path, PurePosixPath
from typing import Any, Mapping, Optional
from urllib.parse import unquote, urlsplit
from urllib.request import url2pathname

import httpx

from .dedup import DuplicateDetector
from .errors import DownloadError, FileTooLargeError
from .log import get_logger
from .models import DownloadedFile, DownloadStatus, UrlCategory, utcnow
from .urls import classify
from .utils import ensure_dir, file_safe_slug, sha1_short


CHUNK_SIZE = 64 * 1024
CONTENT_DISPOSITION_RE = re.compile(r"filename\*?=(?:UTF-8'')?\"?([^\";]+)\"?", re.I)

EXTENSION_OVERRIDES = {
    "image/jpeg": ".jpg",
    "text/plain": ".txt",
    "application/octet-stream": "",
}


def extension_for_mime(mime_type: Optional[str]) -> str:
    if not mime_type:
        return ""
    mime = mime_type.split(";", 1)[0].strip().lower()
    if mime in EXTENSION_OVERRIDES:
        return EXTENSION_OVERRIDES[mime]
    return mimetypes.guess_extension(mime) or ""


class _Hasher:
    def __init__(self, enabled: bool) -> None:
        self.enabled = enabled
        self.sha256 = hashlib.sha256()
        self.md5 = hashlib.md5()
        self.size = 0

    def update(self, chunk: bytes) -> None:
        self.size += len(chunk)
        if self.enabled:
            self.sha256.update(chunk)
            self.md5.update(chunk)


class FileDownloader:
    def __init__(
        self,
        output_dir: Path,
        *,
        headers: Optional[Mapping[str, str]] = None,
        timeout: float = 60.0,
        max_concurrent: int = 4,
        max_file_size_mb: int = 500,
        organize_by_type: bool = True,
        preserve_original_names: bool = True,
        compute_hashes: bool = True,
        detector: Optional[DuplicateDetector] = None,
        queue_size: int = 1000,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        client: Optional[httpx.AsyncClient] = None,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self.output_dir = Path(output_dir)
        self.max_concurrent = max(1, max_concurrent)
        self.max_bytes = max_file_size_mb * 1024 * 1024
        self.organize_by_type = organize_by_type
        self.preserve_original_names = preserve_original_names
        self.compute_hashes = compute_hashes
        self.detector = detector
        self.logger = logger or get_logger("downloader")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            headers=dict(headers or {}),
            timeout=httpx.Timeout(timeout),
            follow_redirects=True,
            transport=transport,
        )
        self._sem = asyncio.Semaphore(self.max_concurrent)
        self._queue: asyncio.Queue[tuple[str, Optional[str]]] = asyncio.Queue(maxsize=max(1, queue_size))
        self._workers: list[asyncio.Task] = []
        self._results: list[DownloadedFile] = []
        self._reserved: set[Path] = set()

    async def __aenter__(self) -> "FileDownloader":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        for w in self._workers:
            w.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await asyncio.gather(*self._workers)
        self._workers.clear()
        if self._owns_client:
            await self._client.aclose()

    @property
    def results(self) -> list[DownloadedFile]:
        return list(self._results)

    # ------------------------------ Queue ---------------------------------- #

    async def enqueue(self, url: str, source_page_url: Optional[str] = None) -> None:
        if not self._workers:
            self._workers = [asyncio.create_task(self._worker()) for _ in range(self.max_concurrent)]
        await self._queue.put((url, source_page_url))

    async def drain(self) -> list[DownloadedFile]:
        """Wait for every queued download to finish and return all results so far."""
        await self._queue.join()
        return self.results

    async def _worker(self) -> None:
        while True:
            url, source_page_url = await self._queue.get()
            try:
                await self.download(url, source_page_url)
            except Exception as e:
                self.logger.exception(f"Unhandled error downloading {url}: {e}")
            finally:
                self._queue.task_done()

    # ---------------------------- Transfers -------------------------------- #

    async def download(self, url: str, source_page_url: Optional[str] = None) -> DownloadedFile:
        file = DownloadedFile(source_url=url, source_page_url=source_page_url)
        async with self._sem:
            file.download_status = DownloadStatus.DOWNLOADING
            try:
                if urlsplit(url).scheme.lower() == "file":
                    await self._copy_local(file)
                else:
                    await self._fetch_remote(file)
            except (DownloadError, httpx.HTTPError, OSError) as e:
                file.download_status = DownloadStatus.FAILED
                file.error_message = str(e)
                self.logger.warning(f"Download failed for {url}: {e}")
                if file.local_path:
                    Path(file.local_path + ".part").unlink(missing_ok=True)
                    self._reserved.discard(Path(file.local_path))
                file.local_path = None
            else:
                file.download_status = DownloadStatus.COMPLETED
                file.downloaded_at = utcnow()
                self.logger.info(f"Downloaded {file.file_type.value}: {url} -> {file.file_name} ({file.size} bytes)")
        if self.detector is not None and file.download_status is DownloadStatus.COMPLETED:
            self.detector.annotate(file)
        self._results.append(file)
        return file

    async def _fetch_remote(self, file: DownloadedFile) -> None:
        url = file.source_url
        async with self._client.stream("GET", url) as resp:
            if resp.status_code >= 400:
                raise DownloadError(url, f"HTTP {resp.status_code}")
            declared = resp.headers.get("Content-Length")
            if declared and declared.isdigit() and int(declared) > self.max_bytes:
                raise FileTooLargeError(url, self.max_bytes)
            mime = resp.headers.get("Content-Type")
            file.mime_type = mime.split(";", 1)[0].strip() if mime else None
            target = self._target_path(file, resp.headers.get("Content-Disposition", ""))
            part = target.with_name(target.name + ".part")
            hasher = _Hasher(self.compute_hashes)
            with part.open("wb") as f:
                async for chunk in resp.aiter_bytes(CHUNK_SIZE):
                    if not chunk:
                        continue
                    hasher.update(chunk)
                    if hasher.size > self.max_bytes:
                        raise FileTooLargeError(url, self.max_bytes)
                    f.write(chunk)
        self._finish(file, part, target, hasher)

    async def _copy_local(self, file: DownloadedFile) -> None:
        src = Path(url2pathname(unquote(urlsplit(file.source_url).path)))
        if not src.is_file():
            raise DownloadError(file.source_url, "file not found")
        if src.stat().st_size > self.max_bytes:
            raise FileTooLargeError(file.source_url, self.max_bytes)
        file.mime_type = mimetypes.guess_type(src.name)[0]
        target = self._target_path(file, "")
        part = target.with_name(target.name + ".part")
        hasher = _Hasher(self.compute_hashes)
        with src.open("rb") as fin, part.open("wb") as fout:
            for chunk in iter(lambda: fin.read(CHUNK_SIZE), b""):
                hasher.update(chunk)
                fout.write(chunk)
                await asyncio.sleep(0)
        self._finish(file, part, target, hasher)

    def _finish(self, file: DownloadedFile, part: Path, target: Path, hasher: _Hasher) -> None:
        part.replace(target)
        file.size = hasher.size
        if self.compute_hashes:
            file.sha256 = hasher.sha256.hexdigest()
            file.md5 = hasher.md5.hexdigest()

    # ------------------------------ Naming --------------------------------- #

    def _target_path(self, file: DownloadedFile, content_disposition: str) -> Path:
        url = file.source_url
        file.file_type = classify(url, file.mime_type)
        if file.file_type in (UrlCategory.PAGE, UrlCategory.API):
            file.file_type = UrlCategory.OTHER
        out_dir = self.output_dir / file.file_type.value if self.organize_by_type else self.output_dir
        ensure_dir(out_dir)

        m = CONTENT_DISPOSITION_RE.search(content_disposition or "")
        candidate = PurePosixPath(unquote(m.group(1))).name if m else PurePosixPath(unquote(urlsplit(url).path)).name
        suffix = PurePosixPath(candidate).suffix.lower() or extension_for_mime(file.mime_type)
        stem = file_safe_slug(PurePosixPath(candidate).stem or "download", maxlen=90)
        if not self.preserve_original_names:
            stem = f"{stem}-{sha1_short(url)}"

        path = out_dir / f"{stem}{suffix}"
        n = 1
        while path.exists() or path in self._reserved:
            path = out_dir / f"{stem}-{n}{suffix}"
            n += 1
        self._reserved.add(path)
        file.file_name = path.name
        file.local_path = str(path)
        return path

from __future__ import annotations

import dataclasses
import hashlib
from pathlib import Path
from typing import Optional

from .models import DownloadedFile, DuplicateCheck, DuplicateGroup, DuplicateReport


HASH_CHUNK_SIZE = 1024 * 1024


def hash_file(path: Path, chunk_size: int = HASH_CHUNK_SIZE) -> tuple[str, str]:
    """SHA-256 and MD5 of a file, read in fixed-size chunks."""
    sha256 = hashlib.sha256()
    md5 = hashlib.md5()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            sha256.update(chunk)
            md5.update(chunk)
    return sha256.hexdigest(), md5.hexdigest()


class DuplicateDetector:
    """
    Content-hash index over downloaded files.

    The first file seen with a hash is the original; every later file with
    the same hash joins that hash's ``DuplicateGroup``. A group exists only
    while it has at least two members.
    """

    def __init__(self) -> None:
        self._files_by_hash: dict[str, list[str]] = {}
        self._hash_by_file: dict[str, str] = {}
        self._size_by_file: dict[str, int] = {}
        self._groups: dict[str, DuplicateGroup] = {}

    def register(self, file_id: str, content_hash: str, size: int) -> DuplicateCheck:
        if file_id in self._hash_by_file:
            return self._status(file_id)
        members = self._files_by_hash.setdefault(content_hash, [])
        members.append(file_id)
        self._hash_by_file[file_id] = content_hash
        self._size_by_file[file_id] = size
        if len(members) == 1:
            return DuplicateCheck(is_duplicate=False)

        group = self._groups.get(content_hash)
        if group is None:
            group = DuplicateGroup(hash=content_hash, file_ids=[], original_file_id=members[0])
            self._groups[content_hash] = group
        group.file_ids = list(members)
        self._recount(group)
        return DuplicateCheck(is_duplicate=True, original_file_id=group.original_file_id, duplicate_group_id=group.id)

    def remove(self, file_id: str) -> None:
        content_hash = self._hash_by_file.pop(file_id, None)
        self._size_by_file.pop(file_id, None)
        if content_hash is None:
            return
        members = self._files_by_hash.get(content_hash, [])
        if file_id in members:
            members.remove(file_id)
        if not members:
            self._files_by_hash.pop(content_hash, None)
        group = self._groups.get(content_hash)
        if group is None:
            return
        if len(members) <= 1:
            del self._groups[content_hash]
            return
        group.file_ids = list(members)
        group.original_file_id = members[0]
        self._recount(group)

    def annotate(self, file: DownloadedFile) -> DownloadedFile:
        """Register a downloaded file by its SHA-256 and copy the verdict onto it."""
        if not file.sha256:
            return file
        check = self.register(file.id, file.sha256, file.size)
        file.is_duplicate = check.is_duplicate
        file.original_file_id = check.original_file_id
        file.duplicate_group_id = check.duplicate_group_id
        return file

    def _recount(self, group: DuplicateGroup) -> None:
        size = self._size_by_file.get(group.original_file_id, 0)
        group.total_size = size * len(group.file_ids)
        group.duplicate_count = len(group.file_ids) - 1

    def _status(self, file_id: str) -> DuplicateCheck:
        content_hash = self._hash_by_file[file_id]
        group = self._groups.get(content_hash)
        if group is None or group.original_file_id == file_id:
            return DuplicateCheck(is_duplicate=False, duplicate_group_id=group.id if group else None)
        return DuplicateCheck(is_duplicate=True, original_file_id=group.original_file_id, duplicate_group_id=group.id)

    # ------------------------------ Queries -------------------------------- #

    def is_known(self, content_hash: str) -> bool:
        return content_hash in self._files_by_hash

    def original_for(self, content_hash: str) -> Optional[str]:
        members = self._files_by_hash.get(content_hash)
        return members[0] if members else None

    def group_for_hash(self, content_hash: str) -> Optional[DuplicateGroup]:
        group = self._groups.get(content_hash)
        return dataclasses.replace(group, file_ids=list(group.file_ids)) if group else None

    def groups(self) -> list[DuplicateGroup]:
        return [dataclasses.replace(g, file_ids=list(g.file_ids)) for g in self._groups.values()]

    def report(self) -> DuplicateReport:
        total_size = sum(self._size_by_file.values())
        savings = sum(g.total_size - g.total_size // len(g.file_ids) for g in self._groups.values())
        return DuplicateReport(
            total_files=len(self._hash_by_file),
            unique_files=len(self._files_by_hash),
            duplicate_groups=len(self._groups),
            duplicate_files=sum(g.duplicate_count for g in self._groups.values()),
            total_size=total_size,
            potential_savings=savings,
        )

    def clear(self) -> None:
        self._files_by_hash.clear()
        self._hash_by_file.clear()
        self._size_by_file.clear()
        self._groups.clear()

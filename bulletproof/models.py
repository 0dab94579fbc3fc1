from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Mapping


_SHA256_RE = re.compile(r"[0-9a-f]{64}")


def generate_snapshot_id(timestamp: datetime) -> str:
    """Format a capture instant as ``yyyyMMdd-HHmmss-SSS``."""
    return f"{timestamp.strftime('%Y%m%d-%H%M%S')}-{timestamp.microsecond // 1000:03d}"


def ensure_aware(value: datetime) -> datetime:
    # Naive timestamps are read as local time.
    if value.tzinfo is None:
        return value.astimezone()
    return value


def parse_timestamp(value: str) -> datetime:
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_aware(datetime.fromisoformat(text))


@dataclass(frozen=True, slots=True)
class FileRecord:
    path: str
    sha256: str
    size: int
    modified: datetime

    def __post_init__(self) -> None:
        if not _SHA256_RE.fullmatch(self.sha256):
            raise ValueError(f"Invalid SHA-256 digest for {self.path}: {self.sha256!r}")
        if self.size < 0:
            raise ValueError(f"Negative size for {self.path}: {self.size}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "hash": self.sha256,
            "size": self.size,
            "modified": self.modified.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FileRecord":
        return cls(
            path=str(data["path"]),
            sha256=str(data["hash"]),
            size=int(data["size"]),
            modified=parse_timestamp(str(data["modified"])),
        )


@dataclass(frozen=True, slots=True)
class Snapshot:
    id: str
    timestamp: datetime
    files: Mapping[str, FileRecord]
    message: str = ""

    def __post_init__(self) -> None:
        for key, record in self.files.items():
            if key != record.path:
                raise ValueError(f"Snapshot key {key!r} does not match record path {record.path!r}")
        object.__setattr__(self, "files", MappingProxyType(dict(self.files)))

    def __str__(self) -> str:
        return f"Snapshot({self.id}, {len(self.files)} files)"

    @property
    def file_count(self) -> int:
        return len(self.files)

    def info(self) -> "SnapshotInfo":
        return SnapshotInfo(
            id=self.id,
            timestamp=self.timestamp,
            message=self.message,
            file_count=len(self.files),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "message": self.message,
            "files": {path: self.files[path].to_dict() for path in sorted(self.files)},
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Snapshot":
        raw_files = data.get("files") or {}
        files = {str(path): FileRecord.from_dict(entry) for path, entry in raw_files.items()}
        return cls(
            id=str(data["id"]),
            timestamp=parse_timestamp(str(data["timestamp"])),
            files=files,
            message=str(data.get("message") or ""),
        )


@dataclass(frozen=True, slots=True)
class SnapshotInfo:
    id: str
    timestamp: datetime
    message: str = ""
    file_count: int = 0

    def __str__(self) -> str:
        suffix = f" - {self.message}" if self.message else ""
        return f"{self.id} ({self.file_count} files){suffix}"


@dataclass(frozen=True, slots=True)
class SnapshotDiff:
    from_id: str
    to_id: str
    added: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()
    modified: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.modified)

    @property
    def total_changes(self) -> int:
        return len(self.added) + len(self.removed) + len(self.modified)

    def summary(self) -> str:
        if self.is_empty:
            return "No changes"
        parts: list[str] = []
        if self.added:
            parts.append(f"+{len(self.added)} added")
        if self.modified:
            parts.append(f"~{len(self.modified)} modified")
        if self.removed:
            parts.append(f"-{len(self.removed)} removed")
        return ", ".join(parts)


@dataclass(slots=True)
class BackupResult:
    snapshot: Snapshot
    diff: SnapshotDiff | None = None
    skipped: bool = False
    dry_run: bool = False
    warnings: list[str] = field(default_factory=list)

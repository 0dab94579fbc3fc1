from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Sequence

from bulletproof.errors import CaptureError, DuplicateSourceError, SourceNotFoundError
from bulletproof.filters import PathFilter, build_path_filter
from bulletproof.models import FileRecord, Snapshot, generate_snapshot_id

if TYPE_CHECKING:
    from rich.console import Console


logger = logging.getLogger(__name__)

HASH_CHUNK_SIZE = 1024 * 1024


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sha256_file(
    path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
    *,
    on_chunk: Callable[[int], None] | None = None,
) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        while True:
            chunk = fh.read(chunk_size)
            if not chunk:
                break
            digest.update(chunk)
            if on_chunk is not None:
                on_chunk(len(chunk))
    return digest.hexdigest()


@dataclass(slots=True)
class _Candidate:
    file_path: Path
    relative_path: str
    size: int


def normalize_sources(sources: Sequence[str | Path]) -> list[Path]:
    """Validate source roots and reject ambiguous namespaces up front."""
    roots = [Path(source).expanduser().resolve() for source in sources]
    if not roots:
        raise SourceNotFoundError("No source paths given")

    seen: dict[str, Path] = {}
    if len(roots) > 1:
        for root in roots:
            existing = seen.get(root.name)
            if existing is not None:
                raise DuplicateSourceError(existing, root)
            seen[root.name] = root

    for root in roots:
        if not root.exists():
            raise SourceNotFoundError(f"Directory does not exist: {root}")
        if not root.is_dir():
            raise SourceNotFoundError(f"Path is not a directory: {root}")
    return roots


def _namespace(root: Path, relative_path: str, multi_source: bool) -> str:
    return f"{root.name}/{relative_path}" if multi_source else relative_path


def _discover_candidates(
    roots: list[Path], path_filter: PathFilter
) -> tuple[list[_Candidate], int]:
    candidates: list[_Candidate] = []
    total_bytes = 0
    multi_source = len(roots) > 1

    for root in roots:

        def _on_walk_error(exc: OSError, root: Path = root) -> None:
            failed = Path(exc.filename or root)
            try:
                rel = failed.relative_to(root).as_posix()
            except ValueError:
                rel = str(failed)
            raise CaptureError(_namespace(root, rel, multi_source), exc)

        for dirpath, dirnames, filenames in os.walk(root, onerror=_on_walk_error):
            current = Path(dirpath)
            rel_dir = current.relative_to(root).as_posix()
            rel_dir = "" if rel_dir == "." else rel_dir

            kept_dirs: list[str] = []
            for name in sorted(dirnames):
                rel = f"{rel_dir}/{name}" if rel_dir else name
                if path_filter.excludes(rel, is_dir=True):
                    continue
                if (current / name).is_symlink():
                    logger.debug("Not following symlinked directory %s", rel)
                    continue
                kept_dirs.append(name)
            dirnames[:] = kept_dirs

            for name in sorted(filenames):
                rel = f"{rel_dir}/{name}" if rel_dir else name
                if path_filter.excludes(rel):
                    continue
                file_path = current / name
                if not file_path.is_file():
                    logger.warning("Skipping %s: broken or circular link, or not a regular file", rel)
                    continue
                try:
                    size = file_path.stat().st_size
                except OSError as exc:
                    raise CaptureError(_namespace(root, rel, multi_source), exc) from exc
                candidates.append(_Candidate(file_path, _namespace(root, rel, multi_source), size))
                total_bytes += size

    candidates.sort(key=lambda candidate: candidate.relative_path)
    return candidates, total_bytes


def _record_from_candidate(
    candidate: _Candidate,
    *,
    on_hash_chunk: Callable[[int], None] | None = None,
) -> FileRecord:
    try:
        sha256 = sha256_file(candidate.file_path, on_chunk=on_hash_chunk)
        stat = candidate.file_path.stat()
    except OSError as exc:
        raise CaptureError(candidate.relative_path, exc) from exc

    return FileRecord(
        path=candidate.relative_path,
        sha256=sha256,
        size=stat.st_size,
        modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).astimezone(),
    )


def _assemble(
    records: list[FileRecord], message: str, timestamp: datetime | None
) -> Snapshot:
    timestamp = timestamp or datetime.now().astimezone()
    return Snapshot(
        id=generate_snapshot_id(timestamp),
        timestamp=timestamp,
        files={record.path: record for record in records},
        message=message,
    )


def build_snapshot(
    sources: Sequence[str | Path],
    exclusions: Sequence[str] | None = None,
    message: str = "",
    timestamp: datetime | None = None,
) -> Snapshot:
    roots = normalize_sources(sources)
    path_filter = build_path_filter(list(exclusions or []))
    candidates, _ = _discover_candidates(roots, path_filter)
    records = [_record_from_candidate(candidate) for candidate in candidates]
    logger.debug("Captured %d file(s) from %d source(s)", len(records), len(roots))
    return _assemble(records, message, timestamp)


def resolve_source_file(sources: Sequence[str | Path], path: str) -> Path:
    """Map a snapshot path back to the file it was captured from."""
    roots = [Path(source).expanduser().resolve() for source in sources]
    if len(roots) == 1:
        return roots[0] / Path(path)
    head, _, rest = path.partition("/")
    for root in roots:
        if root.name == head and rest:
            return root / Path(rest)
    raise SourceNotFoundError(f"Could not find source for path: {path}")


def build_snapshot_with_progress(
    sources: Sequence[str | Path],
    exclusions: Sequence[str] | None = None,
    message: str = "",
    timestamp: datetime | None = None,
    *,
    console: "Console | None" = None,
) -> Snapshot:
    from rich.progress import (
        BarColumn,
        DownloadColumn,
        Progress,
        SpinnerColumn,
        TaskProgressColumn,
        TextColumn,
        TimeRemainingColumn,
        TransferSpeedColumn,
    )

    def _shorten_path(path: str, max_len: int = 64) -> str:
        if len(path) <= max_len:
            return path
        keep = max_len - 3
        head = keep // 2
        tail = keep - head
        return f"{path[:head]}...{path[-tail:]}"

    roots = normalize_sources(sources)
    path_filter = build_path_filter(list(exclusions or []))

    if console is not None:
        with console.status("Discovering files to snapshot..."):
            candidates, total_bytes = _discover_candidates(roots, path_filter)
    else:
        candidates, total_bytes = _discover_candidates(roots, path_filter)

    total_files = len(candidates)
    if total_files == 0:
        return _assemble([], message, timestamp)

    progress_total = total_bytes if total_bytes > 0 else total_files
    processed_bytes = 0
    records: list[FileRecord] = []

    with Progress(
        SpinnerColumn(),
        TextColumn("[bold]Hashing"),
        BarColumn(),
        TaskProgressColumn(),
        DownloadColumn(binary_units=True),
        TransferSpeedColumn(),
        TimeRemainingColumn(),
        TextColumn("{task.fields[file_progress]}"),
        TextColumn("{task.fields[path]}"),
        console=console,
        transient=True,
        expand=True,
    ) as progress:
        task_id = progress.add_task(
            "hash",
            total=progress_total,
            file_progress=f"0/{total_files} files",
            path="",
        )

        def _advance_bytes(delta: int) -> None:
            nonlocal processed_bytes
            processed_bytes += delta
            progress.update(task_id, completed=min(processed_bytes, progress_total))

        for index, candidate in enumerate(candidates, start=1):
            progress.update(
                task_id,
                file_progress=f"{index}/{total_files} files",
                path=_shorten_path(candidate.relative_path),
            )
            records.append(
                _record_from_candidate(
                    candidate,
                    on_hash_chunk=_advance_bytes if total_bytes > 0 else None,
                )
            )
            if total_bytes == 0:
                progress.advance(task_id, 1)

    return _assemble(records, message, timestamp)

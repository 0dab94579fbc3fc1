"""Git-style unified diff rendering for snapshot comparisons.

Two modes are available. Metadata mode only needs the two ``Snapshot``
objects and shows hashes and sizes. Content mode also reads the file bytes
from two filesystem roots and produces line hunks for modified text files.

The line matcher is a single greedy pass, not an LCS: lines that moved
render as a deletion plus an insertion.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

from bulletproof.models import Snapshot, SnapshotDiff


logger = logging.getLogger(__name__)

CONTEXT_LINES = 3
HASH_PREVIEW_CHARS = 16


@dataclass(slots=True)
class Hunk:
    old_start: int
    new_start: int
    old_count: int = 0
    new_count: int = 0
    lines: list[str] = field(default_factory=list)

    def header(self) -> str:
        # Empty ranges point at the line before, as git does.
        old_start = self.old_start if self.old_count else self.old_start - 1
        new_start = self.new_start if self.new_count else self.new_start - 1
        return f"@@ -{old_start},{self.old_count} +{new_start},{self.new_count} @@"

    def render(self) -> str:
        return "\n".join([self.header(), *self.lines]) + "\n"


def split_lines(content: str) -> list[str]:
    if not content:
        return []
    lines = content.split("\n")
    if lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


def is_binary(data: bytes) -> bool:
    if b"\x00" in data:
        return True
    try:
        data.decode("utf-8")
    except UnicodeDecodeError:
        return True
    return False


def generate_hunks(
    old_lines: Sequence[str],
    new_lines: Sequence[str],
    context: int = CONTEXT_LINES,
) -> list[Hunk]:
    hunks: list[Hunk] = []
    current: Hunk | None = None
    trailing = 0
    old_len = len(old_lines)
    new_len = len(new_lines)
    i = j = 0
    # First line indexes not yet shown by a closed hunk.
    old_floor = new_floor = 0

    while i < old_len or j < new_len:
        if i < old_len and j < new_len and old_lines[i] == new_lines[j]:
            if current is not None:
                current.lines.append(" " + old_lines[i])
                current.old_count += 1
                current.new_count += 1
                trailing += 1
                if trailing >= context:
                    hunks.append(current)
                    current = None
                    trailing = 0
                    old_floor, new_floor = i + 1, j + 1
            i += 1
            j += 1
            continue

        if current is None:
            lead = min(context, i - old_floor, j - new_floor)
            current = Hunk(
                old_start=i - lead + 1,
                new_start=j - lead + 1,
                old_count=lead,
                new_count=lead,
                lines=[" " + old_lines[k] for k in range(i - lead, i)],
            )
            trailing = 0

        if i < old_len and (j >= new_len or old_lines[i] != new_lines[j]):
            current.lines.append("-" + old_lines[i])
            current.old_count += 1
            i += 1
            trailing = 0
        if j < new_len and (i >= old_len or (i > 0 and old_lines[i - 1] != new_lines[j])):
            current.lines.append("+" + new_lines[j])
            current.new_count += 1
            j += 1
            trailing = 0

    if current is not None:
        hunks.append(current)
    return hunks


def _file_header(path: str, *, old: str | None = None, new: str | None = None) -> list[str]:
    return [
        f"diff --git a/{path} b/{path}",
        f"--- {old or 'a/' + path}",
        f"+++ {new or 'b/' + path}",
    ]


def _render_added(path: str, to: Snapshot) -> str:
    lines = [f"diff --git a/{path} b/{path}", "new file", "--- /dev/null", f"+++ b/{path}"]
    record = to.files.get(path)
    if record is not None:
        lines.append("@@ -0,0 +1,1 @@")
        lines.append(f"+[File added: {path}, {record.size} bytes]")
    return "\n".join(lines) + "\n"


def _render_removed(path: str, from_: Snapshot) -> str:
    lines = [f"diff --git a/{path} b/{path}", "deleted file", f"--- a/{path}", "+++ /dev/null"]
    record = from_.files.get(path)
    if record is not None:
        lines.append("@@ -1,1 +0,0 @@")
        lines.append(f"-[File removed: {path}, {record.size} bytes]")
    return "\n".join(lines) + "\n"


def _render_modified_metadata(path: str, from_: Snapshot, to: Snapshot) -> str:
    lines = _file_header(path)
    old = from_.files.get(path)
    new = to.files.get(path)
    if old is not None and new is not None:
        lines.extend(
            [
                "@@ -1,3 +1,3 @@",
                f" File: {path}",
                f"-Hash: {old.sha256[:HASH_PREVIEW_CHARS]}...",
                f"-Size: {old.size} bytes",
                f"+Hash: {new.sha256[:HASH_PREVIEW_CHARS]}...",
                f"+Size: {new.size} bytes",
            ]
        )
    return "\n".join(lines) + "\n"


def render_content_diff(path: str, old_data: bytes, new_data: bytes) -> str:
    if is_binary(old_data) or is_binary(new_data):
        return "\n".join([*_file_header(path), "Binary files differ"]) + "\n"

    hunks = generate_hunks(
        split_lines(old_data.decode("utf-8")),
        split_lines(new_data.decode("utf-8")),
    )
    return "\n".join(_file_header(path)) + "\n" + "".join(hunk.render() for hunk in hunks)


def render_unified_metadata(diff: SnapshotDiff, from_: Snapshot, to: Snapshot) -> str:
    parts: list[str] = []
    parts.extend(_render_added(path, to) for path in diff.added)
    parts.extend(_render_removed(path, from_) for path in diff.removed)
    parts.extend(_render_modified_metadata(path, from_, to) for path in diff.modified)
    return "".join(parts)


def render_unified_content(
    diff: SnapshotDiff,
    from_root: Path,
    to_root: Path,
    from_: Snapshot,
    to: Snapshot,
) -> str:
    parts: list[str] = []
    for path in diff.modified:
        try:
            old_data = (Path(from_root) / path).read_bytes()
            new_data = (Path(to_root) / path).read_bytes()
        except OSError as exc:
            logger.debug("Falling back to metadata diff for %s: %s", path, exc)
            parts.append(_render_modified_metadata(path, from_, to))
            continue
        parts.append(render_content_diff(path, old_data, new_data))
    parts.extend(_render_added(path, to) for path in diff.added)
    parts.extend(_render_removed(path, from_) for path in diff.removed)
    return "".join(parts)

from __future__ import annotations

from bulletproof.filters import matches_user_pattern
from bulletproof.models import Snapshot, SnapshotDiff


def diff_snapshots(to: Snapshot, from_: Snapshot) -> SnapshotDiff:
    """Compute what changed going from ``from_`` to ``to``.

    Only content hashes decide whether a file was modified; timestamps and
    sizes are ignored.
    """
    added: list[str] = []
    modified: list[str] = []
    removed: list[str] = []

    for path, record in to.files.items():
        old = from_.files.get(path)
        if old is None:
            added.append(path)
        elif old.sha256 != record.sha256:
            modified.append(path)

    for path in from_.files:
        if path not in to.files:
            removed.append(path)

    return SnapshotDiff(
        from_id=from_.id,
        to_id=to.id,
        added=tuple(sorted(added)),
        removed=tuple(sorted(removed)),
        modified=tuple(sorted(modified)),
    )


def filter_diff(diff: SnapshotDiff, pattern: str) -> SnapshotDiff:
    def _keep(paths: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(path for path in paths if matches_user_pattern(path, pattern))

    return SnapshotDiff(
        from_id=diff.from_id,
        to_id=diff.to_id,
        added=_keep(diff.added),
        removed=_keep(diff.removed),
        modified=_keep(diff.modified),
    )

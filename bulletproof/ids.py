"""Snapshot references typed by users.

``0`` is the live filesystem, ``1`` the newest stored snapshot, ``2`` the one
before it, and a full ``yyyyMMdd-HHmmss-SSS`` ID names a snapshot directly.
Short IDs are recomputed from the current listing every time, so they shift
when snapshots are added or pruned.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Union

from bulletproof.errors import SnapshotIdFormatError, SnapshotIdRangeError
from bulletproof.models import SnapshotInfo


CURRENT_STATE_ID = "0"

_SHORT_ID_RE = re.compile(r"[0-9]+")
# Older snapshots were stored without the millisecond suffix.
_FULL_ID_RE = re.compile(r"[0-9]{8}-[0-9]{6}(?:-[0-9]{3})?")


@dataclass(frozen=True, slots=True)
class CurrentState:
    def __str__(self) -> str:
        return CURRENT_STATE_ID


@dataclass(frozen=True, slots=True)
class ShortId:
    ordinal: int

    def __str__(self) -> str:
        return str(self.ordinal)


@dataclass(frozen=True, slots=True)
class FullId:
    value: str

    def __str__(self) -> str:
        return self.value


SnapshotRef = Union[CurrentState, ShortId, FullId]


def is_short_id(value: str) -> bool:
    return bool(_SHORT_ID_RE.fullmatch(value))


def is_full_id(value: str) -> bool:
    return bool(_FULL_ID_RE.fullmatch(value))


def parse_snapshot_ref(value: str) -> SnapshotRef:
    text = value.strip()
    if text == CURRENT_STATE_ID:
        return CurrentState()
    if is_full_id(text):
        return FullId(text)
    if is_short_id(text):
        return ShortId(int(text))
    raise SnapshotIdFormatError(value)


def sort_newest_first(snapshots: Iterable[SnapshotInfo]) -> list[SnapshotInfo]:
    # Stable on equal timestamps so resolve and assign agree.
    return sorted(snapshots, key=lambda info: info.timestamp, reverse=True)


def resolve_ref(ref: SnapshotRef, snapshots: Iterable[SnapshotInfo]) -> CurrentState | FullId:
    if isinstance(ref, (CurrentState, FullId)):
        return ref
    ordered = sort_newest_first(snapshots)
    index = ref.ordinal - 1
    if index < 0 or index >= len(ordered):
        raise SnapshotIdRangeError(ref.ordinal, len(ordered))
    return FullId(ordered[index].id)


def resolve_id(value: str, snapshots: Iterable[SnapshotInfo]) -> str:
    """Resolve user input to ``"0"`` or a full snapshot ID."""
    return str(resolve_ref(parse_snapshot_ref(value), snapshots))


def assign_short_ids(snapshots: Iterable[SnapshotInfo]) -> dict[str, int]:
    return {info.id: index for index, info in enumerate(sort_newest_first(snapshots), start=1)}

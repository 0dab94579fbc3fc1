from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING

from bulletproof.config import BulletproofConfig, config_dir, config_path, expand_sources, scripts_dir
from bulletproof.destinations import Destination, SyncDestination, create_destination
from bulletproof.diff_service import diff_snapshots, filter_diff
from bulletproof.errors import (
    ActionableError,
    BulletproofError,
    DestinationError,
    config_not_initialized,
)
from bulletproof.ids import CURRENT_STATE_ID, resolve_id
from bulletproof.models import BackupResult, Snapshot, SnapshotDiff, SnapshotInfo, generate_snapshot_id
from bulletproof.retention import PruneReport, PruneResult, calculate_prune, execute_prune
from bulletproof.scanner import build_snapshot, build_snapshot_with_progress, resolve_source_file
from bulletproof.scripts import (
    ExecutionContext,
    ScriptExecutor,
    copy_config_to_snapshot,
    copy_exports_to_snapshot,
    copy_scripts_to_snapshot,
    create_exports_dir,
)
from bulletproof.unified_diff import render_unified_content, render_unified_metadata

if TYPE_CHECKING:
    from rich.console import Console


logger = logging.getLogger(__name__)

SAFETY_BACKUP_MESSAGE = "Pre-restore safety backup"


@dataclass(slots=True)
class Comparison:
    from_snapshot: Snapshot
    to_snapshot: Snapshot
    diff: SnapshotDiff
    unified: str
    content_mode: bool

    @property
    def from_id(self) -> str:
        return self.diff.from_id

    @property
    def to_id(self) -> str:
        return self.diff.to_id


@dataclass(slots=True)
class RestorePlan:
    snapshot: Snapshot
    # to=snapshot, from=current: added files get created, removed files get deleted.
    diff: SnapshotDiff
    target: Path | None = None


@dataclass(slots=True)
class RestoreResult:
    snapshot_id: str
    restored: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    safety_backup: BackupResult | None = None
    scripts_ran: bool = False


class BackupEngine:
    def __init__(
        self,
        config: BulletproofConfig,
        destination: Destination | None = None,
        *,
        console: "Console | None" = None,
    ) -> None:
        if destination is None:
            if config.destination is None:
                raise config_not_initialized()
            destination = create_destination(config.destination)
        self.config = config
        self.destination = destination
        self.console = console
        self._last_timestamp: datetime | None = None

    def sources(self) -> list[Path]:
        sources = expand_sources(self.config)
        if not sources:
            raise ActionableError(
                "find sources",
                "no source paths configured",
                remediation="bulletproof config set openclaw_path /path/to/.openclaw",
            )
        return sources

    def _next_timestamp(self, previous: datetime | None = None) -> datetime:
        # IDs have millisecond resolution; keep them strictly increasing.
        timestamp = datetime.now().astimezone()
        candidates = [value for value in (self._last_timestamp, previous) if value is not None]
        last = max(candidates) if candidates else None
        if last is not None and timestamp - last < timedelta(milliseconds=1):
            timestamp = last + timedelta(milliseconds=1)
        self._last_timestamp = timestamp
        return timestamp

    def _destination_label(self) -> str:
        return self.config.destination.path if self.config.destination else ""

    def _capture(
        self, sources: list[Path], message: str = "", timestamp: datetime | None = None
    ) -> Snapshot:
        if self.console is not None:
            return build_snapshot_with_progress(
                sources, self.config.exclude, message, timestamp, console=self.console
            )
        return build_snapshot(sources, self.config.exclude, message, timestamp)

    async def list_snapshots(self) -> list[SnapshotInfo]:
        return await self.destination.list_snapshots()

    async def resolve(self, text: str) -> str:
        return resolve_id(text, await self.destination.list_snapshots())

    async def capture_current(self) -> Snapshot:
        return self._capture(self.sources())

    async def load(self, snapshot_id: str) -> Snapshot:
        if snapshot_id == CURRENT_STATE_ID:
            return replace(await self.capture_current(), id=CURRENT_STATE_ID)
        return await self.destination.get_snapshot(snapshot_id)

    async def get_snapshot(self, text: str) -> Snapshot:
        return await self.load(await self.resolve(text))

    def _run_scripts(self, scripts, context: ExecutionContext) -> None:
        logger.info("Executing %d script(s)", len(scripts))
        ScriptExecutor(scripts, context).execute()

    async def backup(
        self,
        *,
        dry_run: bool = False,
        message: str = "",
        no_scripts: bool = False,
        force: bool = False,
    ) -> BackupResult:
        sources = self.sources()
        await self.destination.validate()

        last = await self.destination.get_last_snapshot()
        timestamp = self._next_timestamp(last.timestamp if last is not None else None)
        snapshot_id = generate_snapshot_id(timestamp)

        exports_dir: Path | None = None
        pre_backup = self.config.scripts.pre_backup
        if pre_backup and not no_scripts and not dry_run:
            exports_dir = create_exports_dir(config_dir())
            self._run_scripts(
                pre_backup,
                ExecutionContext(
                    snapshot_id=snapshot_id,
                    openclaw_path=str(sources[0]),
                    backup_dir=self._destination_label(),
                    exports_dir=str(exports_dir),
                ),
            )

        snapshot = self._capture(sources, message, timestamp)
        logger.info("Found %d file(s) to back up", snapshot.file_count)

        diff = diff_snapshots(snapshot, last) if last is not None else None
        if diff is not None and diff.is_empty and not force:
            logger.info("No changes since %s, backup skipped", last.id)
            return BackupResult(snapshot=snapshot, diff=diff, skipped=True)
        if dry_run:
            return BackupResult(snapshot=snapshot, diff=diff, dry_run=True)

        await self.destination.save(sources, snapshot, message or f"Backup {snapshot.id}")
        warnings = await self._make_self_contained(snapshot.id, exports_dir)
        return BackupResult(snapshot=snapshot, diff=diff, warnings=warnings)

    async def _make_self_contained(self, snapshot_id: str, exports_dir: Path | None) -> list[str]:
        snapshot_path = await self.destination.snapshot_path(snapshot_id)
        if snapshot_path is None or isinstance(self.destination, SyncDestination):
            return []

        warnings: list[str] = []
        steps = [
            ("config", lambda: copy_config_to_snapshot(config_path(), snapshot_path)),
            ("scripts", lambda: copy_scripts_to_snapshot(scripts_dir(), snapshot_path)),
        ]
        if exports_dir is not None:
            steps.append(("exports", lambda: copy_exports_to_snapshot(exports_dir, snapshot_path)))
        for label, step in steps:
            try:
                step()
            except OSError as exc:
                logger.warning("Failed to copy %s to snapshot: %s", label, exc)
                warnings.append(f"failed to copy {label} to snapshot: {exc}")
        return warnings

    async def _root_for(self, snapshot_id: str) -> Path | None:
        if snapshot_id == CURRENT_STATE_ID:
            sources = self.sources()
            # Multi-source paths are namespaced and have no single root.
            return sources[0] if len(sources) == 1 else None
        return await self.destination.snapshot_path(snapshot_id)

    async def compare(
        self,
        from_text: str,
        to_text: str = CURRENT_STATE_ID,
        *,
        pattern: str | None = None,
        content: bool = True,
    ) -> Comparison:
        infos = await self.destination.list_snapshots()
        from_id = resolve_id(from_text, infos)
        to_id = resolve_id(to_text, infos)
        from_snapshot = await self.load(from_id)
        to_snapshot = await self.load(to_id)

        diff = diff_snapshots(to_snapshot, from_snapshot)
        if pattern:
            diff = filter_diff(diff, pattern)

        from_root = await self._root_for(from_id) if content else None
        to_root = await self._root_for(to_id) if content else None
        if from_root is not None and to_root is not None:
            unified = render_unified_content(diff, from_root, to_root, from_snapshot, to_snapshot)
            content_mode = True
        else:
            unified = render_unified_metadata(diff, from_snapshot, to_snapshot)
            content_mode = False
        return Comparison(
            from_snapshot=from_snapshot,
            to_snapshot=to_snapshot,
            diff=diff,
            unified=unified,
            content_mode=content_mode,
        )

    async def plan_restore(self, text: str, target: Path | None = None) -> RestorePlan:
        snapshot_id = await self.resolve(text)
        if snapshot_id == CURRENT_STATE_ID:
            raise BulletproofError("ID 0 is the current filesystem state, not a stored snapshot")
        snapshot = await self.destination.get_snapshot(snapshot_id)

        if target is None:
            current = await self.capture_current()
        elif Path(target).is_dir():
            current = build_snapshot([target], self.config.exclude)
        else:
            current = Snapshot(id=CURRENT_STATE_ID, timestamp=snapshot.timestamp, files={})
        return RestorePlan(
            snapshot=snapshot,
            diff=diff_snapshots(snapshot, current),
            target=Path(target) if target is not None else None,
        )

    async def restore(
        self,
        text: str,
        *,
        target: Path | None = None,
        no_scripts: bool = False,
    ) -> RestoreResult:
        plan = await self.plan_restore(text, target)
        snapshot_id = plan.snapshot.id
        result = RestoreResult(snapshot_id=snapshot_id)

        is_sync = isinstance(self.destination, SyncDestination)
        if is_sync and await self.destination.snapshot_path(snapshot_id) is None:
            raise DestinationError(
                f"Sync destinations only keep the latest snapshot; {snapshot_id} cannot be restored"
            )

        if target is None:
            if is_sync:
                # A safety backup would overwrite the only copy being restored.
                logger.warning("Skipping safety backup for sync destination")
            else:
                result.safety_backup = await self.backup(
                    message=SAFETY_BACKUP_MESSAGE, no_scripts=no_scripts
                )

        sources = self.sources() if target is None else []
        if target is not None:
            result.restored = await self.destination.restore(snapshot_id, Path(target))
        elif len(sources) == 1:
            result.restored = await self.destination.restore(snapshot_id, sources[0])
        else:
            for source in sources:
                result.restored.extend(
                    f"{source.name}/{path}"
                    for path in await self.destination.restore(
                        snapshot_id, source, prefix=source.name
                    )
                )

        for path in plan.diff.removed:
            local = Path(target) / Path(path) if target is not None else resolve_source_file(sources, path)
            try:
                local.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise DestinationError(f"Failed to remove {local}: {exc}") from exc
            result.removed.append(path)
        logger.info(
            "Restored %d file(s), removed %d file(s) from %s",
            len(result.restored),
            len(result.removed),
            snapshot_id,
        )

        post_restore = self.config.scripts.post_restore
        if post_restore and not no_scripts:
            snapshot_root = await self.destination.snapshot_path(snapshot_id)
            self._run_scripts(
                post_restore,
                ExecutionContext(
                    snapshot_id=snapshot_id,
                    openclaw_path=str(target if target is not None else sources[0]),
                    backup_dir=str(snapshot_root or self._destination_label()),
                    exports_dir=str(create_exports_dir(config_dir())),
                ),
            )
            result.scripts_ran = True
        return result

    async def prune(self, *, dry_run: bool = False) -> tuple[PruneResult, PruneReport | None]:
        result = calculate_prune(await self.destination.list_snapshots(), self.config.retention)
        if dry_run or not result.to_delete:
            return result, None
        return result, await execute_prune(self.destination, result)

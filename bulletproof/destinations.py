from __future__ import annotations

import json
import logging
import os
import shutil
import stat
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Sequence

from bulletproof.errors import DestinationError, SnapshotNotFoundError
from bulletproof.ids import is_full_id, sort_newest_first
from bulletproof.models import Snapshot, SnapshotInfo
from bulletproof.scanner import resolve_source_file
from bulletproof.state_db import append_deleted, append_saved, load_snapshot_infos

if TYPE_CHECKING:
    from bulletproof.config import DestinationConfig


logger = logging.getLogger(__name__)

METADATA_DIRNAME = ".bulletproof"
SNAPSHOT_FILENAME = "snapshot.json"
INDEX_DB_FILENAME = "index.db"
GIT_AUTHOR_NAME = "Bulletproof Backup"
GIT_AUTHOR_EMAIL = "backup@bulletproof.bot"
REMOTE_PREFIXES = ("git@", "https://", "http://", "ssh://")


def _write_json(path: Path, payload: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2)
        fh.write("\n")


def _copy_file(src: Path, dst: Path) -> None:
    dst.parent.mkdir(parents=True, exist_ok=True)
    if dst.exists() and not os.access(dst, os.W_OK):
        dst.chmod(dst.stat().st_mode | stat.S_IWUSR)
    shutil.copy2(src, dst)


def _strip_prefix(path: str, prefix: str) -> str | None:
    if not prefix:
        return path
    head = prefix.rstrip("/") + "/"
    if path.startswith(head):
        return path[len(head):]
    return None


class Destination(ABC):
    """Persistence contract for snapshots and their file payloads."""

    kind: str = ""

    @abstractmethod
    async def validate(self) -> None: ...

    @abstractmethod
    async def save(self, sources: Sequence[Path], snapshot: Snapshot, message: str) -> None: ...

    @abstractmethod
    async def get_snapshot(self, snapshot_id: str) -> Snapshot: ...

    @abstractmethod
    async def list_snapshots(self) -> list[SnapshotInfo]: ...

    @abstractmethod
    async def delete_snapshot(self, snapshot_id: str) -> None: ...

    @abstractmethod
    async def restore(self, snapshot_id: str, target: Path, *, prefix: str = "") -> list[str]: ...

    async def snapshot_path(self, snapshot_id: str) -> Path | None:
        return None

    async def get_last_snapshot(self) -> Snapshot | None:
        infos = await self.list_snapshots()
        if not infos:
            return None
        return await self.get_snapshot(sort_newest_first(infos)[0].id)


class LocalDestination(Destination):
    """Snapshots as folders on the local filesystem.

    Timestamped mode keeps one folder per snapshot. Overwrite mode (used for
    sync folders) keeps only the latest payload in the base folder.
    """

    kind = "local"

    def __init__(self, base_path: str | Path, timestamped: bool = True) -> None:
        self.base_path = Path(base_path).expanduser()
        self.timestamped = timestamped

    @property
    def metadata_dir(self) -> Path:
        return self.base_path / METADATA_DIRNAME

    @property
    def index_db_path(self) -> Path:
        return self.metadata_dir / INDEX_DB_FILENAME

    def _metadata_file(self, snapshot_id: str) -> Path:
        return self.metadata_dir / "snapshots" / f"{snapshot_id}.json"

    def _payload_dir(self, snapshot_id: str) -> Path:
        return self.base_path / snapshot_id if self.timestamped else self.base_path

    async def validate(self) -> None:
        if self.base_path.exists() and not self.base_path.is_dir():
            raise DestinationError(f"Destination is not a directory: {self.base_path}")
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise DestinationError(f"Failed to create destination {self.base_path}: {exc}") from exc

    def _clear_payload(self) -> None:
        for entry in self.base_path.iterdir():
            if entry.name == METADATA_DIRNAME:
                continue
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()

    async def save(self, sources: Sequence[Path], snapshot: Snapshot, message: str) -> None:
        await self.validate()
        target = self._payload_dir(snapshot.id)
        if self.timestamped:
            target.mkdir(parents=True, exist_ok=True)
        else:
            self._clear_payload()

        logger.info("Copying %d file(s) to %s", len(snapshot.files), target)
        for path in snapshot.files:
            source_file = resolve_source_file(sources, path)
            try:
                _copy_file(source_file, target / Path(path))
            except OSError as exc:
                raise DestinationError(f"Failed to copy file {path}: {exc}") from exc

        payload = snapshot.to_dict()
        if self.timestamped:
            _write_json(target / METADATA_DIRNAME / SNAPSHOT_FILENAME, payload)
        _write_json(self._metadata_file(snapshot.id), payload)

        info = snapshot.info()
        if message:
            info = SnapshotInfo(
                id=info.id, timestamp=info.timestamp, message=message, file_count=info.file_count
            )
        await append_saved(self.index_db_path, info)

    async def get_snapshot(self, snapshot_id: str) -> Snapshot:
        path = self._metadata_file(snapshot_id)
        if not path.exists():
            raise SnapshotNotFoundError(snapshot_id)
        try:
            with path.open("r", encoding="utf-8") as fh:
                return Snapshot.from_dict(json.load(fh))
        except (OSError, ValueError, KeyError) as exc:
            raise DestinationError(f"Failed to read snapshot {snapshot_id}: {exc}") from exc

    async def list_snapshots(self) -> list[SnapshotInfo]:
        return await load_snapshot_infos(self.index_db_path)

    async def _is_latest(self, snapshot_id: str) -> bool:
        infos = await self.list_snapshots()
        return bool(infos) and sort_newest_first(infos)[0].id == snapshot_id

    async def snapshot_path(self, snapshot_id: str) -> Path | None:
        if self.timestamped:
            path = self._payload_dir(snapshot_id)
            return path if path.is_dir() else None
        return self.base_path if await self._is_latest(snapshot_id) else None

    async def delete_snapshot(self, snapshot_id: str) -> None:
        known = {info.id for info in await self.list_snapshots()}
        if snapshot_id not in known:
            raise SnapshotNotFoundError(snapshot_id)
        if self.timestamped:
            payload = self._payload_dir(snapshot_id)
            if payload.exists():
                shutil.rmtree(payload)
        self._metadata_file(snapshot_id).unlink(missing_ok=True)
        await append_deleted(self.index_db_path, snapshot_id)

    async def restore(self, snapshot_id: str, target: Path, *, prefix: str = "") -> list[str]:
        snapshot = await self.get_snapshot(snapshot_id)
        root = await self.snapshot_path(snapshot_id)
        if root is None:
            raise DestinationError(
                f"Content for snapshot {snapshot_id} is not available in {self.base_path}"
            )

        restored: list[str] = []
        for path in sorted(snapshot.files):
            relative = _strip_prefix(path, prefix)
            if relative is None:
                continue
            try:
                _copy_file(root / Path(path), Path(target) / Path(relative))
            except OSError as exc:
                raise DestinationError(f"Failed to restore file {path}: {exc}") from exc
            restored.append(relative)
        return restored


class SyncDestination(LocalDestination):
    """A folder watched by a sync client (Dropbox, Google Drive, iCloud).

    The sync client keeps history, so only the latest payload is stored.
    """

    kind = "sync"

    def __init__(self, base_path: str | Path) -> None:
        super().__init__(base_path, timestamped=False)


class GitDestination(Destination):
    """Snapshots as tagged commits in a git repository."""

    kind = "git"

    def __init__(self, repo_path: str, *, cache_root: Path | None = None) -> None:
        self.repo_path = repo_path
        self.is_remote = repo_path.startswith(REMOTE_PREFIXES)
        self._cache_root = cache_root or Path.home() / ".cache" / "bulletproof" / "repos"
        self._repo = None

    @property
    def local_path(self) -> Path:
        if self.is_remote:
            name = self.repo_path.rstrip("/").rsplit("/", 1)[-1].rsplit(":", 1)[-1]
            if name.endswith(".git"):
                name = name[:-4]
            return self._cache_root / name
        return Path(self.repo_path).expanduser()

    def _actor(self):
        from git import Actor

        return Actor(GIT_AUTHOR_NAME, GIT_AUTHOR_EMAIL)

    def _init_repo(self):
        from git import Repo

        path = self.local_path
        path.mkdir(parents=True, exist_ok=True)
        logger.info("Initializing git repository at %s", path)
        repo = Repo.init(path)
        (path / ".gitignore").write_text(".DS_Store\n*.log\n", encoding="utf-8")
        repo.index.add([".gitignore"])
        repo.index.commit("Initial commit", author=self._actor(), committer=self._actor())
        return repo

    def _open_repo(self):
        if self._repo is not None:
            return self._repo
        from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo

        path = self.local_path
        try:
            if self.is_remote:
                try:
                    repo = Repo(path)
                    logger.info("Pulling latest from %s", self.repo_path)
                    repo.remotes.origin.pull()
                except (InvalidGitRepositoryError, NoSuchPathError):
                    logger.info("Cloning %s", self.repo_path)
                    path.parent.mkdir(parents=True, exist_ok=True)
                    repo = Repo.clone_from(self.repo_path, path)
            else:
                try:
                    repo = Repo(path)
                except (InvalidGitRepositoryError, NoSuchPathError):
                    repo = self._init_repo()
        except GitCommandError as exc:
            raise DestinationError(f"Git operation failed for {self.repo_path}: {exc}") from exc
        repo.git.update_environment(
            GIT_AUTHOR_NAME=GIT_AUTHOR_NAME,
            GIT_AUTHOR_EMAIL=GIT_AUTHOR_EMAIL,
            GIT_COMMITTER_NAME=GIT_AUTHOR_NAME,
            GIT_COMMITTER_EMAIL=GIT_AUTHOR_EMAIL,
        )
        self._repo = repo
        return repo

    async def validate(self) -> None:
        self._open_repo()

    def _tag_commit(self, snapshot_id: str):
        repo = self._open_repo()
        try:
            return repo.tags[snapshot_id].commit
        except (IndexError, AttributeError) as exc:
            raise SnapshotNotFoundError(snapshot_id) from exc

    def _read_snapshot(self, commit) -> Snapshot:
        blob = commit.tree / f"{METADATA_DIRNAME}/{SNAPSHOT_FILENAME}"
        return Snapshot.from_dict(json.loads(blob.data_stream.read().decode("utf-8")))

    async def save(self, sources: Sequence[Path], snapshot: Snapshot, message: str) -> None:
        from git import GitCommandError

        repo = self._open_repo()
        worktree = self.local_path
        for entry in worktree.iterdir():
            if entry.name in {".git", METADATA_DIRNAME}:
                continue
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()

        logger.info("Copying %d file(s) to backup repository", len(snapshot.files))
        for path in snapshot.files:
            try:
                _copy_file(resolve_source_file(sources, path), worktree / Path(path))
            except OSError as exc:
                raise DestinationError(f"Failed to copy file {path}: {exc}") from exc
        _write_json(worktree / METADATA_DIRNAME / SNAPSHOT_FILENAME, snapshot.to_dict())

        try:
            repo.git.add(A=True)
            commit = repo.index.commit(
                message or f"Backup {snapshot.id}", author=self._actor(), committer=self._actor()
            )
            repo.create_tag(snapshot.id, ref=commit, message=message or snapshot.id)
            if self.is_remote:
                logger.info("Pushing to %s", self.repo_path)
                repo.git.push("origin", "HEAD", "--tags")
        except GitCommandError as exc:
            raise DestinationError(f"Failed to record snapshot {snapshot.id}: {exc}") from exc

    async def get_snapshot(self, snapshot_id: str) -> Snapshot:
        commit = self._tag_commit(snapshot_id)
        try:
            return self._read_snapshot(commit)
        except KeyError as exc:
            raise DestinationError(f"Tag {snapshot_id} has no snapshot metadata") from exc

    async def list_snapshots(self) -> list[SnapshotInfo]:
        repo = self._open_repo()
        infos: list[SnapshotInfo] = []
        for tag in repo.tags:
            if not is_full_id(tag.name):
                continue
            try:
                snapshot = self._read_snapshot(tag.commit)
            except (KeyError, ValueError) as exc:
                logger.warning("Ignoring tag %s: %s", tag.name, exc)
                continue
            message = tag.tag.message if tag.tag is not None else snapshot.message
            infos.append(
                SnapshotInfo(
                    id=snapshot.id,
                    timestamp=snapshot.timestamp,
                    message=(message or "").strip(),
                    file_count=snapshot.file_count,
                )
            )
        return infos

    async def delete_snapshot(self, snapshot_id: str) -> None:
        from git import GitCommandError

        repo = self._open_repo()
        try:
            tag = repo.tags[snapshot_id]
        except (IndexError, AttributeError) as exc:
            raise SnapshotNotFoundError(snapshot_id) from exc
        try:
            repo.delete_tag(tag)
            if self.is_remote:
                repo.git.push("origin", f":refs/tags/{snapshot_id}")
        except GitCommandError as exc:
            raise DestinationError(f"Failed to delete tag {snapshot_id}: {exc}") from exc

    async def restore(self, snapshot_id: str, target: Path, *, prefix: str = "") -> list[str]:
        commit = self._tag_commit(snapshot_id)
        snapshot = self._read_snapshot(commit)
        restored: list[str] = []
        for path in sorted(snapshot.files):
            relative = _strip_prefix(path, prefix)
            if relative is None:
                continue
            blob = commit.tree / path
            destination = Path(target) / Path(relative)
            destination.parent.mkdir(parents=True, exist_ok=True)
            destination.write_bytes(blob.data_stream.read())
            restored.append(relative)
        return restored


def create_destination(config: "DestinationConfig") -> Destination:
    if config.type == "local":
        return LocalDestination(config.path, timestamped=True)
    if config.type == "sync":
        return SyncDestination(config.path)
    if config.type == "git":
        return GitDestination(config.path)
    raise DestinationError(f"Unknown destination type: {config.type}")

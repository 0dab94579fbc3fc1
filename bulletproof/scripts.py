from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from bulletproof.errors import ScriptError


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60
EXPORTS_DIRNAME = "_exports"


@dataclass(slots=True)
class ScriptConfig:
    name: str
    command: str
    timeout: int = 0

    @property
    def effective_timeout(self) -> int:
        return self.timeout if self.timeout > 0 else DEFAULT_TIMEOUT_SECONDS


@dataclass(slots=True)
class ExecutionContext:
    snapshot_id: str
    openclaw_path: str
    backup_dir: str
    exports_dir: str

    def variables(self) -> dict[str, str]:
        return {
            "SNAPSHOT_ID": self.snapshot_id,
            "OPENCLAW_PATH": self.openclaw_path,
            "BACKUP_DIR": self.backup_dir,
            "EXPORTS_DIR": self.exports_dir,
        }


class ScriptExecutor:
    """Runs pre-backup and post-restore hook commands in order."""

    def __init__(self, scripts: Sequence[ScriptConfig], context: ExecutionContext) -> None:
        self.scripts = list(scripts)
        self.context = context

    def substitute(self, command: str) -> str:
        result = command
        for name, value in self.context.variables().items():
            result = result.replace(f"${name}", value)
        return result

    def execute(self) -> None:
        for script in self.scripts:
            self._execute_one(script)

    def _execute_one(self, script: ScriptConfig) -> None:
        argv = shlex.split(self.substitute(script.command))
        if not argv:
            raise ScriptError(script.name, "empty command")

        env = dict(os.environ)
        env.update(self.context.variables())
        timeout = script.effective_timeout
        logger.info("Running script %s: %s", script.name, " ".join(argv))
        try:
            completed = subprocess.run(
                argv,
                env=env,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise ScriptError(script.name, f"timeout after {timeout}s") from exc
        except OSError as exc:
            raise ScriptError(script.name, str(exc)) from exc

        if completed.returncode != 0:
            raise ScriptError(
                script.name,
                f"exit status {completed.returncode}",
                returncode=completed.returncode,
                stdout=completed.stdout,
                stderr=completed.stderr,
            )
        logger.debug("Script %s finished", script.name)


def create_exports_dir(base_path: Path) -> Path:
    exports_dir = Path(base_path) / EXPORTS_DIRNAME
    exports_dir.mkdir(parents=True, exist_ok=True)
    return exports_dir


def _copy_tree_contents(source_dir: Path, target_dir: Path) -> bool:
    if not source_dir.is_dir():
        return False
    entries = list(source_dir.iterdir())
    if not entries:
        return False
    target_dir.mkdir(parents=True, exist_ok=True)
    for entry in entries:
        if entry.is_dir():
            shutil.copytree(entry, target_dir / entry.name, dirs_exist_ok=True)
        else:
            shutil.copy2(entry, target_dir / entry.name)
    return True


def copy_exports_to_snapshot(exports_dir: Path, snapshot_path: Path) -> bool:
    return _copy_tree_contents(Path(exports_dir), Path(snapshot_path) / EXPORTS_DIRNAME)


def copy_scripts_to_snapshot(scripts_dir: Path, snapshot_path: Path) -> bool:
    return _copy_tree_contents(Path(scripts_dir), Path(snapshot_path) / ".bulletproof" / "scripts")


def copy_config_to_snapshot(config_file: Path, snapshot_path: Path) -> bool:
    config_file = Path(config_file)
    if not config_file.exists():
        return False
    target = Path(snapshot_path) / ".bulletproof" / "config.json"
    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(config_file, target)
    return True

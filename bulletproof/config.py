from __future__ import annotations

import glob
import json
import os
import shlex
from dataclasses import asdict, dataclass, field
from pathlib import Path

from bulletproof.errors import (
    ActionableError,
    ConfigError,
    RetentionPolicyError,
    config_not_initialized,
    permission_denied,
    source_not_found,
)
from bulletproof.retention import RetentionPolicy
from bulletproof.scripts import ScriptConfig


CONFIG_FILENAME = "config.json"
BACKUP_METADATA_DIRNAME = ".bulletproof"
CONFIG_VERSION = 1
HOME_ENV_VAR = "BULLETPROOF_HOME"
DEFAULT_EXCLUDES = ["*.log", "node_modules/", ".git/"]
DESTINATION_TYPES = ("local", "git", "sync")
_GLOB_CHARS = set("*?[]")


@dataclass(slots=True)
class DestinationConfig:
    type: str = "local"
    path: str = ""


@dataclass(slots=True)
class ScriptsConfig:
    pre_backup: list[ScriptConfig] = field(default_factory=list)
    post_restore: list[ScriptConfig] = field(default_factory=list)


@dataclass(slots=True)
class BulletproofConfig:
    openclaw_path: str = ""
    sources: list[str] = field(default_factory=list)
    destination: DestinationConfig | None = None
    exclude: list[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDES))
    scripts: ScriptsConfig = field(default_factory=ScriptsConfig)
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    version: int = CONFIG_VERSION

    def get_sources(self) -> list[str]:
        if self.sources:
            return list(self.sources)
        if self.openclaw_path:
            return [self.openclaw_path]
        return []


def config_dir() -> Path:
    override = os.getenv(HOME_ENV_VAR, "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".config" / "bulletproof"


def config_path() -> Path:
    return config_dir() / CONFIG_FILENAME


def scripts_dir() -> Path:
    return config_dir() / "scripts"


def _script_list(raw: object, section: str) -> list[ScriptConfig]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigError(f"scripts.{section} must be a list")
    scripts: list[ScriptConfig] = []
    for entry in raw:
        if not isinstance(entry, dict):
            raise ConfigError(f"scripts.{section} entries must be objects")
        scripts.append(
            ScriptConfig(
                name=str(entry.get("name", "")),
                command=str(entry.get("command", "")),
                timeout=int(entry.get("timeout", 0) or 0),
            )
        )
    return scripts


def config_from_dict(data: dict) -> BulletproofConfig:
    destination = None
    raw_destination = data.get("destination")
    if raw_destination:
        destination = DestinationConfig(
            type=str(raw_destination.get("type", "local")),
            path=str(raw_destination.get("path", "")),
        )

    raw_scripts = data.get("scripts") or {}
    raw_retention = data.get("retention") or {}
    exclude = data.get("exclude")
    try:
        retention = RetentionPolicy(
            enabled=bool(raw_retention.get("enabled", False)),
            keep_last=int(raw_retention.get("keep_last", 0)),
            keep_daily=int(raw_retention.get("keep_daily", 0)),
            keep_weekly=int(raw_retention.get("keep_weekly", 0)),
            keep_monthly=int(raw_retention.get("keep_monthly", 0)),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid retention settings: {exc}") from exc

    return BulletproofConfig(
        openclaw_path=str(data.get("openclaw_path", "") or ""),
        sources=[str(item) for item in data.get("sources") or []],
        destination=destination,
        exclude=list(DEFAULT_EXCLUDES) if exclude is None else [str(item) for item in exclude],
        scripts=ScriptsConfig(
            pre_backup=_script_list(raw_scripts.get("pre_backup"), "pre_backup"),
            post_restore=_script_list(raw_scripts.get("post_restore"), "post_restore"),
        ),
        retention=retention,
        version=int(data.get("version", CONFIG_VERSION)),
    )


def load_config(path: Path | None = None) -> BulletproofConfig:
    path = path or config_path()
    if not path.exists():
        return BulletproofConfig()

    try:
        with path.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Failed to parse config {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Failed to read config {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must contain a JSON object")
    return config_from_dict(data)


def load_backup_config(backup_path: Path) -> BulletproofConfig:
    """Read the config a snapshot folder carries in its metadata directory."""
    path = Path(backup_path).expanduser() / BACKUP_METADATA_DIRNAME / CONFIG_FILENAME
    if not path.is_file():
        raise ConfigError(f"No bulletproof config found in backup {backup_path} (expected {path})")
    return load_config(path)


def save_config(config: BulletproofConfig, path: Path | None = None) -> Path:
    path = path or config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = asdict(config)
    payload["version"] = CONFIG_VERSION
    with path.open("w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2)
        fh.write("\n")
    return path


def config_exists(path: Path | None = None) -> bool:
    return (path or config_path()).exists()


def detect_installation() -> Path | None:
    candidate = Path.home() / ".openclaw"
    return candidate if candidate.is_dir() else None


def expand_source_pattern(pattern: str) -> list[str]:
    expanded = os.path.expanduser(pattern)
    if _GLOB_CHARS & set(expanded):
        return sorted(glob.glob(expanded))
    return [expanded]


def expand_sources(config: BulletproofConfig) -> list[Path]:
    resolved: list[Path] = []
    for source in config.get_sources():
        matches = expand_source_pattern(source)
        if not matches:
            raise ActionableError(
                "expand source pattern",
                f"pattern matches no paths: {source}",
                reasons=(
                    "Glob pattern is too specific",
                    "Source directories don't exist yet",
                    "Typo in path pattern",
                ),
                remediation=f"Check if directories exist:\nls -d {source}",
                related="bulletproof config show",
            )
        for match in matches:
            path = Path(match)
            if not path.exists():
                raise source_not_found(path)
            if not path.is_dir():
                raise ActionableError(
                    "validate source path",
                    f"path is not a directory: {path}",
                    reasons=("Path points to a file instead of a directory",),
                    remediation=f"bulletproof config set openclaw_path {path.parent}",
                    related=f"ls -ld {path}",
                )
            try:
                next(path.iterdir(), None)
            except OSError as exc:
                raise permission_denied("read source directory", path, exc) from exc
            resolved.append(path)
    return resolved


def _validate_script(script: ScriptConfig, section: str) -> None:
    prefix = f"{section} script {script.name or '<unnamed>'}"
    if not script.name:
        raise ConfigError(f"{prefix}: script name is empty")
    try:
        parts = shlex.split(script.command)
    except ValueError as exc:
        raise ConfigError(f"{prefix}: {exc}") from exc
    if not parts:
        raise ConfigError(f"{prefix}: script command is empty")

    command = parts[0]
    if "/" in command or "\\" in command:
        command_path = Path(command).expanduser()
        if not command_path.exists():
            raise ConfigError(f"{prefix}: script file does not exist: {command}")
        if not os.access(command_path, os.X_OK):
            raise ConfigError(
                f"{prefix}: script file is not executable: {command} (hint: chmod +x {command})"
            )


def validate_config(config: BulletproofConfig) -> list[Path]:
    """Check the whole config and return the expanded source directories."""
    if config.destination is None:
        raise config_not_initialized()
    if not config.destination.path:
        raise ConfigError("Destination path is empty")
    if config.destination.type not in DESTINATION_TYPES:
        raise ConfigError(
            f"Unknown destination type {config.destination.type!r} "
            f"(expected one of: {', '.join(DESTINATION_TYPES)})"
        )

    if config.destination.type in {"local", "sync"}:
        destination = Path(config.destination.path).expanduser()
        if destination.exists() and not destination.is_dir():
            raise ActionableError(
                "validate backup destination",
                f"path is not a directory: {destination}",
                remediation="bulletproof config set destination.path /path/to/backups",
            )
        try:
            destination.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise permission_denied("create backup destination", destination, exc) from exc
        if not os.access(destination, os.W_OK):
            raise permission_denied(
                "write to backup destination", destination, PermissionError("not writable")
            )

    if not config.get_sources():
        raise ActionableError(
            "find OpenClaw installation",
            "no source paths configured",
            reasons=("OpenClaw is not installed in ~/.openclaw", "Config has no sources"),
            remediation="bulletproof config set openclaw_path /path/to/.openclaw",
            related="bulletproof config show",
        )
    sources = expand_sources(config)

    for script in config.scripts.pre_backup:
        _validate_script(script, "pre-backup")
    for script in config.scripts.post_restore:
        _validate_script(script, "post-restore")

    if config.retention.enabled:
        try:
            config.retention.validate()
        except RetentionPolicyError as exc:
            raise ConfigError(str(exc)) from exc
    return sources


def _parse_bool(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"Expected a boolean value, got {value!r}")


def _parse_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def set_config_value(config: BulletproofConfig, key: str, value: str) -> None:
    """Apply a ``bulletproof config set`` assignment using dotted keys."""
    if key == "openclaw_path":
        config.openclaw_path = value
    elif key == "sources":
        config.sources = _parse_list(value)
    elif key == "exclude":
        config.exclude = _parse_list(value)
    elif key in {"destination", "destination.path"}:
        if config.destination is None:
            config.destination = DestinationConfig()
        config.destination.path = value
    elif key == "destination.type":
        if value not in DESTINATION_TYPES:
            raise ConfigError(
                f"Unknown destination type {value!r} (expected one of: {', '.join(DESTINATION_TYPES)})"
            )
        if config.destination is None:
            config.destination = DestinationConfig()
        config.destination.type = value
    elif key == "retention.enabled":
        config.retention.enabled = _parse_bool(value)
    elif key in {
        "retention.keep_last",
        "retention.keep_daily",
        "retention.keep_weekly",
        "retention.keep_monthly",
    }:
        try:
            count = int(value)
        except ValueError as exc:
            raise ConfigError(f"{key} must be an integer, got {value!r}") from exc
        if count < 0:
            raise ConfigError(f"{key} cannot be negative")
        setattr(config.retention, key.split(".", 1)[1], count)
    else:
        raise ConfigError(f"Unknown config key: {key}")

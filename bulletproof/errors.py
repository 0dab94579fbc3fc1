from __future__ import annotations

from pathlib import Path


class BulletproofError(Exception):
    """Base class for every error raised by bulletproof."""


class ConfigError(BulletproofError):
    pass


class CaptureError(BulletproofError):
    """A source file could not be read while building a snapshot."""

    def __init__(self, path: str, cause: OSError) -> None:
        super().__init__(f"Failed to snapshot file {path}: {cause}")
        self.path = path
        self.cause = cause


class SourceNotFoundError(BulletproofError):
    pass


class DuplicateSourceError(BulletproofError):
    def __init__(self, first: Path, second: Path) -> None:
        super().__init__(
            f"Duplicate source basenames: {first} and {second} both have basename "
            f"{first.name!r}; files cannot be namespaced unambiguously."
        )
        self.first = first
        self.second = second


class ExclusionPatternError(BulletproofError):
    pass


class SnapshotIdError(BulletproofError):
    pass


class SnapshotIdFormatError(SnapshotIdError):
    def __init__(self, value: str) -> None:
        super().__init__(
            f"Invalid snapshot ID format: {value!r} "
            "(expected a number or yyyyMMdd-HHmmss-SSS)"
        )
        self.value = value


class SnapshotIdRangeError(SnapshotIdError):
    def __init__(self, ordinal: int, available: int) -> None:
        super().__init__(
            f"Snapshot ID {ordinal} out of range (have {available} snapshot(s))"
        )
        self.ordinal = ordinal
        self.available = available


class SnapshotNotFoundError(BulletproofError):
    def __init__(self, snapshot_id: str) -> None:
        super().__init__(f"Snapshot not found: {snapshot_id}")
        self.snapshot_id = snapshot_id


class RetentionPolicyError(BulletproofError):
    pass


class DestinationError(BulletproofError):
    pass


class ScriptError(BulletproofError):
    def __init__(
        self,
        name: str,
        reason: str,
        *,
        returncode: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        message = f"Script '{name}' failed: {reason}"
        if stdout.strip():
            message += f"\nstdout: {stdout.strip()}"
        if stderr.strip():
            message += f"\nstderr: {stderr.strip()}"
        super().__init__(message)
        self.name = name
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class ActionableError(BulletproofError):
    """An error that carries likely reasons and a command to try next."""

    def __init__(
        self,
        operation: str,
        cause: Exception | str,
        *,
        reasons: list[str] | tuple[str, ...] = (),
        remediation: str = "",
        related: str = "",
    ) -> None:
        self.operation = operation
        self.cause = cause
        self.reasons = tuple(reasons)
        self.remediation = remediation
        self.related = related
        super().__init__(self._render())

    def _render(self) -> str:
        lines = [f"Failed to {self.operation}: {self.cause}."]
        if self.reasons:
            lines.append("")
            lines.append("This usually means:")
            lines.extend(f"- {reason}" for reason in self.reasons)
        if self.remediation:
            lines.append("")
            lines.append("Try:")
            lines.append(self.remediation)
        if self.related:
            lines.append("")
            lines.append(f"Related: {self.related}")
        return "\n".join(lines)


def config_not_initialized() -> ActionableError:
    return ActionableError(
        "load configuration",
        "no destination configured",
        reasons=(
            "bulletproof has not been initialized yet",
            "The config file was deleted or moved",
        ),
        remediation="bulletproof init",
        related="bulletproof config show",
    )


def source_not_found(path: str | Path) -> ActionableError:
    return ActionableError(
        "validate source path",
        f"path does not exist: {path}",
        reasons=(
            "The source directory hasn't been created yet",
            "The path was moved or deleted",
            "Typo in configuration",
        ),
        remediation=f"mkdir -p {path}\n\nOr update config:\nbulletproof config set sources /correct/path",
        related="bulletproof config show",
    )


def permission_denied(operation: str, path: str | Path, cause: Exception) -> ActionableError:
    return ActionableError(
        operation,
        cause,
        reasons=(
            f"The current user cannot access {path}",
            "The path is on a read-only filesystem",
        ),
        remediation=f"ls -ld {path}",
    )

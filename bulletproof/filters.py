from __future__ import annotations

import fnmatch
import re
from dataclasses import dataclass
from pathlib import PurePosixPath

from bulletproof.errors import ExclusionPatternError


def _normalize_pattern(pattern: str) -> str:
    normalized = pattern.strip().replace("\\", "/")
    if normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


def _glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Translate a ``**`` glob into an anchored regex.

    ``**`` spans directories, ``*`` and ``?`` stay within one segment.
    """
    out: list[str] = []
    index = 0
    length = len(pattern)
    while index < length:
        char = pattern[index]
        if pattern.startswith("**/", index):
            out.append("(?:.*/)?")
            index += 3
        elif pattern.startswith("**", index):
            out.append(".*")
            index += 2
        elif char == "*":
            out.append("[^/]*")
            index += 1
        elif char == "?":
            out.append("[^/]")
            index += 1
        elif char == "[":
            end = pattern.find("]", index + 1)
            if end == -1:
                raise ExclusionPatternError(f"Invalid glob pattern {pattern!r}: unterminated '['")
            body = pattern[index + 1 : end]
            if body.startswith("!"):
                body = "^" + body[1:]
            body = body.replace("\\", "\\\\")
            out.append(f"[{body}]")
            index = end + 1
        else:
            out.append(re.escape(char))
            index += 1
    try:
        return re.compile("".join(out) + r"\Z")
    except re.error as exc:
        raise ExclusionPatternError(f"Invalid glob pattern {pattern!r}: {exc}") from exc


@dataclass(frozen=True, slots=True)
class ExclusionRule:
    pattern: str
    regex: re.Pattern[str] | None = None

    @classmethod
    def compile(cls, pattern: str) -> "ExclusionRule":
        norm = _normalize_pattern(pattern)
        if "**" in norm and not norm.endswith("/") and not norm.startswith("*."):
            return cls(pattern=norm, regex=_glob_to_regex(norm))
        return cls(pattern=norm)

    def matches(self, path: str) -> bool:
        norm = self.pattern
        if norm.endswith("/"):
            return path.startswith(norm) or f"/{norm}" in path
        if norm.startswith("*."):
            return path.endswith(norm[1:])
        if self.regex is not None:
            return self.regex.match(path) is not None
        return path == norm or path.endswith(f"/{norm}")


@dataclass(slots=True)
class PathFilter:
    exclude_rules: tuple[ExclusionRule, ...] = ()

    @property
    def exclude_patterns(self) -> tuple[str, ...]:
        return tuple(rule.pattern for rule in self.exclude_rules)

    def excludes(self, path: str, *, is_dir: bool = False) -> bool:
        candidates = (path, f"{path}/") if is_dir else (path,)
        return any(rule.matches(candidate) for rule in self.exclude_rules for candidate in candidates)

    def matches(self, path: str) -> bool:
        return not self.excludes(path)


def build_path_filter(exclude_patterns: list[str] | tuple[str, ...] | None = None) -> PathFilter:
    rules = tuple(
        ExclusionRule.compile(pattern)
        for pattern in (exclude_patterns or [])
        if pattern and _normalize_pattern(pattern)
    )
    return PathFilter(exclude_rules=rules)


def matches_user_pattern(path: str, pattern: str) -> bool:
    """Match a path against a pattern typed on the command line."""
    norm = _normalize_pattern(pattern)
    if not norm:
        return False
    if path == norm:
        return True
    name = PurePosixPath(path).name
    return (
        fnmatch.fnmatchcase(name, norm)
        or fnmatch.fnmatchcase(path, norm)
        or name == norm
    )

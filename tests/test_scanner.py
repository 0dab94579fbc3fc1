import os
from datetime import datetime, timezone

import pytest

from bulletproof.errors import CaptureError, DuplicateSourceError, SourceNotFoundError
from bulletproof.models import generate_snapshot_id
from bulletproof.scanner import build_snapshot, resolve_source_file, sha256_bytes, sha256_file


HELLO_SHA256 = "2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824"
DEFAULT_EXCLUDES = ["*.log", "node_modules/", ".git/"]


def _write(path, content="x"):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def test_sha256_helpers_agree(tmp_path):
    target = tmp_path / "hello.txt"
    target.write_bytes(b"hello")

    assert sha256_bytes(b"hello") == HELLO_SHA256
    assert sha256_file(target, chunk_size=2) == HELLO_SHA256


def test_build_snapshot_applies_exclusions(tmp_path):
    source = tmp_path / "agent"
    _write(source / "SOUL.md", "hello")
    _write(source / "memory" / "notes.md", "notes")
    _write(source / "debug.log", "noise")
    _write(source / "memory" / "run.log", "noise")
    _write(source / "node_modules" / "pkg" / "index.js", "js")
    _write(source / ".git" / "HEAD", "ref")

    snapshot = build_snapshot([source], DEFAULT_EXCLUDES, message="first")

    assert sorted(snapshot.files) == ["SOUL.md", "memory/notes.md"]
    assert snapshot.files["SOUL.md"].sha256 == HELLO_SHA256
    assert snapshot.files["SOUL.md"].size == 5
    assert snapshot.message == "first"


def test_build_snapshot_namespaces_multiple_sources(tmp_path):
    alpha = tmp_path / "alpha"
    beta = tmp_path / "nested" / "beta"
    _write(alpha / "a.txt")
    _write(beta / "sub" / "b.txt")

    snapshot = build_snapshot([alpha, beta])

    assert sorted(snapshot.files) == ["alpha/a.txt", "beta/sub/b.txt"]
    assert resolve_source_file([alpha, beta], "beta/sub/b.txt") == (beta / "sub" / "b.txt").resolve()


def test_single_source_paths_are_not_namespaced(tmp_path):
    source = tmp_path / "agent"
    _write(source / "a.txt")

    snapshot = build_snapshot([source])

    assert list(snapshot.files) == ["a.txt"]
    assert resolve_source_file([source], "a.txt") == (source / "a.txt").resolve()


def test_duplicate_source_basenames_are_rejected(tmp_path):
    first = tmp_path / "one" / "agent"
    second = tmp_path / "two" / "agent"
    first.mkdir(parents=True)
    second.mkdir(parents=True)

    with pytest.raises(DuplicateSourceError):
        build_snapshot([first, second])


def test_missing_source_raises(tmp_path):
    with pytest.raises(SourceNotFoundError):
        build_snapshot([tmp_path / "missing"])


def test_build_snapshot_is_deterministic(tmp_path):
    source = tmp_path / "agent"
    _write(source / "b.txt", "b")
    _write(source / "a" / "c.txt", "c")
    when = datetime(2024, 1, 15, 10, 30, 45, 123000, tzinfo=timezone.utc)

    first = build_snapshot([source], timestamp=when)
    second = build_snapshot([source], timestamp=when)

    assert first.id == second.id == "20240115-103045-123"
    assert first.to_dict() == second.to_dict()


def test_generate_snapshot_id_pads_milliseconds():
    assert generate_snapshot_id(datetime(2024, 2, 3, 4, 5, 6, 7000)) == "20240203-040506-007"


@pytest.mark.skipif(not hasattr(os, "geteuid") or os.geteuid() == 0, reason="root can read any file")
def test_unreadable_file_aborts_capture(tmp_path):
    source = tmp_path / "agent"
    secret = source / "secret.txt"
    _write(secret, "top secret")
    secret.chmod(0)
    try:
        with pytest.raises(CaptureError) as excinfo:
            build_snapshot([source])
    finally:
        secret.chmod(0o600)

    assert excinfo.value.path == "secret.txt"


@pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unsupported")
def test_symlinks_follow_files_but_not_directories(tmp_path):
    source = tmp_path / "agent"
    _write(source / "a.txt", "hello")
    (source / "d").mkdir()
    os.symlink("a.txt", source / "link.txt")
    os.symlink("..", source / "d" / "up")
    os.symlink("loop", source / "loop")
    os.symlink("missing.txt", source / "broken")

    snapshot = build_snapshot([source], [])

    assert sorted(snapshot.files) == ["a.txt", "link.txt"]
    assert snapshot.files["link.txt"].sha256 == HELLO_SHA256

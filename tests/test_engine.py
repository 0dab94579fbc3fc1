import asyncio
import sys

import pytest

from bulletproof.config import BulletproofConfig, DestinationConfig
from bulletproof.engine import BackupEngine
from bulletproof.errors import BulletproofError
from bulletproof.scripts import ScriptConfig


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    monkeypatch.setenv("BULLETPROOF_HOME", str(tmp_path / "home"))
    source = tmp_path / "agent"
    (source / "memory").mkdir(parents=True)
    (source / "SOUL.md").write_text("be kind\n", encoding="utf-8")
    (source / "memory" / "day.md").write_text("one\ntwo\nthree\n", encoding="utf-8")
    (source / "debug.log").write_text("noise\n", encoding="utf-8")
    config = BulletproofConfig(
        openclaw_path=str(source),
        destination=DestinationConfig(type="local", path=str(tmp_path / "backups")),
    )
    return source, config


def test_backup_skips_when_unchanged_unless_forced(workspace):
    source, config = workspace
    engine = BackupEngine(config)

    async def scenario():
        first = await engine.backup(message="first")
        unchanged = await engine.backup()
        forced = await engine.backup(force=True)
        return first, unchanged, forced, await engine.list_snapshots()

    first, unchanged, forced, infos = asyncio.run(scenario())

    assert first.diff is None
    assert sorted(first.snapshot.files) == ["SOUL.md", "memory/day.md"]
    assert unchanged.skipped
    assert not forced.skipped
    assert len(infos) == 2
    assert first.snapshot.id != forced.snapshot.id


def test_dry_run_saves_nothing(workspace):
    _, config = workspace
    engine = BackupEngine(config)

    async def scenario():
        result = await engine.backup(dry_run=True)
        return result, await engine.list_snapshots()

    result, infos = asyncio.run(scenario())

    assert result.dry_run
    assert infos == []


def test_compare_renders_content_hunks(workspace):
    source, config = workspace
    engine = BackupEngine(config)

    async def scenario():
        await engine.backup()
        (source / "memory" / "day.md").write_text("one\nTWO\nthree\n", encoding="utf-8")
        (source / "new.md").write_text("hi\n", encoding="utf-8")
        current = await engine.compare("1", "0")
        filtered = await engine.compare("1", "0", pattern="new.md")
        return current, filtered

    current, filtered = asyncio.run(scenario())

    assert current.content_mode
    assert current.to_id == "0"
    assert current.diff.added == ("new.md",)
    assert current.diff.modified == ("memory/day.md",)
    assert "-two\n+TWO\n" in current.unified
    assert filtered.diff.modified == ()
    assert filtered.diff.added == ("new.md",)


def test_restore_reverts_files_after_safety_backup(workspace):
    source, config = workspace
    engine = BackupEngine(config)

    async def scenario():
        original = await engine.backup(message="good state")
        (source / "SOUL.md").write_text("be mean\n", encoding="utf-8")
        (source / "intruder.md").write_text("??\n", encoding="utf-8")
        plan = await engine.plan_restore("1")
        result = await engine.restore("1")
        return original, plan, result, await engine.list_snapshots()

    original, plan, result, infos = asyncio.run(scenario())

    assert plan.diff.modified == ("SOUL.md",)
    assert plan.diff.removed == ("intruder.md",)
    assert result.snapshot_id == original.snapshot.id
    assert result.safety_backup is not None and not result.safety_backup.skipped
    assert result.removed == ["intruder.md"]
    assert (source / "SOUL.md").read_text(encoding="utf-8") == "be kind\n"
    assert not (source / "intruder.md").exists()
    # Excluded files are not tracked and survive the restore.
    assert (source / "debug.log").exists()
    assert len(infos) == 2


def test_restore_rejects_current_state(workspace):
    _, config = workspace
    engine = BackupEngine(config)

    with pytest.raises(BulletproofError):
        asyncio.run(engine.plan_restore("0"))


def test_prune_applies_retention(workspace):
    source, config = workspace
    config.retention.enabled = True
    config.retention.keep_last = 1
    engine = BackupEngine(config)

    async def scenario():
        for index in range(3):
            (source / "SOUL.md").write_text(f"version {index}\n", encoding="utf-8")
            await engine.backup()
        preview, no_report = await engine.prune(dry_run=True)
        result, report = await engine.prune()
        return preview, no_report, result, report, await engine.list_snapshots()

    preview, no_report, result, report, infos = asyncio.run(scenario())

    assert no_report is None
    assert len(preview.to_delete) == 2
    assert report.ok
    assert sorted(report.deleted) == sorted(info.id for info in result.to_delete)
    assert [info.id for info in infos] == [result.to_keep[0].id]


def test_pre_backup_scripts_run_with_context(workspace, tmp_path):
    source, config = workspace
    marker = tmp_path / "marker.txt"
    script = tmp_path / "hook.py"
    script.write_text(
        "import os, sys\n"
        "open(sys.argv[1], 'w').write(os.environ['SNAPSHOT_ID'])\n",
        encoding="utf-8",
    )
    config.scripts.pre_backup.append(
        ScriptConfig(name="marker", command=f"{sys.executable} {script} {marker}")
    )
    engine = BackupEngine(config)

    result = asyncio.run(engine.backup())

    assert marker.read_text(encoding="utf-8") == result.snapshot.id

import sys

import pytest

from bulletproof.errors import ScriptError
from bulletproof.scripts import (
    ExecutionContext,
    ScriptConfig,
    ScriptExecutor,
    copy_config_to_snapshot,
    copy_exports_to_snapshot,
    copy_scripts_to_snapshot,
    create_exports_dir,
)


CONTEXT = ExecutionContext(
    snapshot_id="20240615-120000-000",
    openclaw_path="/agents/main",
    backup_dir="/backups",
    exports_dir="/backups/_exports",
)


def _python(code):
    return f'{sys.executable} -c "{code}"'


def test_substitute_replaces_all_variables():
    executor = ScriptExecutor([], CONTEXT)

    command = executor.substitute("dump $OPENCLAW_PATH $EXPORTS_DIR/$SNAPSHOT_ID.json $BACKUP_DIR")

    assert command == "dump /agents/main /backups/_exports/20240615-120000-000.json /backups"


def test_default_timeout_is_sixty_seconds():
    assert ScriptConfig(name="a", command="true").effective_timeout == 60
    assert ScriptConfig(name="a", command="true", timeout=5).effective_timeout == 5


def test_failing_script_reports_exit_status():
    script = ScriptConfig(name="boom", command=_python("import sys; print('bad'); sys.exit(3)"))

    with pytest.raises(ScriptError) as excinfo:
        ScriptExecutor([script], CONTEXT).execute()

    assert excinfo.value.returncode == 3
    assert "bad" in excinfo.value.stdout
    assert "boom" in str(excinfo.value)


def test_slow_script_times_out():
    script = ScriptConfig(name="slow", command=_python("import time; time.sleep(5)"), timeout=1)

    with pytest.raises(ScriptError) as excinfo:
        ScriptExecutor([script], CONTEXT).execute()

    assert "timeout" in str(excinfo.value)


def test_empty_command_is_rejected():
    with pytest.raises(ScriptError):
        ScriptExecutor([ScriptConfig(name="empty", command="   ")], CONTEXT).execute()


def test_copy_helpers_build_self_contained_snapshot(tmp_path):
    snapshot_dir = tmp_path / "snapshot"
    exports = create_exports_dir(tmp_path / "home")
    (exports / "graph.json").write_text("{}", encoding="utf-8")
    scripts = tmp_path / "home" / "scripts"
    scripts.mkdir()
    (scripts / "export.sh").write_text("#!/bin/sh\n", encoding="utf-8")
    config_file = tmp_path / "home" / "config.json"
    config_file.write_text("{}", encoding="utf-8")

    assert copy_exports_to_snapshot(exports, snapshot_dir)
    assert copy_scripts_to_snapshot(scripts, snapshot_dir)
    assert copy_config_to_snapshot(config_file, snapshot_dir)
    assert not copy_config_to_snapshot(tmp_path / "missing.json", snapshot_dir)

    assert (snapshot_dir / "_exports" / "graph.json").exists()
    assert (snapshot_dir / ".bulletproof" / "scripts" / "export.sh").exists()
    assert (snapshot_dir / ".bulletproof" / "config.json").exists()

import json

import pytest

from bulletproof.config import (
    DEFAULT_EXCLUDES,
    BulletproofConfig,
    DestinationConfig,
    config_path,
    expand_sources,
    load_config,
    save_config,
    set_config_value,
    validate_config,
)
from bulletproof.errors import ActionableError, ConfigError
from bulletproof.scripts import ScriptConfig


@pytest.fixture
def bulletproof_home(tmp_path, monkeypatch):
    home = tmp_path / "home"
    monkeypatch.setenv("BULLETPROOF_HOME", str(home))
    return home


def test_load_returns_defaults_without_file(bulletproof_home):
    config = load_config()

    assert config.destination is None
    assert config.exclude == DEFAULT_EXCLUDES
    assert config.get_sources() == []
    assert config_path() == bulletproof_home / "config.json"


def test_save_and_load_round_trip(bulletproof_home):
    config = BulletproofConfig(
        openclaw_path="/agents/main",
        destination=DestinationConfig(type="git", path="/backups/repo"),
        exclude=["*.tmp"],
    )
    config.scripts.pre_backup.append(ScriptConfig(name="export", command="echo hi", timeout=5))
    config.retention.enabled = True
    config.retention.keep_daily = 7

    path = save_config(config)
    loaded = load_config()

    assert path.exists()
    assert json.loads(path.read_text(encoding="utf-8"))["version"] == 1
    assert loaded.destination == DestinationConfig(type="git", path="/backups/repo")
    assert loaded.exclude == ["*.tmp"]
    assert loaded.scripts.pre_backup[0].timeout == 5
    assert loaded.retention.keep_daily == 7
    assert loaded.get_sources() == ["/agents/main"]


def test_malformed_json_raises(bulletproof_home):
    bulletproof_home.mkdir(parents=True)
    (bulletproof_home / "config.json").write_text("{not json", encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config()


def test_sources_take_precedence_over_openclaw_path():
    config = BulletproofConfig(openclaw_path="/a", sources=["/b", "/c"])
    assert config.get_sources() == ["/b", "/c"]


def test_expand_sources_handles_globs(tmp_path):
    (tmp_path / "agents" / "one").mkdir(parents=True)
    (tmp_path / "agents" / "two").mkdir(parents=True)
    config = BulletproofConfig(sources=[str(tmp_path / "agents" / "*")])

    assert expand_sources(config) == [tmp_path / "agents" / "one", tmp_path / "agents" / "two"]


def test_expand_sources_reports_unmatched_glob(tmp_path):
    config = BulletproofConfig(sources=[str(tmp_path / "nothing" / "*")])

    with pytest.raises(ActionableError) as excinfo:
        expand_sources(config)
    assert "pattern matches no paths" in str(excinfo.value)
    assert "Try:" in str(excinfo.value)


def test_validate_requires_destination():
    with pytest.raises(ActionableError) as excinfo:
        validate_config(BulletproofConfig(openclaw_path="/tmp"))
    assert "bulletproof init" in str(excinfo.value)


def test_validate_checks_sources_and_scripts(tmp_path):
    source = tmp_path / "agent"
    source.mkdir()
    config = BulletproofConfig(
        openclaw_path=str(source),
        destination=DestinationConfig(type="local", path=str(tmp_path / "backups")),
    )
    assert validate_config(config) == [source]
    assert (tmp_path / "backups").is_dir()

    config.openclaw_path = str(tmp_path / "missing")
    with pytest.raises(ActionableError):
        validate_config(config)

    config.openclaw_path = str(source)
    config.scripts.post_restore.append(ScriptConfig(name="hook", command="./does-not-exist.sh"))
    with pytest.raises(ConfigError):
        validate_config(config)


def test_set_config_value_dotted_keys():
    config = BulletproofConfig()

    set_config_value(config, "destination.path", "/backups")
    set_config_value(config, "destination.type", "sync")
    set_config_value(config, "sources", "/a, /b")
    set_config_value(config, "retention.enabled", "true")
    set_config_value(config, "retention.keep_last", "4")

    assert config.destination == DestinationConfig(type="sync", path="/backups")
    assert config.sources == ["/a", "/b"]
    assert config.retention.enabled
    assert config.retention.keep_last == 4

    with pytest.raises(ConfigError):
        set_config_value(config, "retention.keep_last", "many")
    with pytest.raises(ConfigError):
        set_config_value(config, "destination.type", "ftp")
    with pytest.raises(ConfigError):
        set_config_value(config, "colour", "blue")

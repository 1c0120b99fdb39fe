import pytest

from rdsupgrader.errors import UpgraderError
from rdsupgrader.services.config_loader import ConfigLoader


def test_config_loader_loads_yaml_mapping(tmp_path):
    config_file = tmp_path / ".rdsupgrader.yml"
    config_file.write_text(
        "region: us-east-1\nsnapshot_enabled: false\npoll_interval_seconds: 30\n",
        encoding="utf-8",
    )

    loader = ConfigLoader()
    loaded = loader.load(str(config_file))

    assert loaded["region"] == "us-east-1"
    assert loaded["snapshot_enabled"] is False
    assert loaded["poll_interval_seconds"] == 30


def test_config_loader_returns_empty_without_path():
    assert ConfigLoader().load(None) == {}


def test_config_loader_rejects_unknown_keys(tmp_path):
    config_file = tmp_path / ".rdsupgrader.yml"
    config_file.write_text("unknown_key: true\n", encoding="utf-8")

    loader = ConfigLoader()

    with pytest.raises(UpgraderError, match="Unknown configuration keys"):
        loader.load(str(config_file))


def test_config_loader_rejects_non_mapping(tmp_path):
    config_file = tmp_path / ".rdsupgrader.yml"
    config_file.write_text("- region\n", encoding="utf-8")

    with pytest.raises(UpgraderError, match="YAML mapping"):
        ConfigLoader().load(str(config_file))


def test_config_loader_reports_missing_file(tmp_path):
    with pytest.raises(UpgraderError, match="Config file not found"):
        ConfigLoader().load(str(tmp_path / "missing.yml"))


def test_config_loader_rejects_wrong_value_types(tmp_path):
    config_file = tmp_path / ".rdsupgrader.yml"
    config_file.write_text("poll_interval_seconds: true\n", encoding="utf-8")

    with pytest.raises(UpgraderError, match="'poll_interval_seconds' must be of type int or float, got bool"):
        ConfigLoader().load(str(config_file))


def test_config_loader_accepts_null_for_unbounded_wait(tmp_path):
    config_file = tmp_path / ".rdsupgrader.yml"
    config_file.write_text("max_wait_attempts: null\nwait_timeout_minutes: 45.5\n", encoding="utf-8")

    loaded = ConfigLoader().load(str(config_file))

    assert loaded == {"max_wait_attempts": None, "wait_timeout_minutes": 45.5}


def test_config_loader_rejects_null_for_required_defaults(tmp_path):
    config_file = tmp_path / ".rdsupgrader.yml"
    config_file.write_text("logs_dir:\n", encoding="utf-8")

    with pytest.raises(UpgraderError, match="'logs_dir' must be of type str, got NoneType"):
        ConfigLoader().load(str(config_file))

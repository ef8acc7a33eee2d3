import pytest
from pathlib import Path
from batch_relay.config import resolve_config, load_yaml, merge_dicts
from batch_relay.driver import ConfigError, DispatchLimits
from batch_relay.models import BatchRelayConfig


def test_default_config_loads():
    """Test default.yaml loads without errors."""
    config = resolve_config()
    assert isinstance(config, BatchRelayConfig)
    assert config.driver.scope_size == 1
    assert config.driver.max_polls == 1000
    assert config.scheduler.poll_interval_s == 1.0
    assert config.store.db_path == "relay.db"


def test_cli_override_db():
    """Test CLI args override YAML defaults."""
    config = resolve_config({"db": "/tmp/other.db"})
    assert config.store.db_path == "/tmp/other.db"


def test_cli_override_scope_size():
    config = resolve_config({"scope_size": 4})
    assert config.driver.scope_size == 4


def test_cli_override_poll_interval():
    config = resolve_config({"poll_interval": 0.25})
    assert config.scheduler.poll_interval_s == 0.25


def test_multiple_cli_overrides():
    """Test multiple CLI overrides work together."""
    config = resolve_config({
        "max_polls": 5,
        "workers": 2,
        "summary_dir": "reports",
    })
    assert config.driver.max_polls == 5
    assert config.scheduler.workers == 2
    assert config.notifications.summary_dir == "reports"


def test_unrelated_cli_args_ignored():
    """Test argparse leftovers like 'command' don't break resolution."""
    config = resolve_config({"command": "run", "max_passes": 3})
    assert config.driver.scope_size == 1


def test_invalid_override_raises_config_error():
    with pytest.raises(ConfigError):
        resolve_config({"scope_size": 0})


def test_extra_config_file(tmp_path):
    """Test --config file sits between local.yaml and CLI."""
    extra = tmp_path / "extra.yaml"
    extra.write_text("driver:\n  max_age_s: 30\nscheduler:\n  workers: 8\n")

    config = resolve_config({"workers": 2}, config_path=extra)
    assert config.driver.max_age_s == 30
    assert config.scheduler.workers == 2


def test_missing_extra_config_file(tmp_path):
    with pytest.raises(ConfigError):
        resolve_config(config_path=tmp_path / "missing.yaml")


def test_non_mapping_yaml_rejected(tmp_path):
    bad = tmp_path / "bad.yaml"
    bad.write_text("- just\n- a list\n")
    with pytest.raises(ConfigError):
        load_yaml(bad)


def test_missing_yaml_returns_empty_dict():
    """Test graceful handling of missing config files."""
    result = load_yaml(Path("nonexistent.yaml"))
    assert result == {}


def test_merge_dicts_nested():
    merged = merge_dicts({"a": {"x": 1, "y": 2}, "b": 1}, {"a": {"y": 3}})
    assert merged == {"a": {"x": 1, "y": 3}, "b": 1}


def test_driver_limits():
    config = resolve_config({"max_polls": 7})
    assert config.driver.limits() == DispatchLimits(max_polls=7, max_age_s=0.0)

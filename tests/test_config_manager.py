from __future__ import annotations

from pathlib import Path

import pytest

from torotator.config_manager import TorotatorSettings, build_arg_parser, load_settings


def test_load_settings_defaults(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    settings = load_settings()
    assert settings.proxy_port == 8_080
    assert settings.pool_size == 3
    assert settings.port_range_start == 30_000
    assert settings.max_proxy_time_seconds == 900.0
    assert settings.reload_quiet_seconds == 2.0
    assert settings.reload_ceiling_seconds == 10.0
    assert settings.stats_enabled is False
    assert settings.work_dir.is_absolute()


def test_env_override(monkeypatch):
    monkeypatch.setenv("TOROTATOR_POOL_SIZE", "7")
    monkeypatch.setenv("TOROTATOR_CHECK_PORT_BIND", "false")
    monkeypatch.setenv("TOROTATOR_READY_TIMEOUT_SECONDS", "45")
    settings = load_settings()
    assert settings.pool_size == 7
    assert settings.check_port_bind is False
    assert settings.ready_timeout_seconds == 45.0


def test_cli_override_takes_precedence(monkeypatch):
    monkeypatch.setenv("TOROTATOR_POOL_SIZE", "10")
    parser = build_arg_parser()
    args = parser.parse_args(["-c", "25", "-p", "9090", "--stats", "8404", "-m", "60", "--verbose"])
    settings = load_settings(args)
    assert settings.pool_size == 25
    assert settings.proxy_port == 9_090
    assert settings.stats_port == 8_404
    assert settings.stats_enabled is True
    assert settings.max_proxy_time_seconds == 60.0
    assert settings.log_verbose is True


def test_unset_flags_keep_defaults():
    args = build_arg_parser().parse_args([])
    settings = load_settings(args)
    assert settings.log_verbose is False
    assert settings.stats_port == 0


def test_invalid_env_value_raises(monkeypatch):
    monkeypatch.setenv("TOROTATOR_POOL_SIZE", "not-an-int")
    with pytest.raises(ValueError, match="TOROTATOR_POOL_SIZE"):
        load_settings()


def test_relative_work_dir_is_expanded(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    settings = TorotatorSettings(work_dir=Path("pool"))
    assert settings.work_dir == tmp_path / "pool"


@pytest.mark.parametrize(
    "overrides",
    [
        {"pool_size": 0},
        {"port_range_start": 40_000, "port_range_end": 39_999},
        {"proxy_port": 30_500},
        {"stats_port": 70_000},
        {"reload_quiet_seconds": 5.0, "reload_ceiling_seconds": 1.0},
        {"log_level": "LOUD"},
        {"health_retries": 0},
    ],
)
def test_invalid_settings_rejected(overrides):
    with pytest.raises(ValueError):
        TorotatorSettings(**overrides)


def test_with_overrides_revalidates():
    settings = TorotatorSettings()
    assert settings.with_overrides(pool_size=5).pool_size == 5
    with pytest.raises(ValueError):
        settings.with_overrides(pool_size=1_000)

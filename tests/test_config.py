"""
Tests for configuration loading, validation and environment overrides.
"""

from __future__ import annotations

import pytest

from src.core.config import (
    DEFAULT_BLACKLIST,
    BotConfig,
    ConfigManager,
    ScannerConfig,
    load_config_with_overrides,
)
from src.core.exceptions import ConfigurationError


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "confidence:\n"
        "  threshold: 70\n"
        "scanner:\n"
        "  min_rvol: 2.0\n"
        "  blacklist: [usdc, ' dai ']\n"
    )
    return path


def test_defaults_are_valid():
    cfg = BotConfig()
    assert cfg.confidence.threshold == 75
    assert cfg.confidence.max_points == 15
    assert cfg.filter.analysis_expire_hours == 4.0
    assert cfg.filter.price_change_threshold == 0.02
    assert cfg.scanner.min_volume_24h == 20_000_000
    assert "USDC" in cfg.scanner.blacklist


def test_yaml_values_loaded(config_file):
    cfg = load_config_with_overrides(str(config_file))
    assert cfg.confidence.threshold == 70
    assert cfg.scanner.min_rvol == 2.0
    assert cfg.scanner.blacklist == ["USDC", "DAI"]


def test_missing_file_uses_defaults(tmp_path):
    cfg = load_config_with_overrides(str(tmp_path / "absent.yaml"))
    assert cfg.scanner.blacklist == DEFAULT_BLACKLIST


def test_env_overrides_yaml(config_file, monkeypatch):
    monkeypatch.setenv("CONFIDENCE_THRESHOLD", "80")
    monkeypatch.setenv("TELEGRAM_CHAT_IDS", "111, 222")
    cfg = load_config_with_overrides(str(config_file))
    assert cfg.confidence.threshold == 80
    assert cfg.notifications.telegram_chat_ids == ["111", "222"]


def test_explicit_overrides_win(config_file, monkeypatch):
    monkeypatch.setenv("DB_PATH", "/env/path.db")
    cfg = load_config_with_overrides(str(config_file), {"app": {"db_path": "/cli/path.db"}})
    assert cfg.app.db_path == "/cli/path.db"


def test_non_numeric_env_is_configuration_error(config_file, monkeypatch):
    monkeypatch.setenv("SCANNER_MIN_RVOL", "high")
    with pytest.raises(ConfigurationError):
        load_config_with_overrides(str(config_file))


@pytest.mark.parametrize("overrides", [
    {"confidence": {"threshold": 150}},
    {"confidence": {"max_points": 0}},
    {"filter": {"analysis_expire_hours": 0}},
    {"filter": {"price_change_threshold": -0.1}},
    {"scanner": {"min_rvol": -1}},
    {"scanner": {"limit": 60, "max_candidates": 50}},
    {"risk": {"risk_pct": 2.0}},
    {"monitor": {"interval_seconds": 0}},
])
def test_invalid_values_rejected(tmp_path, overrides):
    with pytest.raises(ConfigurationError):
        load_config_with_overrides(str(tmp_path / "absent.yaml"), overrides)


def test_unparseable_yaml(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("scanner: [unclosed\n")
    with pytest.raises(ConfigurationError):
        load_config_with_overrides(str(path))


def test_scanner_blacklist_normalized():
    assert ScannerConfig(blacklist=[" wbtc", "", "eur "]).blacklist == ["WBTC", "EUR"]


def test_config_manager_is_shared(config_file):
    manager = ConfigManager()
    manager.load(str(config_file))
    assert ConfigManager() is manager
    assert ConfigManager().config.confidence.threshold == 70
    assert ConfigManager().config.scanner.min_rvol == 2.0

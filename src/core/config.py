"""
Engine configuration: config/config.yaml, then .env, then process environment.

Later sources win. Every threshold used by the scanner, smart filter,
confidence gate and lifecycle monitor lives here, and an invalid value
fails the process at startup.
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from src.core.exceptions import ConfigurationError


def _truthy(v: str) -> bool:
    return v.strip().lower() in ("1", "true", "yes", "on")


def _csv(v: str) -> List[str]:
    return [s.strip() for s in v.split(",") if s.strip()]


# ---------------------------------------------------------------------------
# Environment overrides (shared)
# ---------------------------------------------------------------------------

_ENV_MAPPINGS: Dict[str, tuple] = {
    "LOG_LEVEL": ("app", "log_level"),
    "LOG_DIR": ("app", "log_dir"),
    "LOG_JSON": ("app", "json_logs", _truthy),
    "DB_PATH": ("app", "db_path"),
    "BINANCE_BASE_URL": ("market_data", "base_url"),
    "MARKET_DATA_TIMEOUT": ("market_data", "timeout", float),
    "MARKET_DATA_MAX_RETRIES": ("market_data", "max_retries", int),
    "QUOTE_ASSET": ("market_data", "quote_asset"),
    "SCANNER_MIN_VOLUME_24H": ("scanner", "min_volume_24h", float),
    "SCANNER_MIN_CHANGE_24H": ("scanner", "min_change_24h", float),
    "SCANNER_MIN_CHANGE_4H": ("scanner", "min_change_4h", float),
    "SCANNER_MIN_RVOL": ("scanner", "min_rvol", float),
    "SCANNER_LIMIT": ("scanner", "limit", int),
    "SCANNER_BLACKLIST": ("scanner", "blacklist", _csv),
    "SCAN_INTERVAL_SECONDS": ("scanner", "scan_interval_seconds", int),
    "ANALYSIS_EXPIRE_HOURS": ("filter", "analysis_expire_hours", float),
    "PRICE_CHANGE_THRESHOLD": ("filter", "price_change_threshold", float),
    "CONFIDENCE_THRESHOLD": ("confidence", "threshold", int),
    "CONFIDENCE_MAX_POINTS": ("confidence", "max_points", int),
    "MUTE_DURATION_HOURS": ("confidence", "mute_duration_hours", float),
    "MAX_LEVERAGE": ("risk", "max_leverage", float),
    "RISK_PCT": ("risk", "risk_pct", float),
    "PORTFOLIO_VALUE": ("risk", "portfolio_value", float),
    "MONITOR_INTERVAL_SECONDS": ("monitor", "interval_seconds", int),
    "ORACLE_URL": ("oracle", "url"),
    "ORACLE_TIMEOUT": ("oracle", "timeout", float),
    "TELEGRAM_BOT_TOKEN": ("notifications", "telegram_token"),
    "TELEGRAM_CHAT_IDS": ("notifications", "telegram_chat_ids", _csv),
    "TELEGRAM_CHAT_ID": ("notifications", "telegram_chat_ids", _csv),
    "NOTIFY_WEBHOOK_URL": ("notifications", "webhook_url"),
    "API_HOST": ("api", "host"),
    "API_PORT": ("api", "port", int),
}


def _apply_env_overrides(config: Dict[str, Any]) -> None:
    """Override YAML values with environment variables where set."""
    for env_key, mapping in _ENV_MAPPINGS.items():
        value = os.getenv(env_key)
        if value is None:
            continue
        section, key = mapping[0], mapping[1]
        converter = mapping[2] if len(mapping) > 2 else str
        try:
            converted = converter(value)
        except (ValueError, TypeError) as e:
            # A non-numeric threshold is a configuration error, not a fallback.
            raise ConfigurationError(
                f"Environment variable {env_key}={value!r} is invalid: {e}"
            ) from e
        if not isinstance(config.get(section), dict):
            config[section] = {}
        config[section][key] = converted
        logging.getLogger("config").debug("Env override applied: %s", env_key)


# ---------------------------------------------------------------------------
# Pydantic Configuration Models (strict validation)
# ---------------------------------------------------------------------------

def _positive(name: str, v: float) -> float:
    if v <= 0:
        raise ValueError(f"{name} must be greater than 0")
    return v


def _non_negative(name: str, v: float) -> float:
    if v < 0:
        raise ValueError(f"{name} must not be negative")
    return v


class AppConfig(BaseModel):
    name: str = "SignalScout"
    version: str = "1.0.0"
    log_level: str = "INFO"
    log_dir: str = "logs"
    json_logs: bool = False
    db_path: str = "data/signal_scout.db"


class MarketDataConfig(BaseModel):
    base_url: str = "https://api.binance.com"
    quote_asset: str = "USDT"
    timeout: float = 30.0
    max_retries: int = 3
    retry_base_delay: float = 1.0

    @field_validator("timeout", "retry_base_delay")
    @classmethod
    def validate_durations(cls, v, info):
        return _positive(info.field_name, v)

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, v):
        return _non_negative("max_retries", v)


# Base assets that are never momentum candidates: stablecoins, wrapped tokens
# and fiat-quoted pairs.
DEFAULT_BLACKLIST = [
    "USDC", "BUSD", "TUSD", "FDUSD", "USDP", "DAI", "USTC", "PAXG",
    "USD1", "USDE", "EUR", "EURI", "AEUR", "GBP", "TRY", "BRL",
    "WBTC", "WBETH", "BETH",
]


class ScannerConfig(BaseModel):
    min_volume_24h: float = 20_000_000
    min_change_24h: float = 3.0
    min_change_4h: float = 1.5
    min_rvol: float = 1.5
    max_candidates: int = 50
    limit: int = 20
    pacing_delay_seconds: float = 0.1
    scan_interval_seconds: int = 600
    blacklist: List[str] = Field(default_factory=lambda: list(DEFAULT_BLACKLIST))

    @field_validator("min_volume_24h", "min_change_24h", "min_change_4h", "min_rvol", "pacing_delay_seconds")
    @classmethod
    def validate_thresholds(cls, v, info):
        return _non_negative(info.field_name, v)

    @field_validator("max_candidates", "limit", "scan_interval_seconds")
    @classmethod
    def validate_counts(cls, v, info):
        return _positive(info.field_name, v)

    @field_validator("blacklist")
    @classmethod
    def normalize_blacklist(cls, v):
        return [s.strip().upper() for s in v if s and s.strip()]


class FilterConfig(BaseModel):
    analysis_expire_hours: float = 4.0
    price_change_threshold: float = 0.02
    observation_limit: int = 50

    @field_validator("analysis_expire_hours", "observation_limit")
    @classmethod
    def validate_positive(cls, v, info):
        return _positive(info.field_name, v)

    @field_validator("price_change_threshold")
    @classmethod
    def validate_price_change_threshold(cls, v):
        return _non_negative("price_change_threshold", v)


class ConfidenceConfig(BaseModel):
    threshold: int = 75
    max_points: int = 15
    mute_duration_hours: float = 4.0

    @field_validator("threshold")
    @classmethod
    def validate_threshold(cls, v):
        if v < 0 or v > 100:
            raise ValueError("threshold must be between 0 and 100")
        return v

    @field_validator("max_points", "mute_duration_hours")
    @classmethod
    def validate_positive(cls, v, info):
        return _positive(info.field_name, v)


class RiskConfig(BaseModel):
    max_leverage: float = 20.0
    risk_pct: float = 0.01
    portfolio_value: float = 1000.0
    min_reward_risk: float = 2.0

    @field_validator("max_leverage")
    @classmethod
    def validate_max_leverage(cls, v):
        if v < 1:
            raise ValueError("max_leverage must be at least 1")
        return v

    @field_validator("risk_pct")
    @classmethod
    def validate_risk_pct(cls, v):
        if v <= 0 or v > 1.0:
            raise ValueError("risk_pct must be between 0 and 1.0")
        return v

    @field_validator("portfolio_value", "min_reward_risk")
    @classmethod
    def validate_positive(cls, v, info):
        return _positive(info.field_name, v)


class MonitorConfig(BaseModel):
    interval_seconds: int = 300

    @field_validator("interval_seconds")
    @classmethod
    def validate_interval(cls, v):
        return _positive("interval_seconds", v)


class OracleConfig(BaseModel):
    url: str = ""
    timeout: float = 120.0

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v):
        return _positive("timeout", v)


class NotificationConfig(BaseModel):
    telegram_token: str = ""
    telegram_chat_ids: List[str] = Field(default_factory=list)
    telegram_rate_limit_seconds: float = 2.0
    webhook_url: str = ""
    webhook_timeout: float = 10.0
    send_scan_reports: bool = True


class ApiConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8080


class BotConfig(BaseModel):
    """Master configuration model with full validation."""
    app: AppConfig = Field(default_factory=AppConfig)
    market_data: MarketDataConfig = Field(default_factory=MarketDataConfig)
    scanner: ScannerConfig = Field(default_factory=ScannerConfig)
    filter: FilterConfig = Field(default_factory=FilterConfig)
    confidence: ConfidenceConfig = Field(default_factory=ConfidenceConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    oracle: OracleConfig = Field(default_factory=OracleConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    @model_validator(mode="after")
    def validate_scanner_window(self):
        if self.scanner.limit > self.scanner.max_candidates:
            raise ValueError("scanner.limit must not exceed scanner.max_candidates")
        return self


def _read_yaml(config_path: str) -> Dict[str, Any]:
    config_file = Path(config_path)
    if not config_file.exists():
        return {}
    with open(config_file, "r") as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Cannot parse {config_path}: {e}") from e


def _build(raw: Dict[str, Any]) -> BotConfig:
    try:
        return BotConfig(**raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


# ---------------------------------------------------------------------------
# Configuration Manager (Singleton)
# ---------------------------------------------------------------------------

class ConfigManager:
    """
    Thread-safe configuration manager.

    Loads configuration from YAML file, then overlays environment
    variables. Validates all values through Pydantic models and raises
    ConfigurationError on anything invalid.
    """

    _instance: Optional[ConfigManager] = None
    _config: Optional[BotConfig] = None
    _lock: threading.Lock = threading.Lock()

    def __new__(cls) -> ConfigManager:
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._config is None:
            self.load()

    def load(self, config_path: str = "config/config.yaml") -> BotConfig:
        """Load configuration from YAML + environment variables."""
        load_dotenv()
        yaml_config = _read_yaml(config_path)
        _apply_env_overrides(yaml_config)
        self._config = _build(yaml_config)
        return self._config

    @property
    def config(self) -> BotConfig:
        """Get the current validated configuration."""
        if self._config is None:
            self.load()
        return self._config


def get_config() -> BotConfig:
    """Get the global configuration instance."""
    return ConfigManager().config


def load_config_with_overrides(
    config_path: str = "config/config.yaml",
    overrides: Optional[Dict[str, Any]] = None,
) -> BotConfig:
    """Load a fresh config (YAML + env) with optional deep overrides."""
    load_dotenv()
    yaml_config = _read_yaml(config_path)
    _apply_env_overrides(yaml_config)

    def _deep_update(dst: Dict[str, Any], src: Dict[str, Any]) -> None:
        for key, value in (src or {}).items():
            if isinstance(value, dict) and isinstance(dst.get(key), dict):
                _deep_update(dst[key], value)
            else:
                dst[key] = value

    if overrides:
        _deep_update(yaml_config, overrides)

    return _build(yaml_config)

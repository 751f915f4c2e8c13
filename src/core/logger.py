"""
Structured logging for the signal engine.

structlog renders every record, stdlib logging routes it: stderr for the
operator (stdout is reserved for CLI command output), a rotating main log
and a rotating errors-only log. Bot tokens, API secrets and credentials
embedded in webhook URLs are masked before rendering.
"""

from __future__ import annotations

import logging
import re
import sys
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List

import structlog

_MB = 1024 * 1024

# Third-party loggers that are chatty at INFO. httpx logs full request URLs,
# which for Telegram include the bot token.
_QUIET_LOGGERS = ("httpx", "httpcore", "asyncio", "telegram", "uvicorn.access")

_SENSITIVE_KEYS = ("api_key", "api_secret", "password", "token", "secret")
_TELEGRAM_TOKEN_RE = re.compile(r"(bot\d+):([A-Za-z0-9_-]{20,})")
_URL_USERINFO_RE = re.compile(r"(https?://)([^/@\s:]+):([^/@\s]+)@")


def redact(text: str) -> str:
    """Strip bot tokens and URL credentials from free text."""
    text = _TELEGRAM_TOKEN_RE.sub(r"\1:<redacted>", text)
    return _URL_USERINFO_RE.sub(r"\1\2:<redacted>@", text)


def _redact_nested(value: Any) -> Any:
    if isinstance(value, str):
        return redact(value)
    if isinstance(value, dict):
        return {k: _redact_nested(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_redact_nested(v) for v in value]
    if isinstance(value, tuple):
        return tuple(_redact_nested(v) for v in value)
    return value


def _mask_value(value: Any) -> str:
    text = str(value)
    return f"{text[:4]}****{text[-4:]}" if len(text) > 8 else "****"


def mask_sensitive(_, __, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """structlog processor: mask secret-looking keys, redact tokens in the rest."""
    for key, value in event_dict.items():
        if any(s in key.lower() for s in _SENSITIVE_KEYS):
            event_dict[key] = _mask_value(value)
        else:
            event_dict[key] = _redact_nested(value)
    return event_dict


class PerformanceTimer:
    """Times a block and logs it; runs slower than ``slow_ms`` log at WARNING."""

    def __init__(self, logger: Any, operation: str, slow_ms: float = 120_000, **context):
        self.logger = logger
        self.operation = operation
        self.slow_ms = slow_ms
        self.context = context
        self.elapsed_ms: float = 0.0
        self._started: float = 0.0

    def __enter__(self) -> PerformanceTimer:
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.elapsed_ms = round((time.perf_counter() - self._started) * 1000, 2)
        if exc_type is not None:
            self.logger.error(
                f"{self.operation} failed", duration_ms=self.elapsed_ms, error=repr(exc_val), **self.context
            )
        elif self.elapsed_ms > self.slow_ms:
            self.logger.warning(f"{self.operation} slow", duration_ms=self.elapsed_ms, **self.context)
        else:
            self.logger.info(f"{self.operation} completed", duration_ms=self.elapsed_ms, **self.context)
        return False


def _rotating(path: Path, level: int, max_mb: int, backups: int) -> logging.Handler:
    handler = RotatingFileHandler(path, maxBytes=max_mb * _MB, backupCount=backups, encoding="utf-8")
    handler.setLevel(level)
    return handler


def _install_root_handlers(level: int, handlers: List[logging.Handler]) -> None:
    root = logging.getLogger()
    for old in root.handlers[:]:
        old.close()
        root.removeHandler(old)
    root.setLevel(level)
    for handler in handlers:
        root.addHandler(handler)


def setup_logging(
    log_level: str = "INFO",
    log_dir: str = "logs",
    json_output: bool = False,
    log_file: str = "signal_scout.log",
) -> None:
    """
    Configure structlog and the stdlib root logger.

    Safe to call more than once; earlier root handlers are closed and
    replaced.
    """
    level = getattr(logging, str(log_level).upper(), logging.INFO)
    path = Path(log_dir)
    path.mkdir(parents=True, exist_ok=True)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    handlers = [
        _rotating(path / log_file, level, max_mb=20, backups=5),
        _rotating(path / "errors.log", logging.ERROR, max_mb=5, backups=3),
        console,
    ]
    _install_root_handlers(level, handlers)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    pre_chain = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        mask_sensitive,
    ]
    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty(), pad_event=32)
    )
    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=pre_chain,
    )
    for handler in handlers:
        handler.setFormatter(formatter)


def get_logger(name: str = "signal_scout") -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def log_performance(logger: Any, operation: str, **context) -> PerformanceTimer:
    return PerformanceTimer(logger, operation, **context)

"""Centralized logging configuration for the analysis manager."""

from __future__ import annotations

import json
import logging
import logging.config
import os
import re
import time
from pathlib import Path
from typing import Any, Dict, Optional

from .config import LogCfg, log_cfg

__all__ = ["init_logging", "get_logger", "log_kv"]

_SECRET_KEY_PATTERN = re.compile(r"(PASSWORD|TOKEN|SECRET)$", re.IGNORECASE)

_DEFAULT_LOGGER = "analysismgr"
_LOGGING_INITIALIZED = False


class UTCFormatter(logging.Formatter):
    """Formatter that always uses UTC timestamps."""

    converter = staticmethod(time.gmtime)


class SecretsFilter(logging.Filter):
    """Filter that masks secrets found in environment variables."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401 - signature mandated by logging
        message = record.getMessage()
        for key, value in os.environ.items():
            if value and _SECRET_KEY_PATTERN.search(key):
                message = message.replace(value, "***")
        record.msg = message
        record.args = ()
        return True


class KVFormatter(UTCFormatter):
    """Formatter that appends key-value context pairs."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        ctx = getattr(record, "ctx", None)
        if ctx and isinstance(ctx, dict):
            kv = " ".join(f"{key}={value}" for key, value in ctx.items())
            if kv:
                return f"{base} | {kv}"
        return base


class JSONFormatter(UTCFormatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        payload: Dict[str, Any] = {
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
            "time": self.formatTime(record, "%Y-%m-%d %H:%M:%S"),
        }
        ctx = getattr(record, "ctx", None)
        if isinstance(ctx, dict):
            payload.update({key: str(value) for key, value in ctx.items()})
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def _build_file_handler(log_dir: Path, filename: str, cfg: LogCfg, *, level: str, formatter: str) -> Dict[str, Any]:
    return {
        "class": "logging.handlers.RotatingFileHandler",
        "filename": str(log_dir / filename),
        "maxBytes": cfg.rotate_bytes,
        "backupCount": cfg.backup_count,
        "encoding": "utf-8",
        "delay": True,
        "level": level,
        "formatter": formatter,
        "filters": ["secrets"],
    }


def init_logging(cfg: Optional[LogCfg] = None, *, trace: bool = False) -> None:
    """Initialise project-wide logging based on ``cfg`` settings."""

    global _LOGGING_INITIALIZED

    if _LOGGING_INITIALIZED:
        return

    cfg = cfg or log_cfg()
    log_dir = cfg.log_dir
    log_dir.mkdir(parents=True, exist_ok=True)

    formatter_name = "json" if cfg.json else "standard"
    level = cfg.level.upper()
    console_level = "DEBUG" if trace else level

    logging_config: Dict[str, Any] = {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {"secrets": {"()": SecretsFilter}},
        "formatters": {
            "standard": {
                "()": KVFormatter,
                "fmt": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
            "json": {"()": JSONFormatter},
        },
        "handlers": {
            "app_file": _build_file_handler(log_dir, "app.log", cfg, level="DEBUG", formatter=formatter_name),
            "err_file": _build_file_handler(log_dir, "errors.log", cfg, level="WARNING", formatter=formatter_name),
            "console": {
                "class": "logging.StreamHandler",
                "level": console_level,
                "formatter": formatter_name,
                "filters": ["secrets"],
                "stream": "ext://sys.stderr",
            },
        },
        "loggers": {
            _DEFAULT_LOGGER: {
                "handlers": ["app_file", "err_file", "console"],
                "level": "DEBUG" if trace else level,
                "propagate": False,
            },
        },
        "root": {
            "level": "WARNING",
            "handlers": ["console", "err_file"],
        },
    }

    logging.config.dictConfig(logging_config)

    logging.getLogger("urllib3").setLevel(logging.WARNING)

    _LOGGING_INITIALIZED = True

    get_logger().info("Logging initialised (directory: %s)", log_dir)


def _normalize_logger_name(name: str) -> str:
    if not name or name == _DEFAULT_LOGGER:
        return _DEFAULT_LOGGER
    if name.startswith(_DEFAULT_LOGGER + "."):
        return name
    return f"{_DEFAULT_LOGGER}.{name}"


def get_logger(name: str = _DEFAULT_LOGGER) -> logging.Logger:
    """Return a namespaced logger within the ``analysismgr`` hierarchy."""

    return logging.getLogger(_normalize_logger_name(name))


def log_kv(logger: logging.Logger, level: int, message: str, **ctx: Any) -> None:
    """Emit log record with structured context in ``ctx``."""

    logger.log(level, message, extra={"ctx": ctx})


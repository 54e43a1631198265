"""Centralised environment configuration helpers for the analysis manager."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv
from platformdirs import user_config_dir

logger = logging.getLogger(__name__)

APP_NAME = "AnalysisManager"
DEFAULT_LOCAL_PARAMS_FILE = "AnalysisManager.env"

_WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")
_WINDOW_RE = re.compile(
    r"^\s*(?P<day>[a-z]{3})\s+(?P<start>\d{1,2}:\d{2})\s*-\s*(?P<end>\d{1,2}:\d{2})\s*$",
    re.IGNORECASE,
)


def _getenv(*names: str, required: bool = False, default: Optional[str] = None) -> Optional[str]:
    for idx, name in enumerate(names):
        value = os.getenv(name)
        if value:
            if len(names) > 1 and idx != 0:
                logger.warning(
                    "ENV alias %s used for %s; please rename to %s",
                    name,
                    names[0],
                    names[0],
                )
            return value
    if required and default is None:
        raise RuntimeError(f"Missing required env var: one of {names}")
    return default


def _as_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _minutes(value: str) -> int:
    hours, minutes = value.split(":", 1)
    return int(hours) * 60 + int(minutes)


@dataclass(frozen=True)
class MaintenanceWindow:
    """Weekly window during which the central services are expected to be down."""

    weekday: int
    start_minute: int
    end_minute: int

    @classmethod
    def parse(cls, raw: Optional[str]) -> Optional["MaintenanceWindow"]:
        if not raw or not raw.strip():
            return None
        match = _WINDOW_RE.match(raw)
        if not match or match.group("day").lower() not in _WEEKDAYS:
            logger.warning("Ignoring malformed maintenance window %r (expected 'sun 00:00-06:00')", raw)
            return None
        return cls(
            weekday=_WEEKDAYS.index(match.group("day").lower()),
            start_minute=_minutes(match.group("start")),
            end_minute=_minutes(match.group("end")),
        )

    def contains(self, moment) -> bool:
        if moment.weekday() != self.weekday:
            return False
        minute = moment.hour * 60 + moment.minute
        return self.start_minute <= minute < self.end_minute


@dataclass(frozen=True)
class ManagerCfg:
    manager_dir: Path
    local_params_file: str
    offline: bool
    trace: bool
    developer_hosts: Tuple[str, ...]
    maintenance_window: Optional[MaintenanceWindow]

    @property
    def local_params_path(self) -> Path:
        return self.manager_dir / self.local_params_file


@dataclass(frozen=True)
class RetryCfg:
    service_attempts: int
    service_holdoff: float
    delete_attempts: int
    cleanup_holdoff: float


@dataclass(frozen=True)
class HttpCfg:
    timeout: float
    retry_total: int
    backoff_factor: float


@dataclass(frozen=True)
class LogCfg:
    level: str
    json: bool
    log_dir: Path
    rotate_bytes: int
    backup_count: int


@dataclass(frozen=True)
class AppConfig:
    manager: ManagerCfg
    retry: RetryCfg
    http: HttpCfg
    log: LogCfg


def config_dir() -> Path:
    return Path(user_config_dir(APP_NAME))


def load_env_files(manager_dir: Path) -> None:
    """Load ``.env`` files; values already present in the environment win."""

    for path in (config_dir() / ".env", manager_dir / ".env"):
        if path.is_file():
            load_dotenv(path, override=False)


@lru_cache()
def load_all() -> AppConfig:
    manager_dir = Path(_getenv("ANALYSISMGR_DIR", default=os.getcwd()) or os.getcwd()).expanduser()
    load_env_files(manager_dir)

    hosts_raw = _getenv("ANALYSISMGR_DEVELOPER_HOSTS", default="") or ""
    manager_cfg = ManagerCfg(
        manager_dir=manager_dir,
        local_params_file=(
            _getenv("ANALYSISMGR_LOCAL_PARAMS", default=DEFAULT_LOCAL_PARAMS_FILE)
            or DEFAULT_LOCAL_PARAMS_FILE
        ).strip(),
        offline=_as_bool(_getenv("ANALYSISMGR_OFFLINE", "OFFLINE_MODE")),
        trace=_as_bool(_getenv("ANALYSISMGR_TRACE", "TRACE_MODE")),
        developer_hosts=tuple(h.strip() for h in hosts_raw.split(",") if h.strip()),
        maintenance_window=MaintenanceWindow.parse(
            _getenv("ANALYSISMGR_MAINTENANCE_WINDOW", default="sun 00:00-06:00")
        ),
    )

    retry_cfg = RetryCfg(
        service_attempts=max(1, int(_getenv("ANALYSISMGR_SERVICE_RETRIES", default="6") or "6")),
        service_holdoff=float(_getenv("ANALYSISMGR_SERVICE_HOLDOFF", default="5") or "5"),
        delete_attempts=max(1, int(_getenv("ANALYSISMGR_DELETE_RETRIES", default="3") or "3")),
        cleanup_holdoff=float(_getenv("ANALYSISMGR_CLEANUP_HOLDOFF", default="3") or "3"),
    )

    http_cfg = HttpCfg(
        timeout=float(_getenv("HTTP_TIMEOUT", default="10") or "10"),
        retry_total=int(_getenv("HTTP_RETRY_TOTAL", default="0") or "0"),
        backoff_factor=float(_getenv("HTTP_BACKOFF", default="0.5") or "0.5"),
    )

    log_dir_raw = _getenv("LOG_DIR")
    log_cfg = LogCfg(
        level=(_getenv("LOG_LEVEL", default="INFO") or "INFO").upper(),
        json=_as_bool(_getenv("LOG_JSON"), False),
        log_dir=Path(log_dir_raw).expanduser() if log_dir_raw else manager_dir / "logs",
        rotate_bytes=int(_getenv("LOG_ROTATE_BYTES", default=str(10 * 1024 * 1024)) or 10 * 1024 * 1024),
        backup_count=int(_getenv("LOG_BACKUP_COUNT", default="7") or "7"),
    )

    return AppConfig(manager=manager_cfg, retry=retry_cfg, http=http_cfg, log=log_cfg)


def log_cfg() -> LogCfg:
    return load_all().log

"""Manager settings resolution.

Settings are layered: the local params file seeds the table; an offline
manager then merges ``ManagerSettingsLocal.yaml`` from its own directory,
while an online manager merges its parameters from the control service,
follows the settings-group chain and finally adds the per-step-tool storage
paths published by the broker service.

Every failure is returned as a :class:`SettingsResult`; nothing raised while
resolving escapes :meth:`SettingsResolver.resolve`.
"""

from __future__ import annotations

import logging
import os
import socket
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import yaml
from dotenv import dotenv_values, set_key

from .config import MaintenanceWindow
from .logging_setup import get_logger, log_kv
from .params import (
    MGR_PARAM_LOCAL_TASK_QUEUE_PATH,
    MGR_PARAM_LOCAL_WORK_DIR_PATH,
    MGR_PARAM_MGR_ACTIVE,
    MGR_PARAM_MGR_ACTIVE_LOCAL,
    MGR_PARAM_MGR_CFG_DB_CONN_STRING,
    MGR_PARAM_MGR_NAME,
    MGR_PARAM_SETTING_GROUP_NAME,
    MGR_PARAM_USING_DEFAULTS,
    MGR_PARAM_WORK_DIR,
    STEP_TOOL_PARAM_FILE_STORAGE_PATH_PREFIX,
    ConfigStore,
)
from .services import (
    DEFAULT_SERVICE_ATTEMPTS,
    BrokerServiceClient,
    ConnectionProfile,
    ControlServiceClient,
    ServiceError,
    call_with_retries,
)

LOCAL_MANAGER_SETTINGS_FILE = "ManagerSettingsLocal.yaml"
COMPUTER_NAME_TOKEN = "$ComputerName$"
UNDEFINED_MANAGER_NAME = "LoadMgrSettingsFromFile__Undefined_manager_name"

ControlClientFactory = Callable[[str], ControlServiceClient]
BrokerClientFactory = Callable[[str], BrokerServiceClient]


class FailureKind(str, Enum):
    MISSING_REQUIRED_PARAMETER = "missing_required_parameter"
    DEACTIVATED_LOCALLY = "deactivated_locally"
    SERVICE_UNREACHABLE = "service_unreachable"
    MALFORMED_LOCAL_SETTINGS_FILE = "malformed_local_settings_file"
    DIRECTORY_VALIDATION_FAILURE = "directory_validation_failure"


@dataclass(frozen=True)
class SettingsResult:
    """Outcome of a settings resolution."""

    ok: bool
    params: ConfigStore
    kind: Optional[FailureKind] = None
    message: str = ""
    groups: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def deactivated(self) -> bool:
        return self.kind is FailureKind.DEACTIVATED_LOCALLY

    @property
    def fatal(self) -> bool:
        return not self.ok and not self.deactivated


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "True" if value else "False"
    if value is None:
        return ""
    if isinstance(value, (list, tuple, set)):
        return ",".join(str(v) for v in value)
    return str(value)


def load_local_params(path: Path) -> Optional[Dict[str, str]]:
    """Read the local params file (``KEY=value`` lines).

    Returns ``None`` when the file does not exist.  Missing entries for the
    active flag, the template marker and the manager name get the same
    defaults the manager has always used.
    """

    path = Path(path)
    if not path.is_file():
        return None
    values = {key: value or "" for key, value in dotenv_values(path).items() if key}
    store = ConfigStore(values)
    if MGR_PARAM_MGR_ACTIVE_LOCAL not in store:
        store[MGR_PARAM_MGR_ACTIVE_LOCAL] = "False"
    if MGR_PARAM_USING_DEFAULTS not in store:
        store[MGR_PARAM_USING_DEFAULTS] = "False"
    if MGR_PARAM_MGR_NAME not in store:
        store[MGR_PARAM_MGR_NAME] = UNDEFINED_MANAGER_NAME
    return store.snapshot()


def disable_manager_locally(path: Path, *, logger: Optional[logging.Logger] = None) -> bool:
    """Set ``MgrActive_Local=False`` in the local params file."""

    log = logger or get_logger(__name__)
    path = Path(path)
    if not path.is_file():
        log.error("Cannot disable manager locally; params file not found: %s", path)
        return False
    existing = dotenv_values(path)
    key = next((k for k in existing if k and k.lower() == MGR_PARAM_MGR_ACTIVE_LOCAL.lower()), None)
    if key is None:
        log.error("Cannot disable manager locally; %s not found in %s", MGR_PARAM_MGR_ACTIVE_LOCAL, path)
        return False
    try:
        set_key(str(path), key, "False", quote_mode="never")
    except OSError as exc:
        log.error("Error updating %s in %s: %s", key, path, exc)
        return False
    log.info("Manager disabled locally (%s=False in %s)", key, path)
    return True


def read_local_settings_file(path: Path) -> Tuple[Optional[Dict[str, str]], str]:
    """Parse the offline settings document.

    The document is a YAML mapping, either with the settings under a
    ``settings`` key or directly at the top level.  Returns the settings and
    an empty message, or ``None`` and the reason.
    """

    if not path.is_file():
        return None, f"Manager settings file not found: {path}"
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as exc:
        return None, f"Exception loading settings file {path}: {exc}"
    except yaml.YAMLError as exc:
        return None, f"Unable to parse settings file {path}: {exc}"

    if not isinstance(data, dict):
        return None, f"Settings file {path} must contain a mapping of settings"

    settings = data.get("settings", data)
    if not isinstance(settings, dict):
        return None, f"The settings node of {path} must be a mapping, not {type(settings).__name__}"

    return {str(key): _stringify(value) for key, value in settings.items() if key is not None}, ""


def _join_work_dir(base: str, manager_name: str) -> str:
    if "/" in base:
        return str(PurePosixPath(base) / manager_name)
    return os.path.join(base, manager_name)


class SettingsResolver:
    """Builds the manager's :class:`ConfigStore` from its configured sources."""

    def __init__(
        self,
        manager_dir: Path,
        *,
        offline: bool = False,
        local_settings_file: str = LOCAL_MANAGER_SETTINGS_FILE,
        control_client_factory: Optional[ControlClientFactory] = None,
        broker_client_factory: Optional[BrokerClientFactory] = None,
        attempts: int = DEFAULT_SERVICE_ATTEMPTS,
        holdoff: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
        maintenance_window: Optional[MaintenanceWindow] = None,
        clock: Callable[[], datetime] = datetime.now,
        host_name: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.manager_dir = Path(manager_dir)
        self.offline = offline
        self.local_settings_file = local_settings_file
        self._control_factory = control_client_factory or ControlServiceClient
        self._broker_factory = broker_client_factory or BrokerServiceClient
        self.attempts = max(1, int(attempts))
        self.holdoff = holdoff
        self._sleep = sleep
        self.maintenance_window = maintenance_window
        self._clock = clock
        self.host_name = host_name or socket.gethostname()
        self.logger = logger or get_logger(__name__)

    @property
    def local_settings_path(self) -> Path:
        return self.manager_dir / self.local_settings_file

    # ------------------------------------------------------------------
    # public API

    def resolve(self, local_params: Mapping[str, Any]) -> SettingsResult:
        """Resolve the full parameter set seeded from ``local_params``."""

        params = ConfigStore()
        kind = FailureKind.MISSING_REQUIRED_PARAMETER
        try:
            params.merge(local_params)
            failure = self._check_local_params(params)
            if failure:
                return failure

            if self.offline:
                kind = FailureKind.MALFORMED_LOCAL_SETTINGS_FILE
                failure = self._load_local_settings(params)
                if failure:
                    return failure
                kind = FailureKind.DIRECTORY_VALIDATION_FAILURE
                failure = self._validate_offline_directories(params)
                if failure:
                    return failure
                log_kv(self.logger, logging.INFO, "Manager settings loaded", mode="offline", count=len(params))
                return SettingsResult(ok=True, params=params)

            if not params.get_bool(MGR_PARAM_MGR_ACTIVE_LOCAL, False):
                message = f"Manager deactivated locally ({MGR_PARAM_MGR_ACTIVE_LOCAL} is not True)"
                self.logger.warning(message)
                return SettingsResult(
                    ok=False,
                    params=params,
                    kind=FailureKind.DEACTIVATED_LOCALLY,
                    message=message,
                )

            kind = FailureKind.SERVICE_UNREACHABLE
            failure, groups = self._load_control_settings(params)
            if failure:
                return failure
            failure = self._load_broker_settings(params, groups)
            if failure:
                return failure
            kind = FailureKind.MISSING_REQUIRED_PARAMETER
            if not params.get_param(MGR_PARAM_WORK_DIR).strip():
                return self._fail(
                    FailureKind.MISSING_REQUIRED_PARAMETER,
                    f"Manager parameter {MGR_PARAM_WORK_DIR} is not defined for manager {params.get_param(MGR_PARAM_MGR_NAME)}",
                    params,
                    groups=groups,
                    parameter=MGR_PARAM_WORK_DIR,
                )
            log_kv(
                self.logger,
                logging.INFO,
                "Manager settings loaded",
                mode="online",
                count=len(params),
                groups=",".join(groups) or "-",
            )
            return SettingsResult(ok=True, params=params, groups=groups)
        except Exception as exc:  # component boundary
            self.logger.exception("Unexpected error resolving manager settings")
            return SettingsResult(
                ok=False,
                params=params,
                kind=kind,
                message=f"Unexpected error resolving manager settings: {exc}",
            )

    def ack_manager_update_required(self, params: ConfigStore) -> bool:
        """Tell the control service that the manager exited for an update."""

        return self._administrative_call(
            params,
            "ack_manager_update",
            lambda client, name: client.ack_manager_update(name),
        )

    def pause_manager_task_requests(self, params: ConfigStore, holdoff_minutes: int = 30) -> bool:
        """Ask the control service to stop handing out tasks for a while."""

        return self._administrative_call(
            params,
            "pause_task_requests",
            lambda client, name: client.pause_task_requests(name, holdoff_minutes),
        )

    # ------------------------------------------------------------------
    # steps

    def _fail(
        self,
        kind: FailureKind,
        message: str,
        params: ConfigStore,
        *,
        groups: Tuple[str, ...] = (),
        **ctx: Any,
    ) -> SettingsResult:
        log_kv(self.logger, logging.ERROR, message, kind=kind.value, **ctx)
        return SettingsResult(ok=False, params=params, kind=kind, message=message, groups=groups)

    def _check_local_params(self, params: ConfigStore) -> Optional[SettingsResult]:
        if params.get_bool(MGR_PARAM_USING_DEFAULTS, False):
            return self._fail(
                FailureKind.MISSING_REQUIRED_PARAMETER,
                f"Local manager settings are unconfigured template defaults ({MGR_PARAM_USING_DEFAULTS}=True); "
                f"edit the local params file and set {MGR_PARAM_USING_DEFAULTS} to False",
                params,
                parameter=MGR_PARAM_USING_DEFAULTS,
            )

        manager_name = params.get_param(MGR_PARAM_MGR_NAME).strip()
        if not manager_name:
            return self._fail(
                FailureKind.MISSING_REQUIRED_PARAMETER,
                f"Manager parameter {MGR_PARAM_MGR_NAME} is not defined",
                params,
                parameter=MGR_PARAM_MGR_NAME,
            )

        if COMPUTER_NAME_TOKEN.lower() in manager_name.lower():
            index = manager_name.lower().index(COMPUTER_NAME_TOKEN.lower())
            manager_name = (
                manager_name[:index] + self.host_name + manager_name[index + len(COMPUTER_NAME_TOKEN):]
            )
            params[MGR_PARAM_MGR_NAME] = manager_name
            self.logger.debug("Manager name resolved to %s", manager_name)
        return None

    def _load_local_settings(self, params: ConfigStore) -> Optional[SettingsResult]:
        path = self.local_settings_path
        settings, reason = read_local_settings_file(path)
        if settings is None:
            return self._fail(FailureKind.MALFORMED_LOCAL_SETTINGS_FILE, reason, params, path=path)

        params.merge(settings)
        self.logger.debug("Merged %d settings from %s", len(settings), path)

        for required in (MGR_PARAM_LOCAL_TASK_QUEUE_PATH, MGR_PARAM_LOCAL_WORK_DIR_PATH):
            if not params.get_param(required).strip():
                return self._fail(
                    FailureKind.MISSING_REQUIRED_PARAMETER,
                    f"Manager parameter {required} is missing from file {self.local_settings_file}",
                    params,
                    parameter=required,
                    path=path,
                )

        if params.get_bool(MGR_PARAM_MGR_ACTIVE_LOCAL, False):
            params[MGR_PARAM_MGR_ACTIVE] = "true"

        if not params.get_param(MGR_PARAM_WORK_DIR).strip():
            work_dir = _join_work_dir(
                params.get_param(MGR_PARAM_LOCAL_WORK_DIR_PATH).strip(),
                params.get_param(MGR_PARAM_MGR_NAME).strip(),
            )
            params[MGR_PARAM_WORK_DIR] = work_dir
            self.logger.debug("%s defined as %s", MGR_PARAM_WORK_DIR, work_dir)
        return None

    def _validate_offline_directories(self, params: ConfigStore) -> Optional[SettingsResult]:
        checks = (
            (MGR_PARAM_LOCAL_TASK_QUEUE_PATH, "Local task queue directory not found"),
            (MGR_PARAM_LOCAL_WORK_DIR_PATH, "Local working directory not found"),
        )
        for name, label in checks:
            path = Path(params.get_param(name).strip())
            if not path.is_dir():
                return self._fail(
                    FailureKind.DIRECTORY_VALIDATION_FAILURE,
                    f"{label}: {path}",
                    params,
                    parameter=name,
                )

        work_dir = Path(params.get_param(MGR_PARAM_WORK_DIR).strip())
        if work_dir.is_dir():
            return None

        self.logger.warning("Working directory not found, will try to create it: %s", work_dir)
        try:
            work_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            return self._fail(
                FailureKind.DIRECTORY_VALIDATION_FAILURE,
                f"Working directory not found and unable to create it: {work_dir} ({exc})",
                params,
                parameter=MGR_PARAM_WORK_DIR,
            )
        if not work_dir.is_dir():
            return self._fail(
                FailureKind.DIRECTORY_VALIDATION_FAILURE,
                f"Working directory not found and unable to create it: {work_dir}",
                params,
                parameter=MGR_PARAM_WORK_DIR,
            )
        return None

    def _query(self, action: Callable[[], List[Tuple[str, str]]], description: str) -> List[Tuple[str, str]]:
        return call_with_retries(
            action,
            attempts=self.attempts,
            holdoff=self.holdoff,
            description=description,
            sleep=self._sleep,
            log=self.logger,
        )

    def _in_maintenance_window(self) -> bool:
        return bool(self.maintenance_window and self.maintenance_window.contains(self._clock()))

    def _report_to_error_channel(self, client: ControlServiceClient, manager_name: str, message: str) -> None:
        if self._in_maintenance_window():
            self.logger.info("Not reporting to the control service error channel during its maintenance window")
            return
        try:
            client.post_error(manager_name, message)
        except ServiceError as exc:
            self.logger.warning("Unable to post error to the control service: %s", exc)

    def _load_control_settings(self, params: ConfigStore) -> Tuple[Optional[SettingsResult], Tuple[str, ...]]:
        profile = ConnectionProfile.from_params(params)
        manager_name = params.get_param(MGR_PARAM_MGR_NAME).strip()

        if not profile.control_enabled:
            self.logger.warning(
                "%s is blank; manager parameters will not be loaded from the control service",
                MGR_PARAM_MGR_CFG_DB_CONN_STRING,
            )
            return None, ()

        client = self._control_factory(profile.control)
        self.logger.debug("Loading manager parameters for %s using %s", manager_name, profile.control)

        try:
            rows = self._query(
                lambda: client.manager_params(manager_name),
                f"retrieving parameters for manager {manager_name}",
            )
        except ServiceError as exc:
            message = f"Excessive failures attempting to retrieve manager settings from the control service: {exc}"
            self._report_to_error_channel(client, manager_name, message)
            return (
                self._fail(
                    FailureKind.SERVICE_UNREACHABLE,
                    message,
                    params,
                    connection=profile.control,
                    attempts=exc.attempts,
                ),
                (),
            )

        if not rows:
            message = f"Control service returned no parameters for manager {manager_name} using {profile.control}"
            return self._fail(FailureKind.SERVICE_UNREACHABLE, message, params, connection=profile.control), ()

        params.merge(rows)
        self.logger.debug("Merged %d manager parameters", len(rows))

        groups: List[str] = []
        visited: set[str] = set()
        group_name = params.get_param(MGR_PARAM_SETTING_GROUP_NAME).strip()
        while group_name:
            folded = group_name.casefold()
            if folded in visited:
                self.logger.warning(
                    "Settings group chain loops back to %s (%s); ignoring the repeated group",
                    group_name,
                    " -> ".join(groups + [group_name]),
                )
                break
            visited.add(folded)

            try:
                group_rows = self._query(
                    lambda name=group_name: client.group_params(name),
                    f"retrieving parameters for settings group {group_name}",
                )
            except ServiceError as exc:
                message = f"Excessive failures attempting to retrieve settings group {group_name}: {exc}"
                self._report_to_error_channel(client, manager_name, message)
                return (
                    self._fail(
                        FailureKind.SERVICE_UNREACHABLE,
                        message,
                        params,
                        connection=profile.control,
                        group=group_name,
                    ),
                    tuple(groups),
                )

            if not group_rows:
                self.logger.debug("Settings group %s has no parameters", group_name)
                break

            applied = params.merge(group_rows, overwrite=False)
            groups.append(group_name)
            self.logger.debug("Settings group %s added %d parameters", group_name, len(applied))

            group_name = next(
                (value.strip() for name, value in group_rows if name.casefold() == MGR_PARAM_SETTING_GROUP_NAME.casefold()),
                "",
            )

        return None, tuple(groups)

    def _load_broker_settings(self, params: ConfigStore, groups: Tuple[str, ...]) -> Optional[SettingsResult]:
        profile = ConnectionProfile.from_params(params)
        if not profile.broker_enabled:
            self.logger.warning("BrokerConnectionString is blank; step tool storage paths will not be loaded")
            return None

        client = self._broker_factory(profile.broker)
        self.logger.debug("Loading step tool storage paths using %s", profile.broker)

        try:
            rows = self._query(client.step_tool_storage_paths, "retrieving step tool storage paths")
        except ServiceError as exc:
            return self._fail(
                FailureKind.SERVICE_UNREACHABLE,
                f"Excessive failures attempting to retrieve settings from the broker service: {exc}",
                params,
                connection=profile.broker,
                groups=groups,
            )

        if not rows:
            return self._fail(
                FailureKind.SERVICE_UNREACHABLE,
                f"Broker service returned no step tool storage paths using {profile.broker}",
                params,
                connection=profile.broker,
                groups=groups,
            )

        for tool, storage_path in rows:
            params[STEP_TOOL_PARAM_FILE_STORAGE_PATH_PREFIX + tool] = storage_path
        self.logger.debug("Stored %d step tool storage paths", len(rows))
        return None

    def _administrative_call(
        self,
        params: ConfigStore,
        call_name: str,
        action: Callable[[ControlServiceClient, str], None],
    ) -> bool:
        profile = ConnectionProfile.from_params(params)
        if not profile.control_enabled:
            if self.offline:
                self.logger.debug("Skipping %s since offline", call_name)
            else:
                self.logger.debug("Skipping %s since the control service endpoint is empty", call_name)
            return False

        manager_name = params.get_param(MGR_PARAM_MGR_NAME).strip()
        client = self._control_factory(profile.control)
        self.logger.debug("%s using %s", call_name, profile.control)
        try:
            action(client, manager_name)
        except ServiceError as exc:
            self.logger.error("Error calling %s: %s", call_name, exc)
            return False
        return True


__all__ = [
    "FailureKind",
    "LOCAL_MANAGER_SETTINGS_FILE",
    "SettingsResolver",
    "SettingsResult",
    "disable_manager_locally",
    "load_local_params",
    "read_local_settings_file",
]

"""Crash detection and working directory recovery.

The manager keeps a status flag file in its own directory while a task is
running.  Finding that file at startup means the previous run did not exit
cleanly; depending on ``ManagerErrorCleanupMode`` the working directory is
then wiped and the flag removed.  A separate delete-error flag records that a
previous wipe left files behind.
"""

from __future__ import annotations

import gc
import getpass
import logging
import os
import socket
import stat
import subprocess
import time
from datetime import datetime
from enum import IntEnum
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

from .logging_setup import get_logger, log_kv
from .params import MGR_PARAM_DEBUG_LEVEL, MGR_PARAM_ERROR_CLEANUP_MODE, ConfigStore
from .services import ServiceError, TrackingServiceClient
from .summary import DATE_TIME_FORMAT

STATUS_FLAG_FILE = "flagFile.txt"
LEGACY_FLAG_FILE = "flagFile_Svr.txt"
DELETE_ERROR_FLAG_FILE = "Error_Deleting_Files_Please_Delete_Me.txt"

DEFAULT_HOLDOFF_SECONDS = 3
DEFAULT_DELETE_ATTEMPTS = 3
MIN_HOLDOFF_SECONDS = 0.1
MAX_HOLDOFF_SECONDS = 300.0
DEVELOPER_HOLDOFF_SECONDS = 1.0

TrackingClientFactory = Callable[[str], TrackingServiceClient]


class CleanupMode(IntEnum):
    DISABLED = 0
    CLEANUP_ONCE = 1
    CLEANUP_ALWAYS = 2


class CleanupState(IntEnum):
    START = 1
    SUCCESS = 2
    FAIL = 3


def cleanup_mode_from_param(value: Union[str, int]) -> CleanupMode:
    """Map a ``ManagerErrorCleanupMode`` value to :class:`CleanupMode`; unknown values disable cleanup."""

    try:
        return CleanupMode(value if isinstance(value, int) else int(str(value).strip()))
    except ValueError:
        return CleanupMode.DISABLED


def is_developer_workstation(host_name: str, prefixes: Iterable[str]) -> bool:
    host = (host_name or "").lower()
    return any(prefix and host.startswith(prefix.lower()) for prefix in prefixes)


def clamp_holdoff(seconds: float, *, developer: bool = False) -> float:
    if developer and seconds > DEVELOPER_HOLDOFF_SECONDS:
        seconds = DEVELOPER_HOLDOFF_SECONDS
    return min(MAX_HOLDOFF_SECONDS, max(MIN_HOLDOFF_SECONDS, float(seconds)))


class RecoveryManager:
    """Owns the sentinel files and the working directory wipe."""

    def __init__(
        self,
        manager_dir: Path,
        work_dir: Union[str, Path],
        manager_name: str,
        *,
        control_endpoint: str = "",
        offline: bool = False,
        tracking_client_factory: Optional[TrackingClientFactory] = None,
        delete_attempts: int = DEFAULT_DELETE_ATTEMPTS,
        delete_holdoff: float = 1.0,
        holdoff_seconds: float = DEFAULT_HOLDOFF_SECONDS,
        developer_hosts: Iterable[str] = (),
        host_name: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = datetime.now,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if not manager_name or not manager_name.strip():
            raise ValueError("Manager name is not defined")
        raw_work_dir = str(work_dir or "").strip()
        if not raw_work_dir or raw_work_dir == ".":
            raise ValueError("Working directory is not defined")
        if not Path(raw_work_dir).is_absolute():
            raise ValueError(f"Working directory must be an absolute path: {raw_work_dir}")
        self.manager_dir = Path(manager_dir)
        self.work_dir = Path(raw_work_dir)
        self.manager_name = manager_name.strip()
        self.control_endpoint = (control_endpoint or "").strip()
        self.offline = offline
        self._tracking_factory = tracking_client_factory or TrackingServiceClient
        self.delete_attempts = max(1, int(delete_attempts))
        self.delete_holdoff = delete_holdoff
        self.holdoff_seconds = holdoff_seconds
        self.developer_hosts = tuple(developer_hosts)
        self.host_name = host_name or socket.gethostname()
        self._sleep = sleep
        self._clock = clock
        self.logger = logger or get_logger(__name__)
        self.debug_level = 1
        self.failure_count = 0
        self.last_failure_message = ""

    @property
    def status_flag_path(self) -> Path:
        return self.manager_dir / STATUS_FLAG_FILE

    @property
    def legacy_flag_path(self) -> Path:
        return self.manager_dir / LEGACY_FLAG_FILE

    @property
    def delete_error_flag_path(self) -> Path:
        return self.manager_dir / DELETE_ERROR_FLAG_FILE

    # ------------------------------------------------------------------
    # detection

    def detect_prior_crash(self) -> bool:
        return self.status_flag_path.is_file()

    def detect_unresolved_delete_error(self) -> bool:
        return self.delete_error_flag_path.is_file()

    def acknowledge_delete_error(self) -> None:
        self.clear_delete_error_flag()

    # ------------------------------------------------------------------
    # sentinel files

    def _touch_flag(self, path: Path) -> None:
        try:
            with path.open("a", encoding="utf-8") as handle:
                handle.write(self._clock().strftime(DATE_TIME_FORMAT) + "\n")
        except OSError as exc:
            self.logger.error("Error creating %s: %s", path.name, exc)

    def _remove_flag(self, path: Path) -> bool:
        if not path.exists():
            return True
        if self._delete_file(path):
            return True
        self.logger.error("Error deleting file %s", path)
        return False

    def create_status_flag(self) -> None:
        self._touch_flag(self.status_flag_path)

    def delete_status_flag(self) -> bool:
        return self._remove_flag(self.status_flag_path)

    def delete_legacy_flag(self) -> bool:
        return self._remove_flag(self.legacy_flag_path)

    def create_delete_error_flag(self) -> None:
        self._touch_flag(self.delete_error_flag_path)

    def clear_delete_error_flag(self) -> None:
        path = self.delete_error_flag_path
        try:
            if path.exists():
                path.unlink()
        except OSError as exc:
            self.logger.error("Error deleting %s: %s", DELETE_ERROR_FLAG_FILE, exc)

    # ------------------------------------------------------------------
    # cleanup

    def run_auto_cleanup(self, mode: CleanupMode, debug_level: int = 1) -> bool:
        """Wipe the working directory and remove the flag files.

        Returns ``True`` only when nothing failed.
        """

        self.failure_count = 0
        self.last_failure_message = ""
        if cleanup_mode_from_param(mode) is CleanupMode.DISABLED:
            return False

        self.debug_level = debug_level
        self.logger.info("Attempting to automatically clean the work directory")
        self._report(CleanupState.START)

        try:
            if not self._wipe(self.holdoff_seconds):
                failure_message = "unable to clear work directory"
            elif not self.delete_legacy_flag():
                self.failure_count += 1
                failure_message = f"error deleting {LEGACY_FLAG_FILE}"
            elif not self.delete_status_flag():
                self.failure_count += 1
                failure_message = f"error deleting {STATUS_FLAG_FILE}"
            else:
                failure_message = ""
        except Exception as exc:  # component boundary
            self.logger.exception("Unexpected error cleaning the work directory")
            self.failure_count += 1
            failure_message = f"unexpected error: {exc}"

        if self.failure_count:
            self.last_failure_message = failure_message
            self._report(CleanupState.FAIL, failure_message)
            log_kv(
                self.logger,
                logging.ERROR,
                "Automatic cleanup failed",
                failures=self.failure_count,
                reason=failure_message,
                work_dir=self.work_dir,
            )
            return False

        self._report(CleanupState.SUCCESS)
        return True

    def clean_work_dir(self, holdoff_seconds: float = DEFAULT_HOLDOFF_SECONDS) -> bool:
        """Delete everything below the working directory."""

        self.failure_count = 0
        self.last_failure_message = ""
        try:
            return self._wipe(holdoff_seconds)
        except Exception as exc:  # component boundary
            self.logger.exception("Unexpected error cleaning the work directory")
            self._record_failure(f"Error cleaning {self.work_dir}: {exc}")
            return False

    def check_prior_crash(self, params: ConfigStore) -> bool:
        """Recover from an unclean previous run; ``True`` means tasks may be requested."""

        debug_level = params.get_int(MGR_PARAM_DEBUG_LEVEL, 1)

        if self.detect_unresolved_delete_error():
            self.acknowledge_delete_error()
            if not self.clean_work_dir():
                self.logger.error("Error cleaning working directory; see directory %s", self.work_dir)
                self.create_status_flag()
                return False
            self.delete_status_flag()

        if not self.detect_prior_crash():
            return True

        mode = cleanup_mode_from_param(params.get_param(MGR_PARAM_ERROR_CLEANUP_MODE, "0"))
        if self.run_auto_cleanup(mode, debug_level):
            self.logger.warning("Flag file found; automatically cleaned the work directory and deleted the flag file(s)")
            return True

        self.logger.error(
            "Flag file exists in %s; unable to perform any further analysis tasks",
            self.manager_dir,
        )
        return False

    # ------------------------------------------------------------------
    # internals

    def _record_failure(self, message: str) -> None:
        self.failure_count += 1
        self.last_failure_message = message
        self.logger.error(message)

    def _wipe(self, holdoff_seconds: float) -> bool:
        developer = is_developer_workstation(self.host_name, self.developer_hosts)
        holdoff = clamp_holdoff(holdoff_seconds, developer=developer)

        gc.collect()
        self._sleep(holdoff)

        failures_before = self.failure_count
        if not self.work_dir.is_dir():
            self._record_failure(f"Working directory not found: {self.work_dir}")
            return False
        self._delete_contents(self.work_dir)
        return self.failure_count == failures_before

    def _delete_contents(self, directory: Path) -> bool:
        failures_before = self.failure_count
        try:
            entries = sorted(directory.iterdir())
        except OSError as exc:
            self._record_failure(f"Error deleting files/directories in {directory}: {exc}")
            return False

        for entry in entries:
            if entry.is_dir() and not entry.is_symlink():
                continue
            if not self._delete_file(entry):
                self._record_failure(f"Error deleting file {entry}")

        for entry in entries:
            if not entry.is_dir() or entry.is_symlink():
                continue
            if not self._delete_contents(entry):
                self._record_failure(f"Error deleting working directory subdirectory {entry}")
                continue
            self._remove_empty_dir(entry)

        return self.failure_count == failures_before

    def _delete_file(self, path: Path) -> bool:
        for attempt in range(1, self.delete_attempts + 1):
            try:
                path.unlink()
                if self.debug_level >= 3:
                    self.logger.debug("Deleted %s", path)
                return True
            except FileNotFoundError:
                return True
            except PermissionError as exc:
                self.logger.debug("Permission denied deleting %s (attempt %d): %s", path, attempt, exc)
                self._clear_read_only(path)
            except OSError as exc:
                self.logger.debug("Error deleting %s (attempt %d): %s", path, attempt, exc)
            if attempt < self.delete_attempts:
                self._sleep(self.delete_holdoff)
        return False

    def _clear_read_only(self, path: Path) -> None:
        try:
            mode = path.stat().st_mode
            if not mode & stat.S_IWRITE:
                path.chmod(mode | stat.S_IWRITE)
        except OSError:
            self.logger.debug("Unable to clear the read-only attribute of %s", path)

    def _remove_empty_dir(self, directory: Path) -> None:
        try:
            if any(directory.iterdir()):
                return
        except OSError as exc:
            self._record_failure(f"Error reading directory {directory}: {exc}")
            return

        try:
            directory.rmdir()
            return
        except PermissionError:
            pass
        except OSError as exc:
            self._record_failure(f"Error deleting directory {directory}: {exc}")
            return

        try:
            self._grant_modify_rights(directory)
        except (OSError, subprocess.SubprocessError) as exc:
            self._record_failure(f"Error updating permissions for directory {directory}: {exc}")
            return

        try:
            directory.rmdir()
        except OSError as exc:
            self._record_failure(f"Error deleting directory {directory}: {exc}")
            return
        self.logger.debug("Updated permissions, then successfully deleted the directory %s", directory)

    def _grant_modify_rights(self, directory: Path) -> None:
        user = getpass.getuser()
        log_kv(
            self.logger,
            logging.WARNING,
            "Permission denied deleting directory; granting modify rights to the current user. "
            "This widens the directory permissions and does not restore the original ones",
            path=directory,
            user=user,
        )
        if os.name == "nt":
            domain = os.environ.get("USERDOMAIN", "")
            principal = f"{domain}\\{user}" if domain else user
            subprocess.run(
                ["icacls", str(directory), "/grant", f"{principal}:(OI)(CI)M", "/T"],
                check=True,
                capture_output=True,
            )
            subprocess.run(["attrib", "-R", "-S", str(directory)], check=True, capture_output=True)
            return

        for root, dirs, files in os.walk(directory):
            for name in dirs + files:
                target = Path(root) / name
                target.chmod(target.stat().st_mode | stat.S_IRWXU)
        directory.chmod(directory.stat().st_mode | stat.S_IRWXU)

    def _report(self, state: CleanupState, failure_message: str = "") -> None:
        if not self.control_endpoint:
            if self.offline:
                self.logger.debug("Skipping cleanup report (%s) since offline", state.name)
            else:
                self.logger.error(
                    "Skipping cleanup report (%s) since the control service connection string is empty",
                    state.name,
                )
            return

        client = self._tracking_factory(self.control_endpoint)
        try:
            reply = client.report_error_cleanup(self.manager_name, int(state), failure_message)
        except ServiceError as exc:
            self.logger.error(
                "Error reporting cleanup state %s using %s: %s",
                state.name,
                self.control_endpoint,
                exc,
            )
            return
        if reply:
            self.logger.debug("Tracking service replied to cleanup report: %s", reply)


__all__ = [
    "CleanupMode",
    "CleanupState",
    "DELETE_ERROR_FLAG_FILE",
    "LEGACY_FLAG_FILE",
    "RecoveryManager",
    "STATUS_FLAG_FILE",
    "clamp_holdoff",
    "cleanup_mode_from_param",
    "is_developer_workstation",
]

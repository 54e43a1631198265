"""Clients for the control, broker and tracking services.

The services are addressed by base URLs stored in the manager parameters
(the "connection strings").  A blank endpoint disables the corresponding
functionality.  Every call goes through :func:`call_with_retries`, a fixed
ceiling sleep-and-retry loop; the HTTP adapter itself does not retry unless
``HTTP_RETRY_TOTAL`` says otherwise.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar
from urllib.parse import quote

import requests
from requests import Session

from . import http_client
from .params import (
    MGR_PARAM_BROKER_CONN_STRING,
    MGR_PARAM_MGR_CFG_DB_CONN_STRING,
    ConfigStore,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SERVICE_ATTEMPTS = 6


class ServiceError(RuntimeError):
    """Raised when a central service cannot be reached or answers garbage."""

    def __init__(self, message: str, *, attempts: int = 1) -> None:
        super().__init__(message)
        self.attempts = attempts


@dataclass(frozen=True)
class ConnectionProfile:
    """Endpoints of the control service and the broker service."""

    control: str = ""
    broker: str = ""

    @classmethod
    def from_params(cls, params: ConfigStore) -> "ConnectionProfile":
        return cls(
            control=params.get_param(MGR_PARAM_MGR_CFG_DB_CONN_STRING).strip(),
            broker=params.get_param(MGR_PARAM_BROKER_CONN_STRING).strip(),
        )

    @property
    def control_enabled(self) -> bool:
        return bool(self.control)

    @property
    def broker_enabled(self) -> bool:
        return bool(self.broker)


def call_with_retries(
    action: Callable[[], T],
    *,
    attempts: int = DEFAULT_SERVICE_ATTEMPTS,
    holdoff: float = 5.0,
    description: str = "service call",
    sleep: Callable[[float], None] = time.sleep,
    log: Optional[logging.Logger] = None,
) -> T:
    """Run ``action`` up to ``attempts`` times, sleeping ``holdoff`` in between.

    Only :class:`ServiceError` is retried.  When the ceiling is reached a
    :class:`ServiceError` carrying the number of attempts is raised.
    """

    log = log or logger
    attempts = max(1, int(attempts))
    last_exc: Optional[ServiceError] = None
    for attempt in range(1, attempts + 1):
        try:
            return action()
        except ServiceError as exc:
            last_exc = exc
            log.warning("%s failed (attempt %d of %d): %s", description, attempt, attempts, exc)
            if attempt < attempts and holdoff > 0:
                sleep(holdoff)
    raise ServiceError(
        f"Excessive failures during {description}: {last_exc}",
        attempts=attempts,
    )


class _ServiceClient:
    service_name = "service"

    def __init__(
        self,
        base_url: str,
        *,
        sess: Optional[Session] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.base_url = (base_url or "").strip().rstrip("/")
        self._session = sess
        self._timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    def _call(self, method: str, path: str, *, ok_statuses: Tuple[int, ...] = (), **kwargs: Any) -> requests.Response:
        if not self.enabled:
            raise ServiceError(f"{self.service_name} endpoint is not defined")
        url = f"{self.base_url}/{path}"
        try:
            return http_client.request(
                method,
                url,
                timeout=self._timeout,
                context=self.service_name,
                sess=self._session,
                ok_statuses=ok_statuses,
                **kwargs,
            )
        except requests.RequestException as exc:
            raise ServiceError(f"{self.service_name} request {method} {url} failed: {exc}") from exc

    def _get_rows(self, path: str) -> List[Dict[str, Any]]:
        response = self._call("GET", path, ok_statuses=(404,))
        if response.status_code == 404:
            return []
        try:
            payload = response.json()
        except ValueError as exc:
            raise ServiceError(f"{self.service_name} returned invalid JSON for {path}: {exc}") from exc
        if isinstance(payload, dict):
            payload = payload.get("rows", payload.get("items"))
        if not isinstance(payload, list):
            raise ServiceError(f"{self.service_name} returned an unexpected payload for {path}")
        return [row for row in payload if isinstance(row, dict)]


def _segment(value: str) -> str:
    return quote(value, safe="")


class ControlServiceClient(_ServiceClient):
    """Manager and settings-group parameters plus administrative calls."""

    service_name = "control service"

    def _params(self, path: str) -> List[Tuple[str, str]]:
        rows = self._get_rows(path)
        result: List[Tuple[str, str]] = []
        for row in rows:
            name = str(row.get("name") or "").strip()
            if not name:
                continue
            value = row.get("value")
            result.append((name, "" if value is None else str(value)))
        return result

    def manager_params(self, manager_name: str) -> List[Tuple[str, str]]:
        return self._params(f"managers/{_segment(manager_name)}/params")

    def group_params(self, group_name: str) -> List[Tuple[str, str]]:
        return self._params(f"groups/{_segment(group_name)}/params")

    def post_error(self, manager_name: str, message: str) -> None:
        self._call("POST", "errors", json={"manager_name": manager_name, "message": message})

    def ack_manager_update(self, manager_name: str) -> None:
        self._call("POST", f"managers/{_segment(manager_name)}/ack-update", json={})

    def pause_task_requests(self, manager_name: str, holdoff_minutes: int) -> None:
        self._call(
            "POST",
            f"managers/{_segment(manager_name)}/pause-task-requests",
            json={"holdoff_minutes": int(holdoff_minutes)},
        )


class BrokerServiceClient(_ServiceClient):
    """Per-step-tool parameter file storage paths."""

    service_name = "broker service"

    def step_tool_storage_paths(self) -> List[Tuple[str, str]]:
        rows = self._get_rows("step-tools/storage-paths")
        result: List[Tuple[str, str]] = []
        for row in rows:
            tool = str(row.get("step_tool") or "").strip()
            path = str(row.get("storage_path") or "").strip()
            if tool and path:
                result.append((tool, path))
        return result


class TrackingServiceClient(_ServiceClient):
    """Receives cleanup lifecycle events; shares the control endpoint."""

    service_name = "tracking service"

    def report_error_cleanup(self, manager_name: str, state: int, failure_message: str = "") -> Optional[str]:
        response = self._call(
            "POST",
            f"managers/{_segment(manager_name)}/error-cleanup",
            json={
                "manager_name": manager_name,
                "state": int(state),
                "failure_message": failure_message or "",
            },
        )
        return response.text


__all__ = [
    "BrokerServiceClient",
    "ConnectionProfile",
    "ControlServiceClient",
    "DEFAULT_SERVICE_ATTEMPTS",
    "ServiceError",
    "TrackingServiceClient",
    "call_with_retries",
]

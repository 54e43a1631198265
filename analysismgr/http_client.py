"""Shared HTTP session for the control, broker and tracking services.

All three services speak JSON over HTTP.  The session is created once per
process; its transport retries cover idempotent reads only, while the
attempt ceiling for service calls lives in :func:`analysismgr.services.call_with_retries`.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import TYPE_CHECKING, Any, Optional, Tuple

import requests
from requests import Response, Session
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from . import __version__, http_cfg

if TYPE_CHECKING:  # pragma: no cover
    from .config import HttpCfg

logger = logging.getLogger(__name__)

SERVICE_HEADERS = {
    "Accept": "application/json",
    "User-Agent": f"analysismgr/{__version__}",
}


def _transport_retry(cfg: "HttpCfg") -> Retry:
    # POST bodies (error posts, cleanup reports) are never replayed here.
    return Retry(
        total=cfg.retry_total,
        backoff_factor=cfg.backoff_factor,
        status_forcelist=[502, 503, 504],
        allowed_methods=["GET", "HEAD"],
        raise_on_status=False,
    )


@lru_cache()
def session() -> Session:
    """Return the process-wide service session."""

    sess = requests.Session()
    sess.trust_env = False
    sess.headers.update(SERVICE_HEADERS)
    adapter = HTTPAdapter(max_retries=_transport_retry(http_cfg()))
    for scheme in ("http://", "https://"):
        sess.mount(scheme, adapter)
    return sess


def request(
    method: str,
    url: str,
    *,
    timeout: Optional[float] = None,
    context: Optional[str] = None,
    sess: Optional[Session] = None,
    ok_statuses: Tuple[int, ...] = (),
    **kwargs: Any,
) -> Response:
    """Send one service request.

    Responses whose status is listed in ``ok_statuses`` are returned as-is;
    any other error status raises :class:`requests.HTTPError`.  Failures are
    logged with the service name given as ``context`` and re-raised.
    """

    if timeout is None:
        timeout = http_cfg().timeout
    target = sess or session()
    try:
        response = target.request(method.upper(), url, timeout=timeout, **kwargs)
        if response.status_code not in ok_statuses:
            response.raise_for_status()
    except requests.RequestException as exc:
        logger.warning("%s %s %s failed: %s", context or "HTTP", method.upper(), url, exc)
        raise
    return response

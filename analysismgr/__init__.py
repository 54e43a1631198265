"""Bootstrap and self-management layer of an analysis manager process."""

from __future__ import annotations

from importlib import import_module
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - imported for type checkers only
    from .config import HttpCfg

__version__ = "1.0.0"


def _config_module():
    """Return the lazily-imported configuration module."""

    return import_module(__name__ + ".config")


def http_cfg() -> "HttpCfg":
    return _config_module().load_all().http


__all__ = ["__version__", "http_cfg"]

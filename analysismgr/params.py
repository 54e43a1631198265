"""Case-insensitive manager parameter table and well-known parameter names."""

from __future__ import annotations

from collections.abc import MutableMapping
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

# Parameters read from the local params file
MGR_PARAM_MGR_NAME = "MgrName"
MGR_PARAM_MGR_ACTIVE_LOCAL = "MgrActive_Local"
MGR_PARAM_USING_DEFAULTS = "UsingDefaults"
MGR_PARAM_MGR_CFG_DB_CONN_STRING = "MgrCnfgDbConnectStr"

# Parameters defined by the control service or the offline settings document
MGR_PARAM_MGR_ACTIVE = "mgractive"
MGR_PARAM_SETTING_GROUP_NAME = "MgrSettingGroupName"
MGR_PARAM_BROKER_CONN_STRING = "BrokerConnectionString"
MGR_PARAM_LOCAL_TASK_QUEUE_PATH = "LocalTaskQueuePath"
MGR_PARAM_LOCAL_WORK_DIR_PATH = "LocalWorkDirPath"
MGR_PARAM_WORK_DIR = "WorkDir"
MGR_PARAM_DEBUG_LEVEL = "DebugLevel"
MGR_PARAM_ERROR_CLEANUP_MODE = "ManagerErrorCleanupMode"

STEP_TOOL_PARAM_FILE_STORAGE_PATH_PREFIX = "StepToolParamFileStoragePath_"

_TRUE_VALUES = {"1", "true", "yes", "y", "on"}
_FALSE_VALUES = {"0", "false", "no", "n", "off"}


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "True" if value else "False"
    if value is None:
        return ""
    return str(value)


class ConfigStore(MutableMapping):
    """Parameter table with case-insensitive keys.

    Keys keep the spelling they were first stored with. Entries can be
    overwritten but never removed.
    """

    def __init__(self, initial: Optional[Mapping[str, Any]] = None) -> None:
        self._data: Dict[str, Tuple[str, str]] = {}
        if initial:
            self.merge(initial)

    @staticmethod
    def _fold(key: str) -> str:
        if not isinstance(key, str):
            raise TypeError(f"parameter names must be strings, not {type(key)!r}")
        return key.casefold()

    def __getitem__(self, key: str) -> str:
        return self._data[self._fold(key)][1]

    def __setitem__(self, key: str, value: Any) -> None:
        folded = self._fold(key)
        existing = self._data.get(folded)
        stored_key = existing[0] if existing else key
        self._data[folded] = (stored_key, _stringify(value))

    def __delitem__(self, key: str) -> None:
        raise TypeError("ConfigStore entries cannot be removed")

    def __iter__(self) -> Iterator[str]:
        return (stored_key for stored_key, _ in self._data.values())

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and key.casefold() in self._data

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ConfigStore):
            return self._folded() == other._folded()
        if isinstance(other, Mapping):
            return self._folded() == ConfigStore(other)._folded()
        return NotImplemented

    def __repr__(self) -> str:
        return f"ConfigStore({dict(self.items())!r})"

    def _folded(self) -> Dict[str, str]:
        return {key: value for key, (_, value) in self._data.items()}

    def pop(self, key, default=None):  # type: ignore[override]
        raise TypeError("ConfigStore entries cannot be removed")

    def popitem(self):  # type: ignore[override]
        raise TypeError("ConfigStore entries cannot be removed")

    def clear(self) -> None:
        raise TypeError("ConfigStore entries cannot be removed")

    def has_param(self, name: str) -> bool:
        return name in self

    def get_param(self, name: str, default: str = "") -> str:
        """Return the value for ``name`` or ``default`` when absent or blank."""

        value = self.get(name)
        if value is None or not value.strip():
            return default
        return value

    def get_bool(self, name: str, default: bool = False) -> bool:
        value = self.get_param(name).strip().lower()
        if value in _TRUE_VALUES:
            return True
        if value in _FALSE_VALUES:
            return False
        return default

    def get_int(self, name: str, default: int = 0) -> int:
        value = self.get_param(name).strip()
        try:
            return int(value)
        except ValueError:
            return default

    def set_param(self, name: str, value: Any) -> None:
        self[name] = value

    def merge(self, values: Mapping[str, Any] | Iterable[Tuple[str, Any]], *, overwrite: bool = True) -> List[str]:
        """Merge ``values`` and return the names that were applied."""

        items = values.items() if isinstance(values, Mapping) else values
        applied: List[str] = []
        for name, value in items:
            if not name:
                continue
            if not overwrite and name in self:
                continue
            self[name] = value
            applied.append(name)
        return applied

    def snapshot(self) -> Dict[str, str]:
        return dict(self.items())


__all__ = [
    "ConfigStore",
    "MGR_PARAM_BROKER_CONN_STRING",
    "MGR_PARAM_DEBUG_LEVEL",
    "MGR_PARAM_ERROR_CLEANUP_MODE",
    "MGR_PARAM_LOCAL_TASK_QUEUE_PATH",
    "MGR_PARAM_LOCAL_WORK_DIR_PATH",
    "MGR_PARAM_MGR_ACTIVE",
    "MGR_PARAM_MGR_ACTIVE_LOCAL",
    "MGR_PARAM_MGR_CFG_DB_CONN_STRING",
    "MGR_PARAM_MGR_NAME",
    "MGR_PARAM_SETTING_GROUP_NAME",
    "MGR_PARAM_USING_DEFAULTS",
    "MGR_PARAM_WORK_DIR",
    "STEP_TOOL_PARAM_FILE_STORAGE_PATH_PREFIX",
]

"""Resolve tool runner and resourcer plugins named in ``plugin_info.yaml``.

The descriptor maps step tool names to a class identifier and the location
of the Python module (or package directory) that defines it::

    plugins:
      tool_runners:
        - tool: MSGFPlus
          class: AnalysisToolRunnerMSGFDB
          module: plugins/msgfplus.py
      resourcers:
        - tool: MSGFPlus
          class: AnalysisResourcesMSGFDB
          module: plugins/msgfplus.py

The descriptor is read again on every lookup so it can be edited while the
manager is running.  Modules are executed fresh each time for the same
reason.
"""

from __future__ import annotations

import importlib.util
import logging
import re
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from types import ModuleType
from typing import Any, Dict, List, Optional

import yaml

from ..logging_setup import get_logger, log_kv
from ..summary import RunSummary
from .base import ResourceStager, ToolRunner
from .registry import PluginFactory, PluginRegistry, default_registry

PLUGIN_INFO_FILE = "plugin_info.yaml"
TEST_TOOL_PREFIX = "test_"

_MODULE_PREFIX = "analysismgr_loaded_plugins"


class PluginFailureKind(str, Enum):
    DESCRIPTOR_NOT_FOUND = "descriptor_not_found"
    AMBIGUOUS_OR_MISSING_MAPPING = "ambiguous_or_missing_mapping"
    PACKAGE_NOT_FOUND = "package_not_found"
    TYPE_LOAD_FAILURE = "type_load_failure"
    INSTANTIATION_FAILURE = "instantiation_failure"
    CAPABILITY_MISMATCH = "capability_mismatch"


@dataclass(frozen=True)
class PluginCategory:
    node: str
    label: str
    capability: type


TOOL_RUNNERS = PluginCategory("tool_runners", "ToolRunner", ToolRunner)
RESOURCERS = PluginCategory("resourcers", "Resourcer", ResourceStager)


@dataclass(frozen=True)
class PluginEntry:
    tool: str
    class_name: str
    module: str


@dataclass(frozen=True)
class PluginResult:
    ok: bool
    instance: Any = None
    kind: Optional[PluginFailureKind] = None
    message: str = ""
    class_name: str = ""
    module: str = ""


class PluginLookupError(Exception):
    """Internal signal carrying a failure kind out of a resolution step."""

    def __init__(self, kind: PluginFailureKind, message: str, entry: Optional[PluginEntry] = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.entry = entry


def _module_name_for(path: Path) -> str:
    stem = re.sub(r"\W", "_", path.stem if path.is_file() else path.name) or "plugin"
    return f"{_MODULE_PREFIX}_{stem}"


def _defined_in(factory: PluginFactory, module: ModuleType) -> bool:
    owner = getattr(factory, "__module__", None) or ""
    return owner == module.__name__ or owner.startswith(module.__name__ + ".")


class PluginResolver:
    """Looks up, loads and instantiates step tool plugins."""

    def __init__(
        self,
        manager_dir: Path,
        *,
        summary: Optional[RunSummary] = None,
        registry: Optional[PluginRegistry] = None,
        descriptor_file: str = PLUGIN_INFO_FILE,
        trace: bool = False,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.manager_dir = Path(manager_dir)
        self.summary = summary if summary is not None else RunSummary()
        self.registry = registry if registry is not None else default_registry
        self.descriptor_file = descriptor_file
        self.trace = trace
        self.logger = logger or get_logger(__name__)

    @property
    def descriptor_path(self) -> Path:
        return self.manager_dir / self.descriptor_file

    def resolve_tool_runner(self, tool: str) -> PluginResult:
        return self._resolve(TOOL_RUNNERS, tool)

    def resolve_resource_stager(self, tool: str) -> PluginResult:
        return self._resolve(RESOURCERS, tool)

    # ------------------------------------------------------------------

    def _resolve(self, category: PluginCategory, tool: str) -> PluginResult:
        entry: Optional[PluginEntry] = None
        try:
            entry = self._find_entry(category, tool)
            path = self._locate_module(entry)
            factory = self._load_factory(entry, path)
            instance = self._instantiate(entry, factory)
            if not isinstance(instance, category.capability):
                raise PluginLookupError(
                    PluginFailureKind.CAPABILITY_MISMATCH,
                    f"{entry.class_name} from {entry.module} does not implement {category.label}",
                    entry,
                )
        except PluginLookupError as exc:
            entry = exc.entry or entry
            return self._failed(category, tool, exc.kind, str(exc), entry)
        except Exception as exc:  # component boundary
            self.logger.exception("Unexpected error resolving %s for %s", category.label, tool)
            return self._failed(
                category,
                tool,
                PluginFailureKind.TYPE_LOAD_FAILURE,
                f"Unexpected error: {exc}",
                entry,
            )

        self.summary.add(f"Loaded {category.label}: {entry.class_name} from {entry.module}")
        log_kv(
            self.logger,
            logging.INFO,
            f"Loaded {category.label}",
            tool=tool,
            cls=entry.class_name,
            module=entry.module,
        )
        return PluginResult(ok=True, instance=instance, class_name=entry.class_name, module=entry.module)

    def _failed(
        self,
        category: PluginCategory,
        tool: str,
        kind: PluginFailureKind,
        message: str,
        entry: Optional[PluginEntry],
    ) -> PluginResult:
        self.summary.add(f"Unable to load {category.label} for {tool}: {message}")
        log_kv(self.logger, logging.ERROR, message, kind=kind.value, tool=tool, category=category.node)
        return PluginResult(
            ok=False,
            kind=kind,
            message=message,
            class_name=entry.class_name if entry else "",
            module=entry.module if entry else "",
        )

    def _read_entries(self, category: PluginCategory) -> List[Dict[str, Any]]:
        path = self.descriptor_path
        if not path.is_file():
            raise PluginLookupError(
                PluginFailureKind.DESCRIPTOR_NOT_FOUND,
                f"Plugin descriptor not found: {path}",
            )
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as exc:
            raise PluginLookupError(
                PluginFailureKind.DESCRIPTOR_NOT_FOUND,
                f"Unable to read plugin descriptor {path}: {exc}",
            ) from exc

        plugins = data.get("plugins") if isinstance(data, dict) else None
        if not isinstance(plugins, dict):
            raise PluginLookupError(
                PluginFailureKind.DESCRIPTOR_NOT_FOUND,
                f"Plugin descriptor {path} has no plugins mapping",
            )
        entries = plugins.get(category.node) or []
        if not isinstance(entries, list):
            self.logger.warning("Node %s in %s is not a list; ignoring it", category.node, path)
            return []
        return [item for item in entries if isinstance(item, dict)]

    def _matching(self, entries: List[Dict[str, Any]], category: PluginCategory, tool: str) -> List[PluginEntry]:
        folded = tool.casefold()
        matches: List[PluginEntry] = []
        for item in entries:
            if str(item.get("tool") or "").strip().casefold() != folded:
                continue
            class_name = str(item.get("class") or "").strip()
            module = str(item.get("module") or "").strip()
            if not class_name or not module:
                self.logger.warning(
                    "%s entry for %s is missing the class or module attribute; skipping it",
                    category.label,
                    tool,
                )
                continue
            matches.append(PluginEntry(tool=tool, class_name=class_name, module=module))
        return matches

    def _find_entry(self, category: PluginCategory, tool: str) -> PluginEntry:
        entries = self._read_entries(category)
        lookup = f"plugins/{category.node}[tool='{tool}']"
        matches = self._matching(entries, category, tool)

        if not matches and tool.lower().startswith(TEST_TOOL_PREFIX):
            alternate = tool[len(TEST_TOOL_PREFIX):]
            self.logger.warning("%s not found for %s; trying %s instead", category.label, tool, alternate)
            lookup = f"plugins/{category.node}[tool='{alternate}']"
            matches = self._matching(entries, category, alternate)

        if len(matches) != 1:
            raise PluginLookupError(
                PluginFailureKind.AMBIGUOUS_OR_MISSING_MAPPING,
                f"Could not resolve {category.label} for {tool}: "
                f"{len(matches)} entries match {lookup} in {self.descriptor_file}",
            )
        return matches[0]

    def _locate_module(self, entry: PluginEntry) -> Path:
        expected = self.manager_dir / entry.module
        if expected.exists():
            return expected

        parent = expected.parent
        if parent.is_dir():
            wanted = expected.name.lower()
            for candidate in parent.iterdir():
                if candidate.name.lower() == wanted:
                    self.logger.debug(
                        "Plugin module %s not found; using %s instead",
                        expected.name,
                        candidate.name,
                    )
                    return candidate

        raise PluginLookupError(
            PluginFailureKind.PACKAGE_NOT_FOUND,
            f"Plugin module not found: {expected}",
            entry,
        )

    def _exec_module(self, path: Path) -> ModuleType:
        name = _module_name_for(path)
        if path.is_dir():
            spec = importlib.util.spec_from_file_location(
                name,
                path / "__init__.py",
                submodule_search_locations=[str(path)],
            )
        else:
            spec = importlib.util.spec_from_file_location(name, path)
        if spec is None or spec.loader is None:
            raise ImportError(f"cannot build an import spec for {path}")

        module = importlib.util.module_from_spec(spec)
        sys.modules[name] = module
        try:
            spec.loader.exec_module(module)
        except BaseException:
            sys.modules.pop(name, None)
            raise
        return module

    def _load_factory(self, entry: PluginEntry, path: Path) -> PluginFactory:
        if self.trace:
            self.logger.debug("Loading plugin module %s for %s", path, entry.class_name)
        try:
            module = self._exec_module(path)
        except Exception as exc:
            raise PluginLookupError(
                PluginFailureKind.TYPE_LOAD_FAILURE,
                f"Unable to load module {entry.module}: {exc}",
                entry,
            ) from exc

        factory = self.registry.lookup(entry.class_name)
        if factory is not None and not _defined_in(factory, module):
            factory = None
        if factory is None:
            attribute = entry.class_name.rsplit(".", 1)[-1]
            factory = getattr(module, attribute, None)
        if factory is None or not callable(factory):
            raise PluginLookupError(
                PluginFailureKind.TYPE_LOAD_FAILURE,
                f"Class {entry.class_name} not found in {entry.module}",
                entry,
            )
        return factory

    def _instantiate(self, entry: PluginEntry, factory: PluginFactory) -> Any:
        try:
            return factory()
        except Exception as exc:
            raise PluginLookupError(
                PluginFailureKind.INSTANTIATION_FAILURE,
                f"Unable to create {entry.class_name}: {exc}",
                entry,
            ) from exc


__all__ = [
    "PLUGIN_INFO_FILE",
    "PluginFailureKind",
    "PluginResolver",
    "PluginResult",
]

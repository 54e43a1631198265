"""Step tool plugins: capability protocols, registry and resolver."""

from .base import ResourceStager, ToolRunner
from .loader import PLUGIN_INFO_FILE, PluginFailureKind, PluginResolver, PluginResult
from .registry import PluginRegistry, default_registry, register_plugin

__all__ = [
    "PLUGIN_INFO_FILE",
    "PluginFailureKind",
    "PluginRegistry",
    "PluginResolver",
    "PluginResult",
    "ResourceStager",
    "ToolRunner",
    "default_registry",
    "register_plugin",
]

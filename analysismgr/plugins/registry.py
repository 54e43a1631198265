"""Registry mapping plugin class identifiers to factories."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterator, Optional, TypeVar, Union, overload

logger = logging.getLogger(__name__)

PluginFactory = Callable[[], Any]
C = TypeVar("C", bound=type)


class PluginRegistry:
    """Factories keyed by class identifier.

    Lookups try the exact identifier, then a case-insensitive match, then the
    last dotted segment (``Package.ClassName`` -> ``ClassName``).
    """

    def __init__(self) -> None:
        self._factories: Dict[str, PluginFactory] = {}

    def register(self, name: str, factory: PluginFactory) -> None:
        if not name:
            raise ValueError("plugin name must not be empty")
        if not callable(factory):
            raise TypeError(f"factory for {name} is not callable")
        if name in self._factories:
            logger.debug("Replacing plugin factory %s", name)
        self._factories[name] = factory

    def lookup(self, identifier: str) -> Optional[PluginFactory]:
        if not identifier:
            return None
        factory = self._factories.get(identifier)
        if factory is not None:
            return factory

        folded = identifier.casefold()
        short = folded.rsplit(".", 1)[-1]
        for candidate in (folded, short):
            for name, factory in self._factories.items():
                if name.casefold() == candidate or name.casefold().rsplit(".", 1)[-1] == candidate:
                    return factory
        return None

    def __contains__(self, identifier: object) -> bool:
        return isinstance(identifier, str) and self.lookup(identifier) is not None

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._factories))

    def __len__(self) -> int:
        return len(self._factories)


default_registry = PluginRegistry()


@overload
def register_plugin(target: C) -> C: ...


@overload
def register_plugin(target: Optional[str] = None, *, registry: Optional[PluginRegistry] = None) -> Callable[[C], C]: ...


def register_plugin(
    target: Union[C, str, None] = None,
    *,
    registry: Optional[PluginRegistry] = None,
) -> Union[C, Callable[[C], C]]:
    """Class decorator registering a no-argument factory for the class.

    Usable bare (``@register_plugin``) or with an explicit identifier
    (``@register_plugin("AnalysisToolRunnerApe")``).
    """

    def decorate(cls: C, name: Optional[str] = None) -> C:
        target_registry = registry if registry is not None else default_registry
        target_registry.register(name or cls.__name__, cls)
        return cls

    if isinstance(target, type):
        return decorate(target)

    def wrapper(cls: C) -> C:
        return decorate(cls, target)

    return wrapper


__all__ = ["PluginFactory", "PluginRegistry", "default_registry", "register_plugin"]

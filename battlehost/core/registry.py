# battlehost/core/registry.py
from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterator, List, Tuple

from battlehost.core.exceptions import RegistryAlreadyInitialized, SubsystemInitError

if TYPE_CHECKING:
    from battlehost.core.context import KernelContext

_LOG = logging.getLogger("battlehost.core.registry")

Initializer = Callable[["KernelContext"], Any]


@dataclass
class SubsystemHandle:
    """One named global subsystem."""
    name: str
    initializer: Initializer
    depends_on: Tuple[str, ...] = ()
    initialized: bool = False
    instance: Any = field(default=None, repr=False)


class SubsystemRegistry:
    """Ordered table of subsystems. Registration order is initialization order."""

    def __init__(self):
        self._handles: Dict[str, SubsystemHandle] = {}
        self._initialized = False

    def register(self, name: str, initializer: Initializer, depends_on=()) -> SubsystemHandle:
        """Append a subsystem. Dependencies must already be registered."""
        if self._initialized:
            raise RegistryAlreadyInitialized(f"Cannot register '{name}' after initialization")
        if name in self._handles:
            raise ValueError(f"Subsystem '{name}' is already registered")
        unknown = [dep for dep in depends_on if dep not in self._handles]
        if unknown:
            raise ValueError(
                f"Subsystem '{name}' depends on {unknown}, which must be registered before it"
            )
        handle = SubsystemHandle(name=name, initializer=initializer, depends_on=tuple(depends_on))
        self._handles[name] = handle
        return handle

    @property
    def initialized(self) -> bool:
        return self._initialized

    def names(self) -> List[str]:
        return list(self._handles)

    def __iter__(self) -> Iterator[SubsystemHandle]:
        return iter(self._handles.values())

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, name: object) -> bool:
        return name in self._handles

    def __getitem__(self, name: str) -> Any:
        return self.get(name)

    def get(self, name: str) -> Any:
        """Return an initialized subsystem instance."""
        handle = self._handles.get(name)
        if handle is None:
            raise KeyError(f"Unknown subsystem '{name}'")
        if not handle.initialized:
            raise KeyError(f"Subsystem '{name}' is not initialized yet")
        return handle.instance

    async def initialize_all(self, ctx: "KernelContext") -> None:
        """
        Run every initializer once, in registration order.

        The first failure aborts the walk; a half-initialized set of
        subsystems is never left running.
        """
        if self._initialized:
            raise RegistryAlreadyInitialized("Subsystem registry was already initialized")
        self._initialized = True

        for handle in self._handles.values():
            _LOG.info(f"Initializing subsystem: {handle.name}")
            try:
                instance = handle.initializer(ctx)
                if inspect.isawaitable(instance):
                    instance = await instance
            except Exception as e:
                _LOG.exception(f"Subsystem {handle.name} failed to initialize")
                raise SubsystemInitError(handle.name, e) from e
            handle.instance = instance
            handle.initialized = True

        _LOG.info("Initialized %d subsystems", len(self._handles))

# battlehost/core/context.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from battlehost.core.intake import Intake
from battlehost.core.registry import SubsystemRegistry

if TYPE_CHECKING:
    from battlehost.config.config import ConfigStore, ConfigurationSnapshot
    from battlehost.workers.pool import WorkerPool


@dataclass
class KernelContext:
    """Process-wide state handed to every subsystem initializer."""
    config: "ConfigStore"
    workers: "WorkerPool"
    intake: Intake = field(default_factory=Intake)
    registry: SubsystemRegistry = field(default_factory=SubsystemRegistry)

    @property
    def snapshot(self) -> "ConfigurationSnapshot":
        """The configuration in effect right now."""
        return self.config.snapshot

    def subsystem(self, name: str) -> Any:
        return self.registry.get(name)

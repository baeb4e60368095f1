# battlehost/__init__.py
"""
battlehost - startup and supervision kernel for a multi-subsystem game server.

Top-level package metadata and lazy imports. Nothing here imports a
third-party library, so the dependency preflight can run first.
"""

__version__ = "0.1.0"
__all__ = [
    "__version__",
    "ConfigStore",
    "CrashSupervisor",
    "Kernel",
    "KernelContext",
    "SubsystemRegistry",
    "WorkerPool",
]

from importlib import import_module


# ---------------------------------------------------------------------------
# Lazy import layer
# ---------------------------------------------------------------------------
def __getattr__(name: str):
    """Expose runtime components only when accessed."""
    mapping = {
        "ConfigStore": "battlehost.config.config",
        "CrashSupervisor": "battlehost.core.crash",
        "Kernel": "battlehost.core.kernel",
        "KernelContext": "battlehost.core.context",
        "SubsystemRegistry": "battlehost.core.registry",
        "WorkerPool": "battlehost.workers.pool",
    }

    if name in mapping:
        module = import_module(mapping[name])
        obj = getattr(module, name)
        globals()[name] = obj  # cache for future lookups
        return obj

    raise AttributeError(f"module 'battlehost' has no attribute '{name}'")

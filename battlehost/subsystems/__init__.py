"""
Built-in subsystems and the registry that wires them together.
"""

from battlehost.core.registry import SubsystemRegistry


def default_registry() -> SubsystemRegistry:
    """The server's subsystems, in initialization order."""
    from .monitor import init_monitor
    from .users import init_users
    from .validator import init_validator
    from .verifier import init_verifier

    registry = SubsystemRegistry()
    registry.register("monitor", init_monitor)
    registry.register("users", init_users)
    registry.register("verifier", init_verifier)
    registry.register("validator", init_validator)
    return registry


__all__ = ['default_registry']

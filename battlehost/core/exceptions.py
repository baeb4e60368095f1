# core/exceptions.py
class BattlehostError(Exception):
    """Base exception for all battlehost errors."""
    pass

class DependencyMissing(BattlehostError):
    """Raised when required third-party modules cannot be imported."""

    def __init__(self, missing):
        self.missing = tuple(missing)
        super().__init__(f"Dependencies unmet: {', '.join(self.missing)}")

class ConfigLoadError(BattlehostError):
    """Raised when the configuration cannot be copied, read or parsed."""
    pass

class SubsystemInitError(BattlehostError):
    """Raised when a subsystem initializer fails."""

    def __init__(self, name: str, cause: BaseException):
        self.name = name
        super().__init__(f"Subsystem '{name}' failed to initialize: {cause}")

class RegistryAlreadyInitialized(BattlehostError):
    """Raised when the subsystem registry is initialized a second time."""
    pass

class WorkerError(BattlehostError):
    """Base class for per-request worker failures."""

    def __init__(self, capability: str, message: str = ""):
        self.capability = capability
        super().__init__(message or capability)

class WorkerCrashed(WorkerError):
    """Raised for requests that were pending when their worker exited."""
    pass

class WorkerUnavailable(WorkerError):
    """Raised when a capability has no live worker and cannot get one."""
    pass

class WorkerRequestError(WorkerError):
    """Raised when the worker's handler failed on a request."""
    pass

class ContainedFault(BattlehostError):
    """Fails work owned by the origin of a contained crash."""
    pass

class LockdownFault(BattlehostError):
    """A fault that put the server into lockdown."""
    pass

class IntakeClosed(BattlehostError):
    """Raised when new work is offered while the server is in lockdown."""
    pass

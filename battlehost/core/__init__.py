"""
Startup and supervision kernel.

Submodules are imported directly (`battlehost.core.deps` must stay importable
before third-party dependencies are verified).
"""

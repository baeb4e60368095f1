"""
Worker process management for battlehost.
"""

from .pool import WorkerPool, WorkerSlot, WorkerSpec, WorkerState

__all__ = [
    'WorkerPool',
    'WorkerSlot',
    'WorkerSpec',
    'WorkerState',
]

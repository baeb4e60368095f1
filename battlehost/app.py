# battlehost/app.py
"""
Library entry point.

Importing this module checks dependencies (without installing anything);
nothing starts until `listen()` is awaited:

    from battlehost import app
    kernel = await app.listen(8000, "127.0.0.1", 4)

To run the server directly use `python -m battlehost [PORT]`.
"""

from typing import Optional

from battlehost.core.deps import ensure_dependencies

ensure_dependencies(top_level=False)

from battlehost.core.kernel import Kernel  # noqa: E402

_kernel: Optional[Kernel] = None


def get_kernel() -> Kernel:
    """Return the process's kernel, creating it on first use."""
    global _kernel
    if _kernel is None:
        _kernel = Kernel()
    return _kernel


async def listen(port: Optional[int] = None, bind_address: Optional[str] = None,
                 worker_count: Optional[int] = None) -> Kernel:
    """Boot the kernel if needed and start accepting connections."""
    kernel = get_kernel()
    await kernel.start(port, bind_address, worker_count)
    return kernel

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Optional

from battlehost.config.config import ConfigStore
from battlehost.config.manager import log_snapshot
from battlehost.core.context import KernelContext
from battlehost.core.crash import CrashPolicy, CrashSupervisor
from battlehost.core.registry import SubsystemRegistry
from battlehost.net.listener import Listener
from battlehost.workers.pool import WorkerPool

logger = logging.getLogger("battlehost.core.kernel")


class Kernel:
    """Kernel brings the server up in order, supervises it, and takes it down."""

    def __init__(self, *, config: Optional[ConfigStore] = None,
                 registry: Optional[SubsystemRegistry] = None,
                 workers: Optional[WorkerPool] = None):
        self.config = config or ConfigStore()
        if registry is None:
            from battlehost.subsystems import default_registry
            registry = default_registry()
        self.workers = workers or WorkerPool(lambda: self.config.snapshot.settings.workers)
        self.ctx = KernelContext(config=self.config, workers=self.workers, registry=registry)
        self.supervisor: Optional[CrashSupervisor] = None
        self.listener: Optional[Listener] = None
        self._run_event: Optional[asyncio.Event] = None
        self._bootstrap_done = False
        self._started = False

    @property
    def intake(self):
        return self.ctx.intake

    @property
    def registry(self) -> SubsystemRegistry:
        return self.ctx.registry

    async def bootstrap(self) -> None:
        """Load configuration, initialize subsystems, install the crash guard."""
        if self._bootstrap_done:
            return
        logger.info("Kernel: bootstrap starting")

        snapshot = self.config.load()
        log_snapshot(snapshot)
        self.config.enable_hot_reload()

        await self.registry.initialize_all(self.ctx)

        crash = snapshot.settings.crash
        self.supervisor = CrashSupervisor(
            self.intake,
            policy=lambda: CrashPolicy.from_settings(self.config.snapshot.settings.crash),
            log_file=crash.log_file,
        )
        if snapshot.settings.server.crashguard:
            self.supervisor.install()
        else:
            logger.warning("Kernel: crash guard disabled; unexpected errors will not be contained")

        self._bootstrap_done = True
        logger.info("Kernel: bootstrap complete")

    async def start(self, port: Optional[int] = None, bind_address: Optional[str] = None,
                    worker_count: Optional[int] = None) -> None:
        """Bootstrap if needed, start listening, then spawn the worker processes."""
        if not self._bootstrap_done:
            await self.bootstrap()
        if self._started:
            return

        server = self.config.snapshot.settings.server
        fault_handler = self.supervisor.handle_fault if self.supervisor.installed else None
        self.listener = Listener(self.ctx, fault_handler=fault_handler)
        await self.listener.listen(
            server.port if port is None else port,
            bind_address or server.bind_address,
            worker_count or server.worker_count,
        )

        await self.workers.spawn_all()

        if "monitor" in self.registry:
            self.registry.get("monitor").log_usage()

        self._run_event = asyncio.Event()
        self._started = True
        logger.info("Kernel: all subsystems started")

    async def stop(self, drain_timeout: float = 10.0) -> None:
        """Stop intake, let in-flight work finish, then close everything."""
        logger.info("Kernel: stopping")
        self._started = False
        if self.listener is not None:
            await self.listener.close(drain_timeout)
        if not await self.intake.drain(drain_timeout):
            logger.warning("Kernel: %d unit(s) still in flight after %.1fs",
                           self.intake.in_flight(), drain_timeout)
        await self.workers.shutdown()
        await self.config.disable_hot_reload()
        if self.supervisor is not None:
            self.supervisor.uninstall()
        if self._run_event:
            self._run_event.set()
        logger.info("Kernel: stopped")

    async def run_forever(self) -> None:
        """Run until stop() is called or a termination signal arrives."""
        if not self._started:
            await self.start()
        self._run_event = self._run_event or asyncio.Event()

        loop = asyncio.get_running_loop()
        stopping = []

        def handle_signal():
            logger.info("Kernel: signal received, initiating shutdown...")
            if not stopping:
                stopping.append(loop.create_task(self.stop()))

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, handle_signal)
            except (NotImplementedError, RuntimeError):
                # Windows or not the main thread
                pass

        logger.info("Kernel: entering run_forever loop")
        try:
            await self._run_event.wait()
            if stopping:
                await stopping[0]
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.remove_signal_handler(sig)
                except (NotImplementedError, RuntimeError):
                    pass
            logger.info("Kernel: exiting run_forever")

    @classmethod
    async def bootstrap_and_run(cls, port: Optional[int] = None, **kwargs) -> int:
        kernel = cls(**kwargs)
        await kernel.start(port)
        await kernel.run_forever()
        return 0

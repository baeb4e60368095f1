# battlehost/workers/pool.py
"""
Supervised child processes, one per capability.

Each capability (e.g. "validator") is served by a long-lived Python child
process speaking newline-delimited JSON over its stdin/stdout. The pool
owns every slot exclusively: liveness, the pending-request table and the
respawn policy are only ever touched from here.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import os
import sys
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Set, Union

from battlehost.config.models import WorkerSettings
from battlehost.core.exceptions import WorkerCrashed, WorkerRequestError, WorkerUnavailable

_logger = logging.getLogger("battlehost.workers.pool")

CHILD_MODULE = "battlehost.workers.child"
# largest single reply line accepted from a child
STREAM_LIMIT = 16 * 1024 * 1024
_PACKAGE_ROOT = str(Path(__file__).resolve().parents[2])


class WorkerState(str, Enum):
    STARTING = "starting"
    READY = "ready"
    DEAD = "dead"


@dataclass(frozen=True)
class WorkerSpec:
    capability: str
    handler: str
    env: Mapping[str, str] = field(default_factory=dict)


@dataclass(eq=False)
class WorkerSlot:
    spec: WorkerSpec
    state: WorkerState = WorkerState.DEAD
    process: Optional[asyncio.subprocess.Process] = None
    pending: Dict[int, asyncio.Future] = field(default_factory=dict)
    respawns: int = 0
    failures: int = 0
    degraded: bool = False
    ready: asyncio.Event = field(default_factory=asyncio.Event)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    reader: Optional[asyncio.Task] = None

    @property
    def alive(self) -> bool:
        return (self.state is not WorkerState.DEAD
                and self.process is not None
                and self.process.returncode is None)


SettingsSource = Union[WorkerSettings, Callable[[], WorkerSettings], None]


class WorkerPool:
    """Capability -> child process map with bounded respawn."""

    def __init__(self, settings: SettingsSource = None, python: str = sys.executable):
        self._settings = settings
        self.python = python
        self._slots: Dict[str, WorkerSlot] = {}
        self._ids = itertools.count(1)
        self._tasks: Set[asyncio.Task] = set()
        self._closing = False
        # children being replaced by a restart; their exit is not a crash
        self._retiring: Set[asyncio.subprocess.Process] = set()

    @property
    def settings(self) -> WorkerSettings:
        if self._settings is None:
            return WorkerSettings()
        if callable(self._settings):
            return self._settings()
        return self._settings

    # ------------------------------------------------------------------
    # Registration and inspection
    # ------------------------------------------------------------------
    def register(self, capability: str, handler: str,
                 env: Optional[Mapping[str, str]] = None) -> WorkerSpec:
        """Declare a capability served by `handler` ("module:function")."""
        spec = WorkerSpec(capability=capability, handler=handler, env=dict(env or {}))
        existing = self._slots.get(capability)
        if existing is not None:
            if existing.spec != spec:
                raise ValueError(f"Capability '{capability}' is already registered differently")
            return existing.spec
        self._slots[capability] = WorkerSlot(spec=spec)
        _logger.debug("Registered worker capability %s -> %s", capability, handler)
        return spec

    def capabilities(self):
        return list(self._slots)

    def slot(self, capability: str) -> WorkerSlot:
        try:
            return self._slots[capability]
        except KeyError:
            raise WorkerUnavailable(capability, f"No worker registered for '{capability}'") from None

    def status(self) -> Dict[str, Dict[str, Any]]:
        return {
            name: {
                "state": slot.state.value,
                "pid": slot.process.pid if slot.process else None,
                "pending": len(slot.pending),
                "respawns": slot.respawns,
                "failures": slot.failures,
                "degraded": slot.degraded,
            }
            for name, slot in self._slots.items()
        }

    # ------------------------------------------------------------------
    # Process lifecycle
    # ------------------------------------------------------------------
    async def spawn(self, capability: str) -> None:
        """Start the worker for `capability`; a no-op if it is already running."""
        slot = self.slot(capability)
        async with slot.lock:
            if slot.alive:
                return
            # an explicit spawn gives a degraded capability a fresh start
            slot.degraded = False
            slot.failures = 0
            self._reset_ready(slot)
            await self._start(slot)

    async def spawn_all(self) -> None:
        for capability in self._slots:
            await self.spawn(capability)

    async def wait_ready(self, capability: str, timeout: Optional[float] = None) -> None:
        """
        Wait until the worker for `capability` has reported ready.

        Raises WorkerUnavailable if the capability degrades or the pool shuts
        down first, and asyncio.TimeoutError after `timeout` seconds.
        """
        slot = self.slot(capability)

        async def until_ready():
            while slot.state is not WorkerState.READY:
                if slot.degraded or self._closing:
                    raise WorkerUnavailable(capability, f"{capability} worker is unavailable")
                await slot.ready.wait()

        await asyncio.wait_for(until_ready(), timeout)

    @staticmethod
    def _reset_ready(slot: WorkerSlot) -> None:
        # waiters on the old event wake up and re-check the slot
        previous, slot.ready = slot.ready, asyncio.Event()
        previous.set()

    def _child_env(self, spec: WorkerSpec) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(spec.env)
        path = env.get("PYTHONPATH")
        env["PYTHONPATH"] = _PACKAGE_ROOT + (os.pathsep + path if path else "")
        return env

    async def _start(self, slot: WorkerSlot) -> None:
        """Start a child for `slot`. Callers hold `slot.lock`."""
        spec = slot.spec
        proc = await asyncio.create_subprocess_exec(
            self.python, "-m", CHILD_MODULE,
            "--capability", spec.capability,
            "--handler", spec.handler,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            env=self._child_env(spec),
            limit=STREAM_LIMIT,
        )
        if self._closing:
            # shutdown began while the child was starting
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            raise WorkerUnavailable(spec.capability, "Worker pool is shutting down")

        slot.state = WorkerState.STARTING
        self._reset_ready(slot)
        slot.pending = {}
        slot.process = proc
        slot.reader = asyncio.get_running_loop().create_task(
            self._read_loop(slot, proc), name=f"battlehost-worker-{spec.capability}"
        )
        _logger.info("Spawned %s worker (pid %s)", spec.capability, proc.pid)

    async def _read_loop(self, slot: WorkerSlot, proc: asyncio.subprocess.Process) -> None:
        pending = slot.pending
        assert proc.stdout is not None
        while True:
            try:
                line = await proc.stdout.readline()
            except (ValueError, asyncio.LimitOverrunError) as e:
                _logger.error("%s worker sent an oversized line: %s", slot.spec.capability, e)
                proc.kill()
                line = b""
            if not line:
                break
            self._handle_line(slot, pending, line)

        # EOF: the child is gone or going. Fail its requests before awaiting anything.
        capability = slot.spec.capability
        if proc in self._retiring:
            self._fail_pending(pending, WorkerUnavailable(capability, f"{capability} worker was restarted"))
            await proc.wait()
            return
        if slot.process is proc:
            slot.state = WorkerState.DEAD
            self._reset_ready(slot)
        if self._closing:
            self._fail_pending(pending, WorkerUnavailable(capability, f"{capability} worker shut down"))
            await proc.wait()
            return
        failed = self._fail_pending(
            pending, WorkerCrashed(capability, f"{capability} worker crashed")
        )
        returncode = await proc.wait()
        _logger.error("%s worker (pid %s) exited unexpectedly with code %s; failed %d pending request(s)",
                      capability, proc.pid, returncode, failed)
        await self._after_crash(slot)

    def _handle_line(self, slot: WorkerSlot, pending: Dict[int, asyncio.Future], line: bytes) -> None:
        try:
            msg = json.loads(line)
        except ValueError:
            _logger.warning("%s worker wrote a non-protocol line: %r", slot.spec.capability, line[:200])
            return
        if not isinstance(msg, dict):
            _logger.warning("%s worker wrote an unexpected message: %r", slot.spec.capability, msg)
            return
        if msg.get("ready"):
            slot.state = WorkerState.READY
            slot.ready.set()
            _logger.debug("%s worker is ready", slot.spec.capability)
            return

        fut = pending.pop(msg.get("id"), None)
        if fut is None:
            _logger.warning("%s worker answered unknown request %r", slot.spec.capability, msg.get("id"))
            return
        slot.failures = 0
        if fut.done():
            return
        if msg.get("ok"):
            fut.set_result(msg.get("result"))
        else:
            fut.set_exception(WorkerRequestError(slot.spec.capability, str(msg.get("error"))))

    @staticmethod
    def _fail_pending(pending: Dict[int, asyncio.Future], error: Exception) -> int:
        failed = 0
        for fut in pending.values():
            if not fut.done():
                fut.set_exception(error)
                failed += 1
        pending.clear()
        return failed

    async def _after_crash(self, slot: WorkerSlot) -> None:
        """Make one respawn attempt, unless the capability has failed too often."""
        settings = self.settings
        slot.failures += 1
        if slot.failures > settings.max_respawns:
            slot.degraded = True
            slot.ready.set()
            _logger.critical("%s worker failed %d times in a row; capability degraded",
                             slot.spec.capability, slot.failures)
            return
        if settings.respawn_backoff:
            await asyncio.sleep(settings.respawn_backoff)
        if self._closing:
            return
        async with slot.lock:
            if slot.alive or self._closing:
                return
            slot.respawns += 1
            try:
                await self._start(slot)
            except WorkerUnavailable:
                return
            except OSError:
                slot.failures += 1
                _logger.exception("Respawning %s worker failed", slot.spec.capability)

    async def _ensure_alive(self, slot: WorkerSlot) -> None:
        """Respawn a dead worker, giving up once the respawn bound is exceeded."""
        capability = slot.spec.capability
        async with slot.lock:
            while not slot.alive:
                if self._closing:
                    raise WorkerUnavailable(capability, "Worker pool is shutting down")
                if slot.degraded or slot.failures > self.settings.max_respawns:
                    slot.degraded = True
                    slot.ready.set()
                    raise WorkerUnavailable(capability, f"{capability} worker is unavailable")
                slot.respawns += 1
                try:
                    await self._start(slot)
                except OSError:
                    slot.failures += 1
                    _logger.exception("Respawning %s worker failed", capability)
                    await asyncio.sleep(self.settings.respawn_backoff)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------
    def dispatch(self, capability: str, request: Any) -> asyncio.Future:
        """
        Send `request` to the worker for `capability`.

        Returns a future resolving with the worker's response. It fails with
        WorkerCrashed if the worker dies first, WorkerRequestError if the
        handler raised, and WorkerUnavailable if no worker can serve it.
        """
        fut = asyncio.get_running_loop().create_future()
        slot = self._slots.get(capability)
        if slot is None:
            fut.set_exception(WorkerUnavailable(capability, f"No worker registered for '{capability}'"))
        elif self._closing:
            fut.set_exception(WorkerUnavailable(capability, "Worker pool is shutting down"))
        elif slot.degraded:
            fut.set_exception(WorkerUnavailable(capability, f"{capability} worker is unavailable"))
        elif slot.alive:
            self._send(slot, fut, request)
        else:
            task = asyncio.get_running_loop().create_task(self._respawn_then_send(slot, fut, request))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return fut

    async def _respawn_then_send(self, slot: WorkerSlot, fut: asyncio.Future, request: Any) -> None:
        capability = slot.spec.capability
        try:
            await self._ensure_alive(slot)
        except WorkerUnavailable as e:
            if not fut.done():
                fut.set_exception(e)
            return
        except asyncio.CancelledError:
            if not fut.done():
                fut.set_exception(WorkerUnavailable(capability, "Worker pool shut down"))
            raise
        if not fut.done():
            self._send(slot, fut, request)

    def _send(self, slot: WorkerSlot, fut: asyncio.Future, request: Any) -> None:
        req_id = next(self._ids)
        try:
            line = json.dumps({"id": req_id, "request": request}) + "\n"
        except (TypeError, ValueError) as e:
            fut.set_exception(e)
            return
        slot.pending[req_id] = fut
        assert slot.process is not None and slot.process.stdin is not None
        # a broken pipe surfaces as EOF in the reader, which fails the request
        slot.process.stdin.write(line.encode("utf-8"))

    async def request(self, capability: str, request: Any, timeout: Optional[float] = None) -> Any:
        """Dispatch and await the response."""
        return await asyncio.wait_for(self.dispatch(capability, request), timeout)

    # ------------------------------------------------------------------
    # Reconfiguration
    # ------------------------------------------------------------------
    def _update_env(self, capability: str, env: Mapping[str, str]) -> bool:
        slot = self.slot(capability)
        spec = replace(slot.spec, env=dict(env))
        if spec == slot.spec:
            return False
        slot.spec = spec
        _logger.info("Environment of %s worker changed", capability)
        return True

    async def reconfigure(self, capability: str, env: Mapping[str, str]) -> bool:
        """
        Give `capability` a new environment and restart its running worker
        so the change takes effect. Returns False if nothing changed.
        """
        if not self._update_env(capability, env):
            return False
        await self._recycle(self.slot(capability))
        return True

    def reconfigure_soon(self, capability: str, env: Mapping[str, str]) -> bool:
        """reconfigure() for synchronous callers, e.g. config reload listeners."""
        if not self._update_env(capability, env):
            return False
        slot = self.slot(capability)
        if slot.alive and not self._closing:
            task = asyncio.get_running_loop().create_task(
                self._recycle(slot), name=f"battlehost-recycle-{capability}"
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return True

    async def _recycle(self, slot: WorkerSlot) -> None:
        """Swap the running child for a fresh one; the old one finishes its queue first."""
        capability = slot.spec.capability
        async with slot.lock:
            old, old_reader = slot.process, slot.reader
            if self._closing or old is None or old.returncode is not None:
                return
            self._retiring.add(old)
            try:
                await self._start(slot)
            except (OSError, WorkerUnavailable):
                self._retiring.discard(old)
                _logger.exception("Restarting %s worker failed; the old worker stays in service", capability)
                return
        try:
            await self._stop_process(old, capability)
            if old_reader is not None:
                await asyncio.gather(old_reader, return_exceptions=True)
        finally:
            self._retiring.discard(old)
        _logger.info("Restarted %s worker (pid %s -> %s)", capability, old.pid, slot.process.pid)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------
    async def _stop_process(self, proc: Optional[asyncio.subprocess.Process], capability: str) -> None:
        """Close the child's stdin and wait for it, killing it after the shutdown timeout."""
        if proc is None or proc.returncode is not None:
            return
        timeout = self.settings.shutdown_timeout
        if proc.stdin is not None and not proc.stdin.is_closing():
            proc.stdin.close()
        try:
            await asyncio.wait_for(proc.wait(), timeout)
        except asyncio.TimeoutError:
            _logger.warning("%s worker did not exit in %.1fs; killing it", capability, timeout)
            proc.kill()
            await proc.wait()

    async def shutdown(self) -> None:
        """Close every worker, killing the ones that do not exit in time."""
        self._closing = True
        # respawns and restarts already under way notice _closing and stop
        tasks = list(self._tasks)
        if tasks:
            _, stuck = await asyncio.wait(tasks, timeout=self.settings.shutdown_timeout)
            for task in stuck:
                task.cancel()
            await asyncio.gather(*stuck, return_exceptions=True)

        for slot in self._slots.values():
            await self._stop_process(slot.process, slot.spec.capability)
        for slot in self._slots.values():
            if slot.reader is not None:
                await asyncio.gather(slot.reader, return_exceptions=True)
            self._fail_pending(slot.pending, WorkerUnavailable(slot.spec.capability, "Worker pool shut down"))
            slot.state = WorkerState.DEAD
            slot.ready.set()
        _logger.info("Worker pool stopped")

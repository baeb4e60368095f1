# battlehost/core/intake.py
"""
The gate in front of new units of work.

Every request the server accepts runs as a tracked unit keyed by its
origin, so a contained crash can fail exactly the work it owns, and a
lockdown can stop intake while letting the rest finish.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, Optional, Set

from battlehost.core.exceptions import ContainedFault, IntakeClosed

_logger = logging.getLogger("battlehost.core.intake")


@dataclass(eq=False)
class WorkUnit:
    origin: str
    result: asyncio.Future
    task: Optional[asyncio.Task] = None
    started_at: float = field(default_factory=time.time)


class Intake:
    def __init__(self):
        self.intake_stopped = False
        self.lockdown_reason: Optional[BaseException] = None
        self.crash_count = 0
        self._units: Dict[str, Set[WorkUnit]] = {}
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def accepting(self) -> bool:
        return not self.intake_stopped

    def in_flight(self, origin: Optional[str] = None) -> int:
        if origin is not None:
            return len(self._units.get(origin, ()))
        return sum(len(units) for units in self._units.values())

    async def run(self, origin: str, work: Awaitable[Any]) -> Any:
        """
        Run `work` as a unit owned by `origin` and return its result.

        Raises:
            IntakeClosed: if the server is in lockdown.
            ContainedFault: if a crash attributed to `origin` failed the unit.
        """
        if self.intake_stopped:
            if asyncio.iscoroutine(work):
                work.close()
            raise IntakeClosed("The server is in lockdown and is not accepting new work")

        loop = asyncio.get_running_loop()
        unit = WorkUnit(origin=origin, result=loop.create_future())
        unit.task = asyncio.ensure_future(work)
        unit.task.add_done_callback(lambda t: self._settle(unit, t))
        self._track(unit)
        try:
            return await unit.result
        except asyncio.CancelledError:
            unit.task.cancel()
            raise
        finally:
            self._untrack(unit)

    @staticmethod
    def _settle(unit: WorkUnit, task: asyncio.Future) -> None:
        if unit.result.done():
            return
        if task.cancelled():
            unit.result.cancel()
        elif task.exception() is not None:
            unit.result.set_exception(task.exception())
        else:
            unit.result.set_result(task.result())

    def _track(self, unit: WorkUnit) -> None:
        self._units.setdefault(unit.origin, set()).add(unit)
        self._idle.clear()

    def _untrack(self, unit: WorkUnit) -> None:
        units = self._units.get(unit.origin)
        if units is not None:
            units.discard(unit)
            if not units:
                del self._units[unit.origin]
        if not self._units:
            self._idle.set()

    def fail_origin(self, origin: str, fault: BaseException) -> int:
        """Fail every unit owned by `origin`. Returns how many were failed."""
        failed = 0
        for unit in list(self._units.get(origin, ())):
            if unit.result.done():
                continue
            err = ContainedFault(f"Request failed after a crash: {fault!r}")
            err.__cause__ = fault
            unit.result.set_exception(err)
            if unit.task and not unit.task.done():
                unit.task.cancel()
            failed += 1
        if failed:
            _logger.warning("Failed %d unit(s) of work owned by %s", failed, origin)
        return failed

    def report_crash(self, fault: BaseException, origin: str) -> None:
        self.crash_count += 1
        _logger.error("Crash in %s contained (%d so far): %r", origin, self.crash_count, fault)

    def start_lockdown(self, fault: BaseException) -> bool:
        """Stop taking new work. Stays in effect until the process restarts."""
        if self.intake_stopped:
            return False
        self.intake_stopped = True
        self.lockdown_reason = fault
        _logger.critical(
            "LOCKDOWN: %r. No new work will be accepted; %d unit(s) in flight may finish. "
            "Restart the server once they are done.",
            fault, self.in_flight(),
        )
        return True

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for in-flight work to finish. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._idle.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

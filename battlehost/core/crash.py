# battlehost/core/crash.py
"""
Crash containment.

`classify_fault` decides, without side effects, whether a fault is a
contained crash or calls for a lockdown. `CrashSupervisor` is the single
handler every unexpected error is routed to: from the request path
directly, and from sys/threading/asyncio hooks when installed.
"""

from __future__ import annotations

import asyncio
import collections
import logging
import sys
import threading
import time
import traceback
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Deque, Iterable, Optional, Tuple, Union

from battlehost.config.models import CrashSettings
from battlehost.core.exceptions import LockdownFault
from battlehost.core.intake import Intake

_LOG = logging.getLogger("battlehost.core.crash")

MAIN_ORIGIN = "The main process"


class FaultClass(str, Enum):
    CONTAINED = "contained"
    LOCKDOWN = "lockdown"


@dataclass(frozen=True)
class CrashPolicy:
    lockdown_faults: Tuple[str, ...] = ("MemoryError", "SystemError", "RecursionError")
    max_crashes: int = 5
    crash_window: float = 1800.0

    @classmethod
    def from_settings(cls, settings: CrashSettings) -> "CrashPolicy":
        return cls(
            lockdown_faults=tuple(settings.lockdown_faults),
            max_crashes=settings.max_crashes,
            crash_window=settings.crash_window,
        )


@dataclass
class CrashEvent:
    fault: BaseException
    origin: str
    classification: FaultClass
    timestamp: float = field(default_factory=time.time)


def classify_fault(fault: BaseException, policy: CrashPolicy,
                   recent: Iterable[float] = (), now: Optional[float] = None) -> FaultClass:
    """
    Classify a fault.

    Lockdown if the fault (or one of its base classes) is named in the
    policy, if it is a LockdownFault, or if accepting it would make more
    than `max_crashes` crashes inside `crash_window` seconds. `recent` holds
    the timestamps of earlier crashes.
    """
    if isinstance(fault, LockdownFault):
        return FaultClass.LOCKDOWN
    names = {cls.__name__ for cls in type(fault).__mro__}
    if names.intersection(policy.lockdown_faults):
        return FaultClass.LOCKDOWN

    now = time.time() if now is None else now
    in_window = sum(1 for t in recent if now - t <= policy.crash_window)
    if in_window + 1 > policy.max_crashes:
        return FaultClass.LOCKDOWN
    return FaultClass.CONTAINED


PolicySource = Union[CrashPolicy, Callable[[], CrashPolicy]]


class CrashSupervisor:
    def __init__(self, intake: Intake, policy: PolicySource = CrashPolicy(),
                 log_file: Optional[Union[str, Path]] = None):
        self.intake = intake
        self._policy = policy
        self.log_file = Path(log_file) if log_file else None
        self._recent: Deque[float] = collections.deque(maxlen=1000)
        self.events: Deque[CrashEvent] = collections.deque(maxlen=100)
        self._installed = False
        self._prev_excepthook = None
        self._prev_thread_hook = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._prev_loop_handler = None

    @property
    def policy(self) -> CrashPolicy:
        return self._policy() if callable(self._policy) else self._policy

    @property
    def installed(self) -> bool:
        return self._installed

    def handle_fault(self, fault: BaseException, origin: str = MAIN_ORIGIN,
                     force_lockdown: bool = False) -> CrashEvent:
        """Classify `fault`, record it, and react. Never raises."""
        now = time.time()
        if force_lockdown:
            classification = FaultClass.LOCKDOWN
        else:
            classification = classify_fault(fault, self.policy, self._recent, now)
        self._recent.append(now)
        event = CrashEvent(fault=fault, origin=origin, classification=classification, timestamp=now)
        self.events.append(event)

        _LOG.error(f"{origin} crashed ({classification.value})",
                   exc_info=(type(fault), fault, fault.__traceback__))
        self._write_crash_log(event)

        if classification is FaultClass.LOCKDOWN:
            self.intake.start_lockdown(fault)
        else:
            self.intake.fail_origin(origin, fault)
            self.intake.report_crash(fault, origin)
        return event

    def _write_crash_log(self, event: CrashEvent) -> None:
        if self.log_file is None:
            return
        stamp = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(event.timestamp))
        trace = "".join(traceback.format_exception(type(event.fault), event.fault,
                                                   event.fault.__traceback__))
        try:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.log_file, "a", encoding="utf-8") as fp:
                fp.write(f"\n[{stamp}] {event.origin} ({event.classification.value})\n{trace}")
        except OSError as e:
            _LOG.warning("Could not write crash log %s: %s", self.log_file, e)

    # ------------------------------------------------------------------
    # Process-wide hooks
    # ------------------------------------------------------------------
    def install(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Route uncaught errors from sys, threads and the event loop here."""
        if self._installed:
            return
        self._prev_excepthook = sys.excepthook
        self._prev_thread_hook = threading.excepthook
        sys.excepthook = self._excepthook
        threading.excepthook = self._thread_excepthook

        self._loop = loop or asyncio.get_running_loop()
        self._prev_loop_handler = self._loop.get_exception_handler()
        self._loop.set_exception_handler(self._loop_exception_handler)
        self._installed = True
        _LOG.info("Crash guard installed")

    def uninstall(self) -> None:
        if not self._installed:
            return
        sys.excepthook = self._prev_excepthook
        threading.excepthook = self._prev_thread_hook
        if self._loop is not None and not self._loop.is_closed():
            self._loop.set_exception_handler(self._prev_loop_handler)
        self._loop = None
        self._installed = False

    def _excepthook(self, exc_type, exc, tb) -> None:
        if issubclass(exc_type, (KeyboardInterrupt, SystemExit)):
            self._prev_excepthook(exc_type, exc, tb)
            return
        self.handle_fault(exc.with_traceback(tb), MAIN_ORIGIN)

    def _thread_excepthook(self, args) -> None:
        if args.exc_type is SystemExit or args.exc_value is None:
            self._prev_thread_hook(args)
            return
        name = args.thread.name if args.thread is not None else "unknown"
        self.handle_fault(args.exc_value, f"Thread {name}")

    def _loop_exception_handler(self, loop: asyncio.AbstractEventLoop, context: dict) -> None:
        exc = context.get("exception")
        if exc is None:
            loop.default_exception_handler(context)
            return

        future = context.get("future")
        if future is not None and context.get("message", "").endswith("never retrieved"):
            # an error nobody awaited is never swallowed
            origin = future.get_name() if isinstance(future, asyncio.Task) else repr(future)
            self.handle_fault(exc, f"Unretrieved error in {origin}", force_lockdown=True)
            return

        task = context.get("task") or future
        if isinstance(task, asyncio.Task):
            origin = task.get_name()
        else:
            origin = MAIN_ORIGIN
        self.handle_fault(exc, origin)

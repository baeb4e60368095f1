# battlehost/core/exit_codes.py
"""Human-readable diagnostics for non-zero process exit codes."""

from __future__ import annotations

import atexit
import logging
from typing import Dict, Optional

_logger = logging.getLogger("battlehost.core.exit_codes")

EXIT_CODES: Dict[int, str] = {
    1: "Uncaught Fatal Exception",
    2: "Misuse of shell builtins",
    3: "Internal Parse Error",
    4: "Internal Evaluation Failure",
    5: "Fatal Error",
    6: "Non-function Internal Exception Handler",
    7: "Internal Exception Handler Run-Time Failure",
    8: "Unused Error Code. Sometimes indicates an uncaught exception",
    9: "Invalid Argument",
    10: "Internal Run-Time Failure",
    11: "A sysadmin forced an emergency exit",
    12: "Invalid Debug Argument",
    130: "Control-C via Terminal or Command Prompt",
}

# codes above this are 128 + signal number
SIGNAL_EXIT_THRESHOLD = 128


def normalize_exit_code(code) -> int:
    """Map a SystemExit-style code (None, int or message) to an integer."""
    if code is None:
        return 0
    if isinstance(code, bool):
        return int(code)
    if isinstance(code, int):
        return code
    return 1


def describe_exit(code: int) -> Optional[str]:
    """Return the diagnostic for `code`, or None for a normal exit."""
    if code == 0:
        return None
    if code in EXIT_CODES:
        return EXIT_CODES[code]
    if code > SIGNAL_EXIT_THRESHOLD:
        return "Signal Exit"
    return "Unused Error Code"


class ExitDiagnostics:
    """Reports the exit code when the interpreter shuts down."""

    def __init__(self):
        self.exit_code: Optional[int] = None
        self._armed = False
        self._reported = False

    def arm(self) -> None:
        if self._armed:
            return
        atexit.register(self._at_exit)
        self._armed = True

    def disarm(self) -> None:
        if self._armed:
            atexit.unregister(self._at_exit)
            self._armed = False

    def record(self, code) -> int:
        self.exit_code = normalize_exit_code(code)
        return self.exit_code

    def _at_exit(self) -> None:
        if self.exit_code is not None:
            self.report(self.exit_code)

    def report(self, code: int) -> Optional[str]:
        """Log the diagnostic for `code` once. Does not change the exit code."""
        info = describe_exit(code)
        if info is None or self._reported:
            return info
        self._reported = True
        _logger.error("WARNING: Process exiting with code %d", code)
        _logger.error("Exit code details: %s.", info)
        for handler in logging.getLogger().handlers:
            handler.flush()
        return info

"""
battlehost module entrypoint

Allows launching the server directly via:
    python -m battlehost [PORT]

Dependencies are verified (and installed if missing) before anything
imports them; then configuration, subsystems, the crash guard, the
listener and the worker processes are brought up in that order.
"""

import argparse
import asyncio
import logging
import os
import sys

from battlehost import __version__
from battlehost.core.deps import ensure_dependencies
from battlehost.core.exceptions import BattlehostError
from battlehost.core.exit_codes import ExitDiagnostics


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------
def _setup_logging() -> logging.Logger:
    """Plain logging until dependencies are known to be present."""
    level = getattr(logging, os.environ.get("BATTLEHOST_LOGLEVEL", "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="[%(asctime)s] [%(levelname)s] (%(name)s) %(message)s",
        datefmt="%H:%M:%S",
    )
    return logging.getLogger("battlehost.main")


def parse_arguments(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="battlehost", description="battlehost server")
    parser.add_argument("port", nargs="?", type=int, default=None,
                        help="port to listen on (default: server.port from the config)")
    parser.add_argument("--version", action="version", version=f"battlehost {__version__}")
    return parser.parse_args(argv)


# ---------------------------------------------------------------------------
# Main async entrypoint
# ---------------------------------------------------------------------------
async def _run_main(port) -> int:
    from battlehost.core.kernel import Kernel
    from battlehost.log_config import setup_logging

    kernel = Kernel()
    settings = kernel.config.load().settings
    setup_logging(settings.logging.level, settings.logging.directory)
    logger = logging.getLogger("battlehost.main")
    logger.info(f"battlehost v{__version__} starting...")

    await kernel.start(port)
    await kernel.run_forever()
    logger.info("battlehost shut down cleanly.")
    return 0


def run(argv=None) -> int:
    args = parse_arguments(argv)
    logger = _setup_logging()
    try:
        ensure_dependencies(top_level=True)
        return asyncio.run(_run_main(args.port))
    except KeyboardInterrupt:
        logger.info("battlehost interrupted by user (Ctrl+C).")
        return 130
    except BattlehostError as e:
        logger.critical("Startup failed: %s", e)
        return 1
    except Exception:
        logger.exception("Fatal error during battlehost runtime.")
        return 1


# ---------------------------------------------------------------------------
# CLI-compatible entrypoint
# ---------------------------------------------------------------------------
def main() -> None:
    """CLI wrapper for `python -m battlehost` or the console_scripts entrypoint."""
    diagnostics = ExitDiagnostics()
    diagnostics.arm()
    try:
        code = run()
    except SystemExit as e:
        # argparse errors and explicit sys.exit() calls
        code = e.code
    diagnostics.record(code)
    sys.exit(code)


if __name__ == "__main__":
    main()

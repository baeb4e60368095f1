# battlehost/workers/child.py
"""
Worker child process entrypoint.

    python -m battlehost.workers.child --capability validator \
        --handler battlehost.subsystems.validator:validate_team

Reads one JSON request per line on stdin and answers one JSON line per
request on stdout. Everything else (logging, stray prints) goes to stderr
so it cannot corrupt the protocol stream.
"""

import argparse
import json
import logging
import os
import sys
from importlib import import_module
from typing import Any, Callable

_logger = logging.getLogger("battlehost.workers.child")


def resolve_handler(path: str) -> Callable[[Any], Any]:
    """Import "package.module:function" and return the function."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Handler must look like 'module:function', got {path!r}")
    handler = getattr(import_module(module_name), attr)
    if not callable(handler):
        raise TypeError(f"Handler {path!r} is not callable")
    return handler


def _write(out, message: dict) -> None:
    out.write(json.dumps(message) + "\n")
    out.flush()


def serve(handler: Callable[[Any], Any], stdin, out) -> int:
    """Answer requests until stdin closes."""
    _write(out, {"ready": True})
    for raw in stdin:
        raw = raw.strip()
        if not raw:
            continue
        try:
            msg = json.loads(raw)
            req_id = msg["id"]
        except (ValueError, KeyError, TypeError):
            _logger.warning("Ignoring malformed request line: %r", raw[:200])
            continue

        try:
            reply = {"id": req_id, "ok": True, "result": handler(msg.get("request"))}
            line = json.dumps(reply)
        except Exception as e:
            _logger.debug("Handler failed on request %s", req_id, exc_info=True)
            reply = {"id": req_id, "ok": False, "error": f"{type(e).__name__}: {e}"}
            line = json.dumps(reply)
        out.write(line + "\n")
        out.flush()
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="battlehost-worker")
    parser.add_argument("--capability", required=True)
    parser.add_argument("--handler", required=True)
    args = parser.parse_args(argv)

    level = getattr(logging, os.environ.get("BATTLEHOST_LOGLEVEL", "WARNING").upper(), logging.WARNING)
    logging.basicConfig(
        stream=sys.stderr,
        level=level,
        format=f"[%(asctime)s] [%(levelname)s] ({args.capability} worker) %(message)s",
        datefmt="%H:%M:%S",
    )

    # keep the real stdout for the protocol; anything printed goes to stderr
    out = sys.stdout
    sys.stdout = sys.stderr

    handler = resolve_handler(args.handler)
    try:
        return serve(handler, sys.stdin, out)
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())

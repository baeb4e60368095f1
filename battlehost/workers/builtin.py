# battlehost/workers/builtin.py
"""Diagnostic handlers, handy for checking that the worker plumbing works."""

import os
import time


def echo(request):
    return request


def scripted(request):
    """
    Do what the request says:

        {"action": "echo", "value": ...}             -> value
        {"action": "sleep", "delay": s, "value": ...} -> value, after s seconds
        {"action": "fail", "message": ...}           -> raises
        {"action": "env", "name": ...}               -> that environment variable
        {"action": "exit", "code": n}                -> ends the process, as a crash would
    """
    action = request.get("action", "echo")
    if action == "sleep":
        time.sleep(float(request.get("delay", 0.1)))
    elif action == "fail":
        raise RuntimeError(request.get("message", "requested failure"))
    elif action == "env":
        return os.environ.get(request["name"])
    elif action == "exit":
        os._exit(int(request.get("code", 70)))
    elif action != "echo":
        raise ValueError(f"Unknown action {action!r}")
    return request.get("value")

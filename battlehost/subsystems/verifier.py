# battlehost/subsystems/verifier.py
"""Login token signature checks, run inside the `verifier` worker process."""

from __future__ import annotations

import hashlib
import hmac
import logging
import os
from typing import Any, Dict

_LOG = logging.getLogger("battlehost.subsystems.verifier")

CAPABILITY = "verifier"
HANDLER = "battlehost.subsystems.verifier:verify_signature"
KEY_ENV = "BATTLEHOST_VERIFIER_KEY"


def sign(data: str, key: str) -> str:
    return hmac.new(key.encode("utf-8"), data.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_signature(request: Any) -> bool:
    """Worker handler: True if request["signature"] signs request["data"]."""
    key = os.environ.get(KEY_ENV)
    if not key:
        return False
    data = request.get("data")
    signature = request.get("signature")
    if not isinstance(data, str) or not isinstance(signature, str):
        return False
    return hmac.compare_digest(sign(data, key), signature.lower())


class Verifier:
    def __init__(self, workers):
        self._workers = workers

    async def verify(self, data: str, signature: str) -> bool:
        return bool(await self._workers.dispatch(CAPABILITY, {"data": data, "signature": signature}))


def worker_env(snapshot) -> Dict[str, str]:
    key = snapshot.section("verifier").get("key")
    if not key:
        _LOG.warning("No [verifier] key configured; every signature will be rejected")
    return {KEY_ENV: str(key or "")}


def init_verifier(ctx) -> Verifier:
    ctx.workers.register(CAPABILITY, HANDLER, env=worker_env(ctx.snapshot))
    ctx.config.subscribe(lambda snapshot: ctx.workers.reconfigure_soon(CAPABILITY, worker_env(snapshot)))
    return Verifier(ctx.workers)

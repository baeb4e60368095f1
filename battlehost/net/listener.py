# battlehost/net/listener.py
"""
TCP listener.

Each line a client sends is one JSON request
`{"capability": "validator", "request": {...}}`; each gets exactly one JSON
reply line `{"ok": true, "result": ...}` or `{"ok": false, "error": "..."}`,
so a failed request is answered instead of left hanging.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any, Callable, Dict, Optional

from battlehost.core.exceptions import ContainedFault, IntakeClosed, WorkerError

_logger = logging.getLogger("battlehost.net.listener")

FaultHandler = Callable[[BaseException, str], Any]


class Listener:
    def __init__(self, ctx, fault_handler: Optional[FaultHandler] = None):
        self.ctx = ctx
        self.fault_handler = fault_handler
        self._server: Optional[asyncio.Server] = None
        self._limit: Optional[asyncio.Semaphore] = None
        self._conn_ids = itertools.count(1)
        # open connections, mapped to whether they are waiting for a request
        self._connections: Dict[asyncio.StreamWriter, bool] = {}

    @property
    def serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    @property
    def port(self) -> Optional[int]:
        if not self._server or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    async def listen(self, port: int, bind_address: str = "0.0.0.0", worker_count: int = 1) -> None:
        if self._server is not None:
            raise RuntimeError("Listener is already running")
        self._limit = asyncio.Semaphore(max(1, worker_count))
        self._server = await asyncio.start_server(self._on_connection, bind_address, port)
        _logger.info("Listening on %s:%s (%d concurrent requests)", bind_address, self.port, worker_count)

    async def close(self, timeout: Optional[float] = None) -> None:
        """
        Stop accepting connections and close the open ones.

        Idle connections are closed at once; a connection with a request in
        flight gets its reply first. After `timeout` seconds the rest are
        closed regardless.
        """
        server, self._server = self._server, None
        if server is None:
            return
        server.close()
        for writer, idle in list(self._connections.items()):
            if idle:
                writer.close()
        try:
            await asyncio.wait_for(server.wait_closed(), timeout)
        except asyncio.TimeoutError:
            _logger.warning("%d connection(s) still busy after %.1fs; closing them",
                            len(self._connections), timeout)
            for writer in list(self._connections):
                writer.close()
        _logger.info("Listener closed")

    async def _on_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        origin = f"connection {next(self._conn_ids)} ({peer})"
        _logger.debug("Accepted %s", origin)
        self._connections[writer] = True
        try:
            while self._server is not None:
                line = await reader.readline()
                if not line:
                    break
                self._connections[writer] = False
                reply = await self._serve_line(origin, line)
                writer.write((json.dumps(reply) + "\n").encode("utf-8"))
                await writer.drain()
                self._connections[writer] = True
        except (ConnectionError, asyncio.IncompleteReadError) as e:
            _logger.debug("%s dropped: %s", origin, e)
        finally:
            self._connections.pop(writer, None)
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass

    async def _dispatch(self, capability: str, request: Any) -> Any:
        return await self.ctx.workers.dispatch(capability, request)

    async def _serve_line(self, origin: str, line: bytes) -> Dict[str, Any]:
        try:
            message = json.loads(line)
            capability = message["capability"]
            request = message.get("request")
        except (ValueError, KeyError, TypeError):
            return {"ok": False, "error": "malformed request"}

        assert self._limit is not None
        async with self._limit:
            try:
                result = await self.ctx.intake.run(origin, self._dispatch(capability, request))
                return {"ok": True, "result": result}
            except IntakeClosed:
                return {"ok": False, "error": "lockdown"}
            except WorkerError as e:
                return {"ok": False, "error": f"{type(e).__name__}: {e}"}
            except ContainedFault:
                return {"ok": False, "error": "internal error"}
            except Exception as e:
                if self.fault_handler is None:
                    raise
                self.fault_handler(e, origin)
                return {"ok": False, "error": "internal error"}

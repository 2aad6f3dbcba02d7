"""
uvicorn wrapper for the cast receiver's FastAPI app.

The listening socket is bound here and handed to uvicorn; a port conflict
makes ``start()`` return False.
"""

from __future__ import annotations

import asyncio
import logging
import socket

import uvicorn
from fastapi import FastAPI

logger = logging.getLogger(__name__)

STARTUP_TIMEOUT = 5.0
SHUTDOWN_TIMEOUT = 5.0


def bind_tcp_socket(host: str, port: int) -> socket.socket:
    """
    Create a TCP socket bound to ``host:port``.

    Raises:
        OSError: If the address is in use.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.set_inheritable(True)
    except OSError:
        sock.close()
        raise
    return sock


class ReceiverHTTPServer:
    """Runs a FastAPI app under uvicorn on a pre-bound socket."""

    def __init__(self, app: FastAPI, host: str = "0.0.0.0", port: int = 9959) -> None:
        self.app = app
        self.host = host
        self.port = port

        self._server: uvicorn.Server | None = None
        self._task: asyncio.Task[None] | None = None
        self._socket: socket.socket | None = None

    async def start(self) -> bool:
        """
        Start serving.

        Returns:
            False if the port could not be bound or uvicorn failed to start.
        """
        if self._server is not None:
            return True

        try:
            sock = bind_tcp_socket(self.host, self.port)
        except OSError as e:
            logger.warning("Cast receiver HTTP server unavailable (port %d): %s", self.port, e)
            return False

        config = uvicorn.Config(
            self.app,
            log_level="warning",
            access_log=False,
            lifespan="off",
        )
        server = uvicorn.Server(config)
        task = asyncio.create_task(server.serve(sockets=[sock]))

        loop = asyncio.get_running_loop()
        deadline = loop.time() + STARTUP_TIMEOUT
        while not server.started and not task.done() and loop.time() < deadline:
            await asyncio.sleep(0.01)

        if not server.started:
            logger.warning("Cast receiver HTTP server failed to start on port %d", self.port)
            server.should_exit = True
            await asyncio.gather(task, return_exceptions=True)
            sock.close()
            return False

        self._server = server
        self._task = task
        self._socket = sock
        self.port = sock.getsockname()[1]
        logger.info("Cast receiver HTTP server started on http://%s:%d", self.host, self.port)
        return True

    async def stop(self) -> None:
        """Stop serving. Safe to call repeatedly."""
        server, task, sock = self._server, self._task, self._socket
        self._server = None
        self._task = None
        self._socket = None
        if server is None:
            return

        server.should_exit = True
        if task is not None:
            try:
                await asyncio.wait_for(task, timeout=SHUTDOWN_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning("Cast receiver HTTP server did not stop in time")
        if sock is not None:
            sock.close()

        logger.info("Cast receiver HTTP server stopped")

    @property
    def is_running(self) -> bool:
        return self._server is not None

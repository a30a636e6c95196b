"""
Crash Fallback Listener
=======================

When the gateway exits, the supervisor serves a plain-text crash report
on the gateway port instead, so the sandbox stays reachable for
post-mortem inspection rather than refusing connections.
"""

import asyncio
import logging
import socket
from collections import deque
from pathlib import Path

import uvicorn
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from ..config import GATEWAY_PORT

logger = logging.getLogger(__name__)

# Number of log lines included in the crash report
CRASH_LOG_TAIL_LINES = 50

ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

# Delay between attempts to bind a port that is still in use
BIND_RETRY_SECONDS = 2.0


def tail_file(path: Path, lines: int = CRASH_LOG_TAIL_LINES) -> str:
    """Return the last lines of a text file ("" if it can't be read)."""
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            return "".join(deque(f, maxlen=lines))
    except OSError:
        return ""


def build_crash_report(exit_code: int | None, log_file: Path, lines: int = CRASH_LOG_TAIL_LINES) -> str:
    """Build the diagnostic payload: exit code plus the log tail."""
    return (
        f"CRASH DETECTED (Exit code: {exit_code})\n\n"
        f"--- LAST {lines} LINES OF LOG ---\n"
        f"{tail_file(log_file, lines)}"
    )


def create_fallback_app(exit_code: int | None, log_file: Path, lines: int = CRASH_LOG_TAIL_LINES) -> FastAPI:
    """Create an app answering every request with the crash report."""
    app = FastAPI(title="Gateway crash report", docs_url=None, redoc_url=None, openapi_url=None)

    @app.api_route("/{path:path}", methods=ALL_METHODS, response_class=PlainTextResponse)
    async def crash_report(path: str) -> PlainTextResponse:
        # Re-read on each request so the tail includes late log lines
        return PlainTextResponse(build_crash_report(exit_code, log_file, lines))

    return app


class CrashFallbackListener:
    """
    Serves the crash report on the gateway port until stopped.

    serve() runs until stop() is called or the given stop event is set.
    The socket is bound here rather than by uvicorn, so a busy port is
    retried instead of ending the process.
    """

    def __init__(
        self,
        exit_code: int | None,
        log_file: Path,
        port: int = GATEWAY_PORT,
        host: str = "0.0.0.0",
        log: logging.Logger = logger,
    ):
        self.exit_code = exit_code
        self.log_file = log_file
        self.port = port
        self.host = host
        self.log = log
        self.app = create_fallback_app(exit_code, log_file)
        self._server: uvicorn.Server | None = None
        self._stop_event: asyncio.Event | None = None

    def stop(self) -> None:
        """Ask the listener to shut down."""
        if self._stop_event is not None:
            self._stop_event.set()
        if self._server is not None:
            self._server.should_exit = True

    def _bind(self) -> socket.socket:
        """Bind the listening socket (OSError if the port is taken)."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self.port))
        except OSError:
            sock.close()
            raise
        return sock

    async def serve(self, stop_event: asyncio.Event | None = None) -> None:
        """
        Run the listener until stopped.

        A port that is still held (e.g. by a gateway child that outlived
        its parent) is retried every BIND_RETRY_SECONDS until it frees up
        or the listener is stopped.
        """
        self._stop_event = stop_event or asyncio.Event()
        self.log.warning(f"Starting crash fallback listener on port {self.port} (exit code {self.exit_code})")

        while not self._stop_event.is_set():
            try:
                sock = self._bind()
            except OSError as e:
                self.log.warning(f"Port {self.port} unavailable ({e}), retrying in {BIND_RETRY_SECONDS}s")
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=BIND_RETRY_SECONDS)
                except asyncio.TimeoutError:
                    pass
                continue

            try:
                await self._serve_socket(sock)
            finally:
                sock.close()
            break

        self.log.info("Crash fallback listener stopped")

    async def _serve_socket(self, sock: socket.socket) -> None:
        config = uvicorn.Config(
            self.app,
            log_level="warning",
            access_log=False,
            lifespan="off",
        )
        self._server = uvicorn.Server(config)

        serve_task = asyncio.create_task(self._server.serve(sockets=[sock]))
        stop_task = asyncio.create_task(self._stop_event.wait())
        done, _ = await asyncio.wait({serve_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        if stop_task in done:
            self._server.should_exit = True
            await serve_task
        else:
            stop_task.cancel()
            serve_task.result()

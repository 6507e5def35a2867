"""Background serve threads and readiness probes for in-process components."""

from __future__ import annotations

import logging
import socket
import socketserver
import threading
import time
from typing import Callable

from .errors import ComponentStartError, ComponentStopError
from .wire import encode_frame, err, read_frame

logger = logging.getLogger(__name__)


def tcp_ready(host: str, port: int) -> bool:
    with socket.socket() as s:
        s.settimeout(1.0)
        try:
            return s.connect_ex((host, port)) == 0
        except OSError:
            return False


def wait_until(
    predicate: Callable[[], bool],
    component: str,
    timeout: float,
    interval: float = 0.05,
    msg: str = "did not become ready",
) -> None:
    """Poll ``predicate`` until it is truthy, else raise ComponentStartError."""
    deadline = time.monotonic() + timeout
    while True:
        try:
            if predicate():
                return
        except OSError:
            pass
        if time.monotonic() >= deadline:
            raise ComponentStartError(component, f"{msg} within {timeout}s")
        time.sleep(interval)


class CommandHandler(socketserver.StreamRequestHandler):
    """Answers exactly one framed command per connection."""

    # drop idle clients so server_close() can join handler threads
    timeout = 5.0

    def handle(self) -> None:
        try:
            request = read_frame(self.rfile)
        except socket.timeout:
            logger.debug("%s: client %s sent nothing within %ss", self.server.name, self.client_address, self.timeout)
            return
        if request is None:
            return
        try:
            reply = self.server.dispatch(request)
        except Exception as exc:
            logger.exception("%s failed on %r", self.server.name, request)
            reply = err(f"internal {exc}")
        self.wfile.write(encode_frame(reply))


class CommandServer(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    # server_close() joins in-flight handler threads
    daemon_threads = False

    def __init__(self, name: str, address: tuple[str, int], dispatch: Callable[[str], str]) -> None:
        self.name = name
        self.dispatch = dispatch
        super().__init__(address, CommandHandler)


class ServiceThread:
    """Runs a socketserver server's serve loop on a background thread."""

    def __init__(self, name: str, server: socketserver.BaseServer) -> None:
        self.name = name
        self.server = server
        self._thread = threading.Thread(target=server.serve_forever, name=name, daemon=True)

    @property
    def alive(self) -> bool:
        return self._thread.is_alive()

    def start(self) -> None:
        self._thread.start()

    def stop(self, timeout: float) -> None:
        """Stop serving, close the listener and join handler threads.

        Raises ComponentStopError when that takes longer than ``timeout``.
        """
        deadline = time.monotonic() + timeout
        # shutdown() waits for serve_forever to acknowledge, which never
        # happens once the loop is gone
        if self._thread.is_alive():
            self.server.shutdown()
        closer = threading.Thread(target=self.server.server_close, name=f"{self.name}-close", daemon=True)
        closer.start()
        closer.join(max(0.0, deadline - time.monotonic()))
        if self._thread.ident is not None:
            self._thread.join(max(0.0, deadline - time.monotonic()))
        if closer.is_alive() or self._thread.is_alive():
            raise ComponentStopError(
                [(self.name, TimeoutError(f"serve thread still running after {timeout}s"))]
            )

"""Reserve free TCP ports up front and hand them out in a fixed order."""

from __future__ import annotations

import logging
import socket
import threading
from collections import deque
from typing import Iterable

from .config import DEFAULT_HOST
from .errors import ConfigurationError, ResourceExhaustedError

logger = logging.getLogger(__name__)

# Ports issued in this process are never issued again, so a fresh harness
# cannot land on a port the previous one is still releasing.
_issued: set[int] = set()
_issued_order: deque[int] = deque()
_issued_lock = threading.Lock()
_MAX_TRACKED_PORTS = 4096
_EXTRA_ATTEMPTS = 64


class PortPool:
    """Ordered, single-consumption pool of reserved ports."""

    def __init__(self, ports: Iterable[int]) -> None:
        self._ports = deque(ports)
        self.reserved = tuple(self._ports)

    def take(self) -> int:
        try:
            return self._ports.popleft()
        except IndexError:
            raise ResourceExhaustedError(
                f"port pool exhausted after issuing {len(self.reserved)} port(s)"
            ) from None

    def take_many(self, count: int) -> list[int]:
        return [self.take() for _ in range(count)]

    @property
    def remaining(self) -> tuple[int, ...]:
        return tuple(self._ports)

    def __len__(self) -> int:
        return len(self._ports)

    def __repr__(self) -> str:
        return f"PortPool(reserved={list(self.reserved)}, remaining={len(self)})"


def _remember(port: int) -> bool:
    with _issued_lock:
        if port in _issued:
            return False
        _issued.add(port)
        _issued_order.append(port)
        while len(_issued_order) > _MAX_TRACKED_PORTS:
            _issued.discard(_issued_order.popleft())
        return True


def reserve(count: int, host: str = DEFAULT_HOST) -> PortPool:
    """Return a pool of ``count`` distinct ports that were free when probed.

    Every probe socket stays bound until the batch is complete so the OS
    cannot return the same port twice.
    """
    if not isinstance(count, int) or count < 1:
        raise ConfigurationError(f"port count must be a positive integer, got {count!r}")

    sockets: list[socket.socket] = []
    ports: list[int] = []
    try:
        attempts = 0
        while len(ports) < count:
            if attempts >= count + _EXTRA_ATTEMPTS:
                raise ResourceExhaustedError(
                    f"could only reserve {len(ports)} of {count} ports on {host}"
                )
            attempts += 1
            try:
                sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
                sockets.append(sock)
                sock.bind((host, 0))
            except OSError as exc:
                raise ResourceExhaustedError(
                    f"could not bind probe socket {len(ports) + 1} of {count} on {host}: {exc}"
                ) from exc
            port = sock.getsockname()[1]
            if _remember(port):
                ports.append(port)
    finally:
        for sock in sockets:
            sock.close()

    logger.debug("reserved ports %s", ports)
    return PortPool(ports)

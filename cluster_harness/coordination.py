"""Embedded coordination service, its client and its launcher.

The service keeps a znode tree in memory and speaks the framed text protocol
from :mod:`cluster_harness.wire`:

    RUOK                          -> OK imok
    SESSION                       -> OK <session id>
    CLOSE <sid>                   -> OK   (drops the session's ephemeral nodes)
    CREATE <path> <sid|-> <data>  -> OK | ERR NODEEXISTS
    GET <path>                    -> OK <data> | ERR NONODE
    EXISTS <path>                 -> OK true|false
    CHILDREN <path>               -> OK <json list> | ERR NONODE
    DELETE <path>                 -> OK | ERR NONODE
"""

from __future__ import annotations

import itertools
import json
import logging
import posixpath
import threading
from dataclasses import dataclass
from typing import Optional

from .config import HarnessSettings
from .errors import ComponentStartError
from .registry import ProcessRegistry
from .service import CommandServer, ServiceThread, wait_until
from .wire import err, ok, parse_reply, send_command, split_address

logger = logging.getLogger(__name__)

KIND = "coordination"


class CoordinationError(Exception):
    def __init__(self, command: str, reason: str) -> None:
        super().__init__(f"{command}: {reason}")
        self.reason = reason


class NoNodeError(CoordinationError):
    pass


class NodeExistsError(CoordinationError):
    pass


def _normalize(path: str) -> str:
    if not path.startswith("/"):
        raise ValueError(f"znode paths must be absolute, got {path!r}")
    norm = posixpath.normpath(path)
    return "/" if norm in ("/", "//") else norm


class CoordinationService:
    """In-memory znode tree served over TCP."""

    def __init__(self, host: str, port: int) -> None:
        self.host = host
        self.port = port
        self._lock = threading.Lock()
        self._nodes: dict[str, tuple[str, Optional[int]]] = {"/": ("", None)}
        self._sessions: set[int] = set()
        self._session_ids = itertools.count(1)
        server = CommandServer(f"coordination-{port}", (host, port), self.dispatch)
        self._service = ServiceThread(f"coordination-{port}", server)

    @property
    def alive(self) -> bool:
        return self._service.alive

    def start(self) -> None:
        self._service.start()

    def shutdown(self, timeout: float) -> None:
        self._service.stop(timeout)

    def dispatch(self, request: str) -> str:
        parts = request.split(" ", 3)
        command = parts[0].upper()
        logger.debug("coordination %d <- %s", self.port, request)
        with self._lock:
            if command == "RUOK":
                return ok("imok")
            if command == "SESSION":
                sid = next(self._session_ids)
                self._sessions.add(sid)
                return ok(str(sid))
            if command == "CLOSE" and len(parts) >= 2:
                self._close_session(int(parts[1]))
                return ok()
            if command == "CREATE" and len(parts) >= 3:
                owner = None if parts[2] == "-" else int(parts[2])
                data = parts[3] if len(parts) > 3 else ""
                return self._create(_normalize(parts[1]), data, owner)
            if command in {"GET", "EXISTS", "CHILDREN", "DELETE"} and len(parts) >= 2:
                path = _normalize(parts[1])
                if command == "EXISTS":
                    return ok("true" if path in self._nodes else "false")
                if path not in self._nodes:
                    return err("NONODE")
                if command == "GET":
                    return ok(self._nodes[path][0])
                if command == "CHILDREN":
                    return ok(json.dumps(self._children(path)))
                self._delete(path)
                return ok()
        return err(f"BADCOMMAND {command}")

    def _create(self, path: str, data: str, owner: Optional[int]) -> str:
        if path in self._nodes:
            return err("NODEEXISTS")
        if owner is not None and owner not in self._sessions:
            return err("SESSIONEXPIRED")
        parent = posixpath.dirname(path)
        missing = []
        while parent not in self._nodes:
            missing.append(parent)
            parent = posixpath.dirname(parent)
        for node in reversed(missing):
            self._nodes[node] = ("", None)
        self._nodes[path] = (data, owner)
        return ok()

    def _children(self, path: str) -> list[str]:
        prefix = path.rstrip("/") + "/"
        return sorted(
            p[len(prefix):]
            for p in self._nodes
            if p != path and p.startswith(prefix) and "/" not in p[len(prefix):]
        )

    def _delete(self, path: str) -> None:
        prefix = path.rstrip("/") + "/"
        for p in [p for p in self._nodes if p == path or p.startswith(prefix)]:
            if p != "/":
                del self._nodes[p]

    def _close_session(self, sid: int) -> None:
        self._sessions.discard(sid)
        for path in [p for p, (_, owner) in self._nodes.items() if owner == sid]:
            self._delete(path)


class CoordinationClient:
    """Session-holding client for the coordination service."""

    def __init__(self, connect: str, timeout: float = 6.0) -> None:
        self.connect = connect
        self.host, self.port = split_address(connect)
        self.timeout = timeout
        self.session_id: Optional[int] = None

    def _call(self, command: str) -> str:
        success, payload = parse_reply(send_command(self.host, self.port, command, self.timeout))
        if success:
            return payload
        if payload == "NONODE":
            raise NoNodeError(command, payload)
        if payload == "NODEEXISTS":
            raise NodeExistsError(command, payload)
        raise CoordinationError(command, payload)

    def ruok(self) -> bool:
        return self._call("RUOK") == "imok"

    def open(self) -> "CoordinationClient":
        if self.session_id is None:
            self.session_id = int(self._call("SESSION"))
        return self

    def close(self) -> None:
        if self.session_id is None:
            return
        sid, self.session_id = self.session_id, None
        self._call(f"CLOSE {sid}")

    def create(self, path: str, data: str = "", ephemeral: bool = False) -> None:
        owner = "-"
        if ephemeral:
            if self.session_id is None:
                raise CoordinationError("CREATE", "ephemeral nodes need an open session")
            owner = str(self.session_id)
        self._call(f"CREATE {path} {owner} {data}")

    def get(self, path: str) -> str:
        return self._call(f"GET {path}")

    def get_json(self, path: str):
        return json.loads(self.get(path))

    def exists(self, path: str) -> bool:
        return self._call(f"EXISTS {path}") == "true"

    def children(self, path: str) -> list[str]:
        return json.loads(self._call(f"CHILDREN {path}"))

    def delete(self, path: str) -> None:
        self._call(f"DELETE {path}")

    def __enter__(self) -> "CoordinationClient":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()


@dataclass(frozen=True)
class CoordinationHandle:
    handle_id: int
    port: int
    connect: str


class CoordinationLauncher:
    def __init__(self, registry: ProcessRegistry, settings: HarnessSettings) -> None:
        self.registry = registry
        self.settings = settings

    def start(self, port: int) -> CoordinationHandle:
        host = self.settings.host
        connect = f"{host}:{port}"
        try:
            service = CoordinationService(host, port)
        except OSError as exc:
            raise ComponentStartError(KIND, f"cannot bind {connect}: {exc}") from exc
        service.start()
        probe = CoordinationClient(connect, timeout=self.settings.session_timeout)
        try:
            wait_until(probe.ruok, KIND, self.settings.start_timeout, msg=f"{connect} did not answer ruok")
        except ComponentStartError:
            service.shutdown(self.settings.stop_timeout)
            raise
        handle = CoordinationHandle(self.registry.register(KIND, service), port, connect)
        logger.info("coordination service listening on %s", connect)
        return handle

    def stop(self, handle: CoordinationHandle) -> None:
        if not self.registry.contains(handle.handle_id):
            logger.debug("coordination handle %d already released", handle.handle_id)
            return
        service = self.registry.release(handle.handle_id)
        service.shutdown(self.settings.stop_timeout)
        logger.info("coordination service on %s stopped", handle.connect)

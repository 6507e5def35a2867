"""HTTP gateway in front of the brokers, and its launcher."""

from __future__ import annotations

import itertools
import json
import logging
import re
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Mapping
from urllib.parse import unquote, urlparse

from .broker import BROKER_IDS_PATH, TOPICS_PATH, UNKNOWN_TOPIC
from .config import DEFAULT_HOST, HarnessSettings
from .coordination import CoordinationClient, CoordinationError, NoNodeError
from .errors import ComponentStartError, ConfigurationError
from .registry import ProcessRegistry
from .service import ServiceThread, tcp_ready, wait_until
from .wire import parse_reply, send_command, split_address

logger = logging.getLogger(__name__)

KIND = "gateway"
REQUIRED_PROPERTIES = ("port", "coordination.connect", "bootstrap.servers")

TOPIC_NOT_FOUND = 40401
UNPROCESSABLE = 42201
BROKER_UNAVAILABLE = 50002

_TOPIC_ROUTE = re.compile(r"^/topics/(?P<name>[^/]+)$")


@dataclass(frozen=True)
class GatewayConfig:
    port: int
    coordination_connect: str
    bootstrap_servers: tuple[str, ...]
    host: str = DEFAULT_HOST

    @classmethod
    def from_properties(cls, properties: Mapping[str, str], host: str = DEFAULT_HOST) -> "GatewayConfig":
        missing = [key for key in REQUIRED_PROPERTIES if not properties.get(key)]
        if missing:
            raise ConfigurationError(f"gateway properties missing {', '.join(missing)}")
        try:
            port = int(properties["port"])
            servers = tuple(s.strip() for s in str(properties["bootstrap.servers"]).split(",") if s.strip())
            for server in servers:
                split_address(server)
            split_address(str(properties["coordination.connect"]))
        except ValueError as exc:
            raise ConfigurationError(f"invalid gateway properties: {exc}") from exc
        return cls(port, str(properties["coordination.connect"]), servers, host)


class _Server(ThreadingHTTPServer):
    # server_close() waits for request threads to finish
    daemon_threads = False


class GatewayServer:
    def __init__(self, config: GatewayConfig, session_timeout: float = 6.0) -> None:
        self.config = config
        self.coordination = CoordinationClient(config.coordination_connect, timeout=session_timeout)
        self._next_broker = itertools.cycle(config.bootstrap_servers)
        server = _Server((config.host, config.port), self._make_handler(self))
        self._service = ServiceThread(f"gateway-{config.port}", server)

    @property
    def alive(self) -> bool:
        return self._service.alive

    def start(self) -> None:
        self._service.start()

    def shutdown(self, timeout: float) -> None:
        self._service.stop(timeout)

    def brokers(self) -> list[int]:
        try:
            return sorted(int(i) for i in self.coordination.children(BROKER_IDS_PATH))
        except NoNodeError:
            return []

    def topics(self) -> list[str]:
        try:
            return self.coordination.children(TOPICS_PATH)
        except NoNodeError:
            return []

    def topic(self, name: str) -> dict | None:
        try:
            meta = self.coordination.get_json(f"{TOPICS_PATH}/{name}")
        except NoNodeError:
            return None
        return {"name": name, "partitions": meta.get("partitions", 1), "configs": meta.get("configs", {})}

    def produce(self, topic: str, value) -> tuple[bool, str]:
        """Send one record to the next broker that answers."""
        last_error = "no brokers configured"
        for _ in self.config.bootstrap_servers:
            host, port = split_address(next(self._next_broker))
            try:
                return parse_reply(send_command(host, port, f"PUT {topic} {json.dumps(value)}"))
            except OSError as exc:
                last_error = f"{host}:{port}: {exc}"
                logger.warning("gateway could not reach broker %s", last_error)
        raise ConnectionError(last_error)

    @staticmethod
    def _make_handler(gateway: "GatewayServer"):
        class Handler(BaseHTTPRequestHandler):
            timeout = 5.0

            def _send_json(self, status: int, payload) -> None:
                body = json.dumps(payload).encode("utf-8")
                self.send_response(status)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def _send_error(self, status: int, error_code: int, message: str) -> None:
                self._send_json(status, {"error_code": error_code, "message": message})

            def _not_found(self) -> None:
                self._send_error(404, 404, "HTTP 404 Not Found")

            def _read_json(self):
                length = int(self.headers.get("Content-Length", "0"))
                if length <= 0:
                    return None
                return json.loads(self.rfile.read(length).decode("utf-8"))

            def log_message(self, format: str, *args) -> None:
                logger.debug("gateway %d: " + format, gateway.config.port, *args)

            def do_GET(self) -> None:  # noqa: N802
                path = urlparse(self.path).path.rstrip("/") or "/"
                try:
                    if path == "/brokers":
                        self._send_json(200, {"brokers": gateway.brokers()})
                        return
                    if path == "/topics":
                        self._send_json(200, gateway.topics())
                        return
                    match = _TOPIC_ROUTE.match(path)
                    if match:
                        topic = gateway.topic(unquote(match.group("name")))
                        if topic is None:
                            self._send_error(404, TOPIC_NOT_FOUND, "Topic not found.")
                            return
                        self._send_json(200, topic)
                        return
                except (OSError, CoordinationError) as exc:
                    self._send_error(500, BROKER_UNAVAILABLE, f"coordination service error: {exc}")
                    return
                self._not_found()

            def do_POST(self) -> None:  # noqa: N802
                match = _TOPIC_ROUTE.match(urlparse(self.path).path)
                if not match:
                    self._not_found()
                    return
                topic = unquote(match.group("name"))
                try:
                    payload = self._read_json()
                except (ValueError, UnicodeDecodeError):
                    payload = None
                records = payload.get("records") if isinstance(payload, dict) else None
                if not isinstance(records, list) or not records:
                    self._send_error(422, UNPROCESSABLE, "Request body must contain a non-empty records list.")
                    return
                offsets = []
                for record in records:
                    value = record.get("value") if isinstance(record, dict) else record
                    try:
                        success, reply = gateway.produce(topic, value)
                    except ConnectionError as exc:
                        self._send_error(500, BROKER_UNAVAILABLE, str(exc))
                        return
                    if not success:
                        if reply == UNKNOWN_TOPIC:
                            self._send_error(404, TOPIC_NOT_FOUND, "Topic not found.")
                        else:
                            self._send_error(500, BROKER_UNAVAILABLE, reply)
                        return
                    offsets.append({"partition": 0, "offset": int(reply)})
                self._send_json(200, {"offsets": offsets})

        return Handler


@dataclass(frozen=True)
class GatewayHandle:
    handle_id: int
    port: int
    properties: Mapping[str, str]
    url: str


class GatewayLauncher:
    def __init__(self, registry: ProcessRegistry, settings: HarnessSettings) -> None:
        self.registry = registry
        self.settings = settings

    def start(self, properties: Mapping[str, str]) -> GatewayHandle:
        config = GatewayConfig.from_properties(properties, host=self.settings.host)
        try:
            gateway = GatewayServer(config, session_timeout=self.settings.session_timeout)
        except OSError as exc:
            raise ComponentStartError(KIND, f"cannot bind port {config.port}: {exc}") from exc
        gateway.start()
        try:
            wait_until(
                lambda: tcp_ready(config.host, config.port),
                KIND,
                self.settings.start_timeout,
                msg=f"listener on port {config.port} not accepting connections",
            )
        except ComponentStartError:
            gateway.shutdown(self.settings.stop_timeout)
            raise
        url = f"http://{config.host}:{config.port}"
        handle = GatewayHandle(
            self.registry.register(KIND, gateway), config.port, dict(properties), url
        )
        logger.info("gateway listening on %s", url)
        return handle

    def stop(self, handle: GatewayHandle) -> None:
        if not self.registry.contains(handle.handle_id):
            return
        gateway = self.registry.release(handle.handle_id)
        gateway.shutdown(self.settings.stop_timeout)
        logger.info("gateway on %s stopped", handle.url)

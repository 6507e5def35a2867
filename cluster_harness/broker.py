"""Broker nodes and the launcher that brings a set of them up and down."""

from __future__ import annotations

import json
import logging
import shutil
import tempfile
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Mapping, Optional, Sequence, Union

from .config import DEFAULT_HOST, HarnessSettings
from .coordination import CoordinationClient, CoordinationError, NodeExistsError
from .errors import ComponentStartError, ComponentStopError, ConfigurationError
from .ports import PortPool
from .registry import ProcessRegistry
from .service import CommandServer, ServiceThread, wait_until
from .wire import err, ok, parse_reply, send_command

logger = logging.getLogger(__name__)

KIND = "broker"
BROKER_IDS_PATH = "/brokers/ids"
TOPICS_PATH = "/brokers/topics"
UNKNOWN_TOPIC = "UNKNOWN_TOPIC_OR_PARTITION"
SEGMENT_NAME = "00000000000000000000.log"


@dataclass(frozen=True)
class BrokerNodeConfig:
    broker_id: int
    port: int
    coordination_connect: str
    log_dirs: tuple[str, ...]
    host: str = DEFAULT_HOST
    # Off unlike a stock broker, so missing-topic errors can be exercised.
    auto_create_topics_enable: bool = False
    overrides: Mapping[str, str] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return f"broker-{self.broker_id}"

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def auto_create_topics(self) -> bool:
        return self.to_properties()["auto.create.topics.enable"] == "true"

    def to_properties(self) -> dict[str, str]:
        props = {
            "broker.id": str(self.broker_id),
            "host.name": self.host,
            "port": str(self.port),
            "coordination.connect": self.coordination_connect,
            "log.dirs": ",".join(self.log_dirs),
            "auto.create.topics.enable": "true" if self.auto_create_topics_enable else "false",
        }
        props.update({k: str(v) for k, v in self.overrides.items()})
        return props


def build_configs(
    n: int,
    ports: Union[PortPool, Sequence[int]],
    coordination_connect: str,
    state_root: Optional[Union[str, Path]] = None,
    host: str = DEFAULT_HOST,
    overrides: Optional[Mapping[str, str]] = None,
) -> list[BrokerNodeConfig]:
    """Build one config per broker, ids ``0..n-1``, ports consumed in order.

    Nothing is created on disk; each broker's log dir lives under
    ``state_root`` and is made when that broker starts.
    """
    if n < 0:
        raise ConfigurationError(f"broker count must not be negative, got {n}")
    if isinstance(ports, PortPool):
        broker_ports = ports.take_many(n)
    else:
        broker_ports = list(ports)[:n]
        if len(broker_ports) < n:
            raise ConfigurationError(f"{n} brokers need {n} ports, got {len(broker_ports)}")
    if state_root is None:
        state_root = Path(tempfile.gettempdir()) / f"cluster-harness-{uuid.uuid4().hex[:8]}"
    return [
        BrokerNodeConfig(
            broker_id=i,
            port=port,
            coordination_connect=coordination_connect,
            log_dirs=(str(Path(state_root) / f"broker-{i}"),),
            host=host,
            overrides=dict(overrides or {}),
        )
        for i, port in enumerate(broker_ports)
    ]


def broker_list(configs: Iterable[BrokerNodeConfig]) -> str:
    """Comma-joined ``host:port`` list in broker id order."""
    return ",".join(c.address for c in sorted(configs, key=lambda c: c.broker_id))


class BrokerNode:
    """A single broker: framed TCP listener plus one log file per topic."""

    def __init__(self, config: BrokerNodeConfig, session_timeout: float = 6.0) -> None:
        self.config = config
        self._lock = threading.Lock()
        self._logs: dict[str, list[str]] = {}
        self._session = CoordinationClient(config.coordination_connect, timeout=session_timeout)
        server = CommandServer(config.name, (config.host, config.port), self.dispatch)
        self._service = ServiceThread(config.name, server)

    @property
    def alive(self) -> bool:
        return self._service.alive

    def start(self) -> None:
        for log_dir in self.config.log_dirs:
            Path(log_dir).mkdir(parents=True, exist_ok=True)
        self._service.start()
        self._session.open()
        registration = {"host": self.config.host, "port": self.config.port}
        self._session.create(
            f"{BROKER_IDS_PATH}/{self.config.broker_id}", json.dumps(registration), ephemeral=True
        )

    def shutdown(self, timeout: float) -> None:
        try:
            self._service.stop(timeout)
        finally:
            self._session.close()

    def dispatch(self, request: str) -> str:
        command, _, rest = request.partition(" ")
        command = command.upper()
        if command == "RUOK":
            return ok("imok")
        if command == "METRICS":
            with self._lock:
                topics = {name: len(entries) for name, entries in self._logs.items()}
            return ok(json.dumps({
                "broker_id": self.config.broker_id,
                "port": self.config.port,
                "log_dirs": list(self.config.log_dirs),
                "topics": topics,
            }))
        if command == "PUT":
            topic, _, message = rest.partition(" ")
            return self._append(topic, message)
        if command == "GET":
            topic, _, offset = rest.partition(" ")
            return self._read(topic, int(offset or 0))
        return err(f"BADCOMMAND {command}")

    def _topic_known(self, topic: str) -> bool:
        if topic in self._logs:
            return True
        if self._session.exists(f"{TOPICS_PATH}/{topic}"):
            return True
        if not self.config.auto_create_topics:
            return False
        try:
            self._session.create(f"{TOPICS_PATH}/{topic}", json.dumps({"partitions": 1, "configs": {}}))
        except NodeExistsError:
            pass
        return True

    def _segment(self, topic: str) -> Path:
        return Path(self.config.log_dirs[0]) / f"{topic}-0" / SEGMENT_NAME

    def _append(self, topic: str, message: str) -> str:
        if not topic:
            return err("INVALID_TOPIC")
        with self._lock:
            if not self._topic_known(topic):
                return err(UNKNOWN_TOPIC)
            entries = self._logs.setdefault(topic, [])
            segment = self._segment(topic)
            segment.parent.mkdir(parents=True, exist_ok=True)
            with segment.open("a", encoding="utf-8") as f:
                f.write(json.dumps(message) + "\n")
            entries.append(message)
            return ok(str(len(entries) - 1))

    def _read(self, topic: str, offset: int) -> str:
        with self._lock:
            if topic not in self._logs:
                return err(UNKNOWN_TOPIC)
            entries = self._logs[topic]
            if not 0 <= offset < len(entries):
                return err("OFFSET_OUT_OF_RANGE")
            return ok(entries[offset])


@dataclass(frozen=True)
class BrokerHandle:
    handle_id: int
    broker_id: int
    port: int
    log_dirs: tuple[str, ...]

    @property
    def name(self) -> str:
        return f"broker-{self.broker_id}"


class BrokerClusterLauncher:
    build_configs = staticmethod(build_configs)

    def __init__(self, registry: ProcessRegistry, settings: HarnessSettings) -> None:
        self.registry = registry
        self.settings = settings

    def start(self, config: BrokerNodeConfig) -> BrokerHandle:
        try:
            node = BrokerNode(config, session_timeout=self.settings.session_timeout)
        except OSError as exc:
            raise ComponentStartError(config.name, f"cannot bind {config.address}: {exc}") from exc
        try:
            node.start()
            wait_until(
                lambda: parse_reply(send_command(config.host, config.port, "RUOK")) == (True, "imok"),
                config.name,
                self.settings.start_timeout,
            )
        except (OSError, CoordinationError, ComponentStartError) as exc:
            self._discard(node)
            if isinstance(exc, ComponentStartError):
                raise
            raise ComponentStartError(config.name, str(exc)) from exc
        handle = BrokerHandle(
            self.registry.register(KIND, node), config.broker_id, config.port, config.log_dirs
        )
        logger.info("%s listening on %s, logs in %s", config.name, config.address, ",".join(config.log_dirs))
        return handle

    def start_all(self, configs: Sequence[BrokerNodeConfig]) -> list[BrokerHandle]:
        configs = list(configs or [])
        if not configs:
            raise ConfigurationError("must supply at least one broker config")
        handles: list[BrokerHandle] = []
        try:
            for config in configs:
                handles.append(self.start(config))
        except BaseException:
            if handles:
                try:
                    self.stop_all(handles)
                except ComponentStopError as stop_exc:
                    logger.warning("cleanup after failed broker start: %s", stop_exc)
            raise
        return handles

    def stop(self, handle: BrokerHandle) -> None:
        if not self.registry.contains(handle.handle_id):
            return
        node = self.registry.release(handle.handle_id)
        node.shutdown(self.settings.stop_timeout)
        logger.info("%s stopped", handle.name)

    def remove_state(self, handle: BrokerHandle) -> None:
        for log_dir in handle.log_dirs:
            if Path(log_dir).exists():
                shutil.rmtree(log_dir)
                logger.debug("removed %s", log_dir)

    def stop_all(self, handles: Sequence[BrokerHandle]) -> None:
        """Stop every broker, then remove every broker's log dirs.

        A failure on one broker never skips the others; all failures are
        raised together once both passes are done.
        """
        failures: list[tuple[str, BaseException]] = []
        for handle in handles:
            try:
                self.stop(handle)
            except Exception as exc:
                logger.warning("failed to stop %s: %r", handle.name, exc)
                failures.append((handle.name, exc))
        for handle in handles:
            try:
                self.remove_state(handle)
            except OSError as exc:
                logger.warning("failed to remove state of %s: %r", handle.name, exc)
                failures.append((f"{handle.name} state", exc))
        if failures:
            raise ComponentStopError(failures)

    def _discard(self, node: BrokerNode) -> None:
        try:
            node.shutdown(self.settings.stop_timeout)
        except Exception as exc:
            logger.warning("failed to stop half-started %s: %r", node.config.name, exc)
        for log_dir in node.config.log_dirs:
            shutil.rmtree(log_dir, ignore_errors=True)

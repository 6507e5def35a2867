"""Lifecycle controller for a local coordination service, brokers and gateway.

Defaults to one coordination service, three brokers and one gateway. Ports
are consumed in a fixed order: coordination service first, then one per broker
in ascending id, then the gateway.
"""

from __future__ import annotations

import enum
import json
import logging
import shutil
import uuid
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from .broker import TOPICS_PATH, BrokerClusterLauncher, BrokerHandle, BrokerNodeConfig, broker_list, build_configs
from .config import DEFAULT_NUM_BROKERS, HarnessSettings
from .coordination import CoordinationClient, CoordinationError, CoordinationHandle, CoordinationLauncher
from .errors import ComponentStartError, ComponentStopError, ConfigurationError, IllegalStateError
from .gateway import GatewayHandle, GatewayLauncher
from .ports import PortPool, reserve
from .registry import ProcessRegistry
from .requests_builder import GatewayRequest, RequestBuilder

logger = logging.getLogger(__name__)


class HarnessState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    RUNNING = "running"
    TORN_DOWN = "torn_down"


class ClusterHarness:
    """One ephemeral cluster for the duration of one test.

    The constructor only records configuration. :meth:`set_up` reserves
    ports and starts everything; :meth:`tear_down` releases it all in reverse
    order. Each started component pushes its release onto a cleanup stack, so
    a failure half way through :meth:`set_up` releases exactly what was
    started before the error propagates.
    """

    DEFAULT_NUM_BROKERS = DEFAULT_NUM_BROKERS

    def __init__(
        self,
        num_brokers: int = DEFAULT_NUM_BROKERS,
        num_ports: Optional[int] = None,
        settings: Optional[HarnessSettings] = None,
        broker_overrides: Optional[Mapping[str, str]] = None,
        gateway_overrides: Optional[Mapping[str, str]] = None,
    ) -> None:
        # 1 port per broker + coordination service + gateway
        self.num_brokers = num_brokers
        self.num_ports = num_brokers + 2 if num_ports is None else num_ports
        self.settings = settings or HarnessSettings()
        self.broker_overrides = dict(broker_overrides or {})
        self.gateway_overrides = dict(gateway_overrides or {})

        self.registry = ProcessRegistry()
        self.coordination_launcher = CoordinationLauncher(self.registry, self.settings)
        self.broker_launcher = BrokerClusterLauncher(self.registry, self.settings)
        self.gateway_launcher = GatewayLauncher(self.registry, self.settings)
        self.state = HarnessState.UNINITIALIZED

        self.ports: Optional[PortPool] = None
        self.state_root: Optional[Path] = None

        self.zk_port: Optional[int] = None
        self.zk_connect: Optional[str] = None
        self.coordination: Optional[CoordinationHandle] = None
        self.coordination_client: Optional[CoordinationClient] = None

        self.broker_configs: list[BrokerNodeConfig] = []
        self.brokers: list[BrokerHandle] = []
        self.broker_list: Optional[str] = None

        self.gateway_properties: Optional[dict[str, str]] = None
        self.gateway: Optional[GatewayHandle] = None

        self._cleanup: list[tuple[str, Callable[[], Any]]] = []
        self._requests = RequestBuilder(lambda: self.gateway_url)

    @property
    def gateway_url(self) -> str:
        self._require_running("gateway_url")
        return self.gateway.url

    @property
    def running(self) -> bool:
        return self.state is HarnessState.RUNNING

    def set_up(self) -> "ClusterHarness":
        if self.state is not HarnessState.UNINITIALIZED:
            raise IllegalStateError(f"set_up called in state {self.state.value}; harnesses run once")
        try:
            self._validate()
            self._configure()
            self._start()
        except BaseException:
            for name, exc in self._unwind():
                logger.warning("cleanup of %s after failed setup: %r", name, exc)
            self.state = HarnessState.TORN_DOWN
            raise
        self.state = HarnessState.RUNNING
        logger.info(
            "cluster up: coordination=%s brokers=%s gateway=%s",
            self.zk_connect, self.broker_list, self.gateway.url,
        )
        return self

    def tear_down(self) -> None:
        """Stop gateway, brokers and coordination service, then raise any failures.

        Every step runs even when an earlier one fails.
        """
        if self.state is HarnessState.TORN_DOWN:
            return
        was_running = self.running
        failures = self._unwind()
        self.state = HarnessState.TORN_DOWN
        if was_running:
            logger.info("cluster torn down with %d failure(s)", len(failures))
        if failures:
            raise ComponentStopError(failures)

    def request(
        self,
        path: str,
        template_name: Optional[str] = None,
        template_value: Any = None,
        headers: Optional[dict] = None,
    ) -> GatewayRequest:
        return self._requests.request(path, template_name, template_value, headers=headers)

    def create_topic(self, name: str, partitions: int = 1, configs: Optional[Mapping[str, str]] = None) -> None:
        """Register a topic in the coordination service.

        Brokers run with auto creation off, so tests that produce must create
        their topics first.
        """
        self._require_running("create_topic")
        meta = {"partitions": partitions, "configs": dict(configs or {})}
        self.coordination_client.create(f"{TOPICS_PATH}/{name}", json.dumps(meta))

    def summary(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "ports": list(self.ports.reserved) if self.ports else [],
            "coordination.connect": self.zk_connect,
            "bootstrap.servers": self.broker_list,
            "gateway": self.gateway.url if self.gateway else None,
            "state_root": str(self.state_root) if self.state_root else None,
            "started": self.registry.order("start"),
            "stopped": self.registry.order("stop"),
        }

    def __enter__(self) -> "ClusterHarness":
        return self.set_up()

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.tear_down()
            return
        try:
            self.tear_down()
        except ComponentStopError as stop_exc:
            logger.warning("teardown after test failure also failed: %s", stop_exc)

    def _require_running(self, operation: str) -> None:
        if self.state is not HarnessState.RUNNING:
            raise IllegalStateError(f"{operation} requires a running harness, state is {self.state.value}")

    def _validate(self) -> None:
        if not isinstance(self.num_brokers, int) or self.num_brokers < 1:
            raise ConfigurationError("must supply at least one broker config")
        needed = self.num_brokers + 2
        if self.num_ports < needed:
            raise ConfigurationError(
                f"{self.num_brokers} broker(s) need at least {needed} ports, got {self.num_ports}"
            )

    def _configure(self) -> None:
        host = self.settings.host
        self.ports = reserve(self.num_ports, host=host)
        self.zk_port = self.ports.take()
        self.zk_connect = f"{host}:{self.zk_port}"

        self.state_root = Path(self.settings.state_dir) / f"cluster-harness-{uuid.uuid4().hex[:8]}"
        self.broker_configs = build_configs(
            self.num_brokers,
            self.ports,
            self.zk_connect,
            state_root=self.state_root,
            host=host,
            overrides=self.broker_overrides,
        )
        self.broker_list = broker_list(self.broker_configs)

        self.gateway_properties = {
            "port": str(self.ports.take()),
            "coordination.connect": self.zk_connect,
            "bootstrap.servers": self.broker_list,
        }
        self.gateway_properties.update(self.gateway_overrides)

    def _start(self) -> None:
        self.coordination = self.coordination_launcher.start(self.zk_port)
        self._defer("coordination service", lambda: self.coordination_launcher.stop(self.coordination))

        client = CoordinationClient(self.zk_connect, timeout=self.settings.session_timeout)
        try:
            self.coordination_client = client.open()
        except (OSError, CoordinationError) as exc:
            raise ComponentStartError("coordination client", str(exc)) from exc
        self._defer("coordination client", self.coordination_client.close)
        self._defer("state root", self._remove_state_root)

        self.brokers = self.broker_launcher.start_all(self.broker_configs)
        self._defer("brokers", lambda: self.broker_launcher.stop_all(self.brokers))

        self.gateway = self.gateway_launcher.start(self.gateway_properties)
        self._defer("gateway", lambda: self.gateway_launcher.stop(self.gateway))

    def _defer(self, name: str, release: Callable[[], Any]) -> None:
        self._cleanup.append((name, release))

    def _unwind(self) -> list[tuple[str, BaseException]]:
        failures: list[tuple[str, BaseException]] = []
        while self._cleanup:
            name, release = self._cleanup.pop()
            try:
                release()
            except ComponentStopError as exc:
                failures.extend(exc.failures)
            except Exception as exc:
                failures.append((name, exc))
        return failures

    def _remove_state_root(self) -> None:
        if self.state_root is not None and self.state_root.exists():
            shutil.rmtree(self.state_root)

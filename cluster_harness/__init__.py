"""Ephemeral coordination service + broker + gateway clusters for integration tests."""

from .broker import BrokerClusterLauncher, BrokerHandle, BrokerNodeConfig, build_configs
from .config import DEFAULT_NUM_BROKERS, HarnessSettings
from .coordination import CoordinationClient, CoordinationHandle, CoordinationLauncher
from .errors import (
    ComponentStartError,
    ComponentStopError,
    ConfigurationError,
    HarnessError,
    IllegalStateError,
    ResourceExhaustedError,
)
from .gateway import GatewayHandle, GatewayLauncher
from .harness import ClusterHarness, HarnessState
from .ports import PortPool, reserve
from .registry import ProcessRegistry
from .requests_builder import GatewayRequest, RequestBuilder

__all__ = [
    "BrokerClusterLauncher",
    "BrokerHandle",
    "BrokerNodeConfig",
    "build_configs",
    "DEFAULT_NUM_BROKERS",
    "HarnessSettings",
    "CoordinationClient",
    "CoordinationHandle",
    "CoordinationLauncher",
    "ComponentStartError",
    "ComponentStopError",
    "ConfigurationError",
    "HarnessError",
    "IllegalStateError",
    "ResourceExhaustedError",
    "GatewayHandle",
    "GatewayLauncher",
    "ClusterHarness",
    "HarnessState",
    "PortPool",
    "reserve",
    "ProcessRegistry",
    "GatewayRequest",
    "RequestBuilder",
]

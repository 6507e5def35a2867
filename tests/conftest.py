import pytest

from cluster_harness.broker import BrokerClusterLauncher, build_configs
from cluster_harness.config import HarnessSettings
from cluster_harness.coordination import CoordinationClient, CoordinationLauncher
from cluster_harness.ports import reserve
from cluster_harness.registry import ProcessRegistry


@pytest.fixture
def settings(tmp_path):
    return HarnessSettings(host="localhost", start_timeout=10.0, stop_timeout=10.0, state_dir=str(tmp_path))


@pytest.fixture
def registry():
    return ProcessRegistry()


@pytest.fixture
def coordination_launcher(registry, settings):
    return CoordinationLauncher(registry, settings)


@pytest.fixture
def coordination(coordination_launcher):
    """A running coordination service, stopped after the test."""
    handle = coordination_launcher.start(reserve(1).take())
    yield handle
    coordination_launcher.stop(handle)


@pytest.fixture
def zk_client(coordination):
    with CoordinationClient(coordination.connect) as client:
        yield client


@pytest.fixture
def broker_launcher(registry, settings):
    return BrokerClusterLauncher(registry, settings)


@pytest.fixture
def started_brokers(broker_launcher, coordination, tmp_path):
    """Three running brokers; whatever the test left running is stopped afterwards."""
    configs = build_configs(3, reserve(3), coordination.connect, state_root=tmp_path / "state")
    handles = broker_launcher.start_all(configs)
    yield handles
    broker_launcher.stop_all(handles)

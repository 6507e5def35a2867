import json
import os
from pathlib import Path
from types import SimpleNamespace

import pytest

from cluster_harness import broker as broker_module
from cluster_harness.broker import BrokerNodeConfig, broker_list, build_configs
from cluster_harness.errors import ComponentStartError, ComponentStopError, ConfigurationError
from cluster_harness.ports import reserve
from cluster_harness.service import tcp_ready
from cluster_harness.wire import parse_reply, send_command


def test_build_configs_is_pure_and_ordered(tmp_path):
    root = tmp_path / "state"
    configs = build_configs(3, [9101, 9102, 9103, 9104], "localhost:2181", state_root=root)

    assert [c.broker_id for c in configs] == [0, 1, 2]
    assert [c.port for c in configs] == [9101, 9102, 9103]
    assert not root.exists(), "building configs must not touch the disk"
    props = configs[1].to_properties()
    assert props["broker.id"] == "1"
    assert props["port"] == "9102"
    assert props["coordination.connect"] == "localhost:2181"
    assert props["auto.create.topics.enable"] == "false"
    assert props["log.dirs"] == str(root / "broker-1")


def test_build_configs_consumes_pool_in_order():
    pool = reserve(4)
    configs = build_configs(3, pool, "localhost:2181")
    assert [c.port for c in configs] == list(pool.reserved[:3])
    assert pool.remaining == pool.reserved[3:]


def test_build_configs_needs_enough_ports():
    with pytest.raises(ConfigurationError):
        build_configs(3, [9101], "localhost:2181")


def test_overrides_reach_properties():
    config = build_configs(1, [9101], "localhost:2181", overrides={"auto.create.topics.enable": "true"})[0]
    assert config.auto_create_topics
    assert config.to_properties()["auto.create.topics.enable"] == "true"


def test_broker_list_is_in_broker_id_order():
    configs = [
        BrokerNodeConfig(broker_id=2, port=9003, coordination_connect="zk:1", log_dirs=("c",)),
        BrokerNodeConfig(broker_id=0, port=9001, coordination_connect="zk:1", log_dirs=("a",)),
        BrokerNodeConfig(broker_id=1, port=9002, coordination_connect="zk:1", log_dirs=("b",)),
    ]
    assert broker_list(configs) == "localhost:9001,localhost:9002,localhost:9003"


def test_start_all_without_configs_starts_nothing(broker_launcher, registry):
    with pytest.raises(ConfigurationError, match="at least one broker"):
        broker_launcher.start_all([])
    assert registry.events == []


def test_brokers_register_and_create_log_dirs(started_brokers, zk_client):
    assert zk_client.children("/brokers/ids") == ["0", "1", "2"]
    for handle in started_brokers:
        assert all(os.path.isdir(d) for d in handle.log_dirs)
        registration = zk_client.get_json(f"/brokers/ids/{handle.broker_id}")
        assert registration["port"] == handle.port


def test_produce_to_unknown_topic_is_rejected(started_brokers, zk_client):
    port = started_brokers[0].port
    reply = send_command("localhost", port, "PUT missing hello")
    assert parse_reply(reply) == (False, "UNKNOWN_TOPIC_OR_PARTITION")

    zk_client.create("/brokers/topics/present", json.dumps({"partitions": 1}))
    assert parse_reply(send_command("localhost", port, "PUT present hello")) == (True, "0")
    assert parse_reply(send_command("localhost", port, "PUT present world")) == (True, "1")
    assert parse_reply(send_command("localhost", port, "GET present 1")) == (True, "world")

    segment = Path(started_brokers[0].log_dirs[0]) / "present-0" / broker_module.SEGMENT_NAME
    assert segment.read_text().splitlines() == ['"hello"', '"world"']


def test_auto_create_topics_when_enabled(broker_launcher, coordination, zk_client, tmp_path):
    configs = build_configs(
        1, reserve(1), coordination.connect, state_root=tmp_path,
        overrides={"auto.create.topics.enable": "true"},
    )
    handles = broker_launcher.start_all(configs)
    try:
        reply = send_command("localhost", handles[0].port, "PUT fresh hi")
        assert parse_reply(reply) == (True, "0")
        assert zk_client.exists("/brokers/topics/fresh")
    finally:
        broker_launcher.stop_all(handles)


def test_stop_all_removes_registrations_and_state(broker_launcher, started_brokers, zk_client, registry):
    broker_launcher.stop_all(started_brokers)
    assert zk_client.children("/brokers/ids") == []
    assert registry.live("broker") == []
    for handle in started_brokers:
        assert not any(os.path.exists(d) for d in handle.log_dirs)


def test_stop_all_keeps_going_when_one_broker_fails(broker_launcher, started_brokers, registry, monkeypatch):
    nodes = [registry.get(h.handle_id) for h in started_brokers]
    original = nodes[1].shutdown

    def shutdown_then_fail(timeout):
        original(timeout)
        raise RuntimeError("broker-1 refused to stop cleanly")

    monkeypatch.setattr(nodes[1], "shutdown", shutdown_then_fail)

    with pytest.raises(ComponentStopError) as excinfo:
        broker_launcher.stop_all(started_brokers)

    assert excinfo.value.components == ["broker-1"]
    assert not any(node.alive for node in nodes)
    for handle in started_brokers:
        assert not any(os.path.exists(d) for d in handle.log_dirs), f"{handle.name} state left behind"


def test_stop_all_keeps_removing_when_one_removal_fails(broker_launcher, started_brokers, monkeypatch):
    real_rmtree = broker_module.shutil.rmtree
    blocked = started_brokers[1].log_dirs[0]

    def flaky_rmtree(path, *args, **kwargs):
        if str(path) == blocked:
            raise PermissionError(13, "denied", path)
        real_rmtree(path, *args, **kwargs)

    monkeypatch.setattr(broker_module, "shutil", SimpleNamespace(rmtree=flaky_rmtree))

    with pytest.raises(ComponentStopError) as excinfo:
        broker_launcher.stop_all(started_brokers)

    assert excinfo.value.components == ["broker-1 state"]
    assert not os.path.exists(started_brokers[0].log_dirs[0])
    assert not os.path.exists(started_brokers[2].log_dirs[0])
    assert os.path.exists(blocked)


def test_failed_start_stops_brokers_already_started(broker_launcher, coordination, registry, tmp_path, monkeypatch):
    configs = build_configs(3, reserve(3), coordination.connect, state_root=tmp_path)
    real_start = broker_launcher.start

    def start_two_then_fail(config):
        if config.broker_id == 2:
            raise ComponentStartError(config.name, "simulated")
        return real_start(config)

    monkeypatch.setattr(broker_launcher, "start", start_two_then_fail)

    with pytest.raises(ComponentStartError):
        broker_launcher.start_all(configs)
    assert registry.live() == [coordination.handle_id]
    assert registry.order("stop") == ["broker", "broker"]
    assert not any(os.path.exists(c.log_dirs[0]) for c in configs)


def test_unexpected_start_error_still_stops_started_brokers(broker_launcher, coordination, registry, tmp_path, monkeypatch):
    configs = build_configs(3, reserve(3), coordination.connect, state_root=tmp_path)
    real_start = broker_launcher.start

    def crash_on_second(config):
        if config.broker_id == 1:
            raise RuntimeError("unexpected failure starting broker-1")
        return real_start(config)

    monkeypatch.setattr(broker_launcher, "start", crash_on_second)

    with pytest.raises(RuntimeError, match="broker-1"):
        broker_launcher.start_all(configs)
    assert registry.live() == [coordination.handle_id], "broker-0 must not outlive the failed start"
    assert registry.order("stop") == ["broker"]
    assert not tcp_ready("localhost", configs[0].port)
    assert not os.path.exists(configs[0].log_dirs[0])

"""Full cluster through the harness and the ``cluster`` fixture."""

import json

import pytest

from cluster_harness.harness import ClusterHarness
from cluster_harness.wire import parse_reply, send_command


def test_three_brokers_on_five_ports(settings):
    h = ClusterHarness(num_brokers=3, num_ports=5, settings=settings)
    h.set_up()
    try:
        assert len(h.broker_list.split(",")) == 3
        assert h.coordination.connect == f"localhost:{h.zk_port}"
        assert h.ports.remaining == ()

        resp = h.request("/brokers").get()
        assert resp.status_code == 200, resp.text
        assert resp.json() == {"brokers": [0, 1, 2]}
    finally:
        h.tear_down()


@pytest.mark.num_brokers(1)
def test_cluster_fixture_honours_broker_marker(cluster):
    assert len(cluster.brokers) == 1
    assert cluster.request("/brokers").get().json()["brokers"] == [0]


@pytest.mark.num_brokers(2)
def test_produce_lands_in_broker_logs(cluster):
    cluster.create_topic("orders")
    resp = cluster.request("/topics/{name}", "name", "orders").post(
        json={"records": [{"value": "a"}, {"value": "b"}, {"value": "c"}, {"value": "d"}]}
    )
    assert resp.status_code == 200, resp.text
    assert len(resp.json()["offsets"]) == 4

    total = 0
    for config in cluster.broker_configs:
        success, payload = parse_reply(send_command(config.host, config.port, "METRICS"))
        assert success, payload
        total += json.loads(payload)["topics"].get("orders", 0)
    assert total == 4, "every record should be stored exactly once"


@pytest.mark.num_brokers(1)
def test_producing_to_missing_topic_is_rejected(cluster):
    resp = cluster.request("/topics/{name}", "name", "nope").post(json={"records": [{"value": 1}]})
    assert resp.status_code == 404
    assert resp.json()["error_code"] == 40401
    assert cluster.request("/topics").get().json() == []


def test_auto_create_override_reaches_brokers(cluster_settings):
    overrides = {"auto.create.topics.enable": "true"}
    with ClusterHarness(num_brokers=1, settings=cluster_settings, broker_overrides=overrides) as h:
        resp = h.request("/topics/{name}", "name", "fresh").post(json={"records": [{"value": "x"}]})
        assert resp.status_code == 200, resp.text
        assert h.request("/topics").get().json() == ["fresh"]

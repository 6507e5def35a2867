"""pytest fixtures that run one cluster per test.

Enable with ``pytest_plugins = ["cluster_harness.pytest_plugin"]`` in a root
conftest. Pick the broker count with ``@pytest.mark.num_brokers(n)``.
"""

import pytest

from .config import DEFAULT_NUM_BROKERS, HarnessSettings
from .harness import ClusterHarness


def pytest_configure(config):
    config.addinivalue_line("markers", "num_brokers(n): brokers started by the cluster fixture")


@pytest.hookimpl(hookwrapper=True, tryfirst=True)
def pytest_runtest_makereport(item, call):
    """Expose test outcome to fixtures for dumping cluster state on failure."""
    outcome = yield
    rep = outcome.get_result()
    setattr(item, "rep_" + rep.when, rep)


@pytest.fixture
def cluster_settings(tmp_path):
    return HarnessSettings(state_dir=str(tmp_path))


@pytest.fixture
def cluster(request, cluster_settings):
    """A running ClusterHarness, torn down after the test."""
    marker = request.node.get_closest_marker("num_brokers")
    num_brokers = marker.args[0] if marker else DEFAULT_NUM_BROKERS
    harness = ClusterHarness(num_brokers=num_brokers, settings=cluster_settings)
    harness.set_up()
    try:
        yield harness
    finally:
        rep = getattr(request.node, "rep_call", None)
        if rep and rep.failed:
            print("\n========= cluster harness (at failure) =========")
            for key, value in harness.summary().items():
                print(f"{key}: {value}")
            print("========= end cluster harness =========\n")
        harness.tear_down()

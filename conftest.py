pytest_plugins = ["cluster_harness.pytest_plugin"]

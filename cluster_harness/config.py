"""Shared defaults for the harness, overridable through the environment."""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass

DEFAULT_NUM_BROKERS = 3


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


DEFAULT_HOST = os.getenv("CLUSTER_HARNESS_HOST", "localhost")
DEFAULT_START_TIMEOUT = _env_float("CLUSTER_HARNESS_START_TIMEOUT", 30.0)
DEFAULT_STOP_TIMEOUT = _env_float("CLUSTER_HARNESS_STOP_TIMEOUT", 30.0)
DEFAULT_SESSION_TIMEOUT = _env_float("CLUSTER_HARNESS_SESSION_TIMEOUT", 6.0)
DEFAULT_STATE_DIR = os.getenv("CLUSTER_HARNESS_STATE_DIR") or tempfile.gettempdir()


@dataclass(frozen=True)
class HarnessSettings:
    host: str = DEFAULT_HOST
    start_timeout: float = DEFAULT_START_TIMEOUT
    stop_timeout: float = DEFAULT_STOP_TIMEOUT
    # socket timeout for coordination client calls
    session_timeout: float = DEFAULT_SESSION_TIMEOUT
    state_dir: str = DEFAULT_STATE_DIR

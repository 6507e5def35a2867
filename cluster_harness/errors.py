"""Exception types raised by the cluster harness."""

from __future__ import annotations


class HarnessError(Exception):
    """Base class for every harness failure."""


class ConfigurationError(HarnessError):
    """The harness or one of its components was configured inconsistently."""


class ResourceExhaustedError(HarnessError):
    """Not enough free ports could be reserved."""


class IllegalStateError(HarnessError):
    """An operation was invoked in a lifecycle state that does not allow it."""


class ComponentStartError(HarnessError):
    """A component could not be bound or did not become ready in time."""

    def __init__(self, component: str, message: str) -> None:
        super().__init__(f"{component}: {message}")
        self.component = component


class ComponentStopError(HarnessError):
    """One or more components failed to stop or clean up.

    Raised once, after every teardown step has been attempted. ``failures``
    holds ``(component, exception)`` pairs in the order they occurred.
    """

    def __init__(self, failures: list[tuple[str, BaseException]]) -> None:
        lines = [f"{name}: {exc!r}" for name, exc in failures]
        super().__init__(f"{len(failures)} teardown step(s) failed: " + "; ".join(lines))
        self.failures = list(failures)

    @property
    def components(self) -> list[str]:
        return [name for name, _ in self.failures]

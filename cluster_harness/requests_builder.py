"""Build HTTP requests against the gateway of a running harness."""

from __future__ import annotations

import re
from typing import Any, Callable, Optional
from urllib.parse import quote

import requests

DEFAULT_HEADERS = {"Accept": "application/json"}
DEFAULT_TIMEOUT = 10.0

_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_.-]*)\}")


def join_url(base_url: str, path: str) -> str:
    if not path:
        return base_url.rstrip("/")
    return base_url.rstrip("/") + "/" + path.lstrip("/")


def resolve_template(path: str, name: str, value: Any) -> str:
    """Replace ``{name}`` in ``path`` with the URL-encoded ``value``."""
    return path.replace("{" + name + "}", quote(str(value), safe=""))


class GatewayRequest:
    """A request target on the gateway.

    Every send goes through its own ``requests.Session``; nothing is pooled
    between calls.
    """

    def __init__(self, url: str, headers: Optional[dict] = None, timeout: float = DEFAULT_TIMEOUT) -> None:
        self.url = url
        self.headers = dict(DEFAULT_HEADERS)
        if headers:
            self.headers.update(headers)
        self.timeout = timeout

    def prepare(self, method: str = "GET", **kwargs) -> requests.PreparedRequest:
        headers = dict(self.headers)
        headers.update(kwargs.pop("headers", None) or {})
        return requests.Request(method.upper(), self.url, headers=headers, **kwargs).prepare()

    def send(self, method: str = "GET", **kwargs) -> requests.Response:
        timeout = kwargs.pop("timeout", self.timeout)
        prepared = self.prepare(method, **kwargs)
        with requests.Session() as session:
            return session.send(prepared, timeout=timeout)

    def get(self, **kwargs) -> requests.Response:
        return self.send("GET", **kwargs)

    def post(self, json: Any = None, **kwargs) -> requests.Response:
        return self.send("POST", json=json, **kwargs)

    def put(self, json: Any = None, **kwargs) -> requests.Response:
        return self.send("PUT", json=json, **kwargs)

    def delete(self, **kwargs) -> requests.Response:
        return self.send("DELETE", **kwargs)

    def __repr__(self) -> str:
        return f"GatewayRequest({self.url!r})"


class RequestBuilder:
    """Turns gateway paths into :class:`GatewayRequest` objects.

    ``url_provider`` is called on every request so the builder always sees
    the gateway's current base URL, and so it fails the same way the
    provider does when there is no running gateway.
    """

    def __init__(self, url_provider: Callable[[], str], timeout: float = DEFAULT_TIMEOUT) -> None:
        self._url_provider = url_provider
        self.timeout = timeout

    def request(
        self,
        path: str,
        template_name: Optional[str] = None,
        template_value: Any = None,
        headers: Optional[dict] = None,
    ) -> GatewayRequest:
        base_url = self._url_provider()
        if template_name is not None:
            path = resolve_template(path, template_name, template_value)
        unresolved = _PLACEHOLDER.findall(path)
        if unresolved:
            raise ValueError(f"unresolved path template(s) {unresolved} in {path!r}")
        return GatewayRequest(join_url(base_url, path), headers=headers, timeout=self.timeout)

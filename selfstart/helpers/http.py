from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from selfstart.core.errors import DecodeError, ServerFaultError
from selfstart.core.host import SelfStartHost
from selfstart.core.status import BackendStatus
from selfstart.core.version import SELFSTART_VERSION

log = logging.getLogger("selfstart.http")

SERVER_FAULT_SENTINEL = "500 Internal Server Error"
DEFAULT_TIMEOUT_SEC = 600.0


def make_http_client(timeout_sec: float = DEFAULT_TIMEOUT_SEC, **kwargs: Any) -> httpx.AsyncClient:
    headers = {"User-Agent": f"selfstart/{SELFSTART_VERSION}"}
    headers.update(kwargs.pop("headers", {}) or {})
    return httpx.AsyncClient(timeout=timeout_sec, headers=headers, **kwargs)


def decode_text(response: httpx.Response) -> str:
    content = response.text
    if content.startswith(SERVER_FAULT_SENTINEL):
        raise ServerFaultError(f"Server returned 500 Internal Server Error, something went wrong: {content}")
    return content


def _decode_json(response: httpx.Response) -> Any:
    content = decode_text(response)
    try:
        return json.loads(content)
    except json.JSONDecodeError as exc:
        raise DecodeError(f"Failed to read JSON '{content}' with message: {exc}") from exc


def decode_object(response: httpx.Response) -> dict[str, Any]:
    value = _decode_json(response)
    if not isinstance(value, dict):
        raise DecodeError(f"Expected a JSON object, got {type(value).__name__}: {response.text}")
    return value


def decode_array(response: httpx.Response) -> list[Any]:
    value = _decode_json(response)
    if not isinstance(value, list):
        raise DecodeError(f"Expected a JSON array, got {type(value).__name__}: {response.text}")
    return value


class HttpReadinessProbe:
    """Pings a worker's HTTP endpoint and marks the host RUNNING on a JSON answer.

    ``url_template`` may contain ``{port}``; the port is read from the host.
    Connection errors, non-2xx answers and undecodable bodies all mean
    "not ready yet".
    """

    def __init__(self, client: httpx.AsyncClient, url_template: str, timeout_sec: float = 10.0) -> None:
        self.client = client
        self.url_template = url_template
        self.timeout_sec = timeout_sec

    def url_for(self, port: int | None) -> str:
        return self.url_template.replace("{port}", str(port)).replace("{PORT}", str(port))

    async def __call__(self, host: SelfStartHost) -> bool:
        url = self.url_for(getattr(host, "port", None))
        try:
            response = await self.client.get(url, timeout=self.timeout_sec)
        except httpx.TransportError as exc:
            log.debug("probe.unreachable", extra={"url": url, "error": repr(exc)})
            return False
        if not response.is_success:
            log.debug("probe.not_ready", extra={"url": url, "status": response.status_code})
            return False
        try:
            decode_object(response)
        except DecodeError as exc:
            log.debug("probe.bad_body", extra={"url": url, "error": str(exc)})
            return False
        if host.get_status() == BackendStatus.LOADING:
            host.revise_status(BackendStatus.RUNNING)
        return True

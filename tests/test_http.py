from __future__ import annotations

import httpx
import pytest

from selfstart.core.errors import DecodeError, ServerFaultError
from selfstart.core.host import WorkerRecord
from selfstart.core.status import BackendStatus
from selfstart.helpers.http import (
    HttpReadinessProbe,
    decode_array,
    decode_object,
    decode_text,
    make_http_client,
)


def _response(body: str, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, text=body)


def test_decode_shapes():
    assert decode_object(_response('{"system": {"python_version": "3.11"}}'))["system"]["python_version"] == "3.11"
    assert decode_array(_response('[{"name": "cpu"}]')) == [{"name": "cpu"}]
    assert decode_text(_response("plain words")) == "plain words"


def test_server_fault_sentinel():
    response = _response("500 Internal Server Error\nTraceback ...")
    with pytest.raises(ServerFaultError):
        decode_object(response)
    with pytest.raises(DecodeError):
        decode_text(response)


@pytest.mark.parametrize("body", ["{not json", "", "<html></html>"])
def test_malformed_json_is_a_decode_error(body: str):
    with pytest.raises(DecodeError) as info:
        decode_object(_response(body))
    assert not isinstance(info.value, ServerFaultError)


def test_wrong_shape_is_a_decode_error():
    with pytest.raises(DecodeError):
        decode_object(_response("[1, 2]"))
    with pytest.raises(DecodeError):
        decode_array(_response('{"a": 1}'))


@pytest.mark.asyncio
async def test_client_defaults():
    async with make_http_client() as client:
        assert client.headers["User-Agent"].startswith("selfstart/")
        assert client.timeout.read == 600.0


def _readiness_for(handler) -> tuple[HttpReadinessProbe, httpx.AsyncClient]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpReadinessProbe(client, "http://127.0.0.1:{port}/system_stats"), client


def _loading_record() -> WorkerRecord:
    record = WorkerRecord(name="comfy", port=7820)
    record.revise_status(BackendStatus.LOADING)
    return record


@pytest.mark.asyncio
async def test_readiness_marks_running_on_json_answer():
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, json={"system": {}})

    readiness, client = _readiness_for(handler)
    async with client:
        record = _loading_record()
        assert await readiness(record)
    assert record.status == BackendStatus.RUNNING
    assert seen == ["http://127.0.0.1:7820/system_stats"]


@pytest.mark.asyncio
async def test_readiness_does_not_revive_an_errored_worker():
    readiness, client = _readiness_for(lambda request: httpx.Response(200, json={}))
    async with client:
        record = _loading_record()
        record.revise_status(BackendStatus.ERRORED)
        assert await readiness(record)
    assert record.status == BackendStatus.ERRORED


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "handler",
    [
        lambda request: httpx.Response(503, text="starting"),
        lambda request: httpx.Response(200, text="500 Internal Server Error"),
        lambda request: httpx.Response(200, text="<html>booting</html>"),
    ],
)
async def test_readiness_not_ready(handler):
    readiness, client = _readiness_for(handler)
    async with client:
        record = _loading_record()
        assert not await readiness(record)
    assert record.status == BackendStatus.LOADING


@pytest.mark.asyncio
async def test_readiness_connection_refused_is_not_ready():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    readiness, client = _readiness_for(handler)
    async with client:
        record = _loading_record()
        assert not await readiness(record)
    assert record.status == BackendStatus.LOADING

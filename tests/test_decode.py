from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List

import pytest
from pydantic import BaseModel

from reqkit.api_client import GET, POST, Client, send_with_json_response
from reqkit.errors import DecodeError, ReadError, TransportBuildError, TransportError


class Point(BaseModel):
    x: int
    label: str = ""


class Event(BaseModel):
    at: datetime


@dataclass
class Tag:
    id: int
    name: str


def test_decodes_into_model(server):
    server.respond_json("/point", {"x": 3, "label": "a"})
    value, res = send_with_json_response(Client(server.url).new_request(GET, "/point"), Point)

    assert value == Point(x=3, label="a")
    assert res.status_code == 200
    assert res.closed
    assert res.content == b'{"x": 3, "label": "a"}'


def test_decodes_generic_containers(server):
    server.respond_json("/tags", [{"id": 1, "name": "a"}, {"id": 2, "name": "b"}])
    tags, _ = send_with_json_response(Client(server.url).new_request(GET, "/tags"), List[Tag])
    assert tags == [Tag(1, "a"), Tag(2, "b")]

    server.respond_json("/map", {"a": 1})
    mapping, _ = send_with_json_response(Client(server.url).new_request(GET, "/map"), Dict[str, int])
    assert mapping == {"a": 1}


def test_sends_json_body_and_decodes_echo(server):
    req = Client(server.url).new_request(POST, "/echo")
    req.set_json_body({"x": 1})
    value, _ = send_with_json_response(req, dict)
    assert value == {"method": "POST", "path": "/echo"}


def test_non_2xx_is_still_decoded(server):
    server.respond_json("/gone", {"x": 0, "label": "gone"}, status=410)
    value, res = send_with_json_response(Client(server.url).new_request(GET, "/gone"), Point)
    assert res.status_code == 410
    assert value.label == "gone"


def test_type_mismatch(server):
    server.respond_json("/point", {"x": "not-a-number"})
    with pytest.raises(DecodeError) as info:
        send_with_json_response(Client(server.url).new_request(GET, "/point"), Point)

    err = info.value
    assert err.response.status_code == 200
    assert err.response.closed
    assert err.body == b'{"x": "not-a-number"}'
    assert err.errors[0]["loc"] == ("x",)


def test_malformed_json(server):
    server.respond("/broken", body=b"{not json", headers={"Content-Type": "application/json"})
    with pytest.raises(DecodeError) as info:
        send_with_json_response(Client(server.url).new_request(GET, "/broken"), dict)
    assert info.value.response.closed


def test_empty_body(server):
    server.respond("/empty", status=204)
    with pytest.raises(DecodeError):
        send_with_json_response(Client(server.url).new_request(GET, "/empty"), dict)


def test_truncated_body_is_a_read_error(server):
    server.respond("/short", body=b'{"x": 1', truncate=True)
    with pytest.raises(ReadError) as info:
        send_with_json_response(Client(server.url).new_request(GET, "/short"), Point)
    assert info.value.response.closed


def test_dispatch_errors_propagate_without_decoding(silent_url):
    req = Client(silent_url).new_request(GET, "/")
    req.set_timeout(0.05)
    with pytest.raises(TransportError) as info:
        send_with_json_response(req, Point)
    assert info.value.is_timeout

    with pytest.raises(TransportBuildError):
        send_with_json_response(Client("nowhere").new_request(GET, "/"), Point)


@pytest.mark.parametrize("payload", [{"x": "5"}, {"x": 5.0}])
def test_numbers_are_not_coerced(server, payload):
    server.respond_json("/point", payload)
    with pytest.raises(DecodeError) as info:
        send_with_json_response(Client(server.url).new_request(GET, "/point"), Point)
    assert info.value.errors[0]["loc"] == ("x",)


def test_iso_datetime_still_decodes(server):
    server.respond_json("/when", {"at": "2026-10-17T12:00:00Z"})
    value, _ = send_with_json_response(Client(server.url).new_request(GET, "/when"), Event)
    assert value.at == datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)

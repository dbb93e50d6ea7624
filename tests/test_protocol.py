"""Tests for the wire protocol."""

import json
import struct

import pytest

from rosfox.client import FoxgloveClient
from rosfox.protocol import (
    Channel,
    ConnectionGraphUpdate,
    MessageData,
    ParameterValues,
    ProtocolError,
    ServerBinaryOp,
    ServiceCallFailure,
    ServiceCallResponse,
    advertise_msg,
    decode_binary,
    decode_json,
    get_parameters_msg,
    message_data_frame,
    parse_server_message,
    server_message_data_frame,
    service_call_request_frame,
    service_call_response_frame,
    subscribe_msg,
)


def test_subscribe_msg():
    d = json.loads(subscribe_msg(1, 7))
    assert d == {"op": "subscribe", "subscriptions": [{"id": 1, "channelId": 7}]}


def test_advertise_msg_omits_missing_schema():
    d = json.loads(advertise_msg(2, "/chatter", "cdr", "std_msgs/msg/String"))
    assert d["op"] == "advertise"
    assert d["channels"] == [
        {"id": 2, "topic": "/chatter", "encoding": "cdr", "schemaName": "std_msgs/msg/String"}
    ]


def test_get_parameters_msg():
    d = json.loads(get_parameters_msg(["node.use_sim_time"], "p1"))
    assert d == {"op": "getParameters", "parameterNames": ["node.use_sim_time"], "id": "p1"}
    assert "id" not in json.loads(get_parameters_msg(["x"]))


def test_message_data_frame_layout():
    frame = message_data_frame(5, b"abc")
    assert frame == struct.pack("<BI", 0x01, 5) + b"abc"


def test_service_call_request_frame_layout():
    frame = service_call_request_frame(3, 9, "cdr", b"\x00\x01")
    assert frame == struct.pack("<BIII", 0x02, 3, 9, 3) + b"cdr" + b"\x00\x01"


def test_decode_message_data():
    opcode, payload = decode_binary(server_message_data_frame(4, b"xyz", timestamp=123))
    assert opcode == ServerBinaryOp.MESSAGE_DATA
    assert payload == MessageData(subscription_id=4, timestamp=123, data=b"xyz")


def test_decode_service_call_response():
    opcode, payload = decode_binary(service_call_response_frame(3, 9, "cdr", b"\x07"))
    assert opcode == ServerBinaryOp.SERVICE_CALL_RESPONSE
    assert payload == ServiceCallResponse(3, 9, "cdr", b"\x07")


def test_decode_time():
    opcode, payload = decode_binary(struct.pack("<BQ", 0x02, 42))
    assert opcode == ServerBinaryOp.TIME
    assert payload == 42


@pytest.mark.parametrize("frame", [b"", b"\x09", b"\x01\x00", struct.pack("<BIII", 0x03, 1, 1, 50)])
def test_decode_binary_rejects_malformed(frame):
    with pytest.raises(ProtocolError):
        decode_binary(frame)


def test_decode_json_missing_op():
    with pytest.raises(ValueError):
        decode_json('{"foo": "bar"}')
    with pytest.raises(ProtocolError):
        decode_json("not json")


def test_parse_advertise():
    channels = parse_server_message({
        "op": "advertise",
        "channels": [{
            "id": 1, "topic": "/tf", "encoding": "cdr",
            "schemaName": "tf2_msgs/msg/TFMessage", "schema": "...",
            "schemaEncoding": "ros2msg",
        }],
    })
    assert channels == [Channel(1, "/tf", "cdr", "tf2_msgs/msg/TFMessage", "...", "ros2msg")]


def test_parse_services_both_schema_styles():
    services = parse_server_message({
        "op": "advertiseServices",
        "services": [
            {
                "id": 1, "name": "/add", "type": "pkg/srv/Add",
                "request": {"encoding": "cdr", "schemaName": "pkg/srv/Add_Request",
                            "schemaEncoding": "ros2msg", "schema": "int64 a"},
                "response": {"encoding": "cdr", "schemaName": "pkg/srv/Add_Response",
                             "schemaEncoding": "ros2msg", "schema": "int64 sum"},
            },
            {
                "id": 2, "name": "/old", "type": "pkg/srv/Old",
                "requestSchema": "bool flag", "responseSchema": "string msg",
            },
        ],
    })
    add, old = services
    assert add.request.name == "pkg/srv/Add_Request"
    assert add.response.schema == "int64 sum"
    assert old.request.name is None
    assert old.request.schema == "bool flag"
    assert old.response.schema == "string msg"


def test_parse_parameter_values_and_failure():
    values = parse_server_message({
        "op": "parameterValues", "id": "p1",
        "parameters": [{"name": "a.b", "value": 3}],
    })
    assert values == ParameterValues([{"name": "a.b", "value": 3}], id="p1")

    failure = parse_server_message({
        "op": "serviceCallFailure", "serviceId": 1, "callId": 2, "message": "nope",
    })
    assert failure == ServiceCallFailure(1, 2, "nope")


def test_parse_connection_graph_update():
    update = parse_server_message({
        "op": "connectionGraphUpdate",
        "advertisedServices": [{"name": "/a", "providerIds": []}, {"name": "/b", "providerIds": []}],
    })
    assert isinstance(update, ConnectionGraphUpdate)
    assert update.service_names == ["/a", "/b"]


def test_parse_missing_field_raises():
    with pytest.raises(ProtocolError):
        parse_server_message({"op": "serviceCallFailure", "serviceId": 1})


def test_parse_unknown_op_returns_none():
    assert parse_server_message({"op": "playbackState"}) is None


def test_decode_service_call_response_bad_encoding():
    frame = struct.pack("<BIII", 0x03, 1, 0, 2) + b"\xff\xfe"
    with pytest.raises(ProtocolError):
        decode_binary(frame)


@pytest.mark.parametrize("msg", [
    {"op": "advertise", "channels": [5]},
    {"op": "advertise", "channels": 5},
    {"op": "advertiseServices", "services": ["not-a-service"]},
    {"op": "parameterValues", "parameters": 3},
])
def test_parse_malformed_entries_raise_protocol_error(msg):
    with pytest.raises(ProtocolError):
        parse_server_message(msg)


def test_client_drops_malformed_frames():
    client = FoxgloveClient("ws://test")
    seen = []
    client.on("advertise", seen.append)
    client.on("service_call_response", seen.append)

    client._handle_json('{"op": "advertise", "channels": [5]}')
    client._handle_binary(struct.pack("<BIII", 0x03, 1, 0, 2) + b"\xff\xfe")
    client._handle_json(json.dumps({"op": "advertise", "channels": [
        {"id": 1, "topic": "/a", "encoding": "cdr", "schemaName": "pkg/msg/A"},
    ]}))

    assert seen == [[Channel(1, "/a", "cdr", "pkg/msg/A")]]

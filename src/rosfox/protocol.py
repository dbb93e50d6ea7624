"""Wire protocol for the Foxglove WebSocket connection (foxglove.websocket.v1).

Server JSON messages (text frames, discriminated by "op"):
  - serverInfo:           {"op":"serverInfo","name":"...","capabilities":[...]}
  - advertise:            {"op":"advertise","channels":[{id,topic,encoding,schemaName,schema,schemaEncoding}]}
  - unadvertise:          {"op":"unadvertise","channelIds":[N]}
  - advertiseServices:    {"op":"advertiseServices","services":[{id,name,type,request,response}]}
  - unadvertiseServices:  {"op":"unadvertiseServices","serviceIds":[N]}
  - parameterValues:      {"op":"parameterValues","parameters":[{name,value}],"id":"..."}
  - connectionGraphUpdate {"op":"connectionGraphUpdate","advertisedServices":[{name,providerIds}],...}
  - serviceCallFailure:   {"op":"serviceCallFailure","serviceId":N,"callId":N,"message":"..."}
  - status:               {"op":"status","level":N,"message":"..."}

Client JSON messages: subscribe, unsubscribe, advertise, unadvertise,
getParameters, setParameters, subscribeConnectionGraph,
unsubscribeConnectionGraph.

Binary frames (little endian, first byte is the opcode):
  - server 0x01 message data:          u32 subscriptionId, u64 timestamp, payload
  - server 0x02 time:                  u64 timestamp
  - server 0x03 service call response: u32 serviceId, u32 callId, u32 len, encoding, payload
  - client 0x01 message data:          u32 channelId, payload
  - client 0x02 service call request:  u32 serviceId, u32 callId, u32 len, encoding, payload
"""

import json
import struct
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any

SUBPROTOCOL = "foxglove.websocket.v1"


class ProtocolError(ValueError):
    """A frame that does not follow the wire protocol."""


class ServerOp(str, Enum):
    SERVER_INFO = "serverInfo"
    STATUS = "status"
    REMOVE_STATUS = "removeStatus"
    ADVERTISE = "advertise"
    UNADVERTISE = "unadvertise"
    ADVERTISE_SERVICES = "advertiseServices"
    UNADVERTISE_SERVICES = "unadvertiseServices"
    PARAMETER_VALUES = "parameterValues"
    CONNECTION_GRAPH_UPDATE = "connectionGraphUpdate"
    SERVICE_CALL_FAILURE = "serviceCallFailure"


class ClientOp(str, Enum):
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    ADVERTISE = "advertise"
    UNADVERTISE = "unadvertise"
    GET_PARAMETERS = "getParameters"
    SET_PARAMETERS = "setParameters"
    SUBSCRIBE_CONNECTION_GRAPH = "subscribeConnectionGraph"
    UNSUBSCRIBE_CONNECTION_GRAPH = "unsubscribeConnectionGraph"


class ServerBinaryOp(IntEnum):
    MESSAGE_DATA = 0x01
    TIME = 0x02
    SERVICE_CALL_RESPONSE = 0x03


class ClientBinaryOp(IntEnum):
    MESSAGE_DATA = 0x01
    SERVICE_CALL_REQUEST = 0x02


# ── Records ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Channel:
    """A topic advertised by the server."""

    id: int
    topic: str
    encoding: str
    schema_name: str
    schema: str | None = None
    schema_encoding: str | None = None


@dataclass(frozen=True)
class MessageSchema:
    """One half (request or response) of a service definition."""

    name: str | None
    schema: str | None
    encoding: str | None = None
    schema_encoding: str | None = None


@dataclass(frozen=True)
class Service:
    """A callable service advertised by the server."""

    id: int
    name: str
    type: str
    request: MessageSchema | None = None
    response: MessageSchema | None = None


@dataclass(frozen=True)
class MessageData:
    subscription_id: int
    timestamp: int
    data: bytes


@dataclass(frozen=True)
class ServiceCallResponse:
    service_id: int
    call_id: int
    encoding: str
    data: bytes


@dataclass(frozen=True)
class ServiceCallFailure:
    service_id: int
    call_id: int
    message: str


@dataclass(frozen=True)
class ParameterValues:
    parameters: list[dict[str, Any]]
    id: str | None = None


@dataclass(frozen=True)
class ConnectionGraphUpdate:
    advertised_services: list[dict[str, Any]] = field(default_factory=list)
    published_topics: list[dict[str, Any]] = field(default_factory=list)
    subscribed_topics: list[dict[str, Any]] = field(default_factory=list)
    removed_topics: list[str] = field(default_factory=list)
    removed_services: list[str] = field(default_factory=list)

    @property
    def service_names(self) -> list[str]:
        return [service["name"] for service in self.advertised_services]


# ── Server -> client decoding ────────────────────────────────────────────


def decode_json(raw: str) -> dict[str, Any]:
    """Decode a JSON text frame."""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Invalid JSON frame: {e}") from e
    if not isinstance(data, dict) or "op" not in data:
        raise ProtocolError("Missing 'op' field in JSON frame")
    return data


def parse_channel(data: dict[str, Any]) -> Channel:
    return Channel(
        id=data["id"],
        topic=data["topic"],
        encoding=data.get("encoding", ""),
        schema_name=data.get("schemaName", ""),
        schema=data.get("schema"),
        schema_encoding=data.get("schemaEncoding"),
    )


def _parse_service_half(data: dict[str, Any], half: str) -> MessageSchema | None:
    if isinstance(data.get(half), dict):
        part = data[half]
        return MessageSchema(
            name=part.get("schemaName"),
            schema=part.get("schema"),
            encoding=part.get("encoding"),
            schema_encoding=part.get("schemaEncoding"),
        )
    # Older servers only send the schema text
    legacy = data.get(f"{half}Schema")
    if legacy is None:
        return None
    return MessageSchema(name=None, schema=legacy)


def parse_service(data: dict[str, Any]) -> Service:
    return Service(
        id=data["id"],
        name=data["name"],
        type=data.get("type", ""),
        request=_parse_service_half(data, "request"),
        response=_parse_service_half(data, "response"),
    )


def parse_server_message(msg: dict[str, Any]) -> Any:
    """Turn a decoded server JSON message into its event payload.

    Returns None for ops the client does not model.
    """
    op = msg.get("op")
    try:
        if op == ServerOp.ADVERTISE.value:
            return [parse_channel(c) for c in msg.get("channels", [])]
        if op == ServerOp.UNADVERTISE.value:
            return list(msg.get("channelIds", []))
        if op == ServerOp.ADVERTISE_SERVICES.value:
            return [parse_service(s) for s in msg.get("services", [])]
        if op == ServerOp.UNADVERTISE_SERVICES.value:
            return list(msg.get("serviceIds", []))
        if op == ServerOp.PARAMETER_VALUES.value:
            return ParameterValues(
                parameters=list(msg.get("parameters", [])), id=msg.get("id")
            )
        if op == ServerOp.CONNECTION_GRAPH_UPDATE.value:
            return ConnectionGraphUpdate(
                advertised_services=list(msg.get("advertisedServices", [])),
                published_topics=list(msg.get("publishedTopics", [])),
                subscribed_topics=list(msg.get("subscribedTopics", [])),
                removed_topics=list(msg.get("removedTopics", [])),
                removed_services=list(msg.get("removedServices", [])),
            )
        if op == ServerOp.SERVICE_CALL_FAILURE.value:
            return ServiceCallFailure(
                service_id=msg["serviceId"],
                call_id=msg["callId"],
                message=msg.get("message", ""),
            )
    except KeyError as e:
        raise ProtocolError(f"Missing field {e} in '{op}' message") from e
    except (TypeError, AttributeError) as e:
        raise ProtocolError(f"Malformed '{op}' message: {e}") from e
    if op in (
        ServerOp.SERVER_INFO.value,
        ServerOp.STATUS.value,
        ServerOp.REMOVE_STATUS.value,
    ):
        return msg
    return None


def decode_binary(frame: bytes) -> tuple[ServerBinaryOp, Any]:
    """Decode a server binary frame into (opcode, payload)."""
    if not frame:
        raise ProtocolError("Empty binary frame")
    try:
        opcode = ServerBinaryOp(frame[0])
    except ValueError:
        raise ProtocolError(f"Unknown binary opcode 0x{frame[0]:02x}") from None

    try:
        if opcode == ServerBinaryOp.MESSAGE_DATA:
            subscription_id, timestamp = struct.unpack_from("<IQ", frame, 1)
            return opcode, MessageData(subscription_id, timestamp, bytes(frame[13:]))
        if opcode == ServerBinaryOp.TIME:
            (timestamp,) = struct.unpack_from("<Q", frame, 1)
            return opcode, timestamp
        service_id, call_id, encoding_len = struct.unpack_from("<III", frame, 1)
    except struct.error as e:
        raise ProtocolError(f"Truncated binary frame: {e}") from e

    start = 13
    end = start + encoding_len
    if end > len(frame):
        raise ProtocolError("Truncated service call response encoding")
    try:
        encoding = bytes(frame[start:end]).decode("utf-8")
    except UnicodeDecodeError as e:
        raise ProtocolError(f"Invalid service call response encoding: {e}") from e
    return opcode, ServiceCallResponse(service_id, call_id, encoding, bytes(frame[end:]))


# ── Client -> server encoding ────────────────────────────────────────────


def encode_json(op: ClientOp, **kwargs: Any) -> str:
    """Encode a client JSON message."""
    return json.dumps({"op": op.value, **kwargs})


def subscribe_msg(subscription_id: int, channel_id: int) -> str:
    return encode_json(
        ClientOp.SUBSCRIBE,
        subscriptions=[{"id": subscription_id, "channelId": channel_id}],
    )


def unsubscribe_msg(subscription_id: int) -> str:
    return encode_json(ClientOp.UNSUBSCRIBE, subscriptionIds=[subscription_id])


def advertise_msg(
    channel_id: int,
    topic: str,
    encoding: str,
    schema_name: str,
    schema: str | None = None,
    schema_encoding: str | None = None,
) -> str:
    channel: dict[str, Any] = {
        "id": channel_id,
        "topic": topic,
        "encoding": encoding,
        "schemaName": schema_name,
    }
    if schema is not None:
        channel["schema"] = schema
    if schema_encoding is not None:
        channel["schemaEncoding"] = schema_encoding
    return encode_json(ClientOp.ADVERTISE, channels=[channel])


def unadvertise_msg(channel_id: int) -> str:
    return encode_json(ClientOp.UNADVERTISE, channelIds=[channel_id])


def get_parameters_msg(names: list[str], request_id: str | None = None) -> str:
    if request_id is None:
        return encode_json(ClientOp.GET_PARAMETERS, parameterNames=names)
    return encode_json(ClientOp.GET_PARAMETERS, parameterNames=names, id=request_id)


def set_parameters_msg(
    parameters: list[dict[str, Any]], request_id: str | None = None
) -> str:
    if request_id is None:
        return encode_json(ClientOp.SET_PARAMETERS, parameters=parameters)
    return encode_json(ClientOp.SET_PARAMETERS, parameters=parameters, id=request_id)


def message_data_frame(channel_id: int, payload: bytes) -> bytes:
    return struct.pack("<BI", ClientBinaryOp.MESSAGE_DATA, channel_id) + bytes(payload)


def _service_call_frame(
    opcode: int, service_id: int, call_id: int, encoding: str, payload: bytes
) -> bytes:
    enc = encoding.encode("utf-8")
    return struct.pack("<BIII", opcode, service_id, call_id, len(enc)) + enc + bytes(payload)


def service_call_request_frame(
    service_id: int, call_id: int, encoding: str, payload: bytes
) -> bytes:
    return _service_call_frame(
        ClientBinaryOp.SERVICE_CALL_REQUEST, service_id, call_id, encoding, payload
    )


def service_call_response_frame(
    service_id: int, call_id: int, encoding: str, payload: bytes
) -> bytes:
    """Server-side framing, used by tests and local tooling."""
    return _service_call_frame(
        ServerBinaryOp.SERVICE_CALL_RESPONSE, service_id, call_id, encoding, payload
    )


def server_message_data_frame(
    subscription_id: int, payload: bytes, timestamp: int = 0
) -> bytes:
    """Server-side framing, used by tests and local tooling."""
    return struct.pack("<BIQ", ServerBinaryOp.MESSAGE_DATA, subscription_id, timestamp) + bytes(payload)

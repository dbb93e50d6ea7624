"""Shared fakes for session tests."""

import asyncio
import itertools
import json
from typing import Any

import pytest

from rosfox.codecs import SchemaCodecs
from rosfox.session import FoxgloveSession


class FakeTransport:
    """In-memory stand-in for FoxgloveClient that records every command."""

    def __init__(self):
        self.calls: list[tuple[str, tuple]] = []
        self._listeners: dict[str, list] = {}
        self._publisher_ids = itertools.count(1)
        self._subscription_ids = itertools.count(1)

    def on(self, event, listener):
        self._listeners.setdefault(event, []).append(listener)

    def off(self, event, listener):
        self._listeners.get(event, []).remove(listener)

    def emit(self, event, *args):
        for listener in list(self._listeners.get(event, [])):
            listener(*args)

    def calls_of(self, name: str) -> list[tuple]:
        return [args for call, args in self.calls if call == name]

    async def connect(self):
        self.emit("open")

    async def close(self):
        self.calls.append(("close", ()))

    def advertise(self, topic, encoding, schema_name, schema=None, schema_encoding=None):
        self.calls.append(("advertise", (topic, encoding, schema_name)))
        return next(self._publisher_ids)

    def unadvertise(self, channel_id):
        self.calls.append(("unadvertise", (channel_id,)))

    def send_message(self, channel_id, data):
        self.calls.append(("send_message", (channel_id, data)))

    def subscribe(self, channel_id):
        self.calls.append(("subscribe", (channel_id,)))
        return next(self._subscription_ids)

    def unsubscribe(self, subscription_id):
        self.calls.append(("unsubscribe", (subscription_id,)))

    def send_service_call_request(self, service_id, call_id, encoding, data):
        self.calls.append(("send_service_call_request", (service_id, call_id, encoding, data)))

    def get_parameters(self, names, request_id=None):
        self.calls.append(("get_parameters", (names, request_id)))

    def set_parameters(self, parameters, request_id=None):
        self.calls.append(("set_parameters", (parameters, request_id)))

    def subscribe_connection_graph(self):
        self.calls.append(("subscribe_connection_graph", ()))

    def unsubscribe_connection_graph(self):
        self.calls.append(("unsubscribe_connection_graph", ()))


class FakeRos:
    """Records everything a session emits."""

    def __init__(self):
        self.is_connected = False
        self.events: list[tuple[str, Any]] = []

    def emit(self, event, *args):
        self.events.append((event, args[0] if args else None))

    def results(self, event: str) -> list[Any]:
        return [payload for name, payload in self.events if name == event]


def json_reader(schema_name, schema, schema_encoding, ros2):
    return lambda data: json.loads(data)


def json_writer(schema_name, schema, schema_encoding, ros2):
    return lambda msg: json.dumps(msg).encode()


async def settle():
    """Let every ready task run until it blocks."""
    for _ in range(10):
        await asyncio.sleep(0)


@pytest.fixture()
def client():
    return FakeTransport()


@pytest.fixture()
def ros():
    return FakeRos()


@pytest.fixture()
def make_session(client, ros):
    def _make(**kwargs):
        codecs = SchemaCodecs(reader_compiler=json_reader, writer_compiler=json_writer)
        return FoxgloveSession("ws://test", ros, client=client, codecs=codecs, **kwargs)

    return _make

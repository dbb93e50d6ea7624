"""Session management: rosbridge operations over one Foxglove connection.

A FoxgloveSession owns the transport client, the Directory of advertised
channels and services, the schema codec cache and the correlation table.
It accepts rosbridge-style operation messages (advertise, unadvertise,
publish, subscribe, unsubscribe, call_service) and emits results on the
high-level API object it is attached to:

  - decoded topic messages under the topic name,
  - service / parameter results under the caller's id as
    {"values": ..., "result": bool},
  - "connection", "close" and "error" lifecycle events.
"""

import asyncio
import inspect
import itertools
import json
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine, Protocol

from rosfox.client import FoxgloveClient
from rosfox.codecs import SchemaCodecs, Writer
from rosfox.correlator import Correlator
from rosfox.directory import Directory
from rosfox.protocol import (
    Channel,
    ConnectionGraphUpdate,
    MessageData,
    ParameterValues,
    Service,
    ServiceCallFailure,
    ServiceCallResponse,
)

logger = logging.getLogger("rosfox.session")

INTROSPECTION_PREFIX = "rosapi/"
GRAPH_KEY = ("graph",)


class Emitter(Protocol):
    """What the session needs from the high-level API object."""

    is_connected: bool

    def emit(self, event: str, *args: Any) -> None: ...


@dataclass
class Publisher:
    """A locally advertised topic."""

    topic: str
    publisher_id: int
    writer: Writer | None = None
    pending: deque = field(default_factory=deque)
    task: asyncio.Task | None = None
    # Set when no writer could be compiled; publishes are then discarded
    failed: bool = False


@dataclass
class Subscription:
    """A subscription to a server channel."""

    topic: str
    subscription_id: int | None = None
    channel: Channel | None = None
    reader: Callable[[bytes], Any] | None = None
    task: asyncio.Task | None = None


class FoxgloveSession:
    """One transport connection bound to one high-level API object."""

    def __init__(
        self,
        url: str,
        ros: Emitter,
        ros2: bool = True,
        client: FoxgloveClient | None = None,
        codecs: SchemaCodecs | None = None,
        call_timeout: float | None = None,
    ):
        self.url = url
        self.ros = ros
        self.ros2 = ros2
        self.encoding = "cdr" if ros2 else "ros1"
        self.client = client if client is not None else FoxgloveClient(url)
        self.directory = Directory()
        self.codecs = codecs if codecs is not None else SchemaCodecs(ros2=ros2)
        self.correlator = Correlator(timeout=call_timeout)

        self.publishers: dict[str, Publisher] = {}
        self.subscriptions: dict[str, Subscription] = {}
        self._subscriptions_by_id: dict[int, Subscription] = {}
        self._call_ids = itertools.count()
        self._tasks: set[asyncio.Task] = set()

        self._verbs: dict[str, Callable[..., Any]] = {
            "advertise": self.advertise,
            "unadvertise": self.unadvertise,
            "publish": self.publish,
            "subscribe": self.subscribe,
            "unsubscribe": self.unsubscribe,
            "call_service": self.call_service,
        }
        self._introspection: dict[str, Callable[[str, dict[str, Any]], Any]] = {
            "rosapi/GetParam": self._get_param,
            "rosapi/SetParam": self._set_param,
            "rosapi/Topics": self._get_topics,
            "rosapi/Services": self._get_services,
            "rosapi/TopicType": self._get_topic_type,
            "rosapi/ServiceType": self._get_service_type,
        }

        c = self.client
        c.on("advertise", self._on_advertise)
        c.on("unadvertise", self._on_unadvertise)
        c.on("advertise_services", self._on_advertise_services)
        c.on("unadvertise_services", self._on_unadvertise_services)
        c.on("message", self._on_message)
        c.on("service_call_response", self._on_service_call_response)
        c.on("service_call_failure", self._on_service_call_failure)
        c.on("parameter_values", self._on_parameter_values)
        c.on("connection_graph_update", self._on_connection_graph_update)
        c.on("open", self._on_open)
        c.on("close", self._on_close)
        c.on("error", self._on_error)

    # ── lifecycle ────────────────────────────────────────────────────────

    async def start(self) -> None:
        await self.client.connect()

    async def close(self) -> None:
        """Cancel everything in flight and close the connection."""
        for task in list(self._tasks):
            task.cancel()
        self.directory.cancel_waiters()
        self.correlator.cancel_all()
        await self.client.close()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def _on_open(self) -> None:
        self.ros.is_connected = True
        self.ros.emit("connection")

    def _on_close(self, event: Any) -> None:
        self.ros.is_connected = False
        self.ros.emit("close", event)

    def _on_error(self, error: Any) -> None:
        self.ros.emit("error", error)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Operation failed: %s", exc, exc_info=exc)

    # ── directory events ─────────────────────────────────────────────────

    def _on_advertise(self, channels: list[Channel]) -> None:
        for channel in channels:
            self.directory.record_channel(channel)

    def _on_unadvertise(self, channel_ids: list[int]) -> None:
        for channel_id in channel_ids:
            self.directory.remove_channel(channel_id)

    def _on_advertise_services(self, services: list[Service]) -> None:
        for service in services:
            self.directory.record_service(service)

    def _on_unadvertise_services(self, service_ids: list[int]) -> None:
        for service_id in service_ids:
            self.directory.remove_service(service_id)

    # ── operations ───────────────────────────────────────────────────────

    def send(self, message: dict[str, Any]) -> Any:
        """Dispatch a rosbridge operation message.

        Returns the task for operations that complete asynchronously
        (subscribe, call_service), otherwise None.
        """
        op = message.get("op")
        verb = self._verbs.get(op) if isinstance(op, str) else None
        if verb is None:
            logger.error("Operation not implemented: %r", message)
            return None
        args = {k: v for k, v in message.items() if k != "op"}
        try:
            inspect.signature(verb).bind(**args)
        except TypeError as e:
            logger.error("Malformed %s operation %r: %s", op, message, e)
            return None
        return verb(**args)

    def advertise(self, topic: str, type: str, **_: Any) -> None:
        if topic in self.publishers:
            logger.info("Re-advertising %s, releasing previous publisher", topic)
            self.unadvertise(topic)

        publisher_id = self.client.advertise(
            topic=topic, encoding=self.encoding, schema_name=type
        )
        publisher = Publisher(topic=topic, publisher_id=publisher_id)
        publisher.task = self._spawn(self._resolve_writer(publisher))
        self.publishers[topic] = publisher
        logger.debug("Advertised %s as %s (publisher=%d)", topic, type, publisher_id)

    async def _resolve_writer(self, publisher: Publisher) -> None:
        channel = await self.directory.channel(publisher.topic)
        try:
            publisher.writer = self.codecs.writer(channel)
        except Exception:
            publisher.failed = True
            if publisher.pending:
                logger.warning("Discarding %d queued messages for %s",
                               len(publisher.pending), publisher.topic)
            publisher.pending.clear()
            raise
        while publisher.pending:
            self._send_message(publisher, publisher.pending.popleft())

    def unadvertise(self, topic: str, **_: Any) -> None:
        publisher = self.publishers.pop(topic, None)
        if publisher is None:
            return
        if publisher.task is not None and not publisher.task.done():
            publisher.task.cancel()
        publisher.pending.clear()
        self.client.unadvertise(publisher.publisher_id)
        logger.debug("Unadvertised %s (publisher=%d)", topic, publisher.publisher_id)

    def publish(self, topic: str, msg: Any = None, **_: Any) -> None:
        publisher = self.publishers.get(topic)
        if publisher is None:
            logger.debug("Dropping message for unadvertised topic %s", topic)
            return
        if publisher.failed:
            logger.warning("Dropping message for %s: no writer for its schema", topic)
            return
        if publisher.writer is None or publisher.pending:
            publisher.pending.append(msg)
            return
        self._send_message(publisher, msg)

    def _send_message(self, publisher: Publisher, msg: Any) -> None:
        assert publisher.writer is not None
        self.client.send_message(publisher.publisher_id, publisher.writer(msg))

    def subscribe(self, topic: str, **_: Any) -> asyncio.Task:
        if topic in self.subscriptions:
            logger.info("Re-subscribing to %s, releasing previous subscription", topic)
            self.unsubscribe(topic)

        subscription = Subscription(topic=topic)
        self.subscriptions[topic] = subscription
        subscription.task = self._spawn(self._open_subscription(subscription))
        return subscription.task

    async def _open_subscription(self, subscription: Subscription) -> None:
        channel = await self.directory.channel(subscription.topic)
        subscription.channel = channel
        subscription.reader = self.codecs.reader(channel)
        subscription.subscription_id = self.client.subscribe(channel.id)
        self._subscriptions_by_id[subscription.subscription_id] = subscription
        logger.debug("Subscribed to %s (channel=%d, subscription=%d)",
                     subscription.topic, channel.id, subscription.subscription_id)

    def unsubscribe(self, topic: str, **_: Any) -> None:
        subscription = self.subscriptions.pop(topic, None)
        if subscription is None:
            return
        if subscription.task is not None and not subscription.task.done():
            subscription.task.cancel()
        if subscription.subscription_id is not None:
            self._subscriptions_by_id.pop(subscription.subscription_id, None)
            self.client.unsubscribe(subscription.subscription_id)
        logger.debug("Unsubscribed from %s", topic)

    def _on_message(self, event: MessageData) -> None:
        subscription = self._subscriptions_by_id.get(event.subscription_id)
        if subscription is None or subscription.reader is None:
            return
        self.ros.emit(subscription.topic, subscription.reader(event.data))

    def call_service(
        self,
        id: str,
        service: str,
        type: str = "",
        args: Any = None,
        **_: Any,
    ) -> asyncio.Task:
        handler = self._introspection.get(type)
        if handler is not None:
            result = handler(id, args or {})
            if asyncio.iscoroutine(result):
                self._spawn(result)
        elif type.startswith(INTROSPECTION_PREFIX):
            logger.warning("Introspection service %s is not implemented", type)

        return self._spawn(self._call_remote_service(id, service, args or {}))

    async def _call_remote_service(self, id: str, name: str, args: Any) -> None:
        service = await self.directory.service(name)
        writer = self.codecs.writer(service)
        reader = self.codecs.reader(service)
        call_id = next(self._call_ids)
        key = ("service", service.id, call_id)

        future = self.correlator.register(key)
        self.client.send_service_call_request(
            service.id, call_id, self.encoding, writer(args)
        )
        try:
            ok, payload = await self.correlator.wait(key, future)
        except asyncio.TimeoutError:
            logger.warning("Service call %s (call=%d) timed out", name, call_id)
            self.ros.emit(id, {"values": f"timed out waiting for {name}", "result": False})
            return

        if ok:
            self.ros.emit(id, {"values": reader(payload), "result": True})
        else:
            self.ros.emit(id, {"values": payload, "result": False})

    def _on_service_call_response(self, event: ServiceCallResponse) -> None:
        self.correlator.resolve(("service", event.service_id, event.call_id), (True, event.data))

    def _on_service_call_failure(self, event: ServiceCallFailure) -> None:
        self.correlator.resolve(
            ("service", event.service_id, event.call_id), (False, event.message)
        )

    # ── introspection pseudo-services ────────────────────────────────────

    @staticmethod
    def _param_name(name: str) -> str:
        # 'node:param' -> 'node.param'
        return name.replace(":", ".", 1)

    async def _get_param(self, id: str, args: dict[str, Any]) -> None:
        name = self._param_name(args["name"])
        key = ("param", name, id)
        future = self.correlator.register(key)
        self.client.get_parameters([name], id)
        try:
            value = await self.correlator.wait(key, future)
        except asyncio.TimeoutError:
            self.ros.emit(id, {"values": f"timed out waiting for {name}", "result": False})
            return
        self.ros.emit(id, {"values": {"value": json.dumps(value)}, "result": True})

    async def _set_param(self, id: str, args: dict[str, Any]) -> None:
        name = self._param_name(args["name"])
        value = json.loads(args["value"])
        key = ("param", name, id)
        future = self.correlator.register(key)
        self.client.set_parameters([{"name": name, "value": value}], id)
        try:
            await self.correlator.wait(key, future)
        except asyncio.TimeoutError:
            self.ros.emit(id, {"values": f"timed out waiting for {name}", "result": False})
            return
        self.ros.emit(id, {"result": True})

    def _on_parameter_values(self, event: ParameterValues) -> None:
        if not event.parameters:
            return
        first = event.parameters[0]
        self.correlator.resolve(("param", first.get("name"), event.id), first.get("value"))

    def _get_topics(self, id: str, args: dict[str, Any]) -> None:
        channels = list(self.directory.channels())
        self.ros.emit(id, {
            "values": {
                "topics": [c.topic for c in channels],
                "types": [c.schema_name for c in channels],
            },
            "result": True,
        })

    async def _get_services(self, id: str, args: dict[str, Any]) -> None:
        first = GRAPH_KEY not in self.correlator
        future = self.correlator.register(GRAPH_KEY)
        if first:
            self.client.subscribe_connection_graph()
        try:
            names = await self.correlator.wait(GRAPH_KEY, future)
        except asyncio.TimeoutError:
            # Later callers still share the graph subscription
            if GRAPH_KEY not in self.correlator:
                self.client.unsubscribe_connection_graph()
            self.ros.emit(id, {"values": "timed out waiting for services", "result": False})
            return
        self.ros.emit(id, {"values": {"services": names}, "result": True})

    def _on_connection_graph_update(self, event: ConnectionGraphUpdate) -> None:
        if GRAPH_KEY not in self.correlator:
            return
        self.client.unsubscribe_connection_graph()
        self.correlator.resolve(GRAPH_KEY, event.service_names)

    def _get_topic_type(self, id: str, args: dict[str, Any]) -> None:
        channel = self.directory.channel_by_name(args.get("topic", ""))
        if channel is not None and channel.schema_name:
            self.ros.emit(id, {"values": {"type": channel.schema_name}, "result": True})
        else:
            self.ros.emit(id, {"result": False})

    def _get_service_type(self, id: str, args: dict[str, Any]) -> None:
        service = self.directory.service_by_name(args.get("service", ""))
        if service is not None and service.type:
            self.ros.emit(id, {"values": {"type": service.type}, "result": True})
        else:
            self.ros.emit(id, {"result": False})

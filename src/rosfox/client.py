"""WebSocket client for the Foxglove WebSocket protocol."""

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Callable

import websockets

from rosfox import protocol
from rosfox.protocol import ServerBinaryOp, ServerOp

logger = logging.getLogger("rosfox.client")

Listener = Callable[..., Any]

# JSON op -> event name
_JSON_EVENTS = {
    ServerOp.SERVER_INFO.value: "server_info",
    ServerOp.STATUS.value: "status",
    ServerOp.REMOVE_STATUS.value: "remove_status",
    ServerOp.ADVERTISE.value: "advertise",
    ServerOp.UNADVERTISE.value: "unadvertise",
    ServerOp.ADVERTISE_SERVICES.value: "advertise_services",
    ServerOp.UNADVERTISE_SERVICES.value: "unadvertise_services",
    ServerOp.PARAMETER_VALUES.value: "parameter_values",
    ServerOp.CONNECTION_GRAPH_UPDATE.value: "connection_graph_update",
    ServerOp.SERVICE_CALL_FAILURE.value: "service_call_failure",
}

_BINARY_EVENTS = {
    ServerBinaryOp.MESSAGE_DATA: "message",
    ServerBinaryOp.TIME: "time",
    ServerBinaryOp.SERVICE_CALL_RESPONSE: "service_call_response",
}


@dataclass(frozen=True)
class CloseEvent:
    code: int | None
    reason: str


class FoxgloveClient:
    """Event-emitting client for a Foxglove WebSocket server.

    Command methods are synchronous: ids are allocated immediately and the
    frames are queued, then sent in order by a writer task once the
    connection is open.
    """

    SUPPORTED_SUBPROTOCOL = protocol.SUBPROTOCOL
    drain_timeout = 2.0

    def __init__(
        self,
        url: str,
        max_size: int | None = 16 * 1024 * 1024,
        ping_interval: float | None = 30,
        ping_timeout: float | None = 10,
    ):
        self.url = url
        self.max_size = max_size
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout
        self.server_info: dict[str, Any] | None = None

        self._listeners: dict[str, list[Listener]] = {}
        self._ws: websockets.ClientConnection | None = None
        self._outbox: asyncio.Queue[str | bytes] = asyncio.Queue()
        self._reader_task: asyncio.Task | None = None
        self._writer_task: asyncio.Task | None = None
        self._publisher_ids = itertools.count(1)
        self._subscription_ids = itertools.count(1)

    # ── events ───────────────────────────────────────────────────────────

    def on(self, event: str, listener: Listener) -> None:
        self._listeners.setdefault(event, []).append(listener)

    def off(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    def emit(self, event: str, *args: Any) -> None:
        """Call every listener for `event`; a failing listener is logged."""
        for listener in list(self._listeners.get(event, [])):
            try:
                listener(*args)
            except Exception:
                logger.exception("Error in '%s' listener", event)

    # ── connection ───────────────────────────────────────────────────────

    async def connect(self) -> None:
        """Open the WebSocket and start the reader and writer tasks."""
        logger.info("Connecting to %s", self.url)
        try:
            self._ws = await websockets.connect(
                self.url,
                subprotocols=[websockets.Subprotocol(self.SUPPORTED_SUBPROTOCOL)],
                max_size=self.max_size,
                ping_interval=self.ping_interval,
                ping_timeout=self.ping_timeout,
            )
        except (OSError, asyncio.TimeoutError, websockets.InvalidURI,
                websockets.InvalidHandshake) as e:
            self.emit("error", e)
            self.emit("close", CloseEvent(code=None, reason=str(e)))
            raise

        self._writer_task = asyncio.create_task(self._write_loop())
        self._reader_task = asyncio.create_task(self._read_loop())
        logger.info("Connected to %s", self.url)
        self.emit("open")

    @property
    def connected(self) -> bool:
        return self._reader_task is not None and not self._reader_task.done()

    async def wait_closed(self) -> None:
        if self._reader_task is not None:
            await self._reader_task

    async def close(self) -> None:
        """Flush queued frames, close the connection and wait for the read loop."""
        if self._writer_task is not None and not self._writer_task.done():
            try:
                await asyncio.wait_for(self._outbox.join(), self.drain_timeout)
            except asyncio.TimeoutError:
                logger.warning("Closing with %d unsent frames", self._outbox.qsize())
        if self._ws is not None:
            await self._ws.close()
        if self._reader_task is not None:
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        if self._writer_task is not None:
            self._writer_task.cancel()
            try:
                await self._writer_task
            except asyncio.CancelledError:
                pass

    async def _read_loop(self) -> None:
        assert self._ws is not None
        try:
            async for frame in self._ws:
                if isinstance(frame, str):
                    self._handle_json(frame)
                else:
                    self._handle_binary(frame)
        except websockets.ConnectionClosedError as e:
            logger.warning("Connection to %s lost: %s", self.url, e)
            self.emit("error", e)
        finally:
            logger.info("Disconnected from %s", self.url)
            self.emit(
                "close",
                CloseEvent(code=self._ws.close_code, reason=self._ws.close_reason or ""),
            )

    async def _write_loop(self) -> None:
        assert self._ws is not None
        try:
            while True:
                frame = await self._outbox.get()
                try:
                    await self._ws.send(frame)
                finally:
                    self._outbox.task_done()
        except websockets.ConnectionClosed:
            pass

    def _handle_json(self, raw: str) -> None:
        try:
            msg = protocol.decode_json(raw)
            payload = protocol.parse_server_message(msg)
        except protocol.ProtocolError as e:
            logger.warning("Dropping malformed frame: %s", e)
            return

        op = msg["op"]
        event = _JSON_EVENTS.get(op)
        if event is None or payload is None:
            logger.debug("Ignoring server message: %s", op)
            return
        if op == ServerOp.SERVER_INFO.value:
            self.server_info = msg
            logger.info("Server info: %s (capabilities: %s)",
                        msg.get("name"), ", ".join(msg.get("capabilities", [])))
        elif op == ServerOp.STATUS.value:
            logger.info("Server status: %s", msg.get("message"))
        self.emit(event, payload)

    def _handle_binary(self, frame: bytes) -> None:
        try:
            opcode, payload = protocol.decode_binary(frame)
        except protocol.ProtocolError as e:
            logger.warning("Dropping malformed frame: %s", e)
            return
        self.emit(_BINARY_EVENTS[opcode], payload)

    def _send(self, frame: str | bytes) -> None:
        self._outbox.put_nowait(frame)

    # ── commands ─────────────────────────────────────────────────────────

    def advertise(
        self,
        topic: str,
        encoding: str,
        schema_name: str,
        schema: str | None = None,
        schema_encoding: str | None = None,
    ) -> int:
        """Advertise a client publisher. Returns its channel id."""
        channel_id = next(self._publisher_ids)
        self._send(protocol.advertise_msg(
            channel_id, topic, encoding, schema_name, schema, schema_encoding
        ))
        return channel_id

    def unadvertise(self, channel_id: int) -> None:
        self._send(protocol.unadvertise_msg(channel_id))

    def send_message(self, channel_id: int, data: bytes) -> None:
        self._send(protocol.message_data_frame(channel_id, data))

    def subscribe(self, channel_id: int) -> int:
        """Subscribe to a server channel. Returns the subscription id."""
        subscription_id = next(self._subscription_ids)
        self._send(protocol.subscribe_msg(subscription_id, channel_id))
        return subscription_id

    def unsubscribe(self, subscription_id: int) -> None:
        self._send(protocol.unsubscribe_msg(subscription_id))

    def send_service_call_request(
        self, service_id: int, call_id: int, encoding: str, data: bytes
    ) -> None:
        self._send(protocol.service_call_request_frame(service_id, call_id, encoding, data))

    def get_parameters(self, names: list[str], request_id: str | None = None) -> None:
        self._send(protocol.get_parameters_msg(names, request_id))

    def set_parameters(
        self, parameters: list[dict[str, Any]], request_id: str | None = None
    ) -> None:
        self._send(protocol.set_parameters_msg(parameters, request_id))

    def subscribe_connection_graph(self) -> None:
        self._send(protocol.encode_json(protocol.ClientOp.SUBSCRIBE_CONNECTION_GRAPH))

    def unsubscribe_connection_graph(self) -> None:
        self._send(protocol.encode_json(protocol.ClientOp.UNSUBSCRIBE_CONNECTION_GRAPH))

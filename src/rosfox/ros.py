"""Minimal roslib-style API object backed by a Foxglove session."""

import asyncio
import itertools
from typing import Any, Callable

from rosfox.client import FoxgloveClient
from rosfox.session import FoxgloveSession


class Ros:
    """Event emitter that a FoxgloveSession reports to.

    Listeners are keyed by event name: a topic name for decoded messages,
    a request id for service results, or one of "connection", "close",
    "error".
    """

    def __init__(self, ros2: bool = True, call_timeout: float | None = None, **client_options: Any):
        self.ros2 = ros2
        self.call_timeout = call_timeout
        self.client_options = client_options
        self.is_connected = False
        self.socket: FoxgloveSession | None = None
        self._listeners: dict[str, list[Callable[..., Any]]] = {}
        self._ids = itertools.count(1)

    def on(self, event: str, listener: Callable[..., Any]) -> None:
        self._listeners.setdefault(event, []).append(listener)

    def off(self, event: str, listener: Callable[..., Any]) -> None:
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    def once(self, event: str, listener: Callable[..., Any]) -> None:
        def _once(*args: Any) -> None:
            self.off(event, _once)
            listener(*args)

        self.on(event, _once)

    def emit(self, event: str, *args: Any) -> None:
        for listener in list(self._listeners.get(event, [])):
            listener(*args)

    async def connect(self, url: str) -> FoxgloveSession:
        """Open a new session to `url`.

        Any previous session is left running; each call is independent.
        """
        session = FoxgloveSession(
            url,
            self,
            ros2=self.ros2,
            client=FoxgloveClient(url, **self.client_options),
            call_timeout=self.call_timeout,
        )
        self.socket = session
        await session.start()
        return session

    def send(self, message: dict[str, Any]) -> Any:
        if self.socket is None:
            raise RuntimeError("Not connected; call connect() first")
        return self.socket.send(message)

    async def close(self) -> None:
        if self.socket is not None:
            await self.socket.close()

    def next_id(self, prefix: str) -> str:
        return f"{prefix}:{next(self._ids)}"

    async def call_service(
        self,
        service: str,
        type: str,
        args: Any = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Call a service and return the first result envelope."""
        request_id = self.next_id(f"call_service:{service}")
        loop = asyncio.get_running_loop()
        result: asyncio.Future[dict[str, Any]] = loop.create_future()

        def _on_result(response: dict[str, Any]) -> None:
            if not result.done():
                result.set_result(response)

        self.on(request_id, _on_result)
        self.send({
            "op": "call_service",
            "id": request_id,
            "service": service,
            "type": type,
            "args": args if args is not None else {},
        })
        try:
            return await asyncio.wait_for(result, timeout)
        finally:
            self.off(request_id, _on_result)

"""Live index of the channels and services the server has advertised."""

import asyncio
import logging
from typing import Iterator

from rosfox.protocol import Channel, Service

logger = logging.getLogger("rosfox.directory")


class Directory:
    """Channels and services indexed by id and by name.

    Lookups by name can wait for an advertisement that has not happened yet.
    All waiters on one name share a single future, so one advertisement
    resolves every one of them.
    """

    def __init__(self) -> None:
        self._channels_by_id: dict[int, Channel] = {}
        self._channels_by_name: dict[str, Channel] = {}
        self._services_by_id: dict[int, Service] = {}
        self._services_by_name: dict[str, Service] = {}
        self._channel_waiters: dict[str, asyncio.Future[Channel]] = {}
        self._service_waiters: dict[str, asyncio.Future[Service]] = {}

    # ── channels ─────────────────────────────────────────────────────────

    def record_channel(self, channel: Channel) -> None:
        previous = self._channels_by_name.get(channel.topic)
        if previous is not None and previous.id != channel.id:
            self.remove_channel(previous.id)
        self.remove_channel(channel.id)
        self._channels_by_id[channel.id] = channel
        self._channels_by_name[channel.topic] = channel
        logger.debug("Channel advertised: %s (id=%d, schema=%s)",
                     channel.topic, channel.id, channel.schema_name)
        _wake(self._channel_waiters, channel.topic, channel)

    def remove_channel(self, channel_id: int) -> None:
        channel = self._channels_by_id.pop(channel_id, None)
        if channel is None:
            return
        if self._channels_by_name.get(channel.topic) is channel:
            del self._channels_by_name[channel.topic]
        logger.debug("Channel unadvertised: %s (id=%d)", channel.topic, channel_id)

    def channel_by_id(self, channel_id: int) -> Channel | None:
        return self._channels_by_id.get(channel_id)

    def channel_by_name(self, name: str) -> Channel | None:
        return self._channels_by_name.get(name)

    def channels(self) -> Iterator[Channel]:
        """Advertised channels in advertisement order."""
        return iter(list(self._channels_by_name.values()))

    async def channel(self, name: str) -> Channel:
        """Return the channel called `name`, waiting for it if necessary."""
        channel = self._channels_by_name.get(name)
        if channel is not None:
            return channel
        return await _wait(self._channel_waiters, name)

    # ── services ─────────────────────────────────────────────────────────

    def record_service(self, service: Service) -> None:
        previous = self._services_by_name.get(service.name)
        if previous is not None and previous.id != service.id:
            self.remove_service(previous.id)
        self.remove_service(service.id)
        self._services_by_id[service.id] = service
        self._services_by_name[service.name] = service
        logger.debug("Service advertised: %s (id=%d, type=%s)",
                     service.name, service.id, service.type)
        _wake(self._service_waiters, service.name, service)

    def remove_service(self, service_id: int) -> None:
        service = self._services_by_id.pop(service_id, None)
        if service is None:
            return
        if self._services_by_name.get(service.name) is service:
            del self._services_by_name[service.name]
        logger.debug("Service unadvertised: %s (id=%d)", service.name, service_id)

    def service_by_id(self, service_id: int) -> Service | None:
        return self._services_by_id.get(service_id)

    def service_by_name(self, name: str) -> Service | None:
        return self._services_by_name.get(name)

    def services(self) -> Iterator[Service]:
        return iter(list(self._services_by_name.values()))

    async def service(self, name: str) -> Service:
        """Return the service called `name`, waiting for it if necessary."""
        service = self._services_by_name.get(name)
        if service is not None:
            return service
        return await _wait(self._service_waiters, name)

    # ── teardown ─────────────────────────────────────────────────────────

    def cancel_waiters(self) -> None:
        """Cancel every pending name lookup."""
        for waiters in (self._channel_waiters, self._service_waiters):
            for future in waiters.values():
                future.cancel()
            waiters.clear()


async def _wait(waiters: dict, name: str):
    future = waiters.get(name)
    if future is None or future.done():
        future = asyncio.get_running_loop().create_future()
        waiters[name] = future
    # Shielded so that one cancelled waiter leaves the shared future intact
    return await asyncio.shield(future)


def _wake(waiters: dict, name: str, entity) -> None:
    future = waiters.pop(name, None)
    if future is not None and not future.done():
        future.set_result(entity)

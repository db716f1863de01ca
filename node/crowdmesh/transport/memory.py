"""In-process implementation of PeerTransport.

All endpoints attached to the same InMemoryMedium can see and talk to each
other. Events are delivered synchronously to subscribed listeners, which is
enough for a node running without a radio, for simulations and for tests.
Link signal strength is whatever the medium was told with ``set_signal``.
"""

from __future__ import annotations

import uuid
from typing import Callable

import structlog

from crowdmesh.transport.base import EventKind, TransportError, TransportEvent, TransportListener

log = structlog.get_logger()


def _link(a: str, b: str) -> frozenset[str]:
    return frozenset((a, b))


class InMemoryMedium:
    """Shared radio space connecting InMemoryTransport endpoints."""

    def __init__(self) -> None:
        self._endpoints: dict[str, InMemoryTransport] = {}
        self._advertising: dict[str, str] = {}   # peer_id -> advertised name
        self._discovering: set[str] = set()
        self._pending: set[tuple[str, str]] = set()   # (requester, target)
        self._links: set[frozenset[str]] = set()
        self._signals: dict[frozenset[str], int] = {}

    def attach(self, endpoint: InMemoryTransport) -> None:
        if endpoint.peer_id in self._endpoints:
            raise ValueError(f"peer id {endpoint.peer_id!r} already attached")
        self._endpoints[endpoint.peer_id] = endpoint

    def set_signal(self, a: str, b: str, strength: int) -> None:
        """Set the simulated signal strength of the a<->b link."""
        self._signals[_link(a, b)] = strength

    def signal(self, a: str, b: str) -> int | None:
        return self._signals.get(_link(a, b))

    def is_linked(self, a: str, b: str) -> bool:
        return _link(a, b) in self._links

    def _emit(self, peer_id: str, event: TransportEvent) -> None:
        endpoint = self._endpoints.get(peer_id)
        if endpoint is not None:
            endpoint._deliver(event)

    def start_advertising(self, peer_id: str, name: str) -> None:
        self._advertising[peer_id] = name
        for other in self._discovering:
            if other != peer_id:
                self._emit(other, TransportEvent(EventKind.PEER_FOUND, peer_id, name=name))

    def stop_advertising(self, peer_id: str) -> None:
        if self._advertising.pop(peer_id, None) is None:
            return
        for other in self._discovering:
            if other != peer_id:
                self._emit(other, TransportEvent(EventKind.PEER_LOST, peer_id))

    def start_discovering(self, peer_id: str) -> None:
        self._discovering.add(peer_id)
        for other, name in list(self._advertising.items()):
            if other != peer_id:
                self._emit(peer_id, TransportEvent(EventKind.PEER_FOUND, other, name=name))

    def stop_discovering(self, peer_id: str) -> None:
        self._discovering.discard(peer_id)

    def request(self, requester: str, target: str) -> None:
        if target not in self._advertising:
            raise TransportError(f"peer {target} is not advertising")
        self._pending.add((requester, target))
        name = self._endpoints[requester].name
        self._emit(target, TransportEvent(EventKind.CONNECTION_REQUESTED, requester, name=name))

    def accept(self, target: str, requester: str) -> None:
        if (requester, target) not in self._pending:
            raise TransportError(f"no pending connection from {requester}")
        self._pending.discard((requester, target))
        self._links.add(_link(requester, target))
        self._emit(requester, TransportEvent(EventKind.CONNECTED, target))
        self._emit(target, TransportEvent(EventKind.CONNECTED, requester))

    def drop(self, a: str, b: str) -> None:
        self._pending.discard((a, b))
        self._pending.discard((b, a))
        if _link(a, b) not in self._links:
            return
        self._links.discard(_link(a, b))
        self._emit(a, TransportEvent(EventKind.DISCONNECTED, b))
        self._emit(b, TransportEvent(EventKind.DISCONNECTED, a))

    def carry(self, sender: str, target: str, text: str) -> None:
        if not self.is_linked(sender, target):
            raise TransportError(f"not connected to {target}")
        self._emit(target, TransportEvent(EventKind.TEXT_RECEIVED, sender, text=text))


class InMemoryTransport:
    """PeerTransport endpoint living on an InMemoryMedium."""

    def __init__(self, medium: InMemoryMedium, peer_id: str | None = None) -> None:
        self._medium = medium
        self.peer_id = peer_id or uuid.uuid4().hex[:12]
        self.name = ""
        self._listeners: list[TransportListener] = []
        medium.attach(self)

    def _deliver(self, event: TransportEvent) -> None:
        for listener in list(self._listeners):
            listener(event)

    def subscribe(self, listener: TransportListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def advertise(self, name: str) -> str:
        self.name = name
        self._medium.start_advertising(self.peer_id, name)
        log.debug("memory_advertise", peer=self.peer_id[:8], name=name)
        return self.peer_id

    async def discover(self, name: str) -> str:
        self.name = name
        self._medium.start_discovering(self.peer_id)
        log.debug("memory_discover", peer=self.peer_id[:8], name=name)
        return self.peer_id

    async def stop_advertise(self) -> None:
        self._medium.stop_advertising(self.peer_id)

    async def stop_discover(self) -> None:
        self._medium.stop_discovering(self.peer_id)

    async def request_connection(self, peer_id: str) -> None:
        self._medium.request(self.peer_id, peer_id)

    async def accept_connection(self, peer_id: str) -> None:
        self._medium.accept(self.peer_id, peer_id)

    async def disconnect(self, peer_id: str) -> None:
        self._medium.drop(self.peer_id, peer_id)

    async def send_text(self, peer_id: str, text: str) -> None:
        self._medium.carry(self.peer_id, peer_id, text)

    async def read_signal_strength(self, peer_id: str) -> int | None:
        if not self._medium.is_linked(self.peer_id, peer_id):
            return None
        return self._medium.signal(self.peer_id, peer_id)

"""Event processor: routes transport events through the active session.

This is the core business logic. It depends on the PeerTransport and
EventQueue protocols, not concrete implementations. A single consumer drains
the event queue, so event handlers never run concurrently with each other.

The processor owns everything tied to a room: the host or join session, the
signal tracker and crowd detector, the position estimator, the chat log and
the periodic timers. Leaving the room cancels the timers and clears all of it.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import TYPE_CHECKING, Callable

import structlog

from crowdmesh.core.chat import ChatLog
from crowdmesh.core.crowd import CrowdCrushDetector
from crowdmesh.core.fsm import (
    CloseRequested,
    Connected,
    ConnectionRequested,
    Disconnected,
    EffectExecutor,
    Forward,
    Notice,
    PeerFound,
    PeerLost,
    Received,
    SessionEvent,
    StrengthMeasured,
)
from crowdmesh.core.host import HostSession
from crowdmesh.core.join import JoinPhase, JoinSession
from crowdmesh.core.location import LocationSharing
from crowdmesh.core.models import AnchorRecord, ProximityReport
from crowdmesh.core.positions import PositionEstimator
from crowdmesh.core.protocol import ChatText, Message, SignalBroadcast, SignalUpdate, decode
from crowdmesh.core.proximity import ProximityHistoryTracker
from crowdmesh.core.scheduler import PeriodicTasks
from crowdmesh.transport.base import EventKind, TransportError

if TYPE_CHECKING:
    from crowdmesh.config import AppConfig
    from crowdmesh.core.models import ChatMessage, CrowdCrushAlert, GpsFix, PeerSignalHistory, UserPosition
    from crowdmesh.core.stats import NodeStats
    from crowdmesh.queue.base import EventQueue
    from crowdmesh.transport.base import PeerTransport, TransportEvent

log = structlog.get_logger()

ROLE_IDLE = "idle"
ROLE_HOST = "host"
ROLE_JOIN = "join"


class EventProcessor:
    """Runs one node: host or join role, room state and periodic work."""

    def __init__(
        self,
        transport: PeerTransport,
        queue: EventQueue,
        stats: NodeStats,
        config: AppConfig,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._transport = transport
        self._queue = queue
        self._stats = stats
        self._config = config
        self._clock = clock
        self._executor = EffectExecutor(transport, stats)

        self._tracker = ProximityHistoryTracker(
            window_ms=config.proximity.window_ms,
            closing_in_threshold=config.proximity.closing_in_threshold,
        )
        self._detector = CrowdCrushDetector(
            self._tracker,
            nearby_threshold=config.crowd.nearby_threshold,
            high_proportion=config.crowd.high_proportion,
            medium_proportion=config.crowd.medium_proportion,
        )
        self._estimator = PositionEstimator(config.location.anchor_ttl_seconds, clock=clock)
        self._location = LocationSharing(config.location)
        self._chat = ChatLog(config.chat.max_messages)
        self._timers = PeriodicTasks()
        self._strengths: dict[str, int] = {}
        self._notices: deque[dict] = deque(maxlen=20)

        self._role = ROLE_IDLE
        self._name = config.node.name
        self._event_name: str | None = None
        self._my_peer_id: str | None = None
        self._host: HostSession | None = None
        self._join: JoinSession | None = None

        self._unsubscribe = transport.subscribe(self.submit_event)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # ---- Event stream ----

    def submit_event(self, event: TransportEvent) -> None:
        """Transport listener: enqueue an event for the consumer."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            log.error("event_queue_full", kind=event.kind.value, peer=event.peer_id[:8])
            return
        self._stats.update_queue_depth(self._queue.qsize())

    def pending_events(self) -> int:
        return self._queue.qsize()

    async def run_event_consumer(self) -> None:
        """Consume transport events forever. Runs as a background task."""
        log.info("event_consumer_started")
        while True:
            event = await self._queue.get()
            await self._process(event)

    async def drain(self) -> int:
        """Process every event already queued. Returns how many were handled."""
        handled = 0
        while self._queue.qsize() > 0:
            event = await self._queue.get()
            await self._process(event)
            handled += 1
        return handled

    async def _process(self, event: TransportEvent) -> None:
        self._stats.update_queue_depth(self._queue.qsize())
        try:
            await self.handle_event(event)
        except Exception:
            log.error("event_handling_failed", kind=event.kind.value,
                      peer=event.peer_id[:8], exc_info=True)

    async def handle_event(self, event: TransportEvent) -> None:
        self._stats.record_event()
        session_event = self._to_session_event(event)
        if session_event is None:
            return

        if self._role == ROLE_HOST and self._host is not None:
            await self._handle_host(session_event)
        elif self._role == ROLE_JOIN and self._join is not None:
            await self._handle_join(session_event)
        else:
            log.debug("event_without_session", kind=event.kind.value, peer=event.peer_id[:8])

    def _to_session_event(self, event: TransportEvent) -> SessionEvent | None:
        peer_id = event.peer_id
        if event.kind is EventKind.TEXT_RECEIVED:
            message = decode(event.text)
            if message is None:
                self._stats.record_malformed()
                log.debug("malformed_message_dropped", peer=peer_id[:8])
                return None
            self._stats.record_received(peer_id)
            return Received(peer_id, message)
        if event.kind is EventKind.PEER_FOUND:
            return PeerFound(peer_id, event.name)
        if event.kind is EventKind.PEER_LOST:
            return PeerLost(peer_id)
        if event.kind is EventKind.CONNECTION_REQUESTED:
            return ConnectionRequested(peer_id)
        if event.kind is EventKind.CONNECTED:
            return Connected(peer_id)
        if event.kind is EventKind.DISCONNECTED:
            return Disconnected(peer_id)
        return None

    async def _handle_host(self, event: SessionEvent) -> None:
        verified = self._host.verified_peers()
        effects = await self._host.dispatch(event)
        for effect in effects:
            if isinstance(effect, Forward):
                self._consume(effect.peer_id, effect.message)
        if isinstance(event, Disconnected):
            self._forget_peer(event.peer_id)
            if event.peer_id in verified:
                # Joiners drop a peer once it is missing from the strength map.
                await self.broadcast_signals()

    async def _handle_join(self, event: SessionEvent) -> None:
        before = self._join.phase
        effects = await self._join.dispatch(event)
        for effect in effects:
            if isinstance(effect, Forward):
                self._consume(effect.peer_id, effect.message)
            elif isinstance(effect, Notice):
                self._notice(effect)

        after = self._join.phase
        if after is JoinPhase.IN_ROOM and before is not JoinPhase.IN_ROOM:
            self._enter_room()
        elif after is JoinPhase.IDLE and before is not JoinPhase.IDLE:
            self._exit_room()
        if isinstance(event, PeerLost):
            self._forget_peer(event.peer_id)

    def _consume(self, sender_id: str, msg: Message) -> None:
        """Apply a forwarded application message to the room state."""
        if isinstance(msg, AnchorRecord):
            if msg.peer_id != self._my_peer_id:
                self._estimator.upsert_anchor(msg)
        elif isinstance(msg, ProximityReport):
            if msg.peer_id != self._my_peer_id:
                self._estimator.upsert_report(msg)
        elif isinstance(msg, ChatText):
            self._chat.add(sender_id, msg.text, self._now_ms())
            self._stats.record_chat()
        elif isinstance(msg, SignalUpdate):
            self._apply_strength(msg.peer_id, msg.strength)
        elif isinstance(msg, SignalBroadcast):
            self._replace_strengths(msg.strengths)

    def _apply_strength(self, peer_id: str, strength: int) -> None:
        if peer_id == self._my_peer_id:
            return
        self._strengths[peer_id] = strength
        self._tracker.record(peer_id, strength, self._now_ms())

    def _replace_strengths(self, strengths: dict[str, int]) -> None:
        """Joiner: the host's broadcast is the whole room. Peers missing from it have left."""
        host_id = self._join.host_id if self._join is not None else None
        gone = set(self._strengths) - set(strengths) - {host_id}
        for peer_id in gone:
            self._forget_peer(peer_id)
            log.debug("peer_left_room", peer=peer_id[:8])
        for peer_id, strength in strengths.items():
            self._apply_strength(peer_id, strength)
        self._tracker.retain(self._tracked_peers())

    def _forget_peer(self, peer_id: str) -> None:
        self._tracker.remove(peer_id)
        self._estimator.remove_peer(peer_id)
        self._strengths.pop(peer_id, None)

    def _notice(self, notice: Notice) -> None:
        self._notices.append({"kind": notice.kind, "text": notice.text, "timestamp_ms": self._now_ms()})
        log.info("session_notice", kind=notice.kind, text=notice.text)

    # ---- Room lifecycle ----

    def _enter_room(self) -> None:
        cfg = self._config
        self._sync_self_anchor()
        self._timers.start("signal_poll", cfg.proximity.poll_interval_ms / 1000, self.poll_signals)
        self._timers.start("crowd_tick", cfg.crowd.tick_interval_ms / 1000, self.evaluate_crowd)
        self._timers.start("anchor_broadcast", cfg.location.anchor_broadcast_ms / 1000, self.broadcast_anchor)
        self._timers.start("proximity_report", cfg.location.proximity_report_ms / 1000, self.report_proximity)
        if cfg.location.anchor_ttl_seconds > 0:
            self._timers.start("location_expiry", cfg.location.expiry_check_ms / 1000, self.expire_locations)
        if self._role == ROLE_HOST:
            self._timers.start("signal_broadcast", cfg.proximity.broadcast_interval_ms / 1000,
                               self.broadcast_signals)
        log.info("room_entered", role=self._role, timers=self._timers.names())

    def _exit_room(self) -> None:
        self._timers.cancel_all()
        self._tracker.clear()
        self._detector.reset()
        self._estimator.clear()
        self._strengths.clear()
        self._chat.clear()
        log.info("room_state_cleared", role=self._role)

    async def host_event(self, event_code: str, name: str | None = None, event_name: str | None = None) -> str:
        """Start hosting an event. Ends any current session first."""
        await self.end_session()
        self._name = name or self._config.node.name
        self._my_peer_id = await self._transport.advertise(self._name)
        self._role = ROLE_HOST
        self._event_name = event_name
        self._host = HostSession(self._executor, event_code, self._stats)
        self._enter_room()
        log.info("event_hosted", peer=self._my_peer_id[:8], event_name=event_name)
        return self._my_peer_id

    async def start_discovery(self, name: str | None = None) -> str:
        """Enter the join role and start looking for hosts."""
        await self.end_session()
        self._name = name or self._config.node.name
        self._my_peer_id = await self._transport.discover(self._name)
        self._role = ROLE_JOIN
        self._join = JoinSession(self._executor)
        log.info("discovery_started", peer=self._my_peer_id[:8])
        return self._my_peer_id

    async def join_host(self, host_id: str, event_code: str) -> bool:
        if self._role != ROLE_JOIN or self._join is None:
            return False
        return await self._join.join_host(host_id, event_code)

    async def leave_room(self) -> bool:
        if self._role != ROLE_JOIN or self._join is None or self._join.phase is JoinPhase.IDLE:
            return False
        await self._join.leave_room()
        self._exit_room()
        return True

    async def close_room(self) -> bool:
        """Notify every verified peer, disconnect everyone and stop advertising."""
        if self._role != ROLE_HOST or self._host is None or self._host.closed:
            return False
        await self._host.dispatch(CloseRequested())
        self._exit_room()
        return True

    async def end_session(self) -> None:
        """Leave whatever role this node is in and return to idle."""
        role = self._role
        if role == ROLE_HOST:
            await self.close_room()
        elif role == ROLE_JOIN:
            await self.leave_room()
            try:
                await self._transport.stop_discover()
            except TransportError:
                log.warning("stop_discover_failed", exc_info=True)
                self._stats.record_transport_error()
        if role != ROLE_IDLE:
            self._exit_room()
            log.info("session_ended", role=role)
        await self._timers.wait_cancelled()
        self._role = ROLE_IDLE
        self._host = None
        self._join = None
        self._my_peer_id = None
        self._event_name = None
        self._notices.clear()

    async def close(self) -> None:
        await self.end_session()
        self._unsubscribe()

    # ---- Periodic work ----

    @property
    def in_room(self) -> bool:
        if self._role == ROLE_HOST:
            return self._host is not None and not self._host.closed
        if self._role == ROLE_JOIN:
            return self._join is not None and self._join.in_room
        return False

    def roster(self) -> list[str]:
        """Peers this node exchanges room traffic with."""
        if not self.in_room:
            return []
        if self._role == ROLE_HOST:
            return self._host.verified_peers()
        return [self._join.host_id]

    def _tracked_peers(self) -> list[str]:
        if self._role == ROLE_HOST:
            return self.roster()
        return list(self._strengths)

    async def poll_signals(self) -> int:
        """Read link strength for every roster peer. Returns how many readings were taken."""
        now_ms = self._now_ms()
        readings = 0
        for peer_id in self.roster():
            try:
                strength = await self._transport.read_signal_strength(peer_id)
            except TransportError:
                log.warning("signal_read_failed", peer=peer_id[:8], exc_info=True)
                self._stats.record_transport_error()
                continue
            if strength is None:
                continue
            readings += 1
            self._strengths[peer_id] = strength
            self._tracker.record(peer_id, strength, now_ms)
            if self._role == ROLE_HOST:
                await self._host.dispatch(StrengthMeasured(peer_id, strength))
            elif self._my_peer_id is not None:
                await self._executor.send(peer_id, SignalUpdate(self._my_peer_id, strength))
        self._tracker.retain(self._tracked_peers())
        return readings

    async def broadcast_signals(self) -> int:
        """Host only: share the room's strength map with every verified peer."""
        if self._role != ROLE_HOST or self._host is None or self._host.closed:
            return 0
        peers = self._host.verified_peers()
        if not peers:
            return 0
        return await self._executor.broadcast(peers, SignalBroadcast(self._host.strengths()))

    async def evaluate_crowd(self) -> CrowdCrushAlert:
        alert = self._detector.tick()
        if alert.detected:
            log.warning("crowd_crush_detected", severity=alert.severity,
                        closest_peers=alert.closest_peers, total_nearby=alert.total_nearby)
        else:
            log.debug("crowd_evaluated", closest_peers=alert.closest_peers,
                      total_nearby=alert.total_nearby)
        return alert

    async def broadcast_anchor(self) -> int:
        if self._my_peer_id is None:
            return 0
        anchor = self._location.anchor_record(self._my_peer_id, self._name)
        if anchor is None:
            return 0
        return await self._executor.broadcast(self.roster(), anchor)

    async def report_proximity(self) -> int:
        peers = self.roster()
        if self._my_peer_id is None or not peers:
            return 0
        report = self._location.proximity_report(
            self._my_peer_id,
            self._name,
            self._estimator.anchors(),
            peers,
            self._strengths,
            self._now_ms(),
        )
        if report is None:
            return 0
        self._estimator.upsert_report(report)
        log.debug("proximity_report_sent", readings=len(report.readings), peers=len(peers))
        return await self._executor.broadcast(peers, report)

    async def expire_locations(self) -> int:
        return self._estimator.tick()

    # ---- Chat and location actions ----

    async def send_chat(self, text: str) -> ChatMessage | None:
        """Broadcast a chat line to the room. Returns the local record, or None if not sent."""
        if not text.strip() or self._my_peer_id is None:
            return None
        text = text[: self._config.chat.max_length]
        if not isinstance(decode(text), ChatText):
            log.warning("chat_rejected_protocol_text")
            return None
        peers = self.roster()
        delivered = await self._executor.broadcast(peers, ChatText(text))
        msg = self._chat.add(self._my_peer_id, text, self._now_ms(), is_me=True)
        self._stats.record_chat()
        log.info("chat_sent", peers=len(peers), delivered=delivered)
        return msg

    async def start_participating(self) -> None:
        self._location.start_participating()
        await self.report_proximity()

    def stop_participating(self) -> None:
        self._location.stop_participating()
        self._sync_self_anchor()
        if self._my_peer_id is not None:
            self._estimator.remove_peer(self._my_peer_id)

    async def share_gps(self, fix: GpsFix) -> None:
        self._location.share_gps(fix)
        self._sync_self_anchor()
        if self._my_peer_id is not None:
            # Our own proximity estimate is superseded by GPS.
            self._estimator.remove_peer(self._my_peer_id)
        await self.broadcast_anchor()

    def stop_sharing_gps(self) -> None:
        self._location.stop_sharing_gps()
        self._sync_self_anchor()

    def _sync_self_anchor(self) -> None:
        anchor = None
        if self._my_peer_id is not None:
            anchor = self._location.anchor_record(self._my_peer_id, self._name)
        self._estimator.set_self_anchor(anchor)

    # ---- Queries ----

    @property
    def role(self) -> str:
        return self._role

    @property
    def my_peer_id(self) -> str | None:
        return self._my_peer_id

    @property
    def host_session(self) -> HostSession | None:
        return self._host

    @property
    def join_session(self) -> JoinSession | None:
        return self._join

    def discovered_hosts(self) -> dict[str, str]:
        if self._join is None:
            return {}
        return self._join.discovered_hosts()

    def signal_map(self) -> dict[str, int]:
        if self._role == ROLE_HOST and self._host is not None:
            return self._host.strengths()
        return dict(self._strengths)

    def current_alert(self) -> CrowdCrushAlert:
        return self._detector.current_alert()

    def peer_histories(self) -> dict[str, PeerSignalHistory]:
        return self._tracker.histories()

    def current_positions(self) -> dict[str, UserPosition]:
        return self._estimator.current_positions()

    def chat_messages(self, limit: int | None = None) -> list[ChatMessage]:
        return self._chat.messages(limit)

    def location_status(self) -> dict:
        return {
            "participating": self._location.participating,
            "sharing_gps": self._location.sharing_gps,
        }

    def session_snapshot(self) -> dict:
        snapshot = {
            "role": self._role,
            "peer_id": self._my_peer_id,
            "name": self._name,
            "event_name": self._event_name,
            "phase": None,
            "in_room": self.in_room,
            "roster": self.roster(),
            "timers": self._timers.names(),
            "location": self.location_status(),
            "notices": list(self._notices),
        }
        if self._host is not None:
            snapshot["phase"] = self._host.state.phase.value
            snapshot["connections"] = [
                {"peer_id": c.peer_id, "status": c.status.value} for c in self._host.connections()
            ]
        elif self._join is not None:
            snapshot["phase"] = self._join.phase.value
            snapshot["host_id"] = self._join.host_id
        return snapshot

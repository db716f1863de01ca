"""Node statistics and active-peer tracking.

Tracks in-memory counters and a sliding window of peers we recently
exchanged messages with. No framework dependencies.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass


@dataclass
class PeerActivity:
    """Tracks a single peer's recent traffic."""
    last_seen: float          # time.monotonic() timestamp
    messages_received: int = 0
    messages_sent: int = 0


class NodeStats:
    """Thread-safe node statistics with active-peer tracking.

    A peer is "active" if we sent it or received from it a message within
    ``active_window_seconds`` (default 120s).
    """

    def __init__(self, active_window_seconds: float = 120.0) -> None:
        self._lock = threading.Lock()
        self._started_at = time.time()
        self._active_window = active_window_seconds

        # Counters
        self.events_processed: int = 0
        self.messages_received: int = 0
        self.messages_sent: int = 0
        self.malformed_messages: int = 0
        self.send_failures: int = 0
        self.transport_errors: int = 0
        self.joins_accepted: int = 0
        self.joins_rejected: int = 0
        self.chat_messages: int = 0
        self.queue_depth: int = 0
        self.queue_max_depth: int = 0

        # Peer tracking: peer_id → PeerActivity
        self._peers: dict[str, PeerActivity] = {}

    def _touch(self, peer_id: str, now: float) -> PeerActivity:
        """Caller holds lock."""
        activity = self._peers.get(peer_id)
        if activity is None:
            activity = PeerActivity(last_seen=now)
            self._peers[peer_id] = activity
        activity.last_seen = now
        return activity

    def record_event(self) -> None:
        with self._lock:
            self.events_processed += 1

    def record_received(self, peer_id: str) -> None:
        """Record that a decodable message arrived from a peer."""
        now = time.monotonic()
        with self._lock:
            self.messages_received += 1
            self._touch(peer_id, now).messages_received += 1

    def record_sent(self, peer_id: str) -> None:
        now = time.monotonic()
        with self._lock:
            self.messages_sent += 1
            self._touch(peer_id, now).messages_sent += 1

    def record_malformed(self) -> None:
        with self._lock:
            self.malformed_messages += 1

    def record_send_failure(self) -> None:
        with self._lock:
            self.send_failures += 1

    def record_transport_error(self) -> None:
        with self._lock:
            self.transport_errors += 1

    def record_join(self, *, accepted: bool) -> None:
        with self._lock:
            if accepted:
                self.joins_accepted += 1
            else:
                self.joins_rejected += 1

    def record_chat(self) -> None:
        with self._lock:
            self.chat_messages += 1

    def update_queue_depth(self, depth: int) -> None:
        with self._lock:
            self.queue_depth = depth
            if depth > self.queue_max_depth:
                self.queue_max_depth = depth

    def _prune_stale_peers(self, now: float) -> None:
        """Remove peers not seen within the active window. Caller holds lock."""
        cutoff = now - self._active_window
        stale = [pid for pid, peer in self._peers.items() if peer.last_seen < cutoff]
        for pid in stale:
            del self._peers[pid]

    def snapshot(self) -> dict:
        """Return a JSON-serializable snapshot of all stats."""
        now_mono = time.monotonic()
        with self._lock:
            self._prune_stale_peers(now_mono)

            return {
                "uptime_seconds": round(time.time() - self._started_at, 1),
                "events_processed": self.events_processed,
                "messages_received": self.messages_received,
                "messages_sent": self.messages_sent,
                "malformed_messages": self.malformed_messages,
                "send_failures": self.send_failures,
                "transport_errors": self.transport_errors,
                "joins_accepted": self.joins_accepted,
                "joins_rejected": self.joins_rejected,
                "chat_messages": self.chat_messages,
                "queue_depth": self.queue_depth,
                "queue_max_depth_ever": self.queue_max_depth,
                "active_peers": {
                    "total": len(self._peers),
                    "receiving": sum(1 for p in self._peers.values() if p.messages_received),
                    "window_seconds": self._active_window,
                },
            }

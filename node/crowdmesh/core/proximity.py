"""Signal-strength history per connected peer.

Keeps a sliding time window of strength samples for each peer and derives a
"closing in" flag: the newest sample is at least ``closing_in_threshold``
stronger than the oldest one still inside the window.
"""

from __future__ import annotations

from typing import Iterable

from crowdmesh.core.models import PeerSignalHistory, SignalSample

DEFAULT_WINDOW_MS = 5000
DEFAULT_CLOSING_IN_THRESHOLD = 5


class ProximityHistoryTracker:
    """Sliding-window strength history. Not thread-safe; single event loop owner."""

    def __init__(
        self,
        window_ms: int = DEFAULT_WINDOW_MS,
        closing_in_threshold: int = DEFAULT_CLOSING_IN_THRESHOLD,
    ) -> None:
        self.window_ms = window_ms
        self.closing_in_threshold = closing_in_threshold
        self._histories: dict[str, PeerSignalHistory] = {}

    def record(self, peer_id: str, strength: int, now_ms: int) -> PeerSignalHistory:
        """Add a reading for ``peer_id`` and recompute its trend."""
        previous = self._histories.get(peer_id)
        samples = list(previous.samples) if previous else []

        # Timestamps never go backwards within one history.
        if samples and now_ms < samples[-1].timestamp_ms:
            now_ms = samples[-1].timestamp_ms
        samples.append(SignalSample(peer_id=peer_id, strength=strength, timestamp_ms=now_ms))
        samples = [s for s in samples if now_ms - s.timestamp_ms <= self.window_ms]

        closing_in = False
        if len(samples) >= 2:
            closing_in = samples[-1].strength - samples[0].strength >= self.closing_in_threshold

        history = PeerSignalHistory(peer_id=peer_id, samples=tuple(samples), closing_in=closing_in)
        self._histories[peer_id] = history
        return history

    def remove(self, peer_id: str) -> bool:
        return self._histories.pop(peer_id, None) is not None

    def retain(self, peer_ids: Iterable[str]) -> list[str]:
        """Drop the history of every peer not in ``peer_ids``. Returns the dropped ids."""
        keep = set(peer_ids)
        gone = [pid for pid in self._histories if pid not in keep]
        for pid in gone:
            del self._histories[pid]
        return gone

    def history(self, peer_id: str) -> PeerSignalHistory | None:
        return self._histories.get(peer_id)

    def histories(self) -> dict[str, PeerSignalHistory]:
        return dict(self._histories)

    def clear(self) -> None:
        self._histories.clear()

    def __len__(self) -> int:
        return len(self._histories)

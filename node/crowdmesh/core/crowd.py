"""Crowd-crush detection from the proximity tracker's trends.

A peer is "nearby" when its latest strength is at or above the nearby
threshold. The alert severity follows the share of nearby peers that are
closing in. A low share only yields an informational, undetected alert.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Mapping

from crowdmesh.core.models import (
    SEVERITY_HIGH,
    SEVERITY_LOW,
    SEVERITY_MEDIUM,
    CrowdCrushAlert,
    PeerSignalHistory,
)

if TYPE_CHECKING:
    from crowdmesh.core.proximity import ProximityHistoryTracker

DEFAULT_NEARBY_THRESHOLD = -70
DEFAULT_HIGH_PROPORTION = 0.6
DEFAULT_MEDIUM_PROPORTION = 0.4


class CrowdCrushDetector:
    """Evaluates the tracker on each tick and keeps the latest snapshot."""

    def __init__(
        self,
        tracker: ProximityHistoryTracker,
        nearby_threshold: int = DEFAULT_NEARBY_THRESHOLD,
        high_proportion: float = DEFAULT_HIGH_PROPORTION,
        medium_proportion: float = DEFAULT_MEDIUM_PROPORTION,
    ) -> None:
        self._tracker = tracker
        self.nearby_threshold = nearby_threshold
        self.high_proportion = high_proportion
        self.medium_proportion = medium_proportion
        self._alert = CrowdCrushAlert()

    def evaluate(self, histories: Mapping[str, PeerSignalHistory]) -> CrowdCrushAlert:
        """Compute an alert from a set of histories. Pure."""
        nearby = [
            h for h in histories.values()
            if h.latest_strength is not None and h.latest_strength >= self.nearby_threshold
        ]
        total = len(nearby)
        closest = sum(1 for h in nearby if h.closing_in)

        if total == 0:
            return CrowdCrushAlert()

        proportion = closest / total
        if proportion >= self.high_proportion:
            return CrowdCrushAlert(
                detected=True,
                severity=SEVERITY_HIGH,
                closest_peers=closest,
                total_nearby=total,
                message=f"HIGH DENSITY: {closest} of {total} people moving toward you!",
            )
        if proportion >= self.medium_proportion:
            return CrowdCrushAlert(
                detected=True,
                severity=SEVERITY_MEDIUM,
                closest_peers=closest,
                total_nearby=total,
                message=f"CAUTION: {closest} of {total} people moving closer",
            )
        if closest > 0:
            return CrowdCrushAlert(
                detected=False,
                severity=SEVERITY_LOW,
                closest_peers=closest,
                total_nearby=total,
                message="Some people nearby are moving closer",
            )
        return CrowdCrushAlert(closest_peers=0, total_nearby=total)

    def tick(self) -> CrowdCrushAlert:
        self._alert = self.evaluate(self._tracker.histories())
        return self._alert

    def current_alert(self) -> CrowdCrushAlert:
        return self._alert

    def reset(self) -> None:
        self._alert = CrowdCrushAlert()

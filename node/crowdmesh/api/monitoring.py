"""Health check and monitoring endpoints."""

from __future__ import annotations

import json
from pathlib import Path

from fastapi import APIRouter

router = APIRouter(prefix="/api/v1")

# Load build info once at import time.
_BUILD_INFO_PATH = Path(__file__).parent.parent / "build_info.json"
_BUILD_INFO: dict = {}
if _BUILD_INFO_PATH.exists():
    try:
        _BUILD_INFO = json.loads(_BUILD_INFO_PATH.read_text())
    except (json.JSONDecodeError, OSError):
        pass


@router.get("/health")
async def health() -> dict:
    """Basic health check."""
    from crowdmesh.main import get_config, get_processor, get_stats

    processor = get_processor()
    config = get_config()
    snapshot = get_stats().snapshot()
    result = {
        "status": "ok",
        "version": "0.1.0",
        "uptime_seconds": snapshot["uptime_seconds"],
        "queue_depth": snapshot["queue_depth"],
        "transport": config.transport.backend,
        "role": processor.role,
        "in_room": processor.in_room,
    }
    result.update(_BUILD_INFO)
    return result


@router.get("/stats")
async def stats() -> dict:
    """Detailed node statistics including active peer counts.

    The ``active_peers`` section shows:
    - ``total``: peers we exchanged messages with in the last N seconds
    - ``receiving``: of those, peers we received at least one message from
    - ``window_seconds``: the time window used for "active" calculation
    """
    from crowdmesh.main import get_stats

    return get_stats().snapshot()


@router.get("/config")
async def get_client_config() -> dict:
    """Configuration endpoint for the UI layer.

    The UI calls this on startup to learn the node's timing and thresholds.
    """
    from crowdmesh.main import get_config

    config = get_config()
    return {
        "node_name": config.node.name,
        "signal_poll_interval_ms": config.proximity.poll_interval_ms,
        "signal_broadcast_interval_ms": config.proximity.broadcast_interval_ms,
        "history_window_ms": config.proximity.window_ms,
        "closing_in_threshold": config.proximity.closing_in_threshold,
        "nearby_threshold": config.crowd.nearby_threshold,
        "crowd_tick_interval_ms": config.crowd.tick_interval_ms,
        "anchor_broadcast_interval_ms": config.location.anchor_broadcast_ms,
        "proximity_report_interval_ms": config.location.proximity_report_ms,
        "anchor_ttl_seconds": config.location.anchor_ttl_seconds,
        "max_chat_length": config.chat.max_length,
    }

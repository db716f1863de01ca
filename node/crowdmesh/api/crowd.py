"""Crowd density endpoints: current alert and per-peer signal trends."""

from __future__ import annotations

from fastapi import APIRouter

router = APIRouter(prefix="/api/v1/crowd")


@router.get("/alert")
async def alert() -> dict:
    """The snapshot from the most recent crowd evaluation tick."""
    from crowdmesh.main import get_processor

    return get_processor().current_alert().to_dict()


@router.get("/peers")
async def peers() -> dict:
    from crowdmesh.main import get_processor

    processor = get_processor()
    histories = processor.peer_histories()
    return {
        "peers": [histories[pid].to_dict() for pid in sorted(histories)],
        "strengths": processor.signal_map(),
    }

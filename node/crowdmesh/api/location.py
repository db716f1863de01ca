"""Location sharing endpoints and the derived position map.

Positions are served as a GeoJSON FeatureCollection (coordinates are
[lon, lat]) so map layers on the UI side can consume them directly.
"""

from __future__ import annotations

import time

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from crowdmesh.api.body import error_response, number, read_json
from crowdmesh.core.models import GpsFix
from crowdmesh.core.positions import positions_to_geojson

router = APIRouter(prefix="/api/v1")


def _status(processor) -> dict:
    return {"ok": True, **processor.location_status()}


@router.get("/positions")
async def positions() -> dict:
    from crowdmesh.main import get_processor

    return positions_to_geojson(get_processor().current_positions())


@router.post("/location/participate")
async def participate() -> dict:
    from crowdmesh.main import get_processor

    processor = get_processor()
    await processor.start_participating()
    return _status(processor)


@router.delete("/location/participate")
async def stop_participating() -> dict:
    from crowdmesh.main import get_processor

    processor = get_processor()
    processor.stop_participating()
    return _status(processor)


@router.post("/location/gps")
async def share_gps(request: Request):
    """Share a GPS fix. Body: ``{"latitude", "longitude", "accuracy"?, "timestamp_ms"?}``."""
    from crowdmesh.main import get_processor

    body = await read_json(request)
    if isinstance(body, JSONResponse):
        return body

    lat = number(body, "latitude")
    lon = number(body, "longitude")
    if lat is None or lon is None:
        return error_response(422, "latitude and longitude are required")
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        return error_response(422, "coordinates out of range")
    accuracy = number(body, "accuracy") or 0.0
    if accuracy < 0:
        return error_response(422, "accuracy must not be negative")
    timestamp = number(body, "timestamp_ms")
    timestamp_ms = int(timestamp) if timestamp is not None else int(time.time() * 1000)

    processor = get_processor()
    await processor.share_gps(GpsFix(lat, lon, accuracy, timestamp_ms))
    return _status(processor)


@router.delete("/location/gps")
async def stop_sharing_gps() -> dict:
    from crowdmesh.main import get_processor

    processor = get_processor()
    processor.stop_sharing_gps()
    return _status(processor)
